"""HTTP APIs served by the guest agent and the host agent."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, AsyncIterator

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse
from starlette.routing import Route

from limaagent.api import error_json

log = logging.getLogger(__name__)

_END = object()


def _error_response(err: BaseException, status_code: int) -> Response:
    # The socket is not exposed to the internet, so the message may be returned.
    body = json.dumps(error_json(str(err))) + "\n"
    return Response(body, status_code=status_code, media_type="application/json")


def _info_response(agent: Any) -> Response:
    try:
        body = json.dumps(agent.info().to_dict())
    except Exception as err:  # reported to the client as the source does
        return _error_response(err, 500)
    return Response(body, status_code=200, media_type="application/json")


class GuestAgentBackend:
    """Handlers for GET /v1/info and GET /v1/events of the guest agent."""

    def __init__(self, agent: Any) -> None:
        self.agent = agent

    def get_info(self, request: Request) -> Response:
        return _info_response(self.agent)

    async def get_events(self, request: Request) -> Response:
        return StreamingResponse(self._stream(), media_type="application/x-ndjson")

    async def _stream(self) -> AsyncIterator[bytes]:
        stop = threading.Event()
        try:
            iterator = iter(self.agent.events(stop))
            while True:
                event = await run_in_threadpool(next, iterator, _END)
                if event is _END:
                    break
                try:
                    line = json.dumps(event.to_dict()) + "\n"
                except (TypeError, ValueError) as err:
                    log.warning("%s", err)
                    return
                yield line.encode()
        finally:
            stop.set()


class HostAgentBackend:
    """Handler for GET /v1/info of the host agent."""

    def __init__(self, agent: Any) -> None:
        self.agent = agent

    def get_info(self, request: Request) -> Response:
        return _info_response(self.agent)


def create_guest_agent_app(backend: GuestAgentBackend) -> Starlette:
    return Starlette(routes=[
        Route("/v1/info", backend.get_info, methods=["GET"]),
        Route("/v1/events", backend.get_events, methods=["GET"]),
    ])


def create_host_agent_app(backend: HostAgentBackend) -> Starlette:
    return Starlette(routes=[
        Route("/v1/info", backend.get_info, methods=["GET"]),
    ])