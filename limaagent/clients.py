"""Clients for the guest agent and host agent HTTP APIs."""

from __future__ import annotations

import json
from contextlib import closing
from typing import Callable

import httpx

from limaagent.api import GuestEvent, GuestInfo, HostInfo
from limaagent.httpclient import get, new_http_client_with_socket_path


class GuestAgentClient:
    """Talks to the guest agent."""

    version = "v1"
    dummy_host = "lima-guestagent"

    def __init__(self, http_client: httpx.Client) -> None:
        self.http_client = http_client

    def _url(self, endpoint: str) -> str:
        return f"http://{self.dummy_host}/{self.version}/{endpoint}"

    def info(self) -> GuestInfo:
        with closing(get(self.http_client, self._url("info"))) as response:
            return GuestInfo.from_dict(json.loads(response.read()))

    def events(self, on_event: Callable[[GuestEvent], None]) -> None:
        """Call on_event for each event until the stream ends."""
        with closing(get(self.http_client, self._url("events"))) as response:
            for line in response.iter_lines():
                if not line.strip():
                    continue
                on_event(GuestEvent.from_dict(json.loads(line)))


class HostAgentClient:
    """Talks to the host agent."""

    version = "v1"
    dummy_host = "lima-hostagent"

    def __init__(self, http_client: httpx.Client) -> None:
        self.http_client = http_client

    def info(self) -> HostInfo:
        url = f"http://{self.dummy_host}/{self.version}/info"
        with closing(get(self.http_client, url)) as response:
            return HostInfo.from_dict(json.loads(response.read()))


def new_guest_agent_client(socket_path: str) -> GuestAgentClient:
    """Create a guest agent client for a UNIX socket path."""
    return GuestAgentClient(new_http_client_with_socket_path(socket_path))


def new_host_agent_client(socket_path: str) -> HostAgentClient:
    """Create a host agent client for a UNIX socket path."""
    return HostAgentClient(new_http_client_with_socket_path(socket_path))