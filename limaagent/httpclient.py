"""HTTP helpers for talking to the agents."""

from __future__ import annotations

import http
import json
import os
from typing import Optional

import httpx

# The largest body kept in an HTTPStatusError.
HTTP_STATUS_ERROR_BODY_MAX_LENGTH = 64 * 1024


def _status_text(code: int) -> str:
    try:
        return http.HTTPStatus(code).phrase
    except ValueError:
        return ""


def _error_message(body: str) -> Optional[str]:
    """Return the message of an error JSON body, or None if it is not one."""
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if data is None:
        return ""
    if not isinstance(data, dict):
        return None
    message = data.get("message", "")
    if message is None:
        return ""
    if isinstance(message, str):
        return message
    return None


class HTTPStatusError(Exception):
    """Raised for a non-2XX HTTP response."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(status_code, body)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        if self.body and len(self.body.encode("utf-8")) < HTTP_STATUS_ERROR_BODY_MAX_LENGTH:
            message = _error_message(self.body)
            if message is not None:
                return message
        body = json.dumps(self.body, ensure_ascii=False)
        return f"unexpected HTTP status {_status_text(self.status_code)}, body={body}"


def _read_at_most(response: httpx.Response, max_bytes: int) -> bytes:
    buf = bytearray()
    try:
        for chunk in response.iter_bytes():
            buf += chunk
            if len(buf) >= max_bytes:
                break
    except (httpx.HTTPError, httpx.StreamError):
        pass
    return bytes(buf[:max_bytes])


def successful(response: Optional[httpx.Response]) -> None:
    """Raise HTTPStatusError unless the response has a 2XX status."""
    if response is None:
        raise ValueError("nil response")
    if response.status_code // 100 != 2:
        body = _read_at_most(response, HTTP_STATUS_ERROR_BODY_MAX_LENGTH)
        raise HTTPStatusError(response.status_code, body.decode("utf-8", errors="replace"))


def get(client: httpx.Client, url: str) -> httpx.Response:
    """Send a GET request and return the streamed response if its status is 2XX.

    The caller closes the returned response.
    """
    request = client.build_request("GET", url)
    response = client.send(request, stream=True)
    try:
        successful(response)
    except BaseException:
        response.close()
        raise
    return response


def new_http_client_with_socket_path(socket_path: str) -> httpx.Client:
    """Create a client that connects to a UNIX socket path."""
    os.stat(socket_path)
    return httpx.Client(transport=httpx.HTTPTransport(uds=socket_path), timeout=None)