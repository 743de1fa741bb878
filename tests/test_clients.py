import json
from datetime import datetime, timezone

import httpx
import pytest

from limaagent.api import GuestEvent, GuestInfo, HostInfo, IPPort
from limaagent.clients import (
    GuestAgentClient,
    HostAgentClient,
    new_guest_agent_client,
    new_host_agent_client,
)
from limaagent.httpclient import HTTPStatusError


def _http(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_guest_info():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"localPorts": [{"ip": "127.0.0.1", "port": 8080}]})

    info = GuestAgentClient(_http(handler)).info()
    assert info == GuestInfo([IPPort("127.0.0.1", 8080)])
    assert seen == ["http://lima-guestagent/v1/info"]


def test_guest_events_are_delivered_in_order():
    events = [
        GuestEvent(
            time=datetime(2024, 1, 2, 3, 4, 5, 123000, tzinfo=timezone.utc),
            local_ports_added=[IPPort("127.0.0.1", 8080), IPPort("0.0.0.0", 22)],
        ),
        GuestEvent(
            time=datetime(2024, 1, 2, 3, 4, 8, tzinfo=timezone.utc),
            local_ports_removed=[IPPort("127.0.0.1", 8080)],
        ),
    ]
    body = "".join(json.dumps(e.to_dict()) + "\n\n" for e in events)
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, content=body.encode(),
                              headers={"Content-Type": "application/x-ndjson"})

    received = []
    GuestAgentClient(_http(handler)).events(received.append)
    assert received == events
    assert paths == ["/v1/events"]


def test_guest_events_error_status():
    def handler(request):
        return httpx.Response(500, json={"message": "agent down"})

    with pytest.raises(HTTPStatusError) as info:
        GuestAgentClient(_http(handler)).events(lambda ev: None)
    assert str(info.value) == "agent down"


def test_host_info():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"sshLocalPort": 60022})

    assert HostAgentClient(_http(handler)).info() == HostInfo(ssh_local_port=60022)
    assert seen == ["http://lima-hostagent/v1/info"]


def test_host_info_error_status():
    def handler(request):
        return httpx.Response(503, content=b"busy")

    with pytest.raises(HTTPStatusError) as info:
        HostAgentClient(_http(handler)).info()
    assert info.value.status_code == 503
    assert info.value.body == "busy"


def test_new_clients_require_socket(tmp_path):
    with pytest.raises(FileNotFoundError):
        new_guest_agent_client(str(tmp_path / "ga.sock"))
    with pytest.raises(FileNotFoundError):
        new_host_agent_client(str(tmp_path / "ha.sock"))