import json
from datetime import datetime, timezone

import pytest
from starlette.testclient import TestClient

from limaagent.api import GuestEvent, GuestInfo, HostInfo, IPPort
from limaagent.clients import GuestAgentClient, HostAgentClient
from limaagent.httpclient import HTTPStatusError
from limaagent.server import (
    GuestAgentBackend,
    HostAgentBackend,
    create_guest_agent_app,
    create_host_agent_app,
)

INFO = GuestInfo([IPPort("127.0.0.1", 8080), IPPort("0.0.0.0", 22)])
EVENTS = [
    GuestEvent(
        time=datetime(2024, 5, 6, 7, 8, 9, 500000, tzinfo=timezone.utc),
        local_ports_added=[IPPort("127.0.0.1", 8080)],
    ),
    GuestEvent(
        time=datetime(2024, 5, 6, 7, 8, 19, tzinfo=timezone.utc),
        local_ports_removed=[IPPort("127.0.0.1", 8080)],
    ),
]


class FakeGuestAgent:
    def __init__(self, error=None):
        self.error = error
        self.stops = []

    def info(self):
        if self.error is not None:
            raise self.error
        return INFO

    def events(self, stop):
        self.stops.append(stop)
        yield from EVENTS


class FakeHostAgent:
    def __init__(self, error=None):
        self.error = error

    def info(self):
        if self.error is not None:
            raise self.error
        return HostInfo(ssh_local_port=60022)


def _guest(agent):
    return TestClient(create_guest_agent_app(GuestAgentBackend(agent)))


def test_guest_info_endpoint():
    response = _guest(FakeGuestAgent()).get("/v1/info")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.json() == INFO.to_dict()


def test_guest_info_error():
    response = _guest(FakeGuestAgent(error=RuntimeError("boom"))).get("/v1/info")
    assert response.status_code == 500
    assert response.json() == {"message": "boom"}


def test_guest_events_endpoint_streams_ndjson():
    agent = FakeGuestAgent()
    response = _guest(agent).get("/v1/events")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    lines = [line for line in response.text.splitlines() if line]
    assert [GuestEvent.from_dict(json.loads(line)) for line in lines] == EVENTS
    assert len(agent.stops) == 1
    assert agent.stops[0].is_set()


def test_guest_routes_reject_other_methods_and_paths():
    client = _guest(FakeGuestAgent())
    assert client.post("/v1/info").status_code == 405
    assert client.get("/v2/info").status_code == 404


def test_guest_client_against_server():
    client = GuestAgentClient(_guest(FakeGuestAgent()))
    assert client.info() == INFO
    received = []
    client.events(received.append)
    assert received == EVENTS


def test_guest_client_sees_server_error_message():
    client = GuestAgentClient(_guest(FakeGuestAgent(error=RuntimeError("boom"))))
    with pytest.raises(HTTPStatusError) as info:
        client.info()
    assert str(info.value) == "boom"


def test_host_info_endpoint_and_client():
    http_client = TestClient(create_host_agent_app(HostAgentBackend(FakeHostAgent())))
    assert http_client.get("/v1/info").json() == {"sshLocalPort": 60022}
    assert HostAgentClient(http_client).info() == HostInfo(ssh_local_port=60022)


def test_host_info_error():
    app = create_host_agent_app(HostAgentBackend(FakeHostAgent(error=OSError("down"))))
    response = TestClient(app).get("/v1/info")
    assert response.status_code == 500
    assert response.json() == {"message": "down"}