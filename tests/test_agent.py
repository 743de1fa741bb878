import socket
import threading

import pytest

from limaagent.agent import Agent, compare_ports
from limaagent.api import IPPort
from limaagent.kubernetesservice import ServiceWatcher

NODE_PORT = 30080


def node_port_service(port):
    return {
        "metadata": {"name": "nodeport"},
        "spec": {
            "type": "NodePort",
            "ports": [{"name": "http", "protocol": "TCP", "port": 80, "nodePort": port}],
        },
    }


def make_ticker(ticks, closed):
    def new_ticker():
        return ticks, lambda: closed.append(True)

    return new_ticker


class _OneTick:
    """Iterator yielding a single tick, running an action just before it."""

    def __init__(self, action):
        self._action = action
        self._done = False

    def __iter__(self):
        return self

    def __next__(self):
        if self._done:
            raise StopIteration
        self._done = True
        self._action()
        return "tick"


@pytest.fixture
def watcher():
    w = ServiceWatcher()
    w.set_services([node_port_service(NODE_PORT)])
    return w


def test_compare_ports_added_and_removed():
    a = IPPort("127.0.0.1", 80)
    b = IPPort("0.0.0.0", 8080)
    c = IPPort("::1", 9090)
    added, removed = compare_ports([a, b], [b, c])
    assert added == [c]
    assert removed == [a]


def test_compare_ports_unchanged():
    ports = [IPPort("127.0.0.1", 80), IPPort("0.0.0.0", 8080)]
    assert compare_ports(ports, list(ports)) == ([], [])


def test_compare_ports_from_nothing_adds_everything():
    ports = [IPPort("127.0.0.1", 80), IPPort("0.0.0.0", 8080)]
    added, removed = compare_ports([], ports)
    assert added == ports
    assert removed == []


def test_local_ports_include_kubernetes_services(watcher):
    agent = Agent(make_ticker([], []), watcher, worth_checking_iptables=False)
    assert IPPort("0.0.0.0", NODE_PORT) in agent.local_ports()


def test_local_ports_list_each_port_once():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen()
        port = listener.getsockname()[1]
        w = ServiceWatcher()
        w.set_services([node_port_service(port)])
        agent = Agent(make_ticker([], []), w, worth_checking_iptables=False)
        ports = agent.local_ports()
    assert len([p for p in ports if p.port == port]) == 1


def test_info_reports_local_ports(watcher):
    agent = Agent(make_ticker([], []), watcher, worth_checking_iptables=False)
    assert IPPort("0.0.0.0", NODE_PORT) in agent.info().local_ports


def test_events_first_event_adds_ports_and_closes_ticker(watcher):
    closed = []
    agent = Agent(make_ticker([], closed), watcher, worth_checking_iptables=False)
    events = list(agent.events(threading.Event()))
    assert len(events) == 1
    assert IPPort("0.0.0.0", NODE_PORT) in events[0].local_ports_added
    assert events[0].time is not None
    assert closed == [True]


def test_events_report_removed_ports_after_tick(watcher):
    ticks = _OneTick(lambda: watcher.set_services([]))
    closed = []
    agent = Agent(make_ticker(ticks, closed), watcher, worth_checking_iptables=False)
    events = list(agent.events(threading.Event()))
    assert len(events) == 2
    assert IPPort("0.0.0.0", NODE_PORT) in events[1].local_ports_removed
    assert IPPort("0.0.0.0", NODE_PORT) not in events[1].local_ports_added
    assert closed == [True]


def test_events_stop_after_first_event_when_stopped(watcher):
    consumed = []
    ticks = _OneTick(lambda: consumed.append(True))
    closed = []
    stop = threading.Event()
    stop.set()
    agent = Agent(make_ticker(ticks, closed), watcher, worth_checking_iptables=False)
    events = list(agent.events(stop))
    assert len(events) == 1
    assert consumed == []
    assert closed == [True]


def test_worth_checking_iptables_can_be_switched(watcher):
    agent = Agent(make_ticker([], []), watcher, worth_checking_iptables=True)
    agent.worth_checking_iptables = False
    assert agent.worth_checking_iptables is False