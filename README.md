# limaagent

Building blocks for the two agents that keep a virtual machine's listening
ports reachable from its host:

- a **guest agent**, which runs inside the VM, finds listening TCP ports and
  reports them over a small HTTP API as a stream of newline-delimited JSON
  events;
- a **host agent**, which consumes those events, decides which guest ports
  should be forwarded to which host addresses, and can answer DNS queries
  for the guest.

Install with `pip install .` (add `.[test]` for the test suite, run with
`pytest`).

## Modules

| Module | What it provides |
| --- | --- |
| `limaagent.api` | Wire types with `to_dict`/`from_dict`: `IPPort`, `GuestInfo`, `GuestEvent` (with `is_empty()`), `HostInfo`, `Status`, `HostEvent`; `error_json(message)` for error bodies. |
| `limaagent.procnettcp` | `parse(stream, kind)`, `parse_address(s)` and `parse_files()` for `/proc/net/tcp` and `/proc/net/tcp6`; `Kind`, `Entry`, `TCP_LISTEN`, `TCP_ESTABLISHED`. |
| `limaagent.iptables` | `parse_ports_from_rules(rules)` finds ports published by CNI portmap `DNAT` rules; `list_nat_rules(path)` runs `iptables -t nat -S`; `check_ports_open(entries)` keeps TCP entries that accept a connection; `get_ports()` does all three, returning nothing if `iptables` is not installed. |
| `limaagent.kubernetesservice` | `ServiceWatcher` reports the ports of NodePort and LoadBalancer services (TCP only, on `0.0.0.0`); `try_get_kube_client()` builds a client from `/etc/rancher/k3s/k3s.yaml` or `/root/.kube/config` when it points at `127.0.0.1`. |
| `limaagent.agent` | `Agent` gathers listening ports from `/proc/net/tcp*`, iptables and Kubernetes, each port number once; `Agent.events(stop)` yields add/remove events on each tick; `compare_ports(old, new)`; `get_rtc_time()`, `set_system_time(t)` and `fix_system_time_skew(stop)` keep the system clock within two seconds of the RTC. |
| `limaagent.server` | Starlette applications: `create_guest_agent_app(GuestAgentBackend(agent))` serves `GET /v1/info` and `GET /v1/events`; `create_host_agent_app(HostAgentBackend(agent))` serves `GET /v1/info`. Errors are returned as `{"message": ...}` with status 500. |
| `limaagent.clients` | `GuestAgentClient` (`info()`, `events(on_event)`) and `HostAgentClient` (`info()`), over any `httpx.Client`; `new_guest_agent_client(socket_path)` and `new_host_agent_client(socket_path)` connect through a UNIX socket. |
| `limaagent.httpclient` | `get(client, url)`, `successful(response)`, `HTTPStatusError`, `new_http_client_with_socket_path(socket_path)`. |
| `limaagent.portforward` | `PortForwardRule`, `PortForwarder` (`forwarding_addresses`, `on_event`), `host_address(rule, guest)`, `VMType`. |
| `limaagent.dns` | `Handler` answers A, AAAA, CNAME, TXT, NS, MX and SRV queries from static hosts and the system resolver, falling back to upstream servers; `start(ServerOptions(...))` runs UDP and TCP listeners and returns a `Server` with `shutdown()`; `chunkify(buffer, limit)`. |
| `limaagent.watcher` | `watch(stdout_path, stderr_path, on_event, stop, poll_interval)` follows the host agent's event file and logs its stderr file until `on_event` returns `True` or `stop` is set. |
| `limaagent.ioutilx` | `read_at_maximum(stream, n)`, `from_utf16le(stream)`, `from_utf16le_to_string(stream)`, `canonical_windows_path(orig)` (via `cygpath -m`). |

## Examples

Reading listening sockets from a socket table:

```python
import io
from limaagent import procnettcp

table = io.StringIO(
    "  sl  local_address rem_address   st\n"
    "   0: 0100007F:8AEF 00000000:0000 0A\n"
)
for entry in procnettcp.parse(table, procnettcp.Kind.TCP):
    print(entry.ip, entry.port, entry.state)   # 127.0.0.1 35567 10
```

Finding ports published by container port mappings:

```python
from limaagent import iptables

rules = [
    "-A CNI-DN-04579c7bb67f4c3f6cca0 -p tcp -m tcp --dport 8082 "
    "-j DNAT --to-destination 10.4.0.10:80",
]
for entry in iptables.parse_ports_from_rules(rules):
    print(entry.ip, entry.port, entry.tcp)     # 0.0.0.0 8082 True
```

Deciding where a guest port is forwarded. The `forward` callable receives
`(local, remote, verb)` with verb `"forward"` or `"cancel"` and does the
actual work:

```python
from limaagent.api import IPPort
from limaagent.portforward import PortForwarder, PortForwardRule, VMType

pf = PortForwarder([PortForwardRule()], VMType.QEMU, forward=print)
pf.forwarding_addresses(IPPort("127.0.0.1", 8080), None)
# ('127.0.0.1:8080', '127.0.0.1:8080')
pf.forwarding_addresses(IPPort("0.0.0.0", 80), None)
# ('', '0.0.0.0:80')  -- below the rule's 1024-65535 range, not forwarded
```

Answering a query from static hosts:

```python
import dns.message
from limaagent.dns import Handler, HandlerOptions

handler = Handler(HandlerOptions(static_hosts={"host.internal": "10.10.0.34"}))
reply = handler.serve_dns(dns.message.make_query("host.internal.", "A"))
print(reply.answer[0])   # host.internal. 5 IN A 10.10.0.34
```

Splitting a long TXT record into DNS-sized strings:

```python
from limaagent.dns import chunkify

parts = chunkify("x" * 600, 255)   # three strings: 255, 255 and 90 characters
```

Talking to a running guest agent:

```python
from limaagent.clients import new_guest_agent_client

client = new_guest_agent_client("/path/to/ga.sock")
print(client.info())
client.events(lambda event: print(event.to_dict()))
```

## What this package does not do

- It has no command-line program and no daemon. The HTTP APIs are ASGI
  applications; serving them on a socket needs an ASGI server of your choice.
- It does not create, start or stop virtual machines, set up SSH
  connections, or mount directories. `PortForwarder` only decides addresses
  and hands them to the `forward` callable you supply.
- Kubernetes services are listed by periodic polling of `/api/v1/services`,
  not by a watch stream.

## Requirements

Python 3.10 or later. Reading `/proc/net/tcp*`, reading the RTC and querying
`iptables` only work inside a Linux guest; `iptables` and `set_system_time`
need root.