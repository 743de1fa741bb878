"""Wire types shared by the guest agent, the host agent and their clients."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

IPV4_LOOPBACK1 = ipaddress.IPv4Address("127.0.0.1")

_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


def _to_ip(value: Any) -> Optional[IPAddress]:
    """Turn a string or address into an address; IPv4-mapped IPv6 becomes IPv4."""
    if value is None or value == "":
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = value
    else:
        ip = ipaddress.ip_address(value)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _format_time(dt: datetime) -> str:
    """Format a timestamp as RFC 3339 with trailing fractional zeros removed."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    text = dt.strftime("%Y-%m-%dT%H:%M:%S")
    fraction = f"{dt.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    offset = dt.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "+" if offset >= timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: str) -> datetime:
    """Parse an RFC 3339 timestamp, keeping at most microsecond precision."""
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    base, fraction, zone = match.groups()
    micro = (fraction or "")[:6].ljust(6, "0")
    if zone == "Z":
        zone = "+00:00"
    return datetime.fromisoformat(f"{base}.{micro}{zone}")


@dataclass(frozen=True)
class IPPort:
    """An IP address and a port."""

    ip: Optional[IPAddress] = None
    port: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "ip", _to_ip(self.ip))

    def __str__(self) -> str:
        host = "<nil>" if self.ip is None else str(self.ip)
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {"ip": "" if self.ip is None else str(self.ip), "port": self.port}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IPPort":
        return cls(ip=_to_ip(data.get("ip")), port=int(data.get("port") or 0))


def _ports_from(items: Any) -> list[IPPort]:
    return [IPPort.from_dict(item) for item in items or []]


@dataclass
class GuestInfo:
    """Information reported by the guest agent.

    local_ports holds 127.0.0.1 and 0.0.0.0 listeners, not addresses such as
    127.0.0.53 or 192.168.5.15.
    """

    local_ports: list[IPPort] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"localPorts": [p.to_dict() for p in self.local_ports]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuestInfo":
        return cls(local_ports=_ports_from(data.get("localPorts")))


@dataclass
class GuestEvent:
    """A change in the guest's listening ports.

    The first event carries every port in local_ports_added.
    """

    time: Optional[datetime] = None
    local_ports_added: list[IPPort] = field(default_factory=list)
    local_ports_removed: list[IPPort] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        """True when the event carries nothing besides its time."""
        return not (self.local_ports_added or self.local_ports_removed or self.errors)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.time is not None:
            data["time"] = _format_time(self.time)
        if self.local_ports_added:
            data["localPortsAdded"] = [p.to_dict() for p in self.local_ports_added]
        if self.local_ports_removed:
            data["localPortsRemoved"] = [p.to_dict() for p in self.local_ports_removed]
        if self.errors:
            data["errors"] = list(self.errors)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuestEvent":
        raw_time = data.get("time")
        return cls(
            time=_parse_time(raw_time) if raw_time else None,
            local_ports_added=_ports_from(data.get("localPortsAdded")),
            local_ports_removed=_ports_from(data.get("localPortsRemoved")),
            errors=list(data.get("errors") or []),
        )


@dataclass
class HostInfo:
    """Information reported by the host agent."""

    ssh_local_port: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"sshLocalPort": self.ssh_local_port} if self.ssh_local_port else {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HostInfo":
        return cls(ssh_local_port=int(data.get("sshLocalPort") or 0))


@dataclass
class Status:
    """Host agent status.

    When degraded is true, running is true as well; when exiting is true,
    running is false.
    """

    running: bool = False
    degraded: bool = False
    exiting: bool = False
    errors: list[str] = field(default_factory=list)
    ssh_local_port: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.running:
            data["running"] = True
        if self.degraded:
            data["degraded"] = True
        if self.exiting:
            data["exiting"] = True
        if self.errors:
            data["errors"] = list(self.errors)
        if self.ssh_local_port:
            data["sshLocalPort"] = self.ssh_local_port
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Status":
        return cls(
            running=bool(data.get("running", False)),
            degraded=bool(data.get("degraded", False)),
            exiting=bool(data.get("exiting", False)),
            errors=list(data.get("errors") or []),
            ssh_local_port=int(data.get("sshLocalPort") or 0),
        )


@dataclass
class HostEvent:
    """A status event emitted by the host agent."""

    time: Optional[datetime] = None
    status: Status = field(default_factory=Status)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.time is not None:
            data["time"] = _format_time(self.time)
        data["status"] = self.status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HostEvent":
        raw_time = data.get("time")
        return cls(
            time=_parse_time(raw_time) if raw_time else None,
            status=Status.from_dict(data.get("status") or {}),
        )


def error_json(message: str) -> dict[str, str]:
    """The JSON body sent with a non-2XX response."""
    return {"message": message}