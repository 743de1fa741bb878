"""Decides which guest ports are forwarded to the host, and where."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from limaagent.api import IPV4_LOOPBACK1, GuestEvent, IPAddress, IPPort

log = logging.getLogger(__name__)

VERB_FORWARD = "forward"
VERB_CANCEL = "cancel"
SSH_GUEST_PORT = 22

_IPV6_LOOPBACK = ipaddress.IPv6Address("::1")

Forward = Callable[[str, str, str], None]


def _ip(value: Any) -> Optional[IPAddress]:
    if value is None or value == "":
        return None
    ip = value if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)) \
        else ipaddress.ip_address(value)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _unspecified(ip: Optional[IPAddress]) -> bool:
    return ip is not None and ip.is_unspecified


class VMType(str, Enum):
    QEMU = "qemu"
    VZ = "vz"
    WSL2 = "wsl2"


@dataclass
class PortForwardRule:
    """A rule mapping guest ports or a guest socket to the host."""

    guest_ip: Optional[IPAddress] = IPV4_LOOPBACK1
    guest_port_range: tuple[int, int] = (1024, 65535)
    host_ip: Optional[IPAddress] = IPV4_LOOPBACK1
    host_port_range: tuple[int, int] = (1024, 65535)
    guest_port: int = 0
    host_port: int = 0
    guest_socket: str = ""
    host_socket: str = ""
    guest_ip_must_be_zero: bool = False
    ignore: bool = False
    reverse: bool = False

    def __post_init__(self) -> None:
        self.guest_ip = _ip(self.guest_ip)
        self.host_ip = _ip(self.host_ip)
        self.guest_port_range = tuple(self.guest_port_range)
        self.host_port_range = tuple(self.host_port_range)


def host_address(rule: PortForwardRule, guest: IPPort) -> str:
    """The host side of a forward for the guest address under a rule."""
    if rule.host_socket:
        return rule.host_socket
    if guest.port == 0:
        # The guest side is a socket.
        port = rule.host_port
    else:
        port = guest.port + rule.host_port_range[0] - rule.guest_port_range[0]
    return str(IPPort(rule.host_ip, port))


class PortForwarder:
    """Applies forwarding rules to guest port events.

    forward(local, remote, verb) sets up (VERB_FORWARD) or tears down
    (VERB_CANCEL) one TCP forward and raises on failure.
    """

    def __init__(self, rules: list[PortForwardRule], vm_type: VMType, forward: Forward) -> None:
        self.rules = list(rules)
        self.vm_type = VMType(vm_type)
        self.forward = forward

    def forwarding_addresses(
        self, guest: IPPort, local_unix_ip: Optional[IPAddress]
    ) -> tuple[str, str]:
        """Return (host, guest) addresses; host is empty if the port is not forwarded."""
        if self.vm_type == VMType.WSL2:
            guest = IPPort(local_unix_ip, guest.port)
            return str(IPPort(IPV4_LOOPBACK1, guest.port)), str(guest)
        for rule in self.rules:
            if rule.guest_socket:
                continue
            low, high = rule.guest_port_range
            if guest.port < low or guest.port > high:
                continue
            if _unspecified(guest.ip):
                pass
            elif guest.ip == rule.guest_ip:
                pass
            elif guest.ip == _IPV6_LOOPBACK and rule.guest_ip == IPV4_LOOPBACK1:
                pass
            elif _unspecified(rule.guest_ip) and not rule.guest_ip_must_be_zero:
                # With guest_ip_must_be_zero, 0.0.0.0 must match exactly, as above.
                pass
            else:
                continue
            if rule.ignore:
                if _unspecified(guest.ip) and not _unspecified(rule.guest_ip):
                    continue
                break
            return host_address(rule, guest), str(guest)
        return "", str(guest)

    def on_event(self, event: GuestEvent, inst_ssh_address: str) -> None:
        """Cancel forwards for removed ports, then set up forwards for added ones."""
        try:
            local_unix_ip = _ip(inst_ssh_address)
        except ValueError:
            local_unix_ip = None

        for port in event.local_ports_removed:
            local, remote = self.forwarding_addresses(port, local_unix_ip)
            if not local:
                continue
            log.info("Stopping forwarding TCP from %s to %s", remote, local)
            try:
                self.forward(local, remote, VERB_CANCEL)
            except Exception as err:  # any failure is only logged
                log.warning("failed to stop forwarding tcp port %d: %s", port.port, err)

        for port in event.local_ports_added:
            local, remote = self.forwarding_addresses(port, local_unix_ip)
            if not local:
                log.info("Not forwarding TCP %s", remote)
                continue
            log.info("Forwarding TCP from %s to %s", remote, local)
            try:
                self.forward(local, remote, VERB_FORWARD)
            except Exception as err:  # any failure is only logged
                log.warning(
                    "failed to set up forwarding tcp port %d (negligible if already forwarded): %s",
                    port.port, err,
                )