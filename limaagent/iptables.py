"""Ports forwarded by CNI portmap rules in the iptables NAT table."""

from __future__ import annotations

import ipaddress
import re
import shutil
import socket
import subprocess
from dataclasses import dataclass
from typing import Iterable

from limaagent.api import IPAddress

# Matches the DNAT line portmap adds for a single container, for example:
#   -A CNI-DN-2e2f8d5b91929ef9fc152 -d 127.0.0.1/32 -p tcp -m tcp --dport 8081 -j DNAT --to-destination 10.4.0.7:80
#   -A CNI-DN-04579c7bb67f4c3f6cca0 -p tcp -m tcp --dport 8082 -j DNAT --to-destination 10.4.0.10:80
# The optional -d address is captured along with the protocol and --dport.
_FIND_PORT_RE = re.compile(
    r"-A\s+CNI-DN-\w*\s+(?:-d ((?:\b25[0-5]|\b2[0-4][0-9]|\b[01]?[0-9][0-9]?)"
    r"(?:\.(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)){3}))?(?:/32\s+)?-p (tcp)?"
    r".*--dport (\d+) -j DNAT",
    re.ASCII,
)


@dataclass(frozen=True)
class Entry:
    """A forwarded port found in the NAT table."""

    tcp: bool
    ip: IPAddress
    port: int


def parse_ports_from_rules(rules: Iterable[str]) -> list[Entry]:
    """Extract forwarded ports from `iptables -t nat -S` rule lines."""
    entries: list[Entry] = []
    for rule in rules:
        found = _FIND_PORT_RE.search(rule)
        if found is None:
            continue
        ip_text, proto, port_text = found.groups()
        # Without an address the rule applies to all interfaces.
        entries.append(
            Entry(
                tcp=proto == "tcp",
                ip=ipaddress.ip_address(ip_text or "0.0.0.0"),
                port=int(port_text),
            )
        )
    return entries


def list_nat_rules(path: str) -> list[str]:
    """Run iptables once and return the NAT rules, one per line."""
    completed = subprocess.run(
        [path, "-t", "nat", "-S"],
        capture_output=True,
        text=True,
        check=True,
    )
    rules = completed.stdout.split("\n")
    if rules and rules[-1] == "":
        rules.pop()
    return rules


def check_ports_open(entries: Iterable[Entry]) -> list[Entry]:
    """Keep TCP entries that accept a connection, and all non-TCP entries."""
    result: list[Entry] = []
    for entry in entries:
        if not entry.tcp:
            result.append(entry)
            continue
        try:
            with socket.create_connection((str(entry.ip), entry.port), timeout=1.0):
                pass
        except OSError:
            continue
        result.append(entry)
    return result


def get_ports() -> list[Entry]:
    """Return the open ports forwarded by iptables, or none if it is not installed."""
    path = shutil.which("iptables")
    if path is None:
        return []
    return check_ports_open(parse_ports_from_rules(list_nat_rules(path)))