"""Parser for /proc/net/tcp and /proc/net/tcp6."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union

from limaagent.api import IPAddress

TCP_ESTABLISHED = 0x1
TCP_LISTEN = 0xA

_HEX_RE = re.compile(r"[0-9a-fA-F]+")

_FILES = (
    ("/proc/net/tcp", "tcp"),
    ("/proc/net/tcp6", "tcp6"),
)


class Kind(str, Enum):
    """The kind of socket table."""

    TCP = "tcp"
    TCP6 = "tcp6"


@dataclass(frozen=True)
class Entry:
    """One row of a socket table."""

    kind: Kind
    ip: IPAddress
    port: int
    state: int


def _field(fields: list[str], index: int, line: str) -> str:
    try:
        return fields[index]
    except IndexError:
        raise ValueError(f"too few fields in line {line!r}") from None


def parse(stream: Iterable[str], kind: Union[Kind, str]) -> list[Entry]:
    """Parse the lines of a socket table of the given kind."""
    try:
        kind = Kind(kind)
    except ValueError:
        raise ValueError(f"unexpected kind {str(kind)!r}") from None

    entries: list[Entry] = []
    field_names: dict[str, int] = {}
    for number, raw in enumerate(stream):
        line = raw.strip()
        if not line:
            continue
        fields = line.split()
        if number == 0:
            field_names = {name: i for i, name in enumerate(fields)}
            for required in ("local_address", "st"):
                if required not in field_names:
                    raise ValueError(f'field "{required}" not found')
            continue
        local_address = _field(fields, field_names.get("local_address", 0), line)
        ip, port = parse_address(local_address)
        st = _field(fields, field_names.get("st", 0), line)
        if not _HEX_RE.fullmatch(st) or int(st, 16) > 0xFF:
            raise ValueError(f"unparsable state {st!r}")
        entries.append(Entry(kind=kind, ip=ip, port=port, state=int(st, 16)))
    return entries


def parse_address(s: str) -> tuple[IPAddress, int]:
    """Parse an address such as "0100007F:0050" (127.0.0.1:80).

    Each group of four bytes of the address is stored little endian.
    """
    host, sep, port_text = s.partition(":")
    if not sep:
        raise ValueError(f"unparsable address {s!r}")
    if len(host) not in (8, 32):
        raise ValueError(
            f"unparsable address {s!r}, expected length of {host!r} to be 8 or 32, "
            f"got {len(host)}"
        )
    raw = bytearray()
    for start in range(0, len(host), 8):
        quartet = host[start:start + 8]
        if not _HEX_RE.fullmatch(quartet):
            raise ValueError(f"unparsable address {s!r}: unparsable quartet {quartet!r}")
        raw += bytes.fromhex(quartet)[::-1]

    ip: IPAddress
    if len(raw) == 4:
        ip = ipaddress.IPv4Address(bytes(raw))
    else:
        ip6 = ipaddress.IPv6Address(bytes(raw))
        ip = ip6.ipv4_mapped if ip6.ipv4_mapped is not None else ip6

    if not _HEX_RE.fullmatch(port_text) or int(port_text, 16) > 0xFFFF:
        raise ValueError(f"unparsable address {s!r}: unparsable port {port_text!r}")
    return ip, int(port_text, 16)


def parse_files() -> list[Entry]:
    """Parse /proc/net/tcp and /proc/net/tcp6, skipping missing files."""
    result: list[Entry] = []
    for path, kind in _FILES:
        try:
            with open(path, encoding="ascii") as stream:
                result.extend(parse(stream, kind))
        except FileNotFoundError:
            continue
    return result