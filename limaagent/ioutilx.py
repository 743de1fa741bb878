"""Small stream helpers."""

from __future__ import annotations

import io
import logging
import subprocess
from typing import BinaryIO

log = logging.getLogger(__name__)


def read_at_maximum(stream: BinaryIO, n: int) -> bytes:
    """Read until end of stream, but never more than n bytes."""
    chunks: list[bytes] = []
    remaining = n
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class _PrefixedReader(io.RawIOBase):
    """A raw reader that yields some bytes already read, then the rest of a stream."""

    def __init__(self, prefix: bytes, stream: BinaryIO) -> None:
        super().__init__()
        self._prefix = prefix
        self._stream = stream

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self._prefix:
            count = min(len(buffer), len(self._prefix))
            buffer[:count] = self._prefix[:count]
            self._prefix = self._prefix[count:]
            return count
        data = self._stream.read(len(buffer))
        if not data:
            return 0
        buffer[:len(data)] = data
        return len(data)


def from_utf16le(stream: BinaryIO) -> io.TextIOBase:
    """Decode a UTF-16 stream as text.

    A byte order mark selects the byte order and is dropped; without one the
    data is read as little endian. Undecodable data becomes U+FFFD.
    """
    prefix = read_at_maximum(stream, 2)
    if prefix == b"\xff\xfe":
        encoding, prefix = "utf-16-le", b""
    elif prefix == b"\xfe\xff":
        encoding, prefix = "utf-16-be", b""
    else:
        encoding = "utf-16-le"
    raw = io.BufferedReader(_PrefixedReader(prefix, stream))
    return io.TextIOWrapper(raw, encoding=encoding, errors="replace", newline="")


def from_utf16le_to_string(stream: BinaryIO) -> str:
    """Read all of a UTF-16 stream and return it as a string."""
    return from_utf16le(stream).read()


def canonical_windows_path(orig: str) -> str:
    """Convert a path with cygpath -m, returning it unchanged if that fails."""
    try:
        completed = subprocess.run(
            ["cygpath", "-m", orig],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as err:
        log.error("failed to convert path to mingw, maybe not using Git ssh?: %s", err)
        return orig
    return completed.stdout.decode(errors="replace").strip()