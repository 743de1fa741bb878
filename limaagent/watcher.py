"""Follow the host agent's stdout events and stderr log."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import BinaryIO, Callable, Optional

from limaagent.api import HostEvent

log = logging.getLogger(__name__)


class _Follower:
    """Yields complete lines from a file that may still grow."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._pending = b""

    def read_lines(self) -> list[str]:
        data = self._stream.read()
        if not data:
            return []
        self._pending += data
        *complete, self._pending = self._pending.split(b"\n")
        return [line.rstrip(b"\r").decode("utf-8", errors="replace") for line in complete]


def watch(
    stdout_path: str,
    stderr_path: str,
    on_event: Callable[[HostEvent], bool],
    stop: Optional[threading.Event] = None,
    poll_interval: float = 0.1,
) -> None:
    """Follow both files, calling on_event for each event until it returns True.

    Both files must exist. Lines of the stderr file are logged. Returns when
    on_event returns True or when stop is set.
    """
    with open(stdout_path, "rb") as out, open(stderr_path, "rb") as err:
        stdout_lines = _Follower(out)
        stderr_lines = _Follower(err)
        while stop is None or not stop.is_set():
            out_lines = stdout_lines.read_lines()
            err_lines = stderr_lines.read_lines()
            for line in err_lines:
                if line:
                    log.info("[hostagent] %s", line)
            for text in out_lines:
                if not text:
                    continue
                try:
                    event = HostEvent.from_dict(json.loads(text))
                except (ValueError, TypeError, AttributeError) as exc:
                    raise ValueError(f"failed to unmarshal {text!r} as Event: {exc}") from exc
                log.debug("received an event: %s", event)
                if on_event(event):
                    return
            if not out_lines and not err_lines:
                if stop is not None:
                    stop.wait(poll_interval)
                else:
                    time.sleep(poll_interval)