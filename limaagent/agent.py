"""The guest agent: reports listening ports and keeps the clock in step with the RTC."""

from __future__ import annotations

import logging
import struct
import subprocess
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator, Optional

from limaagent import iptables, procnettcp
from limaagent.api import GuestEvent, GuestInfo, IPPort
from limaagent.kubernetesservice import ServiceWatcher

log = logging.getLogger(__name__)

# The largest drift between the RTC and the system clock that is tolerated.
DELTA_LIMIT = timedelta(seconds=2)
SKEW_CHECK_INTERVAL = 10.0

_RTC = "/dev/rtc"
# _IOR('p', 0x09, struct rtc_time): nine ints read from the RTC.
_RTC_RD_TIME = 0x80247009
_RTC_TIME_FORMAT = "9i"

_CLOSED = object()

Ticker = Callable[[], "tuple[Iterable[object], Callable[[], None]]"]

_LOOKUP_ERRORS = (OSError, ValueError, RuntimeError, subprocess.SubprocessError)


def compare_ports(old: Iterable[IPPort], new: Iterable[IPPort]) -> tuple[list[IPPort], list[IPPort]]:
    """Return the ports in new but not in old, and those in old but not in new."""
    old_by_key = {str(p): p for p in old}
    new_keys = set()
    added: list[IPPort] = []
    for port in new:
        key = str(port)
        if key not in old_by_key:
            added.append(port)
        new_keys.add(key)
    removed = [port for key, port in old_by_key.items() if key not in new_keys]
    return added, removed


class Agent:
    """Collects the guest's listening TCP ports.

    new_ticker returns an iterable of ticks and a function that stops it; each
    tick makes events() look at the ports again. The ports come from
    /proc/net/tcp{,6}, from iptables portmap rules while worth_checking_iptables
    is true (the last result is reused otherwise) and from Kubernetes services.
    """

    def __init__(
        self,
        new_ticker: Ticker,
        kubernetes_watcher: Optional[ServiceWatcher] = None,
        worth_checking_iptables: bool = True,
    ) -> None:
        self._new_ticker = new_ticker
        self.kubernetes_watcher = kubernetes_watcher or ServiceWatcher()
        self._lock = threading.Lock()
        self._worth_checking_iptables = worth_checking_iptables
        self._latest_iptables: list[iptables.Entry] = []

    @property
    def worth_checking_iptables(self) -> bool:
        with self._lock:
            return self._worth_checking_iptables

    @worth_checking_iptables.setter
    def worth_checking_iptables(self, value: bool) -> None:
        with self._lock:
            self._worth_checking_iptables = value

    def local_ports(self) -> list[IPPort]:
        """Return the listening ports, each port number at most once."""
        if sys.byteorder == "big":
            raise RuntimeError(
                "big endian architecture is unsupported, because the layout of "
                "/proc/net/tcp on big endian hosts is unknown"
            )
        result = [
            IPPort(entry.ip, entry.port)
            for entry in procnettcp.parse_files()
            if entry.kind in (procnettcp.Kind.TCP, procnettcp.Kind.TCP6)
            and entry.state == procnettcp.TCP_LISTEN
        ]
        seen = {p.port for p in result}

        worth_checking = self.worth_checking_iptables
        log.debug("local_ports(): worth_checking_iptables=%s", worth_checking)
        if worth_checking:
            rules = iptables.get_ports()
            with self._lock:
                self._latest_iptables = list(rules)
        else:
            with self._lock:
                rules = list(self._latest_iptables)

        for rule in rules:
            if rule.port not in seen:
                result.append(IPPort(rule.ip, rule.port))
                seen.add(rule.port)

        for service in self.kubernetes_watcher.get_ports():
            if service.port not in seen:
                result.append(IPPort(service.ip, service.port))
                seen.add(service.port)
        return result

    def info(self) -> GuestInfo:
        return GuestInfo(local_ports=self.local_ports())

    def _collect_event(self, ports: list[IPPort]) -> tuple[GuestEvent, list[IPPort]]:
        try:
            current = self.local_ports()
        except _LOOKUP_ERRORS as err:
            return GuestEvent(time=datetime.now(timezone.utc), errors=[str(err)]), []
        added, removed = compare_ports(ports, current)
        event = GuestEvent(
            time=datetime.now(timezone.utc),
            local_ports_added=added,
            local_ports_removed=removed,
        )
        return event, current

    def events(self, stop: threading.Event) -> Iterator[GuestEvent]:
        """Yield port changes, checking again on each tick until stop is set
        or the ticker ends. The first event carries every port as added."""
        ticks, close = self._new_ticker()
        tick_iter = iter(ticks)
        try:
            ports: list[IPPort] = []
            while True:
                event, ports = self._collect_event(ports)
                if not event.is_empty():
                    yield event
                if stop.is_set():
                    return
                if next(tick_iter, _CLOSED) is _CLOSED:
                    return
                if stop.is_set():
                    return
                log.debug("tick!")
        finally:
            close()


def get_rtc_time() -> datetime:
    """Read the hardware clock, which keeps UTC."""
    import fcntl

    with open(_RTC, "rb", buffering=0) as rtc:
        raw = fcntl.ioctl(rtc.fileno(), _RTC_RD_TIME, bytes(struct.calcsize(_RTC_TIME_FORMAT)))
    sec, minute, hour, mday, mon, year, *_ = struct.unpack(_RTC_TIME_FORMAT, raw)
    return datetime(year + 1900, mon + 1, mday, hour, minute, sec, tzinfo=timezone.utc)


def set_system_time(t: datetime) -> None:
    """Set the system clock."""
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    time.clock_settime(time.CLOCK_REALTIME, t.timestamp())


def fix_system_time_skew(stop: threading.Event) -> None:
    """Every ten seconds, reset the system clock from the RTC if they drift apart."""
    while not stop.wait(SKEW_CHECK_INTERVAL):
        now = datetime.now(timezone.utc)
        try:
            rtc = get_rtc_time()
        except OSError as err:
            log.warning("fix_system_time_skew: lookup error: %s", err)
            continue
        delta = rtc - now
        log.debug("fix_system_time_skew: rtc=%s systime=%s delta=%s",
                  rtc.isoformat(), now.isoformat(), delta)
        if abs(delta) > DELTA_LIMIT:
            try:
                set_system_time(rtc)
            except OSError as err:
                log.warning("fix_system_time_skew: set system clock error: %s", err)
                continue
            log.info("fix_system_time_skew: system time synchronized with rtc")