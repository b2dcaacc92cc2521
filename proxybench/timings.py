"""Per-trial phase timings and the run record that collects them.

All durations are integer nanoseconds taken from ``time.perf_counter_ns``.
"""
import enum
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import List, Optional

from .errors import RunCancelled

# Causal order of a request through a SOCKS5 tunnel
PHASES = (
    "proxy_dns",
    "proxy_tcp_connect",
    "socks5_handshake",
    "target_dns",
    "target_tcp_connect",
    "tls_handshake",
    "ttfb",
    "total",
)

PHASE_LABELS = {
    "proxy_dns": "Proxy DNS",
    "proxy_tcp_connect": "Proxy TCP",
    "socks5_handshake": "SOCKS5",
    "target_dns": "Target DNS",
    "target_tcp_connect": "Target TCP",
    "tls_handshake": "TLS",
    "ttfb": "TTFB",
    "total": "Total",
}


@dataclass
class PhaseTimings:
    proxy_dns: int = 0
    proxy_tcp_connect: int = 0
    socks5_handshake: int = 0
    target_dns: int = 0
    target_tcp_connect: int = 0
    tls_handshake: int = 0
    ttfb: int = 0
    total: int = 0

    success: bool = False
    status_code: int = 0
    error_message: str = ""
    error_reason: str = ""

    def phase(self, name):
        if name not in PHASES:
            raise KeyError(name)
        return getattr(self, name)

    def as_dict(self):
        return {f.name: getattr(self, f.name) for f in fields(self)}


class PhaseCollector:
    """Mutable stopwatch for one trial.

    A fresh collector is created per request and handed down the dial chain
    explicitly, so concurrent trials never share timing state.
    """

    def __init__(self, clock=time.perf_counter_ns):
        self._clock = clock
        self._durations = dict.fromkeys(PHASES, 0)

    def now(self):
        return self._clock()

    def record(self, phase, duration):
        if phase not in self._durations:
            raise KeyError(phase)
        self._durations[phase] = max(0, int(duration))

    def since(self, phase, started):
        """Record ``phase`` as the time elapsed since ``started``."""
        self.record(phase, self._clock() - started)

    @contextmanager
    def measure(self, phase):
        started = self._clock()
        try:
            yield
        finally:
            self.since(phase, started)

    def get(self, phase):
        return self._durations[phase]

    def to_timings(self, **outcome):
        return PhaseTimings(**self._durations, **outcome)


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class TrialRun:
    test_name: str
    proxy_name: str
    target_url: str
    total_count: int
    trials: List[Optional[PhaseTimings]] = field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    state: RunState = RunState.IDLE

    def __post_init__(self):
        if not self.trials:
            self.trials = [None] * self.total_count

    def begin(self):
        self.state = RunState.RUNNING
        self.start_time = datetime.now()

    def record(self, index, timings):
        if self.state is not RunState.RUNNING:
            raise RuntimeError(f"cannot record trial into a {self.state.value} run")
        if self.trials[index] is not None:
            raise RuntimeError(f"trial slot {index} already filled")
        self.trials[index] = timings
        if timings.success:
            self.success_count += 1
        else:
            self.failed_count += 1

    def finish(self, cancelled=False):
        self.end_time = datetime.now()
        self.state = RunState.CANCELLED if cancelled else RunState.COMPLETED

    @property
    def cancelled(self):
        return self.state is RunState.CANCELLED

    @property
    def completed_count(self):
        return self.success_count + self.failed_count

    @property
    def duration(self):
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success_rate(self):
        if self.total_count == 0:
            return 0.0
        return self.success_count / self.total_count * 100.0

    @property
    def throughput(self):
        """Completed trials per second."""
        if self.duration <= 0:
            return 0.0
        return self.completed_count / self.duration

    def completed_trials(self):
        return [t for t in self.trials if t is not None]

    def failure_reasons(self):
        return Counter(t.error_reason or "other_error" for t in self.completed_trials() if not t.success)

    def raise_if_cancelled(self):
        if self.cancelled:
            raise RunCancelled(self)
