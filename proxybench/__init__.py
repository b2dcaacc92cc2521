"""Phase-level latency measurement of HTTP(S) requests through SOCKS5 proxies."""

from .client import DirectClient, ProxyClient, make_client
from .compare import Comparison, Difference, compare
from .errors import (ConnectError, HandshakeError, HTTPStatusError, ProbeError,
                     RequestTimeout, RunCancelled, TLSError)
from .runner import ConcurrentRunner, SequentialRunner
from .stats import Stats, compute_all_stats, compute_stats, percentile
from .timings import PHASES, PhaseCollector, PhaseTimings, RunState, TrialRun

__version__ = "0.1.0"
