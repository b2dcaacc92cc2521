"""Latency distribution statistics over a run's successful trials."""
import math
from dataclasses import dataclass

from .timings import PHASES

NS_PER_MS = 1_000_000


@dataclass(frozen=True)
class Stats:
    mean: int = 0
    p50: int = 0
    p95: int = 0
    p99: int = 0
    min: int = 0
    max: int = 0

    def as_ms(self):
        return {
            "mean": self.mean / NS_PER_MS,
            "p50": self.p50 / NS_PER_MS,
            "p95": self.p95 / NS_PER_MS,
            "p99": self.p99 / NS_PER_MS,
            "min": self.min / NS_PER_MS,
            "max": self.max / NS_PER_MS,
        }


def percentile(sorted_durations, p):
    """Linearly interpolated percentile of an ascending sequence.

    The rank is ``p/100 * (n-1)``; the result lies between the two samples
    around it, weighted by the fractional part of the rank.
    """
    if not sorted_durations:
        return 0
    if p <= 0:
        return sorted_durations[0]
    if p >= 100:
        return sorted_durations[-1]

    rank = p / 100 * (len(sorted_durations) - 1)
    lower = math.floor(rank)
    upper = lower + 1
    if upper >= len(sorted_durations):
        return sorted_durations[lower]

    fraction = rank - lower
    low, high = sorted_durations[lower], sorted_durations[upper]
    return int(low + fraction * (high - low))


def compute_stats(durations):
    if not durations:
        return Stats()
    ordered = sorted(durations)
    return Stats(
        # integer sum keeps the mean exact across many samples
        mean=sum(ordered) // len(ordered),
        p50=percentile(ordered, 50),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
        min=ordered[0],
        max=ordered[-1],
    )


def phase_durations(trials, phase):
    """Durations of ``phase`` from successful trials; empty slots are skipped."""
    if phase not in PHASES:
        raise KeyError(phase)
    return [getattr(t, phase) for t in trials if t is not None and t.success]


def compute_all_stats(run):
    return {phase: compute_stats(phase_durations(run.trials, phase)) for phase in PHASES}
