"""Phase-by-phase comparison of two runs."""
from dataclasses import dataclass, field
from typing import Dict

from .stats import NS_PER_MS, Stats, compute_all_stats
from .timings import TrialRun


@dataclass(frozen=True)
class Difference:
    absolute: int = 0
    percentage: float = 0.0

    @property
    def absolute_ms(self):
        return self.absolute / NS_PER_MS


@dataclass
class Comparison:
    baseline: TrialRun
    candidate: TrialRun
    baseline_stats: Dict[str, Stats] = field(default_factory=dict)
    candidate_stats: Dict[str, Stats] = field(default_factory=dict)
    differences: Dict[str, Difference] = field(default_factory=dict)


def difference(baseline_mean, candidate_mean):
    absolute = candidate_mean - baseline_mean
    # a zero baseline saturates to 0% instead of dividing by zero
    if baseline_mean > 0:
        return Difference(absolute, absolute / baseline_mean * 100.0)
    return Difference(absolute, 0.0)


def compare(baseline, candidate):
    """Compare mean phase latencies; positive values mean the candidate is slower."""
    baseline_stats = compute_all_stats(baseline)
    candidate_stats = compute_all_stats(candidate)
    differences = {
        phase: difference(baseline_stats[phase].mean, candidate_stats[phase].mean)
        for phase in baseline_stats
        if phase in candidate_stats
    }
    return Comparison(baseline, candidate, baseline_stats, candidate_stats, differences)
