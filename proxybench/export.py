"""JSON dump of finished runs."""
import json
import os
from datetime import datetime

from .stats import NS_PER_MS, compute_all_stats
from .timings import PHASES


def _iso(moment):
    return moment.isoformat() if moment else None


def run_to_dict(run):
    trials = []
    for index, trial in enumerate(run.trials):
        if trial is None:
            continue
        record = {"index": index}
        record.update({phase: getattr(trial, phase) / NS_PER_MS for phase in PHASES})
        record.update(success=trial.success, status_code=trial.status_code,
                      error=trial.error_message, reason=trial.error_reason)
        trials.append(record)

    return {
        "test_name": run.test_name,
        "proxy_name": run.proxy_name,
        "target_url": run.target_url,
        "state": run.state.value,
        "total_count": run.total_count,
        "success_count": run.success_count,
        "failed_count": run.failed_count,
        "success_rate": run.success_rate,
        "throughput": run.throughput,
        "start_time": _iso(run.start_time),
        "end_time": _iso(run.end_time),
        "duration_seconds": run.duration,
        "failure_reasons": dict(run.failure_reasons()),
        "stats_ms": {phase: stats.as_ms() for phase, stats in compute_all_stats(run).items()},
        "trials_ms": trials,
    }


def write_json(runs, path):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    payload = {
        "generated_at": datetime.now().isoformat(),
        "runs": [run_to_dict(run) for run in runs],
    }
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)
    return path
