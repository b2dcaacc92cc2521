import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime

from . import __version__
from .client import make_client
from .compare import compare
from .errors import ConfigError, RunCancelled
from .export import write_json
from .runner import make_runner
from .settings import ProxyConfig, load_settings
from .stats import NS_PER_MS, compute_all_stats
from .timings import PHASE_LABELS, PHASES

log = logging.getLogger("proxybench")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="proxybench",
        description="Measure phase-by-phase HTTP(S) latency through SOCKS5 proxies.")
    parser.add_argument("target", nargs="?",
                        help="Target URL (defaults to the first of BENCH_TARGETS)")
    parser.add_argument("--proxy", action="append", default=[],
                        help="Configured proxy name or socks5:// URL, may be repeated")
    parser.add_argument("--all-proxies", action="store_true",
                        help="Measure every configured proxy")
    parser.add_argument("--direct", action="store_true",
                        help="Also measure a direct connection as the baseline")
    parser.add_argument("--mode", choices=("single", "concurrent", "all"), default="all")
    parser.add_argument("--count", type=int, default=0, help="Override the request count")
    parser.add_argument("--concurrency", type=int, default=0, help="Override the concurrency")
    parser.add_argument("--workers", type=int, default=0,
                        help="Pool width for single sampling (1 = strictly one at a time)")
    parser.add_argument("--json", action="store_true", help="Write a JSON report")
    parser.add_argument("--export-dir", help="Report directory (defaults to BENCH_OUTPUT_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def select_proxies(settings, args):
    """Proxies to measure, in order; None stands for a direct connection."""
    selected = [None] if args.direct else []
    if args.all_proxies:
        selected.extend(settings.proxies.values())
    for item in args.proxy:
        if item in settings.proxies:
            selected.append(settings.proxies[item])
        elif "://" in item:
            selected.append(ProxyConfig.from_url(item))
        else:
            raise ConfigError(f"proxy '{item}' not found in configuration")
    if not selected:
        if not settings.proxies:
            raise ConfigError("no proxies configured; set SOCKS5_SERVER or BENCH_PROXIES, or use --direct")
        selected.append(settings.proxies.get("default") or next(iter(settings.proxies.values())))
    return selected


def format_stats_table(run):
    lines = [
        f"{run.test_name} | {run.proxy_name} | {run.target_url}",
        f"  requests={run.total_count} completed={run.completed_count} "
        f"success={run.success_count} failed={run.failed_count} ({run.success_rate:.2f}%)",
        f"{'Stage':<12}{'Min':>10}{'P50':>10}{'Avg':>10}{'P95':>10}{'P99':>10}{'Max':>10}",
    ]
    for phase, stats in compute_all_stats(run).items():
        ms = stats.as_ms()
        lines.append(
            f"{PHASE_LABELS[phase]:<12}"
            + "".join(f"{ms[key]:>8.1f}ms" for key in ("min", "p50", "mean", "p95", "p99", "max"))
        )
    reasons = run.failure_reasons()
    if reasons:
        lines.append("  failures: " + ", ".join(f"{k}={v}" for k, v in sorted(reasons.items())))
    return "\n".join(lines)


def format_comparison(comparison):
    lines = [f"{comparison.candidate.proxy_name} vs {comparison.baseline.proxy_name} "
             f"({comparison.candidate.test_name}, mean)"]
    for phase in PHASES:
        diff = comparison.differences.get(phase)
        if diff is None:
            continue
        lines.append(f"  {PHASE_LABELS[phase]:<12}{diff.absolute / NS_PER_MS:>+10.1f}ms {diff.percentage:>+8.1f}%")
    return "\n".join(lines)


def run_benchmark(settings, args, cancel_event):
    target_url = args.target or settings.targets[0]
    proxies = select_proxies(settings, args)
    scenarios = [s for s in settings.enabled_scenarios() if args.mode in ("all", s.kind)]
    workers = args.workers or settings.sequential_workers

    runs = []
    try:
        for position, proxy in enumerate(proxies, 1):
            client = make_client(proxy, settings.request_timeout)
            log.info(f'Proxy [{position}/{len(proxies)}]: {client.name} -> {target_url}')
            for scenario in scenarios:
                runner = make_runner(
                    scenario.kind, client,
                    concurrency=args.concurrency or scenario.concurrency,
                    interval=settings.request_interval,
                    sequential_workers=workers,
                )
                run = runner.run(scenario.name, target_url, args.count or scenario.count, cancel_event)
                runs.append(run)
                run.raise_if_cancelled()
    except RunCancelled as exc:
        log.warning(f'{exc}; remaining scenarios skipped')
    return runs


def report(runs):
    for run in runs:
        print()
        print(format_stats_table(run))

    by_test = {}
    for run in runs:
        by_test.setdefault(run.test_name, []).append(run)
    for group in by_test.values():
        baseline = group[0]
        for candidate in group[1:]:
            print()
            print(format_comparison(compare(baseline, candidate)))


def install_signal_handlers(cancel_event):
    def handler(signum, frame):
        log.warning('Interrupt received, stopping after in-flight requests...')
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    try:
        settings = load_settings()
        runs = run_benchmark(settings, args, cancel_event)
    except ValueError as e:
        logging.error(f'Error: {e}')
        return 1

    report(runs)

    if runs and (args.json or args.export_dir):
        path = os.path.join(args.export_dir or settings.output_dir, f"benchmark_{datetime.now():%Y%m%d_%H%M%S}.json")
        write_json(runs, path)
        log.info(f'JSON report written to {path}')
    return 0


if __name__ == "__main__":
    sys.exit(main())
