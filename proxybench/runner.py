"""Bounded-pool trial runners.

Workers never touch the run record. Each finished trial is posted to a queue
and the calling thread, the only writer of the ``TrialRun``, folds it in and
reports progress.
"""
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from .errors import ProbeError
from .timings import PhaseTimings, TrialRun

log = logging.getLogger(__name__)

# Width of the "sequential" sampling pool. Set to 1 for strict one-at-a-time.
DEFAULT_SEQUENTIAL_WORKERS = 10

MAX_LOGGED_FAILURES = 5


@dataclass
class TrialOutcome:
    index: int
    timings: PhaseTimings
    error: Optional[Exception] = None


@dataclass
class _DispatchDone:
    dispatched: int
    cancelled: bool


def progress_every(count):
    """Progress cadence: every 5% of the run, but at least every 10 trials."""
    return max(count // 20, 10)


class PoolRunner:
    """Dispatches ``count`` calls of ``client.execute`` through ``workers`` slots."""

    kind = "pool"

    def __init__(self, client, workers, interval=0.0):
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        self.client = client
        self.workers = workers
        self.interval = interval

    def run(self, test_name, target_url, count, cancel_event=None):
        """Run the trials and return the TrialRun.

        A set ``cancel_event`` stops further dispatch; trials already in
        flight still finish and are kept. The returned run is then in the
        CANCELLED state with the unfinished slots left as None.
        """
        if cancel_event is None:
            cancel_event = threading.Event()
        run = TrialRun(test_name, getattr(self.client, "name", ""), target_url, count)
        outbox = queue.Queue()

        log.info(f'Starting {self.kind} test: {test_name}')
        log.info(f'  target={target_url} proxy={run.proxy_name} requests={count} workers={self.workers}')

        run.begin()
        dispatcher = threading.Thread(
            target=self._dispatch,
            args=(target_url, count, cancel_event, outbox),
            name=f"{test_name}-dispatch",
            daemon=True,
        )
        dispatcher.start()

        every = progress_every(count)
        message = outbox.get()
        while not isinstance(message, _DispatchDone):
            self._fold(run, message, every)
            message = outbox.get()
        dispatcher.join()
        log.debug(f'{message.dispatched}/{count} trials dispatched for {test_name}')

        run.finish(cancelled=message.cancelled)
        self._log_summary(run)
        return run

    def _dispatch(self, target_url, count, cancel_event, outbox):
        gate = threading.BoundedSemaphore(self.workers)
        dispatched = 0
        cancelled = False
        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=self.kind) as pool:
                for index in range(count):
                    gate.acquire()
                    if cancel_event.is_set():
                        gate.release()
                        cancelled = True
                        log.info(f'Cancellation observed, {index}/{count} trials dispatched')
                        break
                    pool.submit(self._trial, index, target_url, gate, cancel_event, outbox)
                    dispatched += 1
        finally:
            # Posted only after the pool has drained, so it is the last message
            outbox.put(_DispatchDone(dispatched, cancelled))

    def _trial(self, index, target_url, gate, cancel_event, outbox):
        try:
            try:
                timings, error = self.client.execute(target_url)
            except Exception as exc:
                log.exception(f'Trial #{index + 1} raised unexpectedly')
                error = ProbeError(f"unexpected error: {exc!r}")
                timings = PhaseTimings(error_message=str(error), error_reason=error.reason)
            outbox.put(TrialOutcome(index, timings, error))
            if self.interval > 0:
                cancel_event.wait(self.interval)
        finally:
            gate.release()

    def _fold(self, run, outcome, every):
        run.record(outcome.index, outcome.timings)
        if not outcome.timings.success and run.failed_count <= MAX_LOGGED_FAILURES:
            log.warning(f'  Trial #{outcome.index + 1} failed: {outcome.timings.error_message}')
        completed = run.completed_count
        if completed % every == 0 or completed == run.total_count:
            log.info(f'  Progress: {completed}/{run.total_count} '
                     f'(success: {run.success_count}, failed: {run.failed_count})')

    def _log_summary(self, run):
        if run.cancelled:
            log.warning(f'Test {run.test_name} cancelled: {run.completed_count}/{run.total_count} trials completed')
        else:
            log.info(f'Test {run.test_name} completed')
        log.info(f'  Duration: {run.duration:.2f}s')
        log.info(f'  Success rate: {run.success_rate:.2f}%')
        log.info(f'  Throughput: {run.throughput:.2f} req/s')


class SequentialRunner(PoolRunner):
    """Low-interference sampling through a small pool.

    ``interval`` is slept by each worker after its trial, while still
    holding its slot, to keep bursts off the proxy.
    """

    kind = "single"

    def __init__(self, client, interval=0.0, workers=DEFAULT_SEQUENTIAL_WORKERS):
        super().__init__(client, workers, interval)


class ConcurrentRunner(PoolRunner):
    """Load test with ``concurrency`` trials in flight."""

    kind = "concurrent"

    def __init__(self, client, concurrency):
        super().__init__(client, concurrency)
        self.concurrency = concurrency


def make_runner(kind, client, concurrency=1, interval=0.0, sequential_workers=DEFAULT_SEQUENTIAL_WORKERS):
    if kind == "single":
        return SequentialRunner(client, interval, sequential_workers)
    if kind == "concurrent":
        return ConcurrentRunner(client, concurrency)
    raise ValueError(f"unknown scenario kind: {kind}")
