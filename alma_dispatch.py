"""
Bounded worker pool for running one job per set member (or per lookup key).

- `Dispatcher` is the low-level pool: a derived cancel scope, two locks for shared
  accumulators, blocking submission, and a close() that waits for every in-flight job.
- `run_jobs()` is what the bulk operations use: it wraps each item in a job, collects
  results and errors under the locks, and cancels the remaining work on a
  cancellation-class error (eg threshold reached).
"""

import logging
import os
import queue
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from tqdm import tqdm

from alma_cancel import CancelScope
from alma_errors import RequestCancelledError

log = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')

_STOP = object()


def default_workers() -> int:
    """
    One worker per logical CPU.
    """
    return os.cpu_count() or 1


@dataclass
class ItemError:
    """
    The error for one failed item, keyed by something an operator can look up (member ID, link, table name).
    """

    key: str
    error: Exception

    def __str__(self) -> str:
        return f'{self.key}: {self.error}'


@dataclass
class OperationResult(Generic[R]):
    """
    Outcome of a bulk run: per-item successes and per-item errors, in no particular order.
    `fatal` separates stop-the-world errors (cancellation, threshold) from ordinary per-item failures.
    """

    results: list[R] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)

    @property
    def fatal(self) -> RequestCancelledError | None:
        for item_error in self.errors:
            if isinstance(item_error.error, RequestCancelledError):
                return item_error.error
        return None

    @property
    def ok(self) -> bool:
        return not self.errors


class Dispatcher:
    """
    Fixed-size pool of worker threads fed through a one-slot queue.

    Usage:
        with Dispatcher(scope, len(members), 'Scanning items in') as dispatcher:
            for member in members:
                dispatcher.submit(functools.partial(job, member))

    - submit() blocks while every worker is busy, so intake is throttled to pool capacity.
    - close() (called on leaving the `with` block) stops intake and waits for all workers
      to finish their in-flight jobs; nothing runs after it returns.
    - The dispatcher never decides to cancel; jobs cancel `dispatcher.scope` themselves.
    """

    def __init__(
        self,
        scope: CancelScope,
        num_jobs: int,
        description: str,
        workers: int | None = None,
        progress: bool = True,
    ) -> None:
        self.scope: CancelScope = scope.child()
        self.errors_lock: threading.Lock = threading.Lock()
        self.output_lock: threading.Lock = threading.Lock()
        self.description: str = description
        self.workers: int = workers if workers is not None else default_workers()
        self._jobs: queue.Queue = queue.Queue(maxsize=1)
        self._threads: list[threading.Thread] = []
        self._crashes: list[BaseException] = []
        self._closed: bool = False
        ## progress is an observer only; disable=None turns it off when stderr is not a terminal
        self.bar: tqdm = tqdm(total=num_jobs, desc=description, disable=None if progress else True, leave=False)
        for worker_number in range(self.workers):
            thread = threading.Thread(target=self._work, name=f'alma-worker-{worker_number}', daemon=True)
            thread.start()
            self._threads.append(thread)

    def _work(self) -> None:
        while True:
            job = self._jobs.get()
            if job is _STOP:
                return
            try:
                job()
            except Exception as exc:
                ## run_jobs() jobs never get here; raw jobs surface their crash at close()
                log.exception(f'unhandled error in job for ``{self.description}``')
                with self.errors_lock:
                    self._crashes.append(exc)
            finally:
                self.bar.update(1)

    def submit(self, job: Callable[[], None]) -> None:
        if self._closed:
            raise RuntimeError('dispatcher is closed')
        self._jobs.put(job)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            self._jobs.put(_STOP)
        for thread in self._threads:
            thread.join()
        self.bar.close()
        if self._crashes:
            raise self._crashes[0]

    def __enter__(self) -> 'Dispatcher':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            ## stop the pool quickly, but still wait for in-flight jobs
            self.scope.cancel(RequestCancelledError(f'{self.description} aborted'))
        self.close()


def run_jobs(
    scope: CancelScope,
    items: Iterable[T],
    job: Callable[[CancelScope, T], R],
    description: str,
    key: Callable[[T], str] = str,
    workers: int | None = None,
    progress: bool = True,
) -> OperationResult[R]:
    """
    Runs `job(scope, item)` once per item through a Dispatcher and aggregates the outcomes.

    A failing item is recorded and does not stop its siblings. A cancellation-class error
    (threshold reached, interrupt) cancels the dispatcher scope, so items still queued fail
    fast with that same error instead of calling the API.
    """
    items = list(items)
    result: OperationResult[R] = OperationResult()
    with Dispatcher(scope, len(items), description, workers=workers, progress=progress) as dispatcher:
        job_scope: CancelScope = dispatcher.scope

        def run_one(item: T) -> None:
            try:
                job_scope.raise_if_cancelled()
                outcome: R = job(job_scope, item)
            except Exception as exc:
                if isinstance(exc, RequestCancelledError):
                    job_scope.cancel(exc)
                else:
                    log.debug(f'{description}: {key(item)} failed, ``{exc}``')
                with dispatcher.errors_lock:
                    result.errors.append(ItemError(key(item), exc))
                return
            with dispatcher.output_lock:
                result.results.append(outcome)

        for item in items:
            ## bind the item now; the closure must not see the loop variable change
            dispatcher.submit(lambda item=item: run_one(item))
    return result
