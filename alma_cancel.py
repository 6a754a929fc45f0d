"""
Cancellation plumbing shared by the transport, the dispatcher, and the CLI.

- CancelScope: a cancellable context; cancelling a scope cancels every scope derived from it.
- RemainingCallBudget: the last remaining-call count the server reported, plus the one-shot
  threshold trigger.
- RunMonitor: owns the root scope and the budget for one run, and turns SIGINT/SIGTERM,
  threshold breaches, and end-of-run cleanup into a single cancellation.
"""

import logging
import signal
import threading
import weakref
from collections.abc import Callable
from types import FrameType

import humanize

from alma_errors import RequestCancelledError, ThresholdReachedError

log = logging.getLogger(__name__)


class CancelScope:
    """
    Cancellable context passed to every API call.
    - `cancel()` is idempotent; the first cause is kept.
    - Cancellation flows down to children created with `child()`, never up.
    - `wait()` sleeps, but wakes early when the scope is cancelled.
    """

    def __init__(self, parent: 'CancelScope | None' = None) -> None:
        self._event: threading.Event = threading.Event()
        self._lock: threading.Lock = threading.Lock()
        self._cause: RequestCancelledError | None = None
        self._children: weakref.WeakSet[CancelScope] = weakref.WeakSet()
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: 'CancelScope') -> None:
        with self._lock:
            self._children.add(child)
            cause: RequestCancelledError | None = self._cause
        if cause is not None:
            child.cancel(cause)

    def child(self) -> 'CancelScope':
        return CancelScope(parent=self)

    def cancel(self, cause: RequestCancelledError | None = None) -> bool:
        """
        Cancels this scope and its children. Returns True only for the call that did the cancelling.
        """
        with self._lock:
            if self._cause is not None:
                return False
            self._cause = cause if cause is not None else RequestCancelledError('operation cancelled')
            children: list[CancelScope] = list(self._children)
            self._event.set()
        for child in children:
            child.cancel(self._cause)
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> RequestCancelledError | None:
        return self._cause

    def raise_if_cancelled(self) -> None:
        if self._cause is not None:
            raise self._cause

    def wait(self, seconds: float) -> bool:
        """
        Sleeps up to `seconds`; returns True if the scope was cancelled meanwhile.
        """
        return self._event.wait(timeout=max(0.0, seconds))


class RemainingCallBudget:
    """
    Tracks the remaining-call count the API reports in every response header.
    - Only ever refreshed from server responses; never decremented locally.
    - The first report at or below `threshold` calls `on_threshold` exactly once.
    - Safe to call from every worker thread.
    """

    def __init__(
        self, threshold: int, on_threshold: Callable[[ThresholdReachedError], None] | None = None
    ) -> None:
        self.threshold: int = threshold
        self.on_threshold: Callable[[ThresholdReachedError], None] | None = on_threshold
        self._lock: threading.Lock = threading.Lock()
        self._remaining: int | None = None
        self._tripped: ThresholdReachedError | None = None

    @property
    def remaining(self) -> int | None:
        with self._lock:
            return self._remaining

    @property
    def tripped(self) -> ThresholdReachedError | None:
        with self._lock:
            return self._tripped

    def report(self, remaining: int) -> ThresholdReachedError | None:
        """
        Records a server-reported count; returns the threshold error if this report crossed it.
        Called by: AlmaClient.send()
        """
        with self._lock:
            self._remaining = remaining
            if self._tripped is not None or remaining > self.threshold:
                return None
            self._tripped = ThresholdReachedError(remaining, self.threshold)
            err: ThresholdReachedError = self._tripped
        if self.on_threshold is not None:
            self.on_threshold(err)
        return err


class RunMonitor:
    """
    Budget monitor and cancellation owner for one toolkit run.

    States are Active and Cancelled (terminal). The root scope moves to Cancelled on
    the first of: an interrupt/terminate signal, a threshold breach reported by the
    budget, or leaving the `with` block (normal cleanup).
    """

    def __init__(self, threshold: int, handle_signals: bool = True) -> None:
        self.scope: CancelScope = CancelScope()
        self.budget: RemainingCallBudget = RemainingCallBudget(threshold, on_threshold=self._threshold_reached)
        self.handle_signals: bool = handle_signals
        self._previous_handlers: dict[int, object] = {}

    @property
    def active(self) -> bool:
        return not self.scope.cancelled

    def _threshold_reached(self, err: ThresholdReachedError) -> None:
        if self.scope.cancel(err):
            log.error(
                f'FATAL: API call threshold of {humanize.intcomma(err.threshold)} reached, '
                f'only {humanize.intcomma(err.remaining)} calls remaining.'
            )

    def _signal_received(self, signum: int, frame: FrameType | None) -> None:
        if self.scope.cancel(RequestCancelledError(f'interrupted by {signal.Signals(signum).name}')):
            log.warning('Cancelling...')

    def __enter__(self) -> 'RunMonitor':
        ## signal handlers can only be installed from the main thread
        if self.handle_signals and threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                self._previous_handlers[signum] = signal.signal(signum, self._signal_received)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.scope.cancel(RequestCancelledError('run finished'))
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}
