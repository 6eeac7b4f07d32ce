"""Debounce/cancellation scheduler for intensity changes.

Two layers:

- ``Debouncer`` is a pure state machine driven by explicit timestamps. It
  numbers requests, holds one RunToken per outstanding run, and decides
  when a pending request has survived its quiescence window.
- ``DebounceScheduler`` is the single-owner actor around it. Its control
  thread consumes an ordered message queue; ``queue.get(timeout=...)`` is
  the suspension point for the quiescence window. Admitted runs execute on
  one background worker.

Every new user event cancels every outstanding token before anything else
happens, so the only run able to pass the coordinator's publish gate is the
most recently admitted one.
"""

import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from config import BlurConfig
from engine.pipeline import PipelineCoordinator, RunResult, RunState, RunToken
from imaging.source import ImageSource

logger = logging.getLogger(__name__)

# How many finished runs are kept for status/diagnostics
RUN_HISTORY = 50


@dataclass(frozen=True)
class IntensityEvent:
    """One intensity-control change. Programmatic changes only move the label."""

    value: int
    from_user: bool = True


@dataclass(frozen=True)
class IntensityRequest:
    """An admitted-or-pending run request, numbered in issuance order."""

    value: int
    seq: int
    source: ImageSource


def format_label(value: int) -> str:
    return f"Blur: {value}%"


class Debouncer:
    """Pure debounce + supersede bookkeeping. Not thread-safe; one owner."""

    def __init__(self, window_s: float = 0.2, max_intensity: int = 150):
        self.window_s = window_s
        self.max_intensity = max_intensity
        self.label = format_label(0)
        self._seq = 0
        self._pending: IntensityRequest | None = None
        self._deadline: float | None = None
        self._tokens: dict[int, RunToken] = {}

    def clamp(self, value: int) -> int:
        return max(0, min(self.max_intensity, int(value)))

    def offer(
        self, event: IntensityEvent, now: float, source: ImageSource | None
    ) -> IntensityRequest | None:
        """Register an event. Returns the newly pending request, if any.

        The label always follows the raw value. Only user events with a
        selected source schedule work; they cancel every outstanding run
        and restart the quiescence window.
        """
        value = self.clamp(event.value)
        self.label = format_label(value)
        if not event.from_user or source is None:
            return None

        self.cancel_all()
        self._seq += 1
        self._pending = IntensityRequest(value=value, seq=self._seq, source=source)
        self._tokens[self._seq] = RunToken(self._seq)
        self._deadline = now + self.window_s
        return self._pending

    def next_deadline(self) -> float | None:
        return self._deadline

    def due(self, now: float) -> tuple[IntensityRequest, RunToken] | None:
        """Admit the pending request once its window has elapsed."""
        if self._pending is None or self._deadline is None or now < self._deadline:
            return None
        request = self._pending
        self._pending = None
        self._deadline = None
        return request, self._tokens[request.seq]

    def finished(self, seq: int):
        self._tokens.pop(seq, None)

    def cancel_all(self) -> int:
        """Cancel pending and in-flight runs. Returns how many were live."""
        live = 0
        for token in self._tokens.values():
            if not token.cancelled:
                token.cancel()
                live += 1
        # In-flight tokens stay tracked until their run reports back
        if self._pending is not None:
            self._tokens.pop(self._pending.seq, None)
        self._pending = None
        self._deadline = None
        return live

    @property
    def pending(self) -> IntensityRequest | None:
        return self._pending

    @property
    def idle(self) -> bool:
        return self._pending is None and not self._tokens


@dataclass(frozen=True)
class _SourceChange:
    source: ImageSource | None
    done: threading.Event


@dataclass(frozen=True)
class _RunFinished:
    seq: int


_STOP = object()


class DebounceScheduler:
    """Actor that turns a stream of intensity events into pipeline runs."""

    def __init__(
        self,
        coordinator: PipelineCoordinator,
        config: BlurConfig | None = None,
        *,
        on_label: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.coordinator = coordinator
        self.config = config or coordinator.config
        self._debouncer = Debouncer(
            window_s=self.config.debounce_s, max_intensity=self.config.max_intensity
        )
        self._on_label = on_label
        self._clock = clock
        self._queue: queue.Queue = queue.Queue()
        self._idle_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._history: deque[tuple[int, RunResult]] = deque(maxlen=RUN_HISTORY)
        self._history_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self.label = self._debouncer.label

    # --- control-side API ---

    def start(self):
        if self._thread is not None:
            return
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="blur-worker"
        )
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name="blur-scheduler"
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Cancel outstanding runs and shut the actor and worker down."""
        if self._thread is None:
            return
        self._put(_STOP)
        self._thread.join(timeout=timeout)
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._thread = None
        self._executor = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, value: int, from_user: bool = True):
        """Enqueue an intensity change. Never blocks on pipeline work."""
        self._put(IntensityEvent(value=int(value), from_user=from_user))

    def select_source(self, source: ImageSource | None, timeout: float = 5.0) -> bool:
        """Cancel all runs for the old source, then install the new one.

        Blocks until the actor has applied the change (or ``timeout``).
        """
        done = threading.Event()
        self._put(_SourceChange(source=source, done=done))
        return done.wait(timeout)

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until nothing is queued, pending or running."""
        return self._idle.wait(timeout)

    def history(self) -> list[tuple[int, RunResult]]:
        """(seq, result) for recently finished runs, oldest first."""
        with self._history_lock:
            return list(self._history)

    @property
    def pending_value(self) -> int | None:
        pending = self._debouncer.pending
        return pending.value if pending else None

    def _put(self, message):
        with self._idle_lock:
            self._idle.clear()
            self._queue.put(message)

    # --- actor ---

    def _loop(self):
        while True:
            deadline = self._debouncer.next_deadline()
            timeout = None if deadline is None else max(0.0, deadline - self._clock())
            try:
                message = self._queue.get(timeout=timeout)
            except queue.Empty:
                message = None

            if message is _STOP:
                cancelled = self._debouncer.cancel_all()
                logger.debug("Scheduler stopping, cancelled %d run(s)", cancelled)
                break

            try:
                self._step(message)
            except Exception:
                logger.exception("Scheduler message handling failed")

            with self._idle_lock:
                if self._queue.empty() and self._debouncer.idle:
                    self._idle.set()
        self._idle.set()

    def _step(self, message):
        """Process one queue message (None on timeout).

        A request whose window elapsed while the actor was busy is admitted
        before the message is handled, so a late wake-up never drops it.
        """
        self._admit_due()
        self._handle(message)
        self._admit_due()

    def _admit_due(self):
        admitted = self._debouncer.due(self._clock())
        if admitted is not None:
            self._dispatch(*admitted)

    def _handle(self, message):
        if message is None:
            return
        if isinstance(message, IntensityEvent):
            request = self._debouncer.offer(
                message, self._clock(), self.coordinator.session.source
            )
            self.label = self._debouncer.label
            if self._on_label is not None:
                self._on_label(self.label)
            if request is not None:
                logger.debug("Scheduled seq=%d value=%d", request.seq, request.value)
        elif isinstance(message, _SourceChange):
            cancelled = self._debouncer.cancel_all()
            if cancelled:
                logger.info("New source cancelled %d outstanding run(s)", cancelled)
            self.coordinator.select_source(message.source)
            message.done.set()
        elif isinstance(message, _RunFinished):
            self._debouncer.finished(message.seq)

    def _dispatch(self, request: IntensityRequest, token: RunToken):
        logger.debug("Admitted seq=%d value=%d", request.seq, request.value)
        self._executor.submit(self._execute, request, token)

    def _execute(self, request: IntensityRequest, token: RunToken):
        """Worker side. A token cancelled before start drops the run."""
        try:
            if token.cancelled:
                result = RunResult(radius=request.value)
                result.advance(RunState.CANCELLED)
            else:
                result = self.coordinator.run(request.source, request.value, token)
            with self._history_lock:
                self._history.append((request.seq, result))
        finally:
            self._put(_RunFinished(request.seq))
