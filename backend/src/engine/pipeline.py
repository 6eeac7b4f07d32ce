"""Pipeline coordinator — decode → resize → blur → publish for one request.

Each run carries a RunToken. The token is checked between stages (to drop
work nobody will see) and, decisively, under the session lock right before
publishing: a run cancelled after finishing its computation still never
reaches the session.

Includes rolling per-stage timing stats and slow-stage warnings.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import sentry_sdk

from config import BlurConfig
from effects.blur import apply_once
from engine.compose import BlurPrimitive, blur
from engine.resize import resize
from engine.session import Session
from errors import BlurwallError
from imaging.buffer import NormalizedBuffer
from imaging.decode import decode
from imaging.source import ImageSource
from notify import Notifier

logger = logging.getLogger(__name__)

# Per-stage timing threshold (milliseconds)
STAGE_WARN_MS = 250

# Rolling timing stats per stage
_timing_lock = threading.Lock()
_stage_timing: dict[str, deque] = defaultdict(lambda: deque(maxlen=100))


class RunState(Enum):
    PENDING = "pending"
    DECODING = "decoding"
    RESIZING = "resizing"
    BLURRING = "blurring"
    PUBLISHING = "publishing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RunState.DONE, RunState.CANCELLED, RunState.FAILED})


class RunToken:
    """Cooperative cancellation flag for one pipeline run."""

    def __init__(self, seq: int = 0):
        self.seq = seq
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self):
        return f"RunToken(seq={self.seq}, cancelled={self.cancelled})"


@dataclass
class RunResult:
    """Outcome of one run. ``states`` lists every state visited, in order."""

    radius: int
    state: RunState = RunState.PENDING
    states: list[RunState] = field(default_factory=lambda: [RunState.PENDING])
    buffer: NormalizedBuffer | None = None
    error: str | None = None
    elapsed_ms: float = 0.0

    def advance(self, state: RunState):
        self.state = state
        self.states.append(state)

    @property
    def published(self) -> bool:
        return self.state == RunState.DONE


def record_timing(stage: str, elapsed_ms: float):
    """Record a timing sample for a stage."""
    with _timing_lock:
        _stage_timing[stage].append(elapsed_ms)


def get_stage_stats() -> dict[str, dict]:
    """Return p50/p95/max per stage."""
    result = {}
    with _timing_lock:
        snapshot = {k: list(v) for k, v in _stage_timing.items()}
    for stage, samples in snapshot.items():
        s = sorted(samples)
        result[stage] = {
            "p50": s[len(s) // 2] if s else 0,
            "p95": s[int(len(s) * 0.95)] if len(s) >= 20 else None,
            "max": max(s) if s else 0,
            "samples": len(s),
        }
    return result


def flush_timing():
    """Clear all timing stats."""
    with _timing_lock:
        _stage_timing.clear()


def _capture_with_context(e: Exception, stage: str, extra: dict):
    """Capture exception to Sentry with stage context and fingerprint dedup."""
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("pipeline_stage", stage)
        scope.fingerprint = ["pipeline-failure", stage, type(e).__name__]
        scope.set_context("pipeline", extra)
        sentry_sdk.capture_exception(e, scope=scope)


class PipelineCoordinator:
    """Owns the Session and is its only writer.

    ``decoder`` and ``primitive`` are the decode and single-pass blur
    collaborators; ``on_publish`` is called with the new Session after
    every successful publish (the display hook).
    """

    def __init__(
        self,
        config: BlurConfig | None = None,
        *,
        notifier: Notifier | None = None,
        decoder: Callable[[ImageSource], NormalizedBuffer] = decode,
        primitive: BlurPrimitive = apply_once,
        on_publish: Callable[[Session], None] | None = None,
    ):
        self.config = config or BlurConfig()
        self.notifier = notifier or Notifier()
        self._decoder = decoder
        self._primitive = primitive
        self._on_publish = on_publish
        self._lock = threading.Lock()
        self._session = Session()
        self.last_run_ms = 0.0

    @property
    def session(self) -> Session:
        with self._lock:
            return self._session

    def current_buffer(self) -> NormalizedBuffer | None:
        return self.session.buffer

    def select_source(self, source: ImageSource | None) -> Session:
        """Replace the session for a new pick, dropping derived state.

        Runs started for the previous source fail the publish gate.
        """
        with self._lock:
            self._session = self._session.with_source(source)
            session = self._session
        logger.info("Source selected: %s", source.name if source else None)
        return session

    def _timed(self, stage: str, fn, *args):
        t0 = time.monotonic()
        out = fn(*args)
        elapsed_ms = (time.monotonic() - t0) * 1000
        record_timing(stage, elapsed_ms)
        if elapsed_ms > STAGE_WARN_MS:
            logger.warning(
                "Stage %s took %.0fms (>%dms warn threshold)",
                stage,
                elapsed_ms,
                STAGE_WARN_MS,
            )
        return out

    def run(
        self, source: ImageSource, radius: int, token: RunToken | None = None
    ) -> RunResult:
        """Execute one pipeline run for ``source`` at ``radius``.

        Never raises for pipeline-stage failures: they are logged, captured,
        notified and reported as RunState.FAILED with the session untouched.
        """
        token = token or RunToken()
        result = RunResult(radius=radius)
        t0 = time.monotonic()
        stage = RunState.PENDING

        def _cancelled() -> bool:
            if token.cancelled:
                logger.debug("Run seq=%d cancelled before %s", token.seq, stage.value)
                result.advance(RunState.CANCELLED)
                return True
            return False

        try:
            stage = RunState.DECODING
            if _cancelled():
                return result
            result.advance(stage)
            decoded = self._timed("decode", self._decoder, source)

            stage = RunState.RESIZING
            if _cancelled():
                return result
            result.advance(stage)
            resized = self._timed(
                "resize", resize, decoded, self.config.max_dimension
            )

            stage = RunState.BLURRING
            if _cancelled():
                return result
            result.advance(stage)
            if radius <= 0:
                output = resized
            else:
                output = self._timed(
                    "blur",
                    blur,
                    resized,
                    radius,
                    self.config.blur_passes,
                    self._primitive,
                )
        except Exception as e:
            self._fail(result, e, stage, source, token)
            return result
        finally:
            result.elapsed_ms = (time.monotonic() - t0) * 1000

        result.advance(RunState.PUBLISHING)
        published = self._publish(source, output, radius, token)
        if not published:
            result.advance(RunState.CANCELLED)
            return result

        result.buffer = output
        result.advance(RunState.DONE)
        self.last_run_ms = round(result.elapsed_ms, 2)
        record_timing("total", result.elapsed_ms)
        logger.info(
            "Published radius=%d %dx%d in %.0fms",
            radius,
            output.width,
            output.height,
            result.elapsed_ms,
        )
        return result

    def _publish(
        self,
        source: ImageSource,
        output: NormalizedBuffer,
        radius: int,
        token: RunToken,
    ) -> bool:
        """Supersede gate: token check and session write under one lock."""
        with self._lock:
            if token.cancelled:
                logger.debug("Run seq=%d superseded at publish", token.seq)
                return False
            if self._session.source is not source:
                logger.debug("Run seq=%d discarded: source changed", token.seq)
                return False
            self._session = self._session.with_result(output, radius)
            session = self._session

        if self._on_publish is not None:
            try:
                self._on_publish(session)
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.error("Display listener failed: %s", type(e).__name__)
        return True

    def _fail(
        self,
        result: RunResult,
        e: Exception,
        stage: RunState,
        source: ImageSource,
        token: RunToken,
    ):
        if isinstance(e, BlurwallError):
            message = str(e)
        else:
            message = type(e).__name__
        result.error = message
        result.advance(RunState.FAILED)

        _capture_with_context(
            e,
            stage.value,
            {"radius": result.radius, "seq": token.seq, "passes": self.config.blur_passes},
        )
        logger.error(
            "Pipeline failed in %s (radius=%d): %s",
            stage.value,
            result.radius,
            type(e).__name__,
        )
        logger.debug("Pipeline failure detail for %s: %s", source.name, e)

        # A superseded run's failure is nobody's concern any more
        if not token.cancelled:
            self.notifier.notify(f"Error: {message}")
