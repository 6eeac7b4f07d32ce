"""Tests for engine.scheduler — debounce collapse, supersede, label updates."""

import threading
import time
from pathlib import Path

import numpy as np
import pytest

from config import BlurConfig
from effects.blur import apply_once
from engine.pipeline import TERMINAL_STATES, PipelineCoordinator, RunState
from engine.scheduler import DebounceScheduler, Debouncer, IntensityEvent, format_label
from imaging.buffer import NormalizedBuffer
from imaging.source import ImageSource

SOURCE = ImageSource(Path("/home/user/photo.png"))


# --- Debouncer (fake clock) ---


@pytest.mark.smoke
def test_burst_collapses_to_last_value():
    """Events at 0/50/100/140ms with a 200ms window admit once, at 340ms."""
    d = Debouncer(window_s=0.2)
    for t, value in [(0.0, 10), (0.05, 20), (0.1, 30), (0.14, 40)]:
        d.offer(IntensityEvent(value), t, SOURCE)
        assert d.due(t) is None

    assert d.due(0.3) is None
    assert d.next_deadline() == pytest.approx(0.34)

    request, token = d.due(0.34)
    assert request.value == 40
    assert not token.cancelled
    assert d.due(0.5) is None


@pytest.mark.smoke
def test_event_inside_window_restarts_it():
    """A t=300ms event lands 160ms after t=140ms: the window restarts, one admit."""
    d = Debouncer(window_s=0.2)
    events = [(0.0, 1), (0.05, 2), (0.1, 3), (0.14, 4), (0.3, 5)]
    admitted = []
    for t, value in events:
        d.offer(IntensityEvent(value), t, SOURCE)
        assert d.due(t) is None

    for now in (0.34, 0.5, 1.0):
        due = d.due(now)
        if due is not None:
            admitted.append(due[0].value)

    assert admitted == [5]


@pytest.mark.smoke
def test_seq_strictly_increasing():
    d = Debouncer()
    seqs = [d.offer(IntensityEvent(v), 0.0, SOURCE).seq for v in (1, 2, 3)]
    assert seqs == [1, 2, 3]


@pytest.mark.smoke
def test_new_event_cancels_in_flight_run():
    d = Debouncer(window_s=0.2)
    d.offer(IntensityEvent(10), 0.0, SOURCE)
    _, first = d.due(0.2)

    d.offer(IntensityEvent(20), 0.3, SOURCE)
    assert first.cancelled
    _, second = d.due(0.5)
    assert not second.cancelled


@pytest.mark.smoke
def test_programmatic_event_only_moves_label():
    d = Debouncer()
    assert d.offer(IntensityEvent(70, from_user=False), 0.0, SOURCE) is None
    assert d.label == "Blur: 70%"
    assert d.pending is None
    assert d.idle


@pytest.mark.smoke
def test_no_source_schedules_nothing():
    d = Debouncer()
    assert d.offer(IntensityEvent(30), 0.0, None) is None
    assert d.label == "Blur: 30%"
    assert d.idle


@pytest.mark.smoke
@pytest.mark.parametrize("raw,expected", [(-5, 0), (0, 0), (150, 150), (400, 150)])
def test_values_clamped(raw, expected):
    d = Debouncer(max_intensity=150)
    request = d.offer(IntensityEvent(raw), 0.0, SOURCE)
    assert request.value == expected
    assert d.label == format_label(expected)


@pytest.mark.smoke
def test_cancel_all_counts_live_runs():
    d = Debouncer(window_s=0.0)
    d.offer(IntensityEvent(10), 0.0, SOURCE)
    _, token = d.due(0.0)
    d.offer(IntensityEvent(20), 0.0, SOURCE)
    assert token.cancelled
    assert d.cancel_all() == 1
    assert d.pending is None
    assert not d.idle  # seq 1 stays tracked until its run reports back
    d.finished(1)
    assert d.idle


# --- DebounceScheduler message step (fake clock, no threads) ---


@pytest.mark.smoke
def test_late_wakeup_admits_settled_request_first():
    """An event dequeued after the pending deadline does not drop that request."""
    now = [0.0]
    coordinator = PipelineCoordinator(BlurConfig(debounce_ms=200))
    coordinator.select_source(SOURCE)
    scheduler = DebounceScheduler(coordinator, clock=lambda: now[0])
    dispatched = []
    scheduler._dispatch = lambda request, token: dispatched.append((request.value, token))

    scheduler._step(IntensityEvent(10))
    assert dispatched == []

    now[0] = 0.25
    scheduler._step(IntensityEvent(20))
    assert [value for value, _ in dispatched] == [10]
    # The newer event still supersedes the admitted run
    assert dispatched[0][1].cancelled

    now[0] = 0.5
    scheduler._step(None)
    assert [value for value, _ in dispatched] == [10, 20]
    assert not dispatched[1][1].cancelled


# --- DebounceScheduler (real threads) ---


class _CountingPrimitive:
    def __init__(self, delay=0.0):
        self.radii = []
        self.delay = delay
        self._lock = threading.Lock()

    def __call__(self, buf, radius):
        with self._lock:
            self.radii.append(radius)
        if self.delay:
            time.sleep(self.delay)
        return apply_once(buf, radius)


def _scheduler(primitive, debounce_ms=50, labels=None):
    pixels = np.random.default_rng(1).integers(0, 256, (32, 32, 4), dtype=np.uint8)
    config = BlurConfig(max_dimension=32, blur_passes=1, debounce_ms=debounce_ms)
    coordinator = PipelineCoordinator(
        config, decoder=lambda s: NormalizedBuffer(pixels.copy()), primitive=primitive
    )
    scheduler = DebounceScheduler(
        coordinator, on_label=labels.append if labels is not None else None
    )
    scheduler.start()
    return scheduler, coordinator


def test_rapid_changes_run_once():
    primitive = _CountingPrimitive()
    scheduler, coordinator = _scheduler(primitive, debounce_ms=200)
    try:
        assert scheduler.select_source(SOURCE)
        for value in (10, 20, 30, 40):
            scheduler.submit(value)
            time.sleep(0.02)
        assert scheduler.wait_idle(timeout=5.0)
        assert primitive.radii == [40]
        assert coordinator.session.radius == 40
        assert scheduler.label == "Blur: 40%"
    finally:
        scheduler.stop()


def test_settled_changes_each_run():
    primitive = _CountingPrimitive()
    scheduler, coordinator = _scheduler(primitive, debounce_ms=20)
    try:
        scheduler.select_source(SOURCE)
        scheduler.submit(5)
        assert scheduler.wait_idle(timeout=5.0)
        scheduler.submit(9)
        assert scheduler.wait_idle(timeout=5.0)
        assert primitive.radii == [5, 9]
        assert coordinator.session.radius == 9
        assert all(r.state in TERMINAL_STATES for _, r in scheduler.history())
        seqs = [seq for seq, _ in scheduler.history()]
        assert seqs == sorted(seqs)
    finally:
        scheduler.stop()


def test_superseded_in_flight_run_never_publishes():
    primitive = _CountingPrimitive(delay=0.3)
    scheduler, coordinator = _scheduler(primitive, debounce_ms=10)
    try:
        scheduler.select_source(SOURCE)
        scheduler.submit(10)
        time.sleep(0.15)  # first run is inside the slow primitive
        scheduler.submit(20)
        assert scheduler.wait_idle(timeout=5.0)

        assert coordinator.session.radius == 20
        states = {result.radius: result.state for _, result in scheduler.history()}
        assert states[10] == RunState.CANCELLED
        assert states[20] == RunState.DONE
    finally:
        scheduler.stop()


def test_programmatic_submit_updates_label_only():
    labels = []
    primitive = _CountingPrimitive()
    scheduler, coordinator = _scheduler(primitive, labels=labels)
    try:
        scheduler.select_source(SOURCE)
        scheduler.submit(60, from_user=False)
        assert scheduler.wait_idle(timeout=5.0)
        assert labels == ["Blur: 60%"]
        assert primitive.radii == []
        assert coordinator.session.buffer is None
    finally:
        scheduler.stop()


def test_submit_without_source_does_nothing():
    primitive = _CountingPrimitive()
    scheduler, coordinator = _scheduler(primitive)
    try:
        scheduler.submit(30)
        assert scheduler.wait_idle(timeout=5.0)
        assert primitive.radii == []
        assert scheduler.label == "Blur: 30%"
    finally:
        scheduler.stop()


def test_new_source_cancels_pending_run():
    primitive = _CountingPrimitive()
    scheduler, coordinator = _scheduler(primitive, debounce_ms=300)
    try:
        scheduler.select_source(SOURCE)
        scheduler.submit(25)
        other = ImageSource(Path("/home/user/other.png"))
        assert scheduler.select_source(other)
        assert scheduler.pending_value is None
        assert scheduler.wait_idle(timeout=5.0)
        assert primitive.radii == []
        assert coordinator.session.source is other
        assert coordinator.session.buffer is None
    finally:
        scheduler.stop()


def test_stop_is_idempotent():
    scheduler, _ = _scheduler(_CountingPrimitive())
    assert scheduler.running
    scheduler.stop()
    scheduler.stop()
    assert not scheduler.running
