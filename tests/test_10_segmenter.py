# tests/test_10_segmenter.py
import logging

import pytest

from voicegate.chunk_recorder import ContinuousChunkRecorder
from voicegate.config import SessionConfig
from voicegate.segmenter import SegmentationStateMachine, SessionState

LOUD = 60.0
QUIET = 2.0


class ManualClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_machine(**overrides):
    config = SessionConfig(**overrides)
    clock = ManualClock()
    recorder = ContinuousChunkRecorder(clock, header_chunks=config.header_chunks)
    previews: list = []
    completes: list = []
    machine = SegmentationStateMachine(
        config,
        recorder,
        on_preview=previews.append,
        on_complete=completes.append,
    )
    return machine, recorder, clock, previews, completes


def drive(machine, recorder, clock, level_at, start, end, *, step=50, chunks=True):
    """Deliver one chunk and one loudness sample every ``step`` ms."""
    for t in range(start, end + 1, step):
        clock.now = t
        if chunks:
            recorder.handle_data(f"c{t};".encode())
        machine.observe(level_at(t), t)


def chunk_payloads(start, end, step=50):
    return b"".join(f"c{t};".encode() for t in range(start, end + 1, step))


def test_quiet_stream_never_emits():
    machine, recorder, clock, previews, completes = make_machine()
    drive(machine, recorder, clock, lambda t: QUIET, 0, 10_000)
    assert previews == []
    assert completes == []
    assert machine.state is SessionState.IDLE
    assert machine.events_started == 0


def test_crossing_sets_start_point_with_lead_in():
    machine, recorder, clock, _, _ = make_machine(pre_trigger_ms=20)
    drive(machine, recorder, clock, lambda t: QUIET, 0, 950)
    clock.now = 1000
    state = machine.observe(LOUD, 1000)
    assert state is SessionState.ABOVE_THRESHOLD_PENDING
    assert machine.audio_start_point == 980


def test_threshold_is_inclusive():
    machine, _, _, _, _ = make_machine(loudness_threshold=10.0)
    assert machine.observe(10.0, 0) is SessionState.ABOVE_THRESHOLD_PENDING


def test_preview_covers_fixed_window():
    machine, recorder, clock, previews, completes = make_machine()
    drive(machine, recorder, clock, lambda t: LOUD if t >= 1000 else QUIET, 0, 2000)

    assert len(previews) == 1
    assert completes == []
    blob = previews[0]
    assert blob.window_start == 980
    assert blob.window_end == 1980
    assert blob.mime_type == "audio/webm;codecs=opus"
    assert blob.header_count == 2
    assert blob.chunk_count == 20
    assert blob.data == b"c0;c50;" + chunk_payloads(1000, 1950)
    assert machine.state is SessionState.AWAITING_SILENCE


def test_short_utterance_still_yields_full_preview():
    machine, recorder, clock, previews, completes = make_machine()
    drive(machine, recorder, clock, lambda t: LOUD if t == 1000 else QUIET, 0, 2000)

    assert len(previews) == 1
    assert previews[0].window_end - previews[0].window_start == 1000
    assert previews[0].chunk_count == 20

    # Silence timer only starts once the preview is out.
    drive(machine, recorder, clock, lambda t: QUIET, 2050, 3000)
    assert completes == []
    drive(machine, recorder, clock, lambda t: QUIET, 3050, 3050)
    assert len(completes) == 1


def test_at_most_one_preview_per_event():
    machine, recorder, clock, previews, completes = make_machine()
    drive(machine, recorder, clock, lambda t: LOUD if (t // 100) % 2 == 0 else QUIET, 1000, 1800)
    drive(machine, recorder, clock, lambda t: LOUD, 1850, 5000)
    assert len(previews) == 1
    assert machine.events_started == 1
    assert completes == []


def test_sustained_loudness_keeps_event_open():
    machine, recorder, clock, previews, completes = make_machine(silence_duration_ms=1000)
    drive(machine, recorder, clock, lambda t: LOUD, 1000, 6000)
    assert len(previews) == 1
    assert completes == []
    assert machine.state is SessionState.AWAITING_SILENCE

    drive(machine, recorder, clock, lambda t: QUIET, 6050, 7000)
    assert completes == []
    drive(machine, recorder, clock, lambda t: QUIET, 7050, 7050)
    assert len(completes) == 1


def test_complete_clip_after_confirmed_silence():
    # Crossing at 1000, drop at 2200, 1000ms of silence: complete at 3200.
    machine, recorder, clock, previews, completes = make_machine(
        silence_duration_ms=1000, pre_trigger_ms=20
    )
    drive(machine, recorder, clock, lambda t: QUIET, 0, 950)
    drive(machine, recorder, clock, lambda t: LOUD if t < 2200 else QUIET, 1000, 3150)
    assert completes == []

    drive(machine, recorder, clock, lambda t: QUIET, 3200, 3200)
    assert len(completes) == 1
    blob = completes[0]
    assert blob.window_start == 980
    assert blob.window_end == 3200
    assert blob.chunk_count == 45
    assert blob.data == b"c0;c50;" + chunk_payloads(1000, 3200)
    assert machine.state is SessionState.IDLE
    assert machine.audio_start_point is None


def test_silence_timer_resets_on_loud_sample():
    machine, recorder, clock, _, completes = make_machine(silence_duration_ms=1000)
    drive(machine, recorder, clock, lambda t: LOUD, 1000, 2000)
    drive(machine, recorder, clock, lambda t: QUIET, 2050, 2900)
    drive(machine, recorder, clock, lambda t: LOUD, 2950, 2950)
    assert machine.silence_started_at is None
    drive(machine, recorder, clock, lambda t: QUIET, 3000, 3950)
    assert completes == []
    drive(machine, recorder, clock, lambda t: QUIET, 4000, 4000)
    assert len(completes) == 1


def test_new_event_after_completion_is_independent():
    machine, recorder, clock, previews, completes = make_machine()
    drive(machine, recorder, clock, lambda t: LOUD if t < 2200 else QUIET, 1000, 3200)
    assert len(completes) == 1
    assert recorder.restarts == 1

    clock.now = 3250
    recorder.handle_data(b"c3250;")
    assert machine.observe(LOUD, 3250) is SessionState.ABOVE_THRESHOLD_PENDING
    assert machine.audio_start_point == 3230
    assert machine.events_started == 2

    drive(machine, recorder, clock, lambda t: LOUD, 3300, 4250)
    assert len(previews) == 2
    second = previews[1]
    assert second.window_start == 3230
    assert second.data.startswith(b"c1000;c1050;")
    assert b"c3200;" not in second.data
    assert b"c3250;" in second.data


def test_drop_policy_skips_unrecorded_window(caplog):
    machine, recorder, clock, previews, _ = make_machine()
    caplog.set_level(logging.DEBUG, logger="segmenter")
    drive(machine, recorder, clock, lambda t: LOUD, 1000, 2000, chunks=False)
    assert previews == []
    assert machine.dropped_emissions == 1
    assert machine.state is SessionState.AWAITING_SILENCE
    assert "not recorded yet" in caplog.text


def drive_offset(machine, recorder, clock, level_at, start, end, *, phase=10, last_chunk=None):
    """Ticks every 50 ms on the hundreds; chunks land ``phase`` ms later."""
    for t in range(start, end + 1, 10):
        clock.now = t
        if t % 50 == phase and (last_chunk is None or t <= last_chunk):
            recorder.handle_data(f"c{t};".encode())
        if t % 50 == 0:
            machine.observe(level_at(t), t)


def test_drop_policy_emits_preview_once_window_is_settled():
    # Last chunk before the 2000 tick ends at 1960; the next one (2010) falls
    # outside the window, so the preview selection is already final.
    machine, recorder, clock, previews, _ = make_machine()
    drive_offset(machine, recorder, clock, lambda t: LOUD if t >= 1000 else QUIET, 0, 2000)

    assert len(previews) == 1
    blob = previews[0]
    assert (blob.window_start, blob.window_end) == (980, 1980)
    assert recorder.last_chunk_at == 1960
    assert blob.chunk_count == 20
    assert blob.data == b"c10;c60;" + chunk_payloads(1010, 1960)
    assert machine.dropped_emissions == 0


def test_drop_policy_skips_window_when_recorder_lags():
    machine, recorder, clock, previews, _ = make_machine()
    drive_offset(
        machine,
        recorder,
        clock,
        lambda t: LOUD if t >= 1000 else QUIET,
        0,
        2000,
        last_chunk=1910,
    )

    assert recorder.last_chunk_at == 1910
    assert previews == []
    assert machine.dropped_emissions == 1
    assert machine.state is SessionState.AWAITING_SILENCE


def test_wait_policy_defers_until_window_is_covered():
    machine, recorder, clock, previews, _ = make_machine(emission_policy="wait")
    drive(machine, recorder, clock, lambda t: LOUD, 1000, 1950)
    # Last chunk ends at 1950, before the window end of 1980.
    clock.now = 2000
    machine.observe(LOUD, 2000)
    assert previews == []
    assert len(machine.pending) == 1

    recorder.handle_data(b"c2000;")
    machine.resolve_pending(2000)
    assert len(previews) == 1
    assert previews[0].data.endswith(b"c1950;")
    assert machine.pending == ()


def test_wait_policy_drops_after_timeout():
    machine, recorder, clock, previews, _ = make_machine(
        emission_policy="wait", emission_wait_timeout_ms=2000
    )
    drive(machine, recorder, clock, lambda t: LOUD if t == 1000 else QUIET, 1000, 1950)
    drive(machine, recorder, clock, lambda t: QUIET, 2000, 3950, chunks=False)
    assert previews == []
    assert machine.dropped_emissions == 0
    drive(machine, recorder, clock, lambda t: QUIET, 4000, 4000, chunks=False)
    assert previews == []
    assert machine.dropped_emissions == 1


def test_wait_policy_keeps_preview_before_complete():
    machine, recorder, clock, previews, completes = make_machine(
        emission_policy="wait", silence_duration_ms=100
    )
    order: list[str] = []
    machine.on_preview = lambda blob: order.append("preview")
    machine.on_complete = lambda blob: order.append("complete")
    drive(machine, recorder, clock, lambda t: LOUD if t == 1000 else QUIET, 1000, 1950)
    drive(machine, recorder, clock, lambda t: QUIET, 2000, 2150, chunks=False)
    assert len(machine.pending) == 2
    recorder.handle_data(b"late;")
    machine.resolve_pending(2200)
    assert order == ["preview", "complete"]


def test_max_event_caps_unbroken_speech():
    machine, recorder, clock, previews, completes = make_machine(max_event_ms=3000)
    drive(machine, recorder, clock, lambda t: LOUD, 1000, 4000)
    assert len(previews) == 1
    assert len(completes) == 1
    assert completes[0].window_start == 980
    assert completes[0].window_end == 4000
    assert machine.state is SessionState.IDLE

    drive(machine, recorder, clock, lambda t: LOUD, 4050, 4050)
    assert machine.state is SessionState.ABOVE_THRESHOLD_PENDING
    assert machine.audio_start_point == 4030


def test_idle_buffer_is_pruned():
    machine, recorder, clock, _, _ = make_machine()
    drive(machine, recorder, clock, lambda t: QUIET, 0, 10_000)
    assert len(recorder.chunks) <= 2
    assert len(recorder.headers) == 2
    assert recorder.chunks[-1].ended_at == 10_000


def test_active_event_keeps_chunks_from_start_point():
    machine, recorder, clock, _, _ = make_machine()
    drive(machine, recorder, clock, lambda t: LOUD, 1000, 5000)
    assert recorder.chunks[0].ended_at == 1000
    assert machine.retention_cutoff(5000) == 980


def test_reset_returns_to_initial_state():
    machine, recorder, clock, _, _ = make_machine(emission_policy="wait")
    drive(machine, recorder, clock, lambda t: LOUD, 1000, 2000, chunks=False)
    assert machine.pending
    machine.reset()
    assert machine.state is SessionState.IDLE
    assert machine.audio_start_point is None
    assert machine.pending == ()
    assert machine.events_started == 0
    assert machine.dropped_emissions == 0


@pytest.mark.parametrize("policy", ["drop", "wait"])
def test_callbacks_receive_blob_objects(policy):
    machine, recorder, clock, previews, completes = make_machine(emission_policy=policy)
    drive(machine, recorder, clock, lambda t: LOUD if t < 1500 else QUIET, 0, 3000)
    assert len(previews) == 1
    assert len(completes) == 1
    assert bytes(completes[0]) == completes[0].data
    assert len(completes[0]) > len(previews[0])
