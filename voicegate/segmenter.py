"""Loudness-threshold segmentation of a continuous chunk stream.

A threshold crossing opens an event whose audio starts ``pre_trigger_ms``
before the crossing. Once ``preview_duration_ms`` has elapsed since the
crossing, a fixed-length preview clip is emitted. The event then stays open
until loudness has stayed below the threshold for ``silence_duration_ms``,
at which point the complete clip (event start until now) is emitted and the
chunk buffer is restarted for the next event.
"""
from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass

from voicegate.blob_assembler import AudioBlob, assemble_blob
from voicegate.chunk_recorder import ContinuousChunkRecorder
from voicegate.config import SessionConfig

log = logging.getLogger("segmenter")

PREVIEW = "preview"
COMPLETE = "complete"


class SessionState(enum.Enum):
    IDLE = "idle"
    ABOVE_THRESHOLD_PENDING = "above_threshold_pending"
    AWAITING_SILENCE = "awaiting_silence"


@dataclass(slots=True)
class PendingEmission:
    """A clip request waiting for the recorder to cover its window."""

    kind: str
    window_start: float
    window_end: float
    requested_at: float
    open_ended: bool


class SegmentationStateMachine:
    """Decides threshold crossings and silence, and drives clip emission.

    Only one event is in flight at a time: crossings are ignored unless the
    state is ``IDLE``. All times are milliseconds on the session clock, the
    same clock that stamps chunk records.
    """

    def __init__(
        self,
        config: SessionConfig,
        recorder: ContinuousChunkRecorder,
        *,
        on_preview: Callable[[AudioBlob], None] | None = None,
        on_complete: Callable[[AudioBlob], None] | None = None,
    ) -> None:
        self.config = config
        self.recorder = recorder
        self.on_preview = on_preview
        self.on_complete = on_complete
        self.state = SessionState.IDLE
        self.audio_start_point: float | None = None
        self.triggered_at: float | None = None
        self.silence_started_at: float | None = None
        self._pending: list[PendingEmission] = []
        self.events_started = 0
        self.preview_clips = 0
        self.complete_clips = 0
        self.dropped_emissions = 0

    @property
    def pending(self) -> tuple[PendingEmission, ...]:
        return tuple(self._pending)

    def observe(self, loudness: float, now: float) -> SessionState:
        """Feed one loudness sample taken at ``now``."""
        self.resolve_pending(now)
        loud = loudness >= self.config.loudness_threshold

        if self.state is SessionState.IDLE:
            if loud:
                self._begin_event(loudness, now)
        elif self.state is SessionState.ABOVE_THRESHOLD_PENDING:
            # Time-bounded: a quiet spell here still yields a full-length preview.
            if now - self.triggered_at >= self.config.preview_duration_ms:
                self._enter_awaiting_silence(now)
        elif self.state is SessionState.AWAITING_SILENCE:
            if loud:
                self.silence_started_at = None
            else:
                if self.silence_started_at is None:
                    self.silence_started_at = now
                if now - self.silence_started_at >= self.config.silence_duration_ms:
                    self._complete_event(now, reason=f"silence for {self.config.silence_duration_ms}ms")

        if (
            self.state is not SessionState.IDLE
            and self.config.max_event_ms is not None
            and now - self.audio_start_point >= self.config.max_event_ms
        ):
            if self.state is SessionState.ABOVE_THRESHOLD_PENDING:
                self._enter_awaiting_silence(now)
            self._complete_event(now, reason=f"max event length {self.config.max_event_ms}ms")

        self.recorder.discard_before(self.retention_cutoff(now))
        return self.state

    def retention_cutoff(self, now: float) -> float:
        """Oldest chunk end time any pending or future window can still reach."""
        candidates = [now - self.config.pre_trigger_ms - self.config.time_slice_ms]
        if self.audio_start_point is not None:
            candidates.append(self.audio_start_point)
        candidates.extend(pending.window_start for pending in self._pending)
        return min(candidates)

    def resolve_pending(self, now: float) -> None:
        """Emit deferred clips whose windows are now covered, oldest first."""
        while self._pending:
            pending = self._pending[0]
            if self._covered(pending.window_end):
                self._pending.pop(0)
                self._emit(pending)
                continue
            if now - pending.requested_at >= self.config.emission_wait_timeout_ms:
                self._pending.pop(0)
                self.dropped_emissions += 1
                log.debug(
                    "%s clip dropped: window not covered after %dms",
                    pending.kind,
                    self.config.emission_wait_timeout_ms,
                )
                continue
            break

    def reset(self) -> None:
        self.state = SessionState.IDLE
        self.audio_start_point = None
        self.triggered_at = None
        self.silence_started_at = None
        self._pending.clear()
        self.events_started = 0
        self.preview_clips = 0
        self.complete_clips = 0
        self.dropped_emissions = 0

    def _begin_event(self, loudness: float, now: float) -> None:
        self.state = SessionState.ABOVE_THRESHOLD_PENDING
        self.triggered_at = now
        self.audio_start_point = now - self.config.pre_trigger_ms
        self.silence_started_at = None
        self.events_started += 1
        log.info(
            "Event started (loudness=%.1f threshold=%.1f start=%.0f)",
            loudness,
            self.config.loudness_threshold,
            self.audio_start_point,
        )

    def _enter_awaiting_silence(self, now: float) -> None:
        start = self.audio_start_point
        self._request(PREVIEW, start, start + self.config.preview_duration_ms, now, open_ended=False)
        self.state = SessionState.AWAITING_SILENCE
        self.silence_started_at = None

    def _complete_event(self, now: float, *, reason: str) -> None:
        start = self.audio_start_point
        log.info("Event finished after %.0fms (%s)", now - start, reason)
        self._request(COMPLETE, start, now, now, open_ended=True)
        self.state = SessionState.IDLE
        self.audio_start_point = None
        self.triggered_at = None
        self.silence_started_at = None
        self.recorder.restart_buffer(self.retention_cutoff(now))

    def _request(
        self,
        kind: str,
        window_start: float,
        window_end: float,
        now: float,
        *,
        open_ended: bool,
    ) -> None:
        pending = PendingEmission(kind, window_start, window_end, now, open_ended)
        if self.config.emission_policy == "wait":
            if self._pending or not self._covered(window_end):
                log.debug("%s clip deferred until %.0f is recorded", kind, window_end)
                self._pending.append(pending)
                return
        elif not self._settled(window_end):
            self.dropped_emissions += 1
            log.debug(
                "%s clip skipped: [%.0f, %.0f] not recorded yet (last chunk %s)",
                kind,
                window_start,
                window_end,
                self.recorder.last_chunk_at,
            )
            return
        self._emit(pending)

    def _covered(self, window_end: float) -> bool:
        last = self.recorder.last_chunk_at
        return last is not None and last >= window_end

    def _settled(self, window_end: float) -> bool:
        # Chunks land once per time slice, so the next one ends past window_end
        # and the selection for this window can no longer grow.
        last = self.recorder.last_chunk_at
        return last is not None and last > window_end - self.config.time_slice_ms

    def _emit(self, pending: PendingEmission) -> None:
        blob = assemble_blob(
            self.recorder.headers,
            self.recorder.chunks,
            self.config.mime_type,
            pending.window_start,
            pending.window_end,
            open_ended=pending.open_ended,
        )
        if blob is None:
            self.dropped_emissions += 1
            log.debug(
                "%s clip skipped: no chunks in [%.0f, %.0f]",
                pending.kind,
                pending.window_start,
                pending.window_end,
            )
            return
        if pending.kind == PREVIEW:
            self.preview_clips += 1
            callback = self.on_preview
        else:
            self.complete_clips += 1
            callback = self.on_complete
        log.info(
            "%s clip emitted (%d bytes, %d chunk(s))",
            pending.kind.capitalize(),
            blob.size,
            blob.chunk_count,
        )
        if callback is not None:
            callback(blob)


__all__ = [
    "COMPLETE",
    "PREVIEW",
    "PendingEmission",
    "SegmentationStateMachine",
    "SessionState",
]
