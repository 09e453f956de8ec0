"""Session lifecycle: wires input, analyser, recorder and segmenter together."""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from voicegate.blob_assembler import AudioBlob
from voicegate.capture import ArecordInput, FfmpegContainerRecorder, parse_container_type
from voicegate.chunk_recorder import ContinuousChunkRecorder
from voicegate.conditioning import InputConditioner
from voicegate.config import SessionConfig
from voicegate.loudness import FrequencyAnalyser, LoudnessSampler
from voicegate.segmenter import SegmentationStateMachine, SessionState

log = logging.getLogger("session")


@dataclass
class SessionCallbacks:
    on_periodic_volume: Optional[Callable[[float], Any]] = None
    on_preview_clip: Optional[Callable[[AudioBlob], Any]] = None
    on_complete_clip: Optional[Callable[[AudioBlob], Any]] = None


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def default_analyser_factory(config: SessionConfig) -> FrequencyAnalyser:
    return FrequencyAnalyser(
        config.fft_size,
        smoothing_time_constant=config.smoothing_time_constant,
        min_decibels=config.min_decibels,
        max_decibels=config.max_decibels,
    )


class SessionController:
    """Owns one capture session at a time.

    ``start()`` acquires the recorder and the input, then runs a single
    scheduler task that calls :meth:`tick` every ``volume_check_interval_ms``.
    ``stop()`` releases everything and leaves the controller ready for
    another ``start()``.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        input_factory: Callable[..., Any] = ArecordInput,
        recorder_factory: Callable[..., Any] = FfmpegContainerRecorder,
        analyser_factory: Callable[[SessionConfig], Any] = default_analyser_factory,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.config = config if config is not None else SessionConfig.from_cfg()
        self._input_factory = input_factory
        self._recorder_factory = recorder_factory
        self._analyser_factory = analyser_factory
        self._clock = clock
        self._active = False
        self._accepting = False
        self._generation = 0
        self._callbacks = SessionCallbacks()
        self._input = None
        self._recorder = None
        self._analyser = None
        self._conditioner: InputConditioner | None = None
        self._sampler: LoudnessSampler | None = None
        self._chunks: ContinuousChunkRecorder | None = None
        self._machine: SegmentationStateMachine | None = None
        self._tick_task: asyncio.Task | None = None
        self._callback_tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def state(self) -> SessionState:
        if self._machine is None:
            return SessionState.IDLE
        return self._machine.state

    async def start(self, callbacks: SessionCallbacks | None = None) -> bool:
        """Acquire input and recorder and begin segmenting.

        Returns ``False`` when a session is already running. Acquisition
        failures propagate after everything acquired so far is released.
        """
        if self._active or self._accepting:
            log.warning("start() ignored: a session is already active")
            return False

        config = self.config
        parse_container_type(config.mime_type)
        self._callbacks = callbacks or SessionCallbacks()
        self._chunks = ContinuousChunkRecorder(self._clock, header_chunks=config.header_chunks)
        self._machine = SegmentationStateMachine(
            config,
            self._chunks,
            on_preview=self._deliver_preview,
            on_complete=self._deliver_complete,
        )
        self._conditioner = InputConditioner(
            config.sample_rate,
            noise_suppression=config.noise_suppression,
            auto_gain_control=config.auto_gain_control,
        )
        self._accepting = True
        try:
            self._analyser = self._analyser_factory(config)
            self._sampler = LoudnessSampler(self._analyser, on_volume=self._deliver_volume)
            self._recorder = self._recorder_factory(config, self._handle_chunk)
            await self._recorder.start()
            self._input = self._input_factory(config, self._handle_frame)
            await self._input.start()
        except Exception:
            log.error("Session start failed; releasing partially acquired resources")
            await self._release()
            raise

        self._active = True
        self._generation += 1
        self._tick_task = asyncio.create_task(self._run_scheduler(self._generation))
        log.info(
            "Session started (threshold=%.1f preview=%dms silence=%dms lead-in=%dms policy=%s)",
            config.loudness_threshold,
            config.preview_duration_ms,
            config.silence_duration_ms,
            config.pre_trigger_ms,
            config.emission_policy,
        )
        return True

    async def stop(self) -> None:
        """Stop the session; safe to call in any state and more than once."""
        if not self._active and not self._accepting:
            return
        self._active = False
        self._generation += 1
        await self._release()
        log.info("Session stopped")

    def tick(self) -> float | None:
        """Run one scheduler step: sample loudness and advance the segmenter."""
        if not self._active or self._machine is None or self._sampler is None:
            return None
        now = self._clock()
        loudness = self._sampler.sample()
        self._machine.observe(loudness, now)
        return loudness

    def snapshot(self) -> dict[str, Any]:
        machine = self._machine
        chunks = self._chunks
        return {
            "active": self._active,
            "state": self.state.value,
            "audio_start_point": machine.audio_start_point if machine else None,
            "chunk_count": len(chunks.chunks) if chunks else 0,
            "header_count": len(chunks.headers) if chunks else 0,
            "volume_samples": self._sampler.samples_taken if self._sampler else 0,
            "preview_clips": machine.preview_clips if machine else 0,
            "complete_clips": machine.complete_clips if machine else 0,
            "dropped_emissions": machine.dropped_emissions if machine else 0,
            "pending_emissions": len(machine.pending) if machine else 0,
        }

    async def _run_scheduler(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.volume_check_interval_ms / 1000.0
        next_at = loop.time()
        while self._active and generation == self._generation:
            try:
                self.tick()
            except Exception:
                log.exception("scheduler tick failed")
            next_at += interval
            delay = next_at - loop.time()
            if delay < 0:
                # Skip missed ticks instead of bursting to catch up.
                next_at = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    def _handle_frame(self, frame: bytes) -> None:
        if not self._accepting:
            return
        if self._conditioner is not None:
            frame = self._conditioner.process(frame)
        push = getattr(self._analyser, "push_pcm", None)
        if push is not None:
            push(frame)
        if self._recorder is not None:
            self._recorder.feed(frame)

    def _handle_chunk(self, payload: bytes) -> None:
        if not self._accepting or self._chunks is None:
            return
        self._chunks.handle_data(payload)
        if self._active and self._machine is not None:
            self._machine.resolve_pending(self._clock())

    def _deliver_volume(self, level: float) -> None:
        self._dispatch("on_periodic_volume", self._callbacks.on_periodic_volume, level)

    def _deliver_preview(self, blob: AudioBlob) -> None:
        self._dispatch("on_preview_clip", self._callbacks.on_preview_clip, blob)

    def _deliver_complete(self, blob: AudioBlob) -> None:
        self._dispatch("on_complete_clip", self._callbacks.on_complete_clip, blob)

    def _dispatch(self, name: str, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            log.exception("%s callback failed", name)
            return
        if not inspect.isawaitable(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("%s returned an awaitable but no event loop is running", name)
            if inspect.iscoroutine(result):
                result.close()
            return
        task = asyncio.ensure_future(result, loop=loop)
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_finished)

    def _callback_finished(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("async callback failed: %r", exc, exc_info=exc)

    async def _release(self) -> None:
        self._accepting = False
        task, self._tick_task = self._tick_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        source, self._input = self._input, None
        if source is not None:
            try:
                await source.stop()
            except Exception as exc:
                log.warning("input stop failed: %r", exc)
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            try:
                await recorder.stop()
            except Exception as exc:
                log.warning("recorder stop failed: %r", exc)

        for pending in list(self._callback_tasks):
            pending.cancel()
        self._callback_tasks.clear()

        if self._chunks is not None:
            self._chunks.clear()
        if self._machine is not None:
            self._machine.reset()
        reset = getattr(self._analyser, "reset", None)
        if reset is not None:
            reset()
        self._analyser = None
        self._sampler = None
        self._conditioner = None
        self._chunks = None
        self._machine = None
        self._callbacks = SessionCallbacks()


__all__ = [
    "SessionCallbacks",
    "SessionController",
    "default_analyser_factory",
    "monotonic_ms",
]
