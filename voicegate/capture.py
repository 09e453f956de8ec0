"""Subprocess-backed audio input and container recorder.

``ArecordInput`` captures raw PCM from ALSA and hands mono frames to a
callback. ``FfmpegContainerRecorder`` keeps one ffmpeg process alive for the
whole session, feeds it PCM on stdin and delivers whatever container bytes
it produced once per time slice, the way a browser media recorder fires its
data callback.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass

from voicegate.audio_utils import downmix_to_mono
from voicegate.config import SessionConfig
from voicegate.ffmpeg_io import container_output_args, pcm_pipe_input_args

log = logging.getLogger("capture")

READ_SIZE = 65536
MAX_PENDING_WRITE_BYTES = 1 << 20
STOP_TIMEOUT_SEC = 2.0


class AcquisitionError(RuntimeError):
    """The audio input or recorder could not be acquired."""


class UnsupportedContainerError(AcquisitionError):
    """The configured MIME type has no matching muxer/codec."""


@dataclass(frozen=True, slots=True)
class ContainerFormat:
    mime_type: str
    codec_name: str
    muxer: str
    encoder: str
    extension: str


_CONTAINERS = {
    ("audio/webm", "opus"): ContainerFormat("audio/webm", "opus", "webm", "libopus", ".webm"),
    ("audio/ogg", "opus"): ContainerFormat("audio/ogg", "opus", "ogg", "libopus", ".ogg"),
    ("audio/mpeg", "mp3"): ContainerFormat("audio/mpeg", "mp3", "mp3", "libmp3lame", ".mp3"),
}
_DEFAULT_CODECS = {"audio/webm": "opus", "audio/ogg": "opus", "audio/mpeg": "mp3"}


def parse_container_type(mime_type: str) -> ContainerFormat:
    """Resolve a MIME string such as ``audio/webm;codecs=opus``."""
    if not mime_type or not mime_type.strip():
        raise UnsupportedContainerError("empty container type")
    parts = [part.strip() for part in mime_type.split(";")]
    base = parts[0].lower()
    codec = None
    for param in parts[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "codecs":
            codec = value.strip().strip("\"'").split(",")[0].strip().lower()
    if not codec:
        codec = _DEFAULT_CODECS.get(base)
    container = _CONTAINERS.get((base, codec))
    if container is None:
        raise UnsupportedContainerError(f"unsupported container type: {mime_type!r}")
    return container


async def _spawn(command: list[str], *, stdin: bool, startup_grace: float, name: str):
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise AcquisitionError(f"failed to start {name}: {exc}") from exc

    # A missing device or bad argument makes the tool exit right away.
    if startup_grace > 0:
        try:
            await asyncio.wait_for(proc.wait(), timeout=startup_grace)
        except asyncio.TimeoutError:
            return proc
        stderr = b""
        if proc.stderr is not None:
            stderr = await proc.stderr.read()
        message = stderr.decode("utf-8", errors="replace").strip()
        raise AcquisitionError(
            f"{name} exited during startup (rc={proc.returncode}): {message or 'no output'}"
        )
    return proc


async def _terminate(proc: asyncio.subprocess.Process | None, name: str) -> int | None:
    if proc is None:
        return None
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=STOP_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            log.warning("%s did not exit after SIGTERM; killing", name)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
    return proc.returncode


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class ArecordInput:
    """Reads s16le frames from ``arecord`` and passes mono frames on."""

    def __init__(
        self,
        config: SessionConfig,
        on_frame: Callable[[bytes], None],
        *,
        command: list[str] | None = None,
        startup_grace: float = 0.2,
    ) -> None:
        self.config = config
        self.on_frame = on_frame
        self.command = command
        self.startup_grace = startup_grace
        self._process: asyncio.subprocess.Process | None = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.frames_read = 0

    def build_command(self) -> list[str]:
        cfg = self.config
        return [
            "arecord",
            "-D",
            cfg.device,
            "-c",
            str(cfg.channels),
            "-f",
            "S16_LE",
            "-r",
            str(cfg.sample_rate),
            "--buffer-size",
            str(cfg.sample_rate),
            "--period-size",
            str(cfg.sample_rate * cfg.frame_ms // 1000),
            "-t",
            "raw",
            "-",
        ]

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        if self._process is not None:
            raise AcquisitionError("input already started")
        if self.config.echo_cancellation:
            log.warning("echo_cancellation requested but raw capture has no far-end reference; ignoring")
        self._stopping = False
        command = self.command or self.build_command()
        self._process = await _spawn(
            command, stdin=False, startup_grace=self.startup_grace, name="arecord"
        )
        self._task = asyncio.create_task(self._read_loop())
        log.info("Input started (device=%s channels=%d)", self.config.device, self.config.channels)

    async def _read_loop(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdout is not None
        channels = self.config.channels
        stride = self.config.frame_bytes * channels
        while True:
            try:
                data = await proc.stdout.readexactly(stride)
            except asyncio.IncompleteReadError as exc:
                if exc.partial:
                    self._deliver(exc.partial, channels)
                break
            self._deliver(data, channels)
        rc = await proc.wait()
        if not self._stopping:
            log.warning("arecord exited unexpectedly (rc=%s)", rc)

    def _deliver(self, data: bytes, channels: int) -> None:
        frame = downmix_to_mono(data, channels) if channels > 1 else data
        if not frame:
            return
        self.frames_read += 1
        try:
            self.on_frame(frame)
        except Exception:
            log.exception("frame handler failed")

    async def stop(self) -> None:
        self._stopping = True
        proc, self._process = self._process, None
        await _terminate(proc, "arecord")
        task, self._task = self._task, None
        await _cancel(task)


class FfmpegContainerRecorder:
    """One long-lived ffmpeg encoder emitting container chunks per time slice."""

    def __init__(
        self,
        config: SessionConfig,
        on_data: Callable[[bytes], None],
        *,
        command: list[str] | None = None,
        startup_grace: float = 0.2,
    ) -> None:
        self.config = config
        self.on_data = on_data
        self.container = parse_container_type(config.mime_type)
        self.command = command
        self.startup_grace = startup_grace
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._flusher: asyncio.Task | None = None
        self._pending = bytearray()
        self._stopping = False
        self.bytes_fed = 0
        self.bytes_out = 0
        self.dropped_frames = 0
        self.chunks_emitted = 0

    def build_command(self) -> list[str]:
        cfg = self.config
        return [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            *pcm_pipe_input_args(cfg.sample_rate, 1),
            *container_output_args(self.container.muxer, self.container.encoder, cfg.bitrate),
        ]

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        if self._process is not None:
            raise AcquisitionError("recorder already started")
        self._stopping = False
        command = self.command or self.build_command()
        self._process = await _spawn(
            command, stdin=True, startup_grace=self.startup_grace, name="ffmpeg"
        )
        self._reader = asyncio.create_task(self._read_loop())
        self._flusher = asyncio.create_task(self._flush_loop())
        log.info(
            "Recorder started (%s, %s, slice=%dms)",
            self.container.mime_type,
            self.config.bitrate,
            self.config.time_slice_ms,
        )

    def feed(self, pcm: bytes) -> bool:
        """Queue PCM for the encoder; returns False when the frame was dropped."""
        proc = self._process
        if not pcm or proc is None or proc.returncode is not None or proc.stdin is None:
            return False
        if proc.stdin.is_closing():
            return False
        if proc.stdin.transport.get_write_buffer_size() > MAX_PENDING_WRITE_BYTES:
            self.dropped_frames += 1
            return False
        proc.stdin.write(pcm)
        self.bytes_fed += len(pcm)
        return True

    async def _read_loop(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdout is not None
        while True:
            data = await proc.stdout.read(READ_SIZE)
            if not data:
                break
            self._pending.extend(data)
            self.bytes_out += len(data)
        rc = await proc.wait()
        if not self._stopping:
            stderr = b""
            if proc.stderr is not None:
                stderr = await proc.stderr.read()
            log.warning(
                "ffmpeg exited unexpectedly (rc=%s): %s",
                rc,
                stderr.decode("utf-8", errors="replace").strip(),
            )

    async def _flush_loop(self) -> None:
        interval = self.config.time_slice_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.flush()

    def flush(self) -> int:
        """Hand everything muxed since the last slice to ``on_data``."""
        if not self._pending:
            return 0
        payload = bytes(self._pending)
        self._pending.clear()
        self.chunks_emitted += 1
        try:
            self.on_data(payload)
        except Exception:
            log.exception("chunk handler failed")
        return len(payload)

    async def stop(self) -> None:
        self._stopping = True
        await _cancel(self._flusher)
        self._flusher = None
        proc, self._process = self._process, None
        if proc is not None and proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=STOP_TIMEOUT_SEC)
        await _terminate(proc, "ffmpeg")
        reader, self._reader = self._reader, None
        await _cancel(reader)
        self._pending.clear()
        log.info(
            "Recorder stopped (fed=%d bytes out=%d bytes dropped=%d)",
            self.bytes_fed,
            self.bytes_out,
            self.dropped_frames,
        )


__all__ = [
    "AcquisitionError",
    "ArecordInput",
    "ContainerFormat",
    "FfmpegContainerRecorder",
    "UnsupportedContainerError",
    "parse_container_type",
]
