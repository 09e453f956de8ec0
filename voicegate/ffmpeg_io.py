"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

DEFAULT_THREAD_QUEUE_SIZE = 8192
DEFAULT_SAMPLE_FORMAT = "s16le"


def pcm_pipe_input_args(
    sample_rate: int,
    channels: int,
    *,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
    sample_format: str = DEFAULT_SAMPLE_FORMAT,
) -> list[str]:
    """Return input arguments for piping PCM frames into ffmpeg.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    ``-thread_queue_size`` always sits ahead of the pipe it targets.
    """

    return [
        "-f",
        sample_format,
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-thread_queue_size",
        str(queue_size),
        "-i",
        "pipe:0",
    ]


def container_output_args(muxer: str, codec: str, bitrate: str) -> list[str]:
    """Return output arguments for a container stream written to stdout.

    Packets are flushed as soon as they are muxed so the reader sees data at
    roughly the encoder's frame rate instead of in large buffered bursts.
    """

    args = ["-c:a", codec, "-b:a", str(bitrate)]
    if codec == "libopus":
        args += ["-application", "audio", "-frame_duration", "20"]
    if muxer == "webm":
        args += ["-live", "1"]
    args += ["-flush_packets", "1", "-f", muxer, "pipe:1"]
    return args


__all__ = [
    "DEFAULT_SAMPLE_FORMAT",
    "DEFAULT_THREAD_QUEUE_SIZE",
    "container_output_args",
    "pcm_pipe_input_args",
]
