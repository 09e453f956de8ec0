#!/usr/bin/env python3
"""
Live runner: capture from ALSA, segment speech and write clips to disk.

    python -m voicegate.live_session [--duration SEC] [--print-config]

Preview and complete clips land in ``paths.clips_dir`` as
``<HH-MM-SS>_<kind>_<counter><ext>``. SIGINT/SIGTERM stop the session cleanly.
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

import yaml

from voicegate.blob_assembler import AudioBlob
from voicegate.capture import AcquisitionError, parse_container_type
from voicegate.config import SessionConfig, active_config_path, get_cfg, search_paths
from voicegate.display import meter_line
from voicegate.session import SessionCallbacks, SessionController

log = logging.getLogger("live_session")


def configure_logging(dev_mode: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if dev_mode else logging.INFO,
        format="[%(name)s] %(message)s",
        stream=sys.stdout,
        force=True,
    )


class ClipWriter:
    """Writes emitted blobs to numbered files in one directory."""

    def __init__(self, directory: Path, extension: str) -> None:
        self.directory = Path(directory)
        self.extension = extension
        self.counts: dict[str, int] = {"preview": 0, "complete": 0}
        self.paths: list[Path] = []

    def write(self, kind: str, blob: AudioBlob) -> Awaitable[Path]:
        """Name the clip now and write it from a worker thread."""
        self.counts[kind] = self.counts.get(kind, 0) + 1
        stamp = time.strftime("%H-%M-%S")
        path = self.directory / f"{stamp}_{kind}_{self.counts[kind]}{self.extension}"
        self.paths.append(path)
        return asyncio.to_thread(self._store, path, blob)

    def _store(self, path: Path, blob: AudioBlob) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(blob.data)
        log.info("wrote %s (%d bytes)", path.name, blob.size)
        return path

    def preview(self, blob: AudioBlob) -> Awaitable[Path]:
        return self.write("preview", blob)

    def complete(self, blob: AudioBlob) -> Awaitable[Path]:
        return self.write("complete", blob)


class VolumeMeter:
    """Prints one meter line per second in dev mode."""

    def __init__(
        self,
        controller: SessionController,
        *,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        out: Callable[[str], Any] | None = None,
    ) -> None:
        self.controller = controller
        self.interval = interval
        self.clock = clock
        self.out = out or (lambda line: print(line, flush=True))
        self._last = float("-inf")

    def update(self, level: float) -> None:
        now = self.clock()
        if now - self._last < self.interval:
            return
        self._last = now
        config = self.controller.config
        self.out(meter_line(level, config.loudness_threshold, self.controller.state.value))


async def run(
    config: SessionConfig,
    clips_dir: Path,
    *,
    duration: float = 0.0,
    dev_mode: bool = False,
    controller: SessionController | None = None,
) -> int:
    try:
        extension = parse_container_type(config.mime_type).extension
    except AcquisitionError as exc:
        log.error("failed to start session: %s", exc)
        return 2
    writer = ClipWriter(clips_dir, extension)
    controller = controller or SessionController(config)
    meter = VolumeMeter(controller) if dev_mode else None
    callbacks = SessionCallbacks(
        on_periodic_volume=meter.update if meter else None,
        on_preview_clip=writer.preview,
        on_complete_clip=writer.complete,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)

    try:
        try:
            await controller.start(callbacks)
        except AcquisitionError as exc:
            log.error("failed to start session: %s", exc)
            return 2
        try:
            if duration > 0:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=duration)
            else:
                await stop_event.wait()
        finally:
            await controller.stop()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    log.info(
        "wrote %d preview and %d complete clip(s) to %s",
        writer.counts["preview"],
        writer.counts["complete"],
        writer.directory,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Voice-activity segmentation of a live ALSA input.")
    parser.add_argument("--device", default=None, help="ALSA device (e.g., hw:CARD=Device,DEV=0)")
    parser.add_argument("--threshold", type=float, default=None, help="Loudness threshold on the 0..100 scale")
    parser.add_argument("--clips-dir", default=None, help="Directory for written clips")
    parser.add_argument("--duration", type=float, default=0.0, help="Optional run duration seconds (0 = indefinite)")
    parser.add_argument("--dev", action="store_true", help="Verbose logging and a once-per-second meter line")
    parser.add_argument("--print-config", action="store_true", help="Print the effective configuration and exit")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = get_cfg()

    if args.print_config:
        source = active_config_path()
        print(f"# config source: {source if source else 'defaults'}")
        for path in search_paths():
            print(f"# searched: {path}")
        print(yaml.safe_dump(cfg, sort_keys=False), end="")
        return 0

    dev_mode = args.dev or bool(cfg.get("logging", {}).get("dev_mode", False))
    configure_logging(dev_mode)

    overrides: dict[str, Any] = {}
    if args.device:
        overrides["device"] = args.device
    if args.threshold is not None:
        overrides["loudness_threshold"] = args.threshold
    try:
        config = SessionConfig.from_cfg(cfg, **overrides)
    except ValueError as exc:
        log.error("invalid configuration: %s", exc)
        return 2

    clips_dir = Path(args.clips_dir or cfg.get("paths", {}).get("clips_dir", "clips"))
    try:
        return asyncio.run(run(config, clips_dir, duration=args.duration, dev_mode=dev_mode))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
