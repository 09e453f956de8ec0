"""Time-stamped chunk buffer fed by one long-lived container recorder."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

log = logging.getLogger("chunk_recorder")


@dataclass(frozen=True, slots=True)
class ChunkRecord:
    """Opaque container bytes plus the clock time their collection ended."""

    payload: bytes
    ended_at: float

    @property
    def size(self) -> int:
        return len(self.payload)


class ContinuousChunkRecorder:
    """Collects recorder output without ever restarting the recorder itself.

    Every non-empty chunk is stamped with ``clock()`` on arrival and appended
    to the buffer. The first ``header_chunks`` chunks of the session are also
    kept in a separate header set that survives buffer restarts, because the
    container only writes its decode metadata once at the start of the stream.
    """

    def __init__(self, clock: Callable[[], float], *, header_chunks: int = 2) -> None:
        if header_chunks < 0:
            raise ValueError("header_chunks must not be negative")
        self._clock = clock
        self.header_chunk_limit = int(header_chunks)
        self._chunks: list[ChunkRecord] = []
        self._headers: list[ChunkRecord] = []
        self._headers_frozen = header_chunks == 0
        self.total_chunks = 0
        self.total_bytes = 0
        self.restarts = 0

    @property
    def chunks(self) -> tuple[ChunkRecord, ...]:
        """Snapshot of the buffer; later arrivals never change a snapshot."""
        return tuple(self._chunks)

    @property
    def headers(self) -> tuple[ChunkRecord, ...]:
        return tuple(self._headers)

    @property
    def last_chunk_at(self) -> float | None:
        if not self._chunks:
            return None
        return self._chunks[-1].ended_at

    def handle_data(self, payload: bytes) -> ChunkRecord | None:
        """Recorder data callback; returns the stored record."""
        if not payload:
            return None
        ended_at = float(self._clock())
        if self._chunks and ended_at <= self._chunks[-1].ended_at:
            # Keep end times strictly increasing even on a coarse clock.
            ended_at = self._chunks[-1].ended_at + 1e-3
        record = ChunkRecord(bytes(payload), ended_at)
        if not self._headers_frozen:
            self._headers.append(record)
            if len(self._headers) >= self.header_chunk_limit:
                self._headers_frozen = True
                log.debug("captured %d header chunk(s)", len(self._headers))
        self._chunks.append(record)
        self.total_chunks += 1
        self.total_bytes += record.size
        return record

    def discard_before(self, cutoff: float) -> int:
        """Drop buffered chunks that ended before ``cutoff``; headers stay."""
        keep_from = 0
        for keep_from, record in enumerate(self._chunks):
            if record.ended_at >= cutoff:
                break
        else:
            keep_from = len(self._chunks)
        if keep_from:
            # Rebind instead of mutating so outstanding snapshots stay valid.
            self._chunks = self._chunks[keep_from:]
        return keep_from

    def restart_buffer(self, retain_from: float | None = None) -> int:
        """Start a fresh chunk buffer for the next event, keeping the headers."""
        self.restarts += 1
        if retain_from is None:
            dropped = len(self._chunks)
            self._chunks = []
        else:
            dropped = self.discard_before(retain_from)
        log.debug("chunk buffer restarted (dropped=%d kept=%d)", dropped, len(self._chunks))
        return dropped

    def clear(self) -> None:
        self._chunks = []
        self._headers = []
        self._headers_frozen = self.header_chunk_limit == 0
        self.total_chunks = 0
        self.total_bytes = 0
        self.restarts = 0


__all__ = ["ChunkRecord", "ContinuousChunkRecorder"]
