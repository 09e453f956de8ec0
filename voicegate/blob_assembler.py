"""Assemble standalone, playable clips from slices of the chunk buffer."""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from voicegate.chunk_recorder import ChunkRecord


@dataclass(frozen=True, slots=True)
class AudioBlob:
    """One deliverable clip: header chunks followed by the selected chunks."""

    data: bytes
    mime_type: str
    window_start: float
    window_end: float | None
    header_count: int
    chunk_count: int

    @property
    def size(self) -> int:
        return len(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def __bytes__(self) -> bytes:
        return self.data


def select_chunks(
    chunks: Iterable[ChunkRecord],
    window_start: float,
    window_end: float | None = None,
    *,
    exclude: Iterable[ChunkRecord] = (),
) -> list[ChunkRecord]:
    """Return chunks whose end time falls in the window, in buffer order.

    ``window_end=None`` leaves the upper end open ("until now"). Records in
    ``exclude`` (the header set) are skipped so they are never repeated after
    the headers that get prepended anyway.
    """
    skip = {id(record) for record in exclude}
    selected: list[ChunkRecord] = []
    for record in chunks:
        if id(record) in skip:
            continue
        if record.ended_at < window_start:
            continue
        if window_end is not None and record.ended_at > window_end:
            continue
        selected.append(record)
    return selected


def assemble_blob(
    headers: Sequence[ChunkRecord],
    chunks: Sequence[ChunkRecord],
    mime_type: str,
    window_start: float,
    window_end: float | None = None,
    *,
    open_ended: bool = False,
) -> AudioBlob | None:
    """Build ``headers ++ selected`` for the window; ``None`` when nothing matches.

    With ``open_ended`` every chunk ending at or after ``window_start`` is
    taken and ``window_end`` is only reported on the blob. Neither ``headers``
    nor ``chunks`` is modified; callers hand in snapshots.
    """
    upper = None if open_ended else window_end
    selected = select_chunks(chunks, window_start, upper, exclude=headers)
    if not selected:
        return None
    data = b"".join([record.payload for record in headers] + [record.payload for record in selected])
    return AudioBlob(
        data=data,
        mime_type=mime_type,
        window_start=window_start,
        window_end=window_end,
        header_count=len(headers),
        chunk_count=len(selected),
    )


__all__ = ["AudioBlob", "assemble_blob", "select_chunks"]
