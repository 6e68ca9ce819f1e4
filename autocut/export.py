"""
Export pipeline.

Walks a snapshot of the timeline in order, builds a fresh export-bound handle
for every sprite (cloning and filter-wrapping the source when the sprite has
filters), registers the handles with a compositor and collects its output
stream. The timeline itself is only read.
"""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .errors import AutoCutError, DecodeFailure, EmptyTimeline, EncodeFailure, ExportCancelled
from .filters import describe_filter_stack, filter_stack, has_active_filters
from .media import EXPORT, Compositor, FilteredSource, MediaSource, SpriteHandle
from .model import ExportSettings, Sprite
from .timeline import total_duration

log = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]  # percent, 0 - 100

# First half of the bar covers sprite registration, the rest the encode stream.
SPRITE_PHASE_PERCENT = 50.0
STREAM_PHASE_PERCENT = 49.0
STREAM_CHUNKS_FOR_FULL_PHASE = 100


@dataclass(frozen=True)
class ExportResult:
    data: bytes
    chunk_count: int
    duration: int  # microseconds
    width: int
    height: int
    format: str

    @property
    def size(self) -> int:
        return len(self.data)


class ProgressReporter:
    """Monotonic percent reporting, held below 100 until the export completes."""

    def __init__(self, on_progress: Optional[ProgressCallback] = None) -> None:
        self._cb = on_progress
        self.percent = 0.0

    def report(self, percent: float, final: bool = False) -> None:
        ceiling = 100.0 if final else 99.0
        p = max(self.percent, min(ceiling, float(percent)))
        self.percent = p
        if self._cb is not None:
            self._cb(p)


def sprite_phase_progress(processed: int, total: int) -> float:
    if total <= 0:
        return SPRITE_PHASE_PERCENT
    return processed / float(total) * SPRITE_PHASE_PERCENT


def stream_phase_progress(chunk_count: int) -> float:
    frac = min(chunk_count / float(STREAM_CHUNKS_FOR_FULL_PHASE), 1.0)
    return SPRITE_PHASE_PERCENT + frac * STREAM_PHASE_PERCENT


async def clone_source(source: MediaSource) -> MediaSource:
    try:
        return await source.clone()
    except AutoCutError:
        raise
    except Exception as exc:
        raise DecodeFailure(f"Failed to clone source: {exc}") from exc


async def build_export_handle(sprite: Sprite) -> SpriteHandle:
    """
    Create a new export-bound handle for `sprite`.

    Never returns the sprite's own preview handle. Filtered sprites get a
    cloned source wrapped in a FilteredSource so the shared material source
    is left untouched.
    """
    source: MediaSource = sprite.material.source
    if has_active_filters(sprite.filters):
        started = time.perf_counter()
        clone = await clone_source(source)
        log.info("Cloned source for filtered sprite %s in %.2f ms", sprite.id, (time.perf_counter() - started) * 1000.0)
        source = FilteredSource(clone, sprite.filters)
        log.debug("Filter interceptor: %s", describe_filter_stack(filter_stack(sprite.filters)))
    return SpriteHandle(
        source,
        role=EXPORT,
        offset=sprite.source_offset,
        duration=sprite.duration,
        opacity=sprite.opacity,
        playback_rate=sprite.playback_rate,
    )


async def export_timeline(
    sprites: Sequence[Sprite],
    settings: ExportSettings,
    compositor_factory: Callable[[], Compositor],
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> ExportResult:
    """
    Render `sprites` through a compositor and return the encoded bytes.

    Raises:
        EmptyTimeline: no sprites
        DecodeFailure: a source could not be cloned or decoded
        EncodeFailure: the compositor or its output stream failed
        ExportCancelled: `should_cancel` returned True; partial output is dropped
    """
    # Snapshot so edits made while awaiting cannot reorder the export.
    snapshot: List[Sprite] = list(sprites)
    if not snapshot:
        raise EmptyTimeline("No clips to export")

    def _check_cancel() -> None:
        if should_cancel is not None and should_cancel():
            raise ExportCancelled()

    progress = ProgressReporter(on_progress)
    width, height = settings.resolve_size(snapshot[0].material)
    duration = total_duration(snapshot)
    log.info(
        "[EXPORT] %d sprites, %dx%d @ %d fps, %d bps, %.2f s",
        len(snapshot),
        width,
        height,
        settings.fps,
        settings.bitrate,
        duration / 1_000_000,
    )

    compositor = compositor_factory()
    try:
        try:
            compositor.configure(width, height, settings.fps, settings.bitrate)
        except AutoCutError:
            raise
        except Exception as exc:
            raise EncodeFailure(f"Failed to configure compositor: {exc}") from exc

        for i, sprite in enumerate(snapshot):
            _check_cancel()
            handle = await build_export_handle(sprite)
            log.info(
                "[EXPORT] Adding sprite %d/%d: offset=%d duration=%d filtered=%s",
                i + 1,
                len(snapshot),
                sprite.source_offset,
                sprite.duration,
                isinstance(handle.source, FilteredSource),
            )
            try:
                await compositor.register(handle, i)
            except AutoCutError:
                raise
            except Exception as exc:
                raise EncodeFailure(f"Failed to add sprite {i + 1}: {exc}") from exc
            progress.report(sprite_phase_progress(i + 1, len(snapshot)))

        _check_cancel()
        chunks: List[bytes] = []
        started = time.perf_counter()
        try:
            async with contextlib.aclosing(compositor.output_stream()) as stream:
                async for chunk in stream:
                    if not chunk:
                        continue
                    _check_cancel()
                    chunks.append(bytes(chunk))
                    progress.report(stream_phase_progress(len(chunks)))
                    if len(chunks) <= 10:
                        log.debug("[EXPORT] Chunk %d: %d bytes", len(chunks), len(chunk))
        except AutoCutError:
            raise
        except Exception as exc:
            raise EncodeFailure(f"Output stream failed: {exc}") from exc

        data = b"".join(chunks)
        log.info(
            "[EXPORT] Stream complete: %d chunks, %d bytes in %.2f ms",
            len(chunks),
            len(data),
            (time.perf_counter() - started) * 1000.0,
        )
        progress.report(100.0, final=True)
        return ExportResult(
            data=data,
            chunk_count=len(chunks),
            duration=duration,
            width=width,
            height=height,
            format=settings.format,
        )
    finally:
        await compositor.close()
