"""
Media collaborator contracts and the small concrete pieces the core owns.

The decode/encode engine, the drawing surface, the audio output and the
export compositor are collaborators; the core only relies on the Protocols
below. `SpriteHandle` and `FilteredSource` are the core's own wrappers over
a MediaSource.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, replace
from typing import AsyncGenerator, List, Optional, Protocol, Sequence

from PIL import Image

from .errors import AutoCutError, DecodeFailure
from .filters import Filter, apply_filters, filter_stack
from .model import FilterSettings, MaterialMetadata

ChannelBuffers = List[Sequence[float]]

PREVIEW = "preview"
EXPORT = "export"


@dataclass
class VideoFrame:
    """A decoded frame. Call close() once drawn; a closed frame must not be reused."""

    image: Image.Image
    timestamp: int  # microseconds, source timeline
    duration: int = 0
    closed: bool = False

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.image.close()


@dataclass
class DecodeResult:
    video: Optional[VideoFrame] = None
    audio: Optional[ChannelBuffers] = None  # one buffer per channel, equal lengths
    status: str = "success"  # "success" | "done"

    def release(self) -> None:
        if self.video is not None:
            self.video.close()


class MediaSource(Protocol):
    meta: MaterialMetadata

    async def ready(self) -> None: ...

    async def decode_at(self, time: int) -> DecodeResult: ...

    async def clone(self) -> "MediaSource": ...


class Surface(Protocol):
    def clear(self) -> None: ...

    def draw_frame(self, frame: VideoFrame, opacity: float = 1.0) -> None: ...

    def apply_filter_stack(self, stack: Sequence[Filter]) -> None: ...


class AudioSink(Protocol):
    @property
    def current_time(self) -> float: ...  # seconds on the audio clock

    def play(self, channels: ChannelBuffers, sample_rate: int, at: float) -> None: ...

    def flush(self) -> None: ...  # drop queued buffers that have not played yet


class Compositor(Protocol):
    def configure(self, width: int, height: int, fps: int, bitrate: int) -> None: ...

    async def register(self, handle: "SpriteHandle", position: int) -> None: ...

    def output_stream(self) -> AsyncGenerator[bytes, None]: ...

    async def close(self) -> None: ...


class SpriteHandle:
    """
    Compositing handle binding one segment onto a media source.

    Preview handles are created by edit operations (one per sprite, never
    shared) and decode at absolute source times computed by the playback
    scheduler. Export handles are created by the export pipeline and carry
    their own window (offset, duration, rate, opacity) so the compositor can
    tick them with window-relative times.
    """

    def __init__(
        self,
        source: MediaSource,
        role: str = PREVIEW,
        offset: int = 0,
        duration: int = 0,
        opacity: float = 1.0,
        playback_rate: float = 1.0,
    ) -> None:
        self.source = source
        self.role = role
        self.offset = int(offset)
        self.duration = int(duration)
        self.opacity = float(opacity)
        self.playback_rate = float(playback_rate)

    def __repr__(self) -> str:
        return (
            f"SpriteHandle(role={self.role!r}, offset={self.offset}, "
            f"duration={self.duration}, source={type(self.source).__name__})"
        )

    def source_time(self, local_time: int) -> int:
        return self.offset + int(round(local_time * self.playback_rate))

    async def decode_at(self, source_time: int) -> DecodeResult:
        try:
            return await self.source.decode_at(int(source_time))
        except AutoCutError:
            raise
        except Exception as exc:
            raise DecodeFailure(f"Decode failed at {int(source_time)} us: {exc}", int(source_time)) from exc

    async def tick(self, local_time: int) -> DecodeResult:
        """Decode at a time relative to the start of this handle's window."""
        return await self.decode_at(self.source_time(local_time))


class FilteredSource:
    """
    MediaSource wrapper that rewrites every decoded frame through a filter stack.

    Wraps a cloned source so the material's shared handle never sees the
    filters.
    """

    def __init__(self, source: MediaSource, filters: FilterSettings) -> None:
        self.source = source
        self.filters = filters
        self.stack = filter_stack(filters)

    @property
    def meta(self) -> MaterialMetadata:
        return self.source.meta

    async def ready(self) -> None:
        await self.source.ready()

    async def decode_at(self, time: int) -> DecodeResult:
        result = await self.source.decode_at(time)
        frame = result.video
        if frame is None or not self.stack:
            return result
        filtered = apply_filters(frame.image, self.stack)
        out = replace(result, video=VideoFrame(filtered, timestamp=frame.timestamp, duration=frame.duration))
        frame.close()
        return out

    async def clone(self) -> "FilteredSource":
        return FilteredSource(await self.source.clone(), self.filters)


class ImageSurface:
    """Pillow-backed 2D drawable used for preview and export frame composition."""

    def __init__(self, width: int, height: int, background: tuple = (0, 0, 0)) -> None:
        self.width = max(1, int(width))
        self.height = max(1, int(height))
        self.background = tuple(background)
        self.image = Image.new("RGB", (self.width, self.height), self.background)

    def clear(self) -> None:
        self.image = Image.new("RGB", (self.width, self.height), self.background)

    def draw_frame(self, frame: VideoFrame, opacity: float = 1.0) -> None:
        src = frame.image.convert("RGB")
        if src.size != (self.width, self.height):
            src = src.resize((self.width, self.height), Image.LANCZOS)
        alpha = max(0.0, min(1.0, float(opacity)))
        if alpha >= 1.0:
            self.image = src
        elif alpha > 0.0:
            self.image = Image.blend(self.image, src, alpha)

    def apply_filter_stack(self, stack: Sequence[Filter]) -> None:
        if stack:
            self.image = apply_filters(self.image, stack)

    def to_bytes(self) -> bytes:
        return self.image.tobytes()

    def to_png(self) -> bytes:
        buf = io.BytesIO()
        self.image.save(buf, "PNG")
        return buf.getvalue()
