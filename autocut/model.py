from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Tuple
import uuid

if TYPE_CHECKING:
    from .media import MediaSource, SpriteHandle

# All timeline quantities are integer microseconds.
US_PER_SEC = 1_000_000

MIN_PLAYBACK_RATE = 0.25
MAX_PLAYBACK_RATE = 4.0


def new_id() -> str:
    """Generate a stable unique id for UI/timeline operations."""
    return uuid.uuid4().hex


def normalize_playback_rate(rate: Any) -> float:
    try:
        v = float(rate)
    except Exception:
        return 1.0
    if v != v or v <= 0.0:
        return 1.0
    return max(MIN_PLAYBACK_RATE, min(MAX_PLAYBACK_RATE, v))


def normalize_opacity(opacity: Any) -> float:
    try:
        v = float(opacity)
    except Exception:
        return 1.0
    if v != v:
        return 1.0
    return max(0.0, min(1.0, v))


@dataclass(frozen=True)
class MaterialMetadata:
    duration: int  # microseconds
    width: int
    height: int
    size: int = 0  # bytes
    audio_sample_rate: int = 48000
    audio_channels: int = 2
    has_video: bool = True
    has_audio: bool = True


@dataclass(frozen=True, eq=False)
class Material:
    """
    An imported source item.

    Immutable after creation; `source` is the decode handle shared by every
    preview sprite placed from this material.
    """

    id: str
    name: str
    source: "MediaSource"
    metadata: MaterialMetadata

    @property
    def duration(self) -> int:
        return int(self.metadata.duration)


@dataclass(frozen=True)
class FilterSettings:
    grayscale: bool = False
    sepia: bool = False
    brightness: float = 1.0  # 0-2, 1 = unchanged
    contrast: float = 1.0  # 0-2, 1 = unchanged
    blur: float = 0.0  # radius in pixels, 0 = no blur

    def is_default(self) -> bool:
        return self == FilterSettings()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FilterSettings":
        if not isinstance(d, dict):
            return FilterSettings()

        def _factor(key: str) -> float:
            try:
                v = float(d.get(key, 1.0))
            except Exception:
                return 1.0
            if v != v:
                return 1.0
            return max(0.0, min(2.0, v))

        try:
            blur = max(0.0, float(d.get("blur", 0.0) or 0.0))
        except Exception:
            blur = 0.0
        return FilterSettings(
            grayscale=bool(d.get("grayscale", False)),
            sepia=bool(d.get("sepia", False)),
            brightness=_factor("brightness"),
            contrast=_factor("contrast"),
            blur=blur,
        )


@dataclass(frozen=True)
class Sprite:
    """
    One placed, trimmed instance of a Material on the output timeline.

    Attributes:
        start_time: position on the output timeline
        duration: length occupied on the output timeline
        source_offset: where playback begins inside the material's own timeline
        handle: decode-capable handle bound to this segment only
    """

    id: str
    material: Material
    handle: "SpriteHandle"
    start_time: int
    duration: int
    source_offset: int = 0
    playback_rate: float = 1.0
    filters: FilterSettings = field(default_factory=FilterSettings)
    opacity: float = 1.0

    @property
    def end_time(self) -> int:
        return self.start_time + self.duration

    @property
    def material_id(self) -> str:
        return self.material.id

    def contains(self, time: int) -> bool:
        return self.start_time <= time < self.end_time


@dataclass
class ExportSettings:
    """
    Output encoding settings used by the export pipeline.

    Notes:
    - width/height = 0 means use the first sprite's material dimensions
    - format controls the output container (mp4/webm)
    """

    width: int = 0
    height: int = 0
    fps: int = 30
    bitrate: int = 5_000_000
    video_codec: str = "libx264"
    format: str = "mp4"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ExportSettings":
        if not isinstance(d, dict):
            return ExportSettings()
        out = ExportSettings()
        try:
            out.width = max(0, int(d.get("width", out.width) or 0))
        except Exception:
            out.width = 0
        try:
            out.height = max(0, int(d.get("height", out.height) or 0))
        except Exception:
            out.height = 0
        try:
            out.fps = max(1, min(120, int(d.get("fps", out.fps) or 30)))
        except Exception:
            out.fps = 30
        try:
            out.bitrate = max(100_000, int(d.get("bitrate", out.bitrate) or 5_000_000))
        except Exception:
            out.bitrate = 5_000_000
        fmt = str(d.get("format", out.format) or out.format).strip().lower()
        out.format = fmt if fmt in ("mp4", "webm") else "mp4"
        default_codec = "libvpx" if out.format == "webm" else "libx264"
        out.video_codec = str(d.get("video_codec") or default_codec)
        return out

    def resolve_size(self, material: Material) -> Tuple[int, int]:
        w = self.width or int(material.metadata.width)
        h = self.height or int(material.metadata.height)
        # yuv420p needs even dimensions.
        return max(2, w - w % 2), max(2, h - h % 2)
