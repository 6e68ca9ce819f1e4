"""
Per-sprite visual filters.

A sprite's FilterSettings is flattened into a small, closed list of filter
variants applied in a fixed order: grayscale, sepia, brightness, contrast,
blur. No-op settings produce no entry, so an untouched sprite has an empty
stack and needs no per-frame work.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Union

from PIL import Image, ImageEnhance, ImageFilter, ImageOps

from .model import FilterSettings


@dataclass(frozen=True)
class GrayscaleOn:
    pass


@dataclass(frozen=True)
class SepiaOn:
    pass


@dataclass(frozen=True)
class Brightness:
    factor: float


@dataclass(frozen=True)
class Contrast:
    factor: float


@dataclass(frozen=True)
class BlurRadius:
    radius: float


Filter = Union[GrayscaleOn, SepiaOn, Brightness, Contrast, BlurRadius]

# Same coefficients as CSS sepia(100%).
_SEPIA_MATRIX = (
    0.393, 0.769, 0.189, 0,
    0.349, 0.686, 0.168, 0,
    0.272, 0.534, 0.131, 0,
)

FILTER_PRESETS: Dict[str, FilterSettings] = {
    "none": FilterSettings(),
    "grayscale": FilterSettings(grayscale=True),
    "sepia": FilterSettings(sepia=True),
    "brightness": FilterSettings(brightness=1.5),
    "contrast": FilterSettings(contrast=1.5),
    "blur": FilterSettings(blur=5.0),
}


def preset_filters(name: str) -> FilterSettings:
    """Resolve a named preset; unknown names reset to no filters."""
    key = str(name or "").strip().lower()
    return FILTER_PRESETS.get(key, FILTER_PRESETS["none"])


def preset_name(settings: FilterSettings) -> str:
    for name, preset in FILTER_PRESETS.items():
        if preset == settings:
            return name
    return "custom"


def filter_stack(settings: FilterSettings) -> List[Filter]:
    stack: List[Filter] = []
    if settings.grayscale:
        stack.append(GrayscaleOn())
    if settings.sepia:
        stack.append(SepiaOn())
    if settings.brightness != 1.0:
        stack.append(Brightness(float(settings.brightness)))
    if settings.contrast != 1.0:
        stack.append(Contrast(float(settings.contrast)))
    if settings.blur > 0:
        stack.append(BlurRadius(float(settings.blur)))
    return stack


def has_active_filters(settings: FilterSettings) -> bool:
    return bool(filter_stack(settings))


def describe_filter_stack(stack: Sequence[Filter]) -> str:
    """CSS-like description, e.g. 'grayscale(100%) blur(5px)'."""
    parts: List[str] = []
    for f in stack:
        if isinstance(f, GrayscaleOn):
            parts.append("grayscale(100%)")
        elif isinstance(f, SepiaOn):
            parts.append("sepia(100%)")
        elif isinstance(f, Brightness):
            parts.append(f"brightness({f.factor:g})")
        elif isinstance(f, Contrast):
            parts.append(f"contrast({f.factor:g})")
        elif isinstance(f, BlurRadius):
            parts.append(f"blur({f.radius:g}px)")
    return " ".join(parts)


def apply_filter(img: Image.Image, f: Filter) -> Image.Image:
    if isinstance(f, GrayscaleOn):
        return ImageOps.grayscale(img).convert("RGB")
    if isinstance(f, SepiaOn):
        return img.convert("RGB", _SEPIA_MATRIX)
    if isinstance(f, Brightness):
        return ImageEnhance.Brightness(img).enhance(f.factor)
    if isinstance(f, Contrast):
        return ImageEnhance.Contrast(img).enhance(f.factor)
    if isinstance(f, BlurRadius):
        return img.filter(ImageFilter.GaussianBlur(radius=f.radius))
    raise TypeError(f"Unknown filter: {f!r}")


def apply_filters(img: Image.Image, stack: Sequence[Filter]) -> Image.Image:
    """Return a filtered RGB copy of `img`; the input is never modified."""
    out = img.convert("RGB") if img.mode != "RGB" else img
    if not stack:
        return out.copy() if out is img else out
    for f in stack:
        out = apply_filter(out, f)
    return out
