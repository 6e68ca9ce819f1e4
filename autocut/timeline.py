from __future__ import annotations

from dataclasses import replace
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from .errors import EmptyTimeline, InvalidSplitPoint, SpriteNotFound
from .media import SpriteHandle
from .model import FilterSettings, Material, Sprite, new_id, normalize_opacity, normalize_playback_rate


def total_duration(sprites: Sequence[Sprite]) -> int:
    if not sprites:
        return 0
    last = sprites[-1]
    return last.start_time + last.duration


def active_sprite_at(sprites: Sequence[Sprite], time: int) -> Optional[Sprite]:
    """Sprite whose half-open [start, start + duration) contains `time`."""
    for s in sprites:
        if s.contains(time):
            return s
    return None


def source_time_at(sprite: Sprite, time: int) -> int:
    """Map an output-timeline time inside `sprite` to its material's timeline."""
    return sprite.source_offset + int(round((time - sprite.start_time) * sprite.playback_rate))


def find_sprite(sprites: Sequence[Sprite], sprite_id: str) -> Optional[Sprite]:
    for s in sprites:
        if s.id == sprite_id:
            return s
    return None


def index_of(sprites: Sequence[Sprite], sprite_id: str) -> int:
    for i, s in enumerate(sprites):
        if s.id == sprite_id:
            return i
    raise SpriteNotFound(sprite_id)


def check_contiguity(sprites: Sequence[Sprite]) -> None:
    """Raise ValueError if any adjacent pair leaves a gap or overlaps."""
    if sprites and sprites[0].start_time != 0:
        raise ValueError(f"first sprite starts at {sprites[0].start_time}, expected 0")
    for i in range(len(sprites) - 1):
        a, b = sprites[i], sprites[i + 1]
        if b.start_time != a.start_time + a.duration:
            raise ValueError(
                f"sprites {i} and {i + 1} are not contiguous: {a.start_time}+{a.duration} != {b.start_time}"
            )


def append_sprite(sprites: Sequence[Sprite], material: Material) -> Tuple[List[Sprite], Sprite]:
    """Place a full-length sprite of `material` at the end of the timeline."""
    sprite = Sprite(
        id=new_id(),
        material=material,
        handle=SpriteHandle(material.source),
        start_time=total_duration(sprites),
        duration=material.duration,
        source_offset=0,
    )
    return [*sprites, sprite], sprite


def split_sprite(
    sprites: Sequence[Sprite],
    sprite_id: str,
    at_time: int,
) -> Tuple[List[Sprite], Sprite, Sprite]:
    """
    Split a sprite at an absolute timeline time.

    Both halves get a fresh handle bound to the same material; the second
    half's source offset advances by the distance from the sprite's start.

    Returns:
        (new_sprites, first_half, second_half)
    """
    idx = index_of(sprites, sprite_id)
    s = sprites[idx]
    t = int(at_time)
    if t <= s.start_time or t >= s.end_time:
        raise InvalidSplitPoint(sprite_id, t)

    delta = t - s.start_time
    first = replace(
        s,
        id=new_id(),
        handle=SpriteHandle(s.material.source),
        duration=delta,
    )
    second = replace(
        s,
        id=new_id(),
        handle=SpriteHandle(s.material.source),
        start_time=t,
        duration=s.duration - delta,
        source_offset=s.source_offset + delta,
    )
    out = [*sprites[:idx], first, second, *sprites[idx + 1 :]]
    return out, first, second


def delete_sprite(sprites: Sequence[Sprite], sprite_id: str) -> Tuple[List[Sprite], Sprite]:
    """Remove a sprite and pull every later sprite left by its duration."""
    idx = index_of(sprites, sprite_id)
    deleted = sprites[idx]
    out: List[Sprite] = list(sprites[:idx])
    for s in sprites[idx + 1 :]:
        # Only the timeline position moves; source_offset is untouched.
        out.append(replace(s, start_time=s.start_time - deleted.duration))
    return out, deleted


def update_sprite(sprites: Sequence[Sprite], sprite_id: str, **changes) -> Tuple[List[Sprite], Sprite]:
    """Replace non-timing fields (filters, opacity, playback_rate) of one sprite."""
    forbidden = {"id", "start_time", "duration", "source_offset", "material", "handle"} & set(changes)
    if forbidden:
        raise ValueError(f"update_sprite cannot change {sorted(forbidden)}")
    idx = index_of(sprites, sprite_id)
    updated = replace(sprites[idx], **changes)
    out = list(sprites)
    out[idx] = updated
    return out, updated


def set_sprite_filters(sprites: Sequence[Sprite], sprite_id: str, filters: FilterSettings) -> Tuple[List[Sprite], Sprite]:
    return update_sprite(sprites, sprite_id, filters=FilterSettings.from_dict(filters.to_dict()))


def set_sprite_playback_rate(sprites: Sequence[Sprite], sprite_id: str, rate: float) -> Tuple[List[Sprite], Sprite]:
    return update_sprite(sprites, sprite_id, playback_rate=normalize_playback_rate(rate))


def set_sprite_opacity(sprites: Sequence[Sprite], sprite_id: str, opacity: float) -> Tuple[List[Sprite], Sprite]:
    return update_sprite(sprites, sprite_id, opacity=normalize_opacity(opacity))


class Timeline:
    """
    Ordered, contiguous sequence of sprites.

    Every mutation computes a complete new sequence with the pure functions
    above, validates it, then swaps it in, so readers never observe a
    half-applied edit.
    """

    def __init__(self, sprites: Optional[Sequence[Sprite]] = None) -> None:
        self._sprites: List[Sprite] = []
        self._empty_listeners: List[Callable[[], None]] = []
        if sprites:
            self._commit(sprites)

    @property
    def sprites(self) -> Tuple[Sprite, ...]:
        return tuple(self._sprites)

    def __len__(self) -> int:
        return len(self._sprites)

    def __iter__(self) -> Iterator[Sprite]:
        return iter(tuple(self._sprites))

    def is_empty(self) -> bool:
        return not self._sprites

    def on_empty(self, callback: Callable[[], None]) -> None:
        self._empty_listeners.append(callback)

    def total_duration(self) -> int:
        return total_duration(self._sprites)

    def active_sprite_at(self, time: int) -> Optional[Sprite]:
        return active_sprite_at(self._sprites, time)

    def find(self, sprite_id: str) -> Optional[Sprite]:
        return find_sprite(self._sprites, sprite_id)

    def get(self, sprite_id: str) -> Sprite:
        s = self.find(sprite_id)
        if s is None:
            raise SpriteNotFound(sprite_id)
        return s

    def first(self) -> Sprite:
        if not self._sprites:
            raise EmptyTimeline()
        return self._sprites[0]

    def append(self, material: Material) -> Sprite:
        out, sprite = append_sprite(self._sprites, material)
        self._commit(out)
        return sprite

    def split(self, sprite_id: str, at_time: int) -> Tuple[Sprite, Sprite]:
        out, first, second = split_sprite(self._sprites, sprite_id, at_time)
        self._commit(out)
        return first, second

    def delete(self, sprite_id: str) -> Sprite:
        out, deleted = delete_sprite(self._sprites, sprite_id)
        self._commit(out)
        return deleted

    def set_filters(self, sprite_id: str, filters: FilterSettings) -> Sprite:
        out, s = set_sprite_filters(self._sprites, sprite_id, filters)
        self._commit(out)
        return s

    def set_playback_rate(self, sprite_id: str, rate: float) -> Sprite:
        out, s = set_sprite_playback_rate(self._sprites, sprite_id, rate)
        self._commit(out)
        return s

    def set_opacity(self, sprite_id: str, opacity: float) -> Sprite:
        out, s = set_sprite_opacity(self._sprites, sprite_id, opacity)
        self._commit(out)
        return s

    def restore(self, sprites: Sequence[Sprite]) -> None:
        """Swap in a previously captured sequence (undo/redo)."""
        self._commit(sprites)

    def clear(self) -> None:
        self._commit([])

    def _commit(self, sprites: Sequence[Sprite]) -> None:
        check_contiguity(sprites)
        was_empty = not self._sprites
        self._sprites = list(sprites)
        if not self._sprites and not was_empty:
            for cb in list(self._empty_listeners):
                cb()
