"""
Editor session.

Holds everything one editing session owns (materials, timeline, selection,
history, playback scheduler, zoom) and exposes the user-level operations the
UI dispatches. Edits go through Timeline; history is recorded only after an
edit succeeds, so a rejected edit leaves no undo step behind.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from .audio import AudioScheduler
from .errors import EmptyTimeline, NoSelection, UnsupportedEnvironment
from .export import ExportResult, ProgressCallback, export_timeline
from .filters import preset_filters
from .history import HistoryEntry, HistoryManager
from .media import AudioSink, Compositor, Surface
from .model import US_PER_SEC, ExportSettings, FilterSettings, Material, Sprite
from .playback import PlaybackScheduler
from .timeline import Timeline

log = logging.getLogger(__name__)

MIN_ZOOM = 10.0  # pixels per second
MAX_ZOOM = 200.0
DEFAULT_ZOOM = 50.0
ZOOM_STEP = 1.25


def format_time(us: int) -> str:
    """MM:SS from microseconds."""
    total = max(0, int(us)) // US_PER_SEC
    return f"{total // 60:02d}:{total % 60:02d}"


class EditorSession:
    def __init__(
        self,
        surface: Surface,
        compositor_factory: Optional[Callable[[], Compositor]] = None,
        audio_sink: Optional[AudioSink] = None,
        tick_interval: float = 0.016,
        history_limit: int = 50,
        export_settings: Optional[ExportSettings] = None,
        **scheduler_kwargs,
    ) -> None:
        self.surface = surface
        self.compositor_factory = compositor_factory
        self.export_settings = export_settings or ExportSettings()
        self.materials: Dict[str, Material] = {}
        self.timeline = Timeline()
        self.history = HistoryManager(limit=history_limit)
        self.selected_sprite_id: Optional[str] = None
        self.zoom = DEFAULT_ZOOM
        # No sink: the preview runs picture-only.
        self.audio = AudioScheduler(audio_sink) if audio_sink is not None else None
        self.player = PlaybackScheduler(self.timeline, surface, self.audio, tick_interval=tick_interval, **scheduler_kwargs)
        self.timeline.on_empty(self._on_timeline_empty)
        self._empty_listeners: List[Callable[[], None]] = []

    # -------- state --------

    @property
    def current_time(self) -> int:
        return self.player.current_time

    @property
    def is_playing(self) -> bool:
        return self.player.is_playing

    def on_empty(self, callback: Callable[[], None]) -> None:
        self._empty_listeners.append(callback)

    def _on_timeline_empty(self) -> None:
        self.selected_sprite_id = None
        log.info("Timeline is empty")
        for cb in list(self._empty_listeners):
            cb()

    def _snapshot(self, label: str) -> HistoryEntry:
        return HistoryEntry(label=label, sprites=self.timeline.sprites, selected_sprite_id=self.selected_sprite_id)

    def _restore(self, entry: HistoryEntry) -> None:
        self.timeline.restore(entry.sprites)
        sid = entry.selected_sprite_id
        self.selected_sprite_id = sid if sid and self.timeline.find(sid) is not None else None
        # The playhead may now point past the end.
        self.player.current_time = min(self.player.current_time, self.timeline.total_duration())

    # -------- materials --------

    def add_material(self, material: Material) -> Optional[Sprite]:
        """
        Register an imported material.

        The first material imported into an empty timeline is placed on it
        automatically; the placed sprite is returned in that case.
        """
        self.materials[material.id] = material
        log.info("Material added: %s (%.2f s)", material.name, material.duration / US_PER_SEC)
        if self.timeline.is_empty():
            return self.append_to_timeline(material.id)
        return None

    def append_to_timeline(self, material_id: str) -> Sprite:
        material = self.materials.get(material_id)
        if material is None:
            raise KeyError(f"Material not found: {material_id}")
        before = self._snapshot("Add to timeline")
        sprite = self.timeline.append(material)
        self.history.record(before)
        self.selected_sprite_id = sprite.id
        return sprite

    # -------- selection --------

    def select(self, sprite_id: Optional[str]) -> Optional[Sprite]:
        if sprite_id is None:
            self.selected_sprite_id = None
            return None
        sprite = self.timeline.get(sprite_id)
        self.selected_sprite_id = sprite.id
        return sprite

    def selected_sprite(self) -> Optional[Sprite]:
        if not self.selected_sprite_id:
            return None
        return self.timeline.find(self.selected_sprite_id)

    def _require_selection(self) -> Sprite:
        sprite = self.selected_sprite()
        if sprite is None:
            raise NoSelection()
        return sprite

    # -------- edits --------

    def split_selected(self, at_time: Optional[int] = None) -> Tuple[Sprite, Sprite]:
        """Split the selected sprite at `at_time` (default: the playhead); selects the first half."""
        sprite = self._require_selection()
        t = self.player.current_time if at_time is None else int(at_time)
        before = self._snapshot("Split")
        first, second = self.timeline.split(sprite.id, t)
        self.history.record(before)
        self.selected_sprite_id = first.id
        log.info("Split %s at %d us", sprite.id, t)
        return first, second

    def delete_selected(self) -> Sprite:
        sprite = self._require_selection()
        before = self._snapshot("Delete")
        if self.player.is_playing:
            self.player.pause()
        deleted = self.timeline.delete(sprite.id)
        self.history.record(before)
        self.selected_sprite_id = None
        self.player.current_time = min(self.player.current_time, self.timeline.total_duration())
        log.info("Deleted %s", deleted.id)
        return deleted

    def set_filters(self, filters: FilterSettings) -> Sprite:
        sprite = self._require_selection()
        before = self._snapshot("Filters")
        updated = self.timeline.set_filters(sprite.id, filters)
        self.history.record(before)
        return updated

    def apply_filter_preset(self, name: str) -> Sprite:
        return self.set_filters(preset_filters(name))

    def set_playback_rate(self, rate: float) -> Sprite:
        sprite = self._require_selection()
        before = self._snapshot("Speed")
        updated = self.timeline.set_playback_rate(sprite.id, rate)
        self.history.record(before)
        return updated

    def set_opacity(self, opacity: float) -> Sprite:
        sprite = self._require_selection()
        before = self._snapshot("Opacity")
        updated = self.timeline.set_opacity(sprite.id, opacity)
        self.history.record(before)
        return updated

    def undo(self) -> Optional[str]:
        entry = self.history.undo(self._snapshot(self.history.peek_undo_label()))
        if entry is None:
            return None
        self._restore(entry)
        log.info("Undo: %s", entry.label)
        return entry.label

    def redo(self) -> Optional[str]:
        entry = self.history.redo(self._snapshot(self.history.peek_redo_label()))
        if entry is None:
            return None
        self._restore(entry)
        log.info("Redo: %s", entry.label)
        return entry.label

    # -------- playback --------

    def play(self):
        return self.player.play()

    def pause(self) -> None:
        self.player.pause()

    async def toggle_play_pause(self) -> bool:
        """Returns True when playing after the toggle."""
        if self.player.is_playing:
            self.player.pause()
            return False
        self.player.play()
        return True

    async def stop(self) -> None:
        await self.player.stop()

    async def seek(self, time_us: int) -> int:
        return await self.player.seek(time_us)

    async def seek_to_x(self, x: float) -> int:
        """Map a click on the timeline ruler (pixels) to a time and seek there."""
        return await self.seek(int(round(max(0.0, float(x)) / self.zoom * US_PER_SEC)))

    # -------- zoom --------

    def set_zoom(self, pixels_per_second: float) -> float:
        self.zoom = max(MIN_ZOOM, min(MAX_ZOOM, float(pixels_per_second)))
        return self.zoom

    def zoom_in(self) -> float:
        return self.set_zoom(self.zoom * ZOOM_STEP)

    def zoom_out(self) -> float:
        return self.set_zoom(self.zoom / ZOOM_STEP)

    def time_to_x(self, time_us: int) -> float:
        return time_us / US_PER_SEC * self.zoom

    # -------- export --------

    async def export(
        self,
        on_progress: Optional[ProgressCallback] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> ExportResult:
        if self.timeline.is_empty():
            raise EmptyTimeline("No clips to export")
        if self.compositor_factory is None:
            raise UnsupportedEnvironment("No encoder available for export")
        if self.player.is_playing:
            self.player.pause()
        return await export_timeline(
            self.timeline.sprites,
            self.export_settings,
            self.compositor_factory,
            on_progress=on_progress,
            should_cancel=should_cancel,
        )

    # -------- project --------

    def new_project(self) -> None:
        self.player.pause()
        self.player.current_time = 0
        self.history.clear()
        self.selected_sprite_id = None
        self.materials.clear()
        was_empty = self.timeline.is_empty()
        self.timeline.clear()
        if was_empty:
            # Timeline only signals a transition; a fresh project always notifies.
            self._on_timeline_empty()
        self.surface.clear()
        log.info("New project")
