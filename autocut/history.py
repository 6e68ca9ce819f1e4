"""Undo/redo over immutable timeline snapshots."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Optional, Tuple

from .model import Sprite


@dataclass(frozen=True)
class HistoryEntry:
    """
    One restorable editor state.

    Sprites are frozen, so the tuple is restored as-is and every sprite keeps
    its own preview handle. The selection is a raw id; the session re-checks
    it after a restore.
    """

    label: str
    sprites: Tuple[Sprite, ...]
    selected_sprite_id: Optional[str] = None

    def relabel(self, label: str) -> "HistoryEntry":
        return replace(self, label=label)


class HistoryManager:
    """Bounded undo/redo stacks; past `limit` the oldest step is dropped."""

    def __init__(self, limit: int = 50) -> None:
        self.limit = max(1, int(limit))
        self._undo: Deque[HistoryEntry] = deque(maxlen=self.limit)
        self._redo: Deque[HistoryEntry] = deque(maxlen=self.limit)

    def __len__(self) -> int:
        return len(self._undo)

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def peek_undo_label(self) -> str:
        return self._undo[-1].label if self._undo else ""

    def peek_redo_label(self) -> str:
        return self._redo[-1].label if self._redo else ""

    def record(self, entry: HistoryEntry) -> None:
        """Push the state from before a successful edit; invalidates redo."""
        self._undo.append(entry)
        self._redo.clear()

    @staticmethod
    def _step(
        source: Deque[HistoryEntry],
        target: Deque[HistoryEntry],
        current: HistoryEntry,
    ) -> Optional[HistoryEntry]:
        if not source:
            return None
        entry = source.pop()
        # The counterpart step replays under the same label.
        target.append(current.relabel(entry.label))
        return entry

    def undo(self, current: HistoryEntry) -> Optional[HistoryEntry]:
        return self._step(self._undo, self._redo, current)

    def redo(self, current: HistoryEntry) -> Optional[HistoryEntry]:
        return self._step(self._redo, self._undo, current)
