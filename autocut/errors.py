from __future__ import annotations

from typing import Optional


class AutoCutError(Exception):
    """Base class for every error the editor core raises."""


class InvalidSplitPoint(AutoCutError, ValueError):
    """Split requested at or outside the selected sprite's bounds."""

    def __init__(self, sprite_id: str, at_time: int, message: str = "") -> None:
        self.sprite_id = sprite_id
        self.at_time = int(at_time)
        super().__init__(message or "Move playhead within the selected clip to split")


class SpriteNotFound(AutoCutError, KeyError):
    def __init__(self, sprite_id: str) -> None:
        self.sprite_id = sprite_id
        super().__init__(f"Sprite not found: {sprite_id}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0])


class NoSelection(AutoCutError):
    def __init__(self, message: str = "Please select a clip first") -> None:
        super().__init__(message)


class EmptyTimeline(AutoCutError):
    def __init__(self, message: str = "Timeline is empty") -> None:
        super().__init__(message)


class DecodeFailure(AutoCutError):
    def __init__(self, message: str, source_time: Optional[int] = None) -> None:
        self.source_time = source_time
        super().__init__(message)


class EncodeFailure(AutoCutError):
    pass


class UnsupportedEnvironment(AutoCutError, RuntimeError):
    """A required decode/encode capability is missing."""


class ExportCancelled(AutoCutError):
    def __init__(self, message: str = "Export cancelled") -> None:
        super().__init__(message)
