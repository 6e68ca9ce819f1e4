from __future__ import annotations

from typing import List, Optional, Tuple


# Shortcut action ids used by the app.py dispatcher.
ACTION_DELETE = "delete"
ACTION_SPLIT = "split"
ACTION_UNDO = "undo"
ACTION_REDO = "redo"
ACTION_EXPORT = "export"
ACTION_IMPORT = "import"
ACTION_NEW_PROJECT = "new_project"
ACTION_ZOOM_IN = "zoom_in"
ACTION_ZOOM_OUT = "zoom_out"
ACTION_STOP = "stop"
ACTION_TOGGLE_PLAY_PAUSE = "toggle_play_pause"
ACTION_SHOW_SHORTCUTS = "show_shortcuts"


def _normalize_key(key: str) -> str:
    raw = str(key or "")
    if raw == " ":
        return "space"
    k = raw.strip().lower().replace(" ", "")
    aliases = {
        "spacebar": "space",
        "add": "+",
        "subtract": "-",
        "numpadadd": "+",
        "numpadsubtract": "-",
    }
    return aliases.get(k, k)


def resolve_shortcut_action(
    *,
    key: str,
    ctrl: bool = False,
    shift: bool = False,
    alt: bool = False,
    meta: bool = False,
    typing_focus: bool = False,
) -> Optional[str]:
    """
    Resolve a keyboard event into an editor action.

    `typing_focus=True` blocks plain editing shortcuts so users can type in
    TextFields without accidental timeline operations.
    """
    k = _normalize_key(key)
    if not k:
        return None

    if k == "f1" or k == "?" or (k == "/" and bool(shift)):
        return ACTION_SHOW_SHORTCUTS

    if bool(alt):
        return None

    primary_mod = bool(ctrl or meta)
    if primary_mod and (not shift) and k == "z":
        return ACTION_UNDO
    if primary_mod and (k == "y" or (shift and k == "z")):
        return ACTION_REDO
    if primary_mod and k == "e":
        return ACTION_EXPORT
    if primary_mod and k == "i":
        return ACTION_IMPORT
    if primary_mod and k == "n":
        return ACTION_NEW_PROJECT
    if primary_mod:
        return None

    if typing_focus:
        return None

    if k in ("delete", "backspace"):
        return ACTION_DELETE
    if k == "s":
        return ACTION_SPLIT
    if k in ("+", "="):
        return ACTION_ZOOM_IN
    if k in ("-", "_"):
        return ACTION_ZOOM_OUT
    if k == "home":
        return ACTION_STOP
    if k == "space":
        return ACTION_TOGGLE_PLAY_PAUSE
    return None


def shortcut_legend() -> List[Tuple[str, str]]:
    """Human-readable shortcuts list for the in-app help dialog."""
    return [
        ("Space", "Play/Pause"),
        ("Home", "Stop and rewind"),
        ("S", "Split selected clip at playhead"),
        ("Delete / Backspace", "Delete selected clip"),
        ("+ / -", "Zoom timeline in/out"),
        ("Ctrl/Cmd + Z", "Undo"),
        ("Ctrl/Cmd + Y", "Redo"),
        ("Ctrl/Cmd + Shift + Z", "Redo"),
        ("Ctrl/Cmd + E", "Export"),
        ("Ctrl/Cmd + I", "Import files"),
        ("Ctrl/Cmd + N", "New project"),
        ("F1 or ?", "Show shortcuts help"),
    ]
