from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .model import ExportSettings

DEFAULT_TICK_INTERVAL_MS = 16
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigStore:
    """
    Simple JSON config store.

    Default location: ~/.autocut/config.json
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = Path(root_dir)
        self.path = self.root_dir / "config.json"

    @staticmethod
    def default() -> "ConfigStore":
        return ConfigStore(Path.home() / ".autocut")

    def load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
        except FileNotFoundError:
            return self.default_config()
        except Exception:
            # Corrupted file; don't crash the app.
            return self.default_config()
        return self.default_config()

    def save(self, data: Dict[str, Any]) -> None:
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def default_config(self) -> Dict[str, Any]:
        return {
            "export": ExportSettings().to_dict(),
            "tick_interval_ms": DEFAULT_TICK_INTERVAL_MS,
            "last_export_dir": "",
            "log_level": "INFO",
            "ffmpeg_dir": "",
        }

    def export_settings(self) -> ExportSettings:
        return ExportSettings.from_dict(self.load().get("export", {}))

    def set_export_settings(self, settings: ExportSettings) -> None:
        cfg = self.load()
        cfg["export"] = settings.to_dict()
        self.save(cfg)

    def tick_interval_ms(self) -> int:
        raw = self.load().get("tick_interval_ms", DEFAULT_TICK_INTERVAL_MS)
        try:
            v = int(raw)
        except Exception:
            v = DEFAULT_TICK_INTERVAL_MS
        # Clamp: no busy loop, no slideshow.
        return max(5, min(100, v))

    def log_level(self) -> int:
        name = str(self.load().get("log_level", "INFO") or "INFO").strip().upper()
        if name not in LOG_LEVELS:
            name = "INFO"
        return getattr(logging, name)

    def ffmpeg_dir(self) -> Optional[Path]:
        raw = str(self.load().get("ffmpeg_dir", "") or "").strip()
        if not raw:
            return None
        p = Path(raw).expanduser()
        return p if p.is_dir() else None

    def last_export_dir(self) -> str:
        raw = str(self.load().get("last_export_dir", "") or "").strip()
        if raw and Path(raw).is_dir():
            return raw
        return ""

    def set_last_export_dir(self, path: str) -> None:
        p = str(path or "").strip()
        if not p:
            return
        target = Path(p)
        # Accept either the exported file or its directory.
        if target.suffix:
            target = target.parent
        try:
            target = target.resolve()
        except Exception:
            pass
        cfg = self.load()
        cfg["last_export_dir"] = str(target)
        self.save(cfg)
