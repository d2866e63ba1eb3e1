from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreWarmRecord:
    installed: bool
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"installed": bool(self.installed), "timestamp": int(self.timestamp)}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PreWarmRecord:
        return cls(
            installed=d.get("installed") is True,
            timestamp=int(d.get("timestamp") or 0),
        )


class PreWarmCache:
    """Persisted hint that the base dependencies were installed once.

    The record is advisory: every read or write failure is logged and treated
    as "not installed".
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> PreWarmRecord | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except Exception:
            _log.warning("Failed to read pre-warm cache %s", self.path, exc_info=True)
            return None
        try:
            data = json.loads(raw)
        except Exception:
            _log.warning("Ignoring corrupt pre-warm cache %s", self.path)
            return None
        if not isinstance(data, dict):
            return None
        return PreWarmRecord.from_dict(data)

    def is_installed(self) -> bool:
        rec = self.load()
        return bool(rec and rec.installed)

    def mark_installed(self, *, now_ms: int | None = None) -> None:
        ts = int(time.time() * 1000) if now_ms is None else int(now_ms)
        rec = PreWarmRecord(installed=True, timestamp=ts)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(rec.to_dict()), encoding="utf-8")
            _log.info("Marked base dependencies as installed in %s", self.path)
        except Exception:
            _log.warning("Failed to save pre-warm cache %s", self.path, exc_info=True)
