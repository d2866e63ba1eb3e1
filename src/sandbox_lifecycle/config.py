from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip() or default


@dataclass(frozen=True)
class PreviewConfig:
    workspace_dir: str = "/tmp/preview-sandbox/workspace"
    prewarm_cache_path: str = "/tmp/preview-sandbox/prewarm.json"
    prewarm_on_startup: bool = True
    prewarm_trust_cache: bool = False
    output_max_lines: int = 100
    fixer_url: str = "http://localhost:3001"
    fixer_timeout_s: float = 60.0
    autoheal_enabled: bool = True
    autoheal_max_attempts: int = 15
    autoheal_debounce_s: float = 1.5

    @classmethod
    def from_env(cls) -> PreviewConfig:
        return cls(
            workspace_dir=_env_str(
                "PREVIEW_WORKSPACE_DIR", "/tmp/preview-sandbox/workspace"
            ),
            prewarm_cache_path=_env_str(
                "PREVIEW_PREWARM_CACHE_PATH", "/tmp/preview-sandbox/prewarm.json"
            ),
            prewarm_on_startup=_env_bool("PREVIEW_PREWARM_ON_STARTUP", default=True),
            prewarm_trust_cache=_env_bool("PREVIEW_PREWARM_TRUST_CACHE", default=False),
            output_max_lines=max(10, _env_int("PREVIEW_OUTPUT_MAX_LINES", 100)),
            fixer_url=_env_str("PREVIEW_FIXER_URL", "http://localhost:3001").rstrip("/"),
            fixer_timeout_s=max(1.0, _env_float("PREVIEW_FIXER_TIMEOUT_S", 60.0)),
            autoheal_enabled=_env_bool("PREVIEW_AUTOHEAL_ENABLED", default=True),
            autoheal_max_attempts=max(0, _env_int("PREVIEW_AUTOHEAL_MAX_ATTEMPTS", 15)),
            autoheal_debounce_s=max(0.0, _env_float("PREVIEW_AUTOHEAL_DEBOUNCE_S", 1.5)),
        )
