from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import ExecutionEngine
    from src.sandbox_lifecycle.config import PreviewConfig


def get_engine(config: PreviewConfig) -> ExecutionEngine:
    from src.sandbox_backends.local_backend import LocalEngine

    return LocalEngine(config.workspace_dir)
