"""Lifecycle control for the single preview sandbox instance."""

from src.sandbox_lifecycle.controller import (
    PreWarmStatus,
    SandboxLifecycleController,
    SessionRunState,
)
from src.sandbox_lifecycle.output_buffer import OutputBuffer

__all__ = [
    "OutputBuffer",
    "PreWarmStatus",
    "SandboxLifecycleController",
    "SessionRunState",
]
