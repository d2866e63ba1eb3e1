from __future__ import annotations

from dataclasses import dataclass
from typing import Any

RUNTIME_ERROR_TYPE = "RUNTIME_ERROR"


def _truncate(text: str, *, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


@dataclass(frozen=True)
class RuntimeErrorMessage:
    message: str
    stack: str
    error_type: str


def parse_runtime_error_message(payload: Any) -> RuntimeErrorMessage | None:
    """Accept only `{type: "RUNTIME_ERROR", message, stack, errorType}` payloads."""
    if not isinstance(payload, dict):
        return None
    if payload.get("type") != RUNTIME_ERROR_TYPE:
        return None
    return RuntimeErrorMessage(
        message=_truncate(str(payload.get("message") or ""), max_chars=2000),
        stack=_truncate(str(payload.get("stack") or ""), max_chars=8000),
        error_type=str(payload.get("errorType") or "Error").strip() or "Error",
    )


def build_runtime_error_text(err: RuntimeErrorMessage) -> str:
    # The fixer service switches to its runtime prompt on the "Runtime Error" marker.
    text = f"Runtime Error ({err.error_type}): {err.message}\n"
    if err.stack:
        text += f"\nStack:\n{err.stack}\n"
    return text
