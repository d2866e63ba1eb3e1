from __future__ import annotations

import logging
import re
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

OutputListener = Callable[[str | None], None]


def _clean(line: str) -> str | None:
    # Spinner redraws from npm/vite carry cursor controls; they are not output.
    if "[0K" in line or "[1G" in line:
        return None
    cleaned = _ANSI_RE.sub("", line).rstrip()
    if len(cleaned.strip()) < 2:
        return None
    return cleaned


class OutputBuffer:
    """Bounded, ordered log of sandbox output lines.

    Only the most recent `max_lines` lines are kept. Listeners receive each
    accepted line, and `None` when the buffer is cleared.
    """

    def __init__(self, max_lines: int = 100) -> None:
        self.max_lines = max(1, int(max_lines))
        self._lines: deque[str] = deque(maxlen=self.max_lines)
        self._listeners: list[OutputListener] = []

    def append(self, line: str) -> bool:
        cleaned = _clean(str(line or ""))
        if cleaned is None:
            return False
        self._lines.append(cleaned)
        self._notify(cleaned)
        return True

    def extend_chunk(self, chunk: str) -> int:
        """Split a raw output chunk into lines and append the non-empty ones."""
        added = 0
        for part in str(chunk or "").split("\n"):
            if part and self.append(part):
                added += 1
        return added

    def clear(self) -> None:
        self._lines.clear()
        self._notify(None)

    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def subscribe(self, listener: OutputListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, line: str | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(line)
            except Exception:
                logger.warning("Output listener failed", exc_info=True)
