from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from src.error_signals import ErrorCandidate, from_output, from_runtime_stack
from src.runtime_autoheal import (
    FixAttemptState,
    begin_fix_attempt,
    decide_fix_attempt,
    finish_fix_attempt,
)
from src.runtime_error_feedback import build_runtime_error_text, parse_runtime_error_message
from src.sandbox_files.tree import ProjectFiles
from src.sandbox_lifecycle.controller import SandboxLifecycleController
from src.sandbox_lifecycle.errors import FixServiceFailure

logger = logging.getLogger(__name__)

OUTCOME_FIXED = "fixed"
OUTCOME_FILE_NOT_FOUND = "file_not_found"
OUTCOME_NOOP = "fix_apply_noop"
OUTCOME_SERVICE_FAILURE = "fix_service_failure"
OUTCOME_NO_SOURCE = "no_source_path"
OUTCOME_APPLY_FAILED = "apply_failed"


class Fixer(Protocol):
    async def fix(self, *, error_text: str, file_path: str, file_content: str) -> str: ...


@dataclass(frozen=True)
class FixLogEntry:
    ok: bool
    message: str
    ts_ms: int
    outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "message": self.message,
            "ts_ms": self.ts_ms,
            "outcome": self.outcome,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


class SelfHealingLoop:
    """Watch sandbox output and runtime reports, and send fixable errors to the fixer.

    At most one fix is in flight. Each session gets `max_attempts` fixer calls;
    after that repair stays off until `reset()`.
    """

    def __init__(
        self,
        controller: SandboxLifecycleController,
        files: ProjectFiles,
        fixer: Fixer,
        *,
        max_attempts: int = 15,
        debounce_s: float = 1.5,
        enabled: bool = True,
    ) -> None:
        self._controller = controller
        self._files = files
        self._fixer = fixer
        self.max_attempts = max(0, int(max_attempts))
        self.debounce_s = max(0.0, float(debounce_s))
        self.enabled = enabled

        self.state = FixAttemptState(max_attempts=self.max_attempts)
        self.log: list[FixLogEntry] = []
        self._timer: asyncio.Task[None] | None = None
        # Survives reset(): a fixer call from an abandoned session still counts
        # as outstanding until it returns.
        self._outstanding = False
        controller.output.subscribe(self._on_output)

    def reset(self) -> None:
        self._cancel_timer()
        self.state = FixAttemptState(max_attempts=self.max_attempts)
        self.log = []

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def _record(self, ok: bool, message: str, outcome: str) -> FixLogEntry:
        entry = FixLogEntry(ok=ok, message=message, ts_ms=_now_ms(), outcome=outcome)
        self.log.append(entry)
        return entry

    # ── triggers ──────────────────────────────────────────────────────

    def _on_output(self, line: str | None) -> None:
        if line is None or not self.enabled or not self._controller.state.running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cancel_timer()
        self._timer = loop.create_task(self._debounced_check())

    async def _debounced_check(self) -> None:
        await asyncio.sleep(self.debounce_s)
        self._timer = None
        await self.check_output()

    async def check_output(self) -> FixLogEntry | None:
        if not self.enabled or not self._controller.state.running:
            return None
        candidate = from_output(self._controller.output.lines())
        if candidate is None:
            return None
        return await self.handle_candidate(candidate)

    async def handle_runtime_message(self, payload: Any) -> FixLogEntry | None:
        err = parse_runtime_error_message(payload)
        if err is None:
            return None
        if not self.enabled or not self._controller.state.running:
            return None

        file_path = from_runtime_stack(err.stack)
        if file_path is None:
            logger.warning("Runtime error without a project source frame: %s", err.message)
            return self._record(
                False,
                f"Could not locate source file for runtime error: {err.message}",
                OUTCOME_NO_SOURCE,
            )

        candidate = ErrorCandidate(
            file_path=file_path,
            error_text=build_runtime_error_text(err),
            origin="runtime",
        )
        return await self.handle_candidate(candidate)

    # ── fix attempt ───────────────────────────────────────────────────

    async def handle_candidate(self, candidate: ErrorCandidate) -> FixLogEntry | None:
        if self._outstanding:
            logger.debug("Fix attempt for %s skipped: fixer call outstanding", candidate.file_path)
            return None
        decision = decide_fix_attempt(
            state=self.state,
            file_path=candidate.file_path,
            error_text=candidate.error_text,
        )
        if not decision.allowed or decision.key is None:
            logger.debug("Fix attempt for %s skipped: %s", candidate.file_path, decision.reason)
            return None

        self.state = begin_fix_attempt(state=self.state, key=decision.key)
        generation = self._controller.generation
        logger.info(
            "Fix attempt %d/%d for %s (%s)",
            self.state.attempt_count,
            self.max_attempts,
            candidate.file_path,
            candidate.origin,
        )
        self._outstanding = True
        try:
            return await self._attempt(candidate, generation)
        finally:
            self._outstanding = False
            if generation == self._controller.generation:
                self.state = finish_fix_attempt(state=self.state)

    async def _attempt(self, candidate: ErrorCandidate, generation: int) -> FixLogEntry | None:
        node = self._files.resolve(candidate.file_path)
        if node is None or node.content is None:
            logger.warning("Fix target %s not found in project files", candidate.file_path)
            return self._record(
                False, f"File not found: {candidate.file_path}", OUTCOME_FILE_NOT_FOUND
            )

        original = node.content
        try:
            fixed = await self._fixer.fix(
                error_text=candidate.error_text,
                file_path=node.path,
                file_content=original,
            )
        except FixServiceFailure as exc:
            logger.warning("Fixer failed for %s: %s", node.path, exc)
            if generation != self._controller.generation:
                return None
            return self._record(False, f"Fix failed for {node.path}: {exc}", OUTCOME_SERVICE_FAILURE)

        if generation != self._controller.generation:
            logger.info("Discarding fix for %s, session was reset", node.path)
            return None

        if fixed == original:
            return self._record(False, f"Fixer returned no changes for {node.path}", OUTCOME_NOOP)

        mounted_path = self._files.mounted_path(node)
        applied = await self._controller.update_file(mounted_path, fixed)
        if generation != self._controller.generation:
            logger.info("Not recording fix for %s, session was reset during the write", node.path)
            return None
        if not applied:
            return self._record(
                False, f"Fix for {node.path} could not be applied", OUTCOME_APPLY_FAILED
            )
        self._files.replace_content(node.path, fixed)
        return self._record(True, f"Fixed {node.path}", OUTCOME_FIXED)

    def snapshot(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "attempt_count": self.state.attempt_count,
            "max_attempts": self.max_attempts,
            "in_flight": self.state.in_flight or self._outstanding,
            "log": [e.to_dict() for e in self.log],
        }
