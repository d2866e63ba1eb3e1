from __future__ import annotations

from dataclasses import dataclass, replace

DEDUP_PREFIX_CHARS = 50

DedupKey = tuple[str, str]


def dedup_key(file_path: str, error_text: str) -> DedupKey:
    return (str(file_path or ""), str(error_text or "")[:DEDUP_PREFIX_CHARS])


@dataclass(frozen=True)
class FixAttemptState:
    dedup_key: DedupKey | None = None
    attempt_count: int = 0
    max_attempts: int = 15
    in_flight: bool = False

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


@dataclass(frozen=True)
class FixAttemptDecision:
    allowed: bool
    reason: str | None = None
    key: DedupKey | None = None


def decide_fix_attempt(
    *, state: FixAttemptState, file_path: str, error_text: str
) -> FixAttemptDecision:
    """Pure decision helper.

    Guards are evaluated in order: a fix already in flight, the per-session
    attempt budget, then the last triggered key. Only the immediately previous
    key is remembered, so an error that recurs after a different one is
    allowed again.

    This does not mutate `state`. Call `begin_fix_attempt(...)` once the
    allowed attempt actually starts.
    """
    key = dedup_key(file_path, error_text)
    if state.in_flight:
        return FixAttemptDecision(allowed=False, reason="in_flight", key=key)
    if state.exhausted:
        return FixAttemptDecision(allowed=False, reason="max_attempts", key=key)
    if state.dedup_key == key:
        return FixAttemptDecision(allowed=False, reason="duplicate", key=key)
    return FixAttemptDecision(allowed=True, reason=None, key=key)


def begin_fix_attempt(*, state: FixAttemptState, key: DedupKey) -> FixAttemptState:
    return replace(
        state,
        dedup_key=key,
        attempt_count=min(state.max_attempts, state.attempt_count + 1),
        in_flight=True,
    )


def finish_fix_attempt(*, state: FixAttemptState) -> FixAttemptState:
    return replace(state, in_flight=False)
