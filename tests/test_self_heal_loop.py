from __future__ import annotations

import asyncio
import logging

from src.error_signals import ErrorCandidate
from src.preview_session import PreviewSession
from src.sandbox_files.archive import extract_zip
from src.sandbox_files.tree import ProjectFiles
from src.sandbox_lifecycle.controller import SandboxLifecycleController
from src.sandbox_lifecycle.errors import FixServiceFailure
from src.self_heal_loop import (
    OUTCOME_APPLY_FAILED,
    OUTCOME_FILE_NOT_FOUND,
    OUTCOME_FIXED,
    OUTCOME_NO_SOURCE,
    OUTCOME_NOOP,
    OUTCOME_SERVICE_FAILURE,
    SelfHealingLoop,
)

IMPORT_ERROR = (
    '[vite] Internal server error: Failed to resolve import "./Foo" from "src/App.tsx". '
    "Does the file exist?"
)


def _candidate(text: str = "TypeError: boom", path: str = "src/App.tsx") -> ErrorCandidate:
    return ErrorCandidate(file_path=path, error_text=text)


def _wire(engine, fixer, sample_zip, **kwargs):
    controller = SandboxLifecycleController(engine)
    files = ProjectFiles(extract_zip(sample_zip))
    loop = SelfHealingLoop(controller, files, fixer, **kwargs)
    return controller, files, loop


async def _wait_for(predicate, timeout_s: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def test_fix_applies_to_tree_and_live_file(engine, fixer, sample_zip):
    controller, files, loop = _wire(engine, fixer, sample_zip)

    entry = asyncio.run(loop.handle_candidate(_candidate()))

    assert entry is not None and entry.ok is True
    assert entry.outcome == OUTCOME_FIXED
    assert fixer.calls[0]["file_path"] == "my-app/src/App.tsx"
    fixed = files.get("my-app/src/App.tsx").content
    assert fixed.endswith("// fixed\n")
    assert engine.instance.fs.files["src/App.tsx"] == fixed
    assert loop.state.attempt_count == 1
    assert loop.state.in_flight is False


def test_identical_consecutive_signals_call_fixer_once(engine, fixer, sample_zip):
    _, _, loop = _wire(engine, fixer, sample_zip)

    async def _run():
        await loop.handle_candidate(_candidate())
        return await loop.handle_candidate(_candidate())

    assert asyncio.run(_run()) is None
    assert len(fixer.calls) == 1
    assert loop.state.attempt_count == 1


def test_recurring_error_after_a_different_one_retriggers(engine, fixer, sample_zip):
    _, _, loop = _wire(engine, fixer, sample_zip)

    async def _run():
        await loop.handle_candidate(_candidate("TypeError: first"))
        await loop.handle_candidate(_candidate("TypeError: second"))
        await loop.handle_candidate(_candidate("TypeError: first"))

    asyncio.run(_run())
    assert len(fixer.calls) == 3


def test_attempt_budget_stops_fixer_calls(engine, fixer, sample_zip):
    _, _, loop = _wire(engine, fixer, sample_zip, max_attempts=3)

    async def _run():
        for i in range(6):
            await loop.handle_candidate(_candidate(f"TypeError: error number {i}"))

    asyncio.run(_run())
    assert len(fixer.calls) == 3
    assert loop.state.attempt_count == 3
    assert loop.state.exhausted is True


def test_candidates_are_dropped_while_a_fix_is_in_flight(engine, fixer, sample_zip):
    _, _, loop = _wire(engine, fixer, sample_zip)

    async def _run():
        fixer.gate = asyncio.Event()
        first = asyncio.ensure_future(loop.handle_candidate(_candidate("TypeError: one")))
        await _wait_for(lambda: len(fixer.calls) == 1)
        dropped = await loop.handle_candidate(_candidate("TypeError: two"))
        fixer.gate.set()
        await first
        return dropped

    assert asyncio.run(_run()) is None
    assert len(fixer.calls) == 1


def test_unchanged_fixer_output_is_noop(engine, fixer, sample_zip):
    _, files, loop = _wire(engine, fixer, sample_zip)
    original = files.get("my-app/src/App.tsx").content
    fixer.response = lambda content: content

    entry = asyncio.run(loop.handle_candidate(_candidate()))

    assert entry is not None and entry.ok is False
    assert entry.outcome == OUTCOME_NOOP
    assert files.get("my-app/src/App.tsx").content == original
    assert engine.instance.fs.files == {}
    assert not any(e.ok for e in loop.log)


def test_fixer_failure_is_logged_and_counted(engine, fixer, sample_zip):
    _, files, loop = _wire(engine, fixer, sample_zip)
    fixer.error = FixServiceFailure("fixer request failed (500): model overloaded", status_code=500)

    entry = asyncio.run(loop.handle_candidate(_candidate()))

    assert entry is not None and entry.outcome == OUTCOME_SERVICE_FAILURE
    assert "model overloaded" in entry.message
    assert loop.state.attempt_count == 1
    assert loop.state.in_flight is False
    assert engine.instance.fs.files == {}


def test_missing_file_counts_attempt_without_fixer_call(engine, fixer, sample_zip):
    _, _, loop = _wire(engine, fixer, sample_zip)

    entry = asyncio.run(loop.handle_candidate(_candidate(path="src/Ghost.vue")))

    assert entry is not None and entry.outcome == OUTCOME_FILE_NOT_FOUND
    assert fixer.calls == []
    assert loop.state.attempt_count == 1


def test_unparseable_runtime_stack_warns_without_fixer_call(engine, fixer, sample_zip, caplog):
    controller, _, loop = _wire(engine, fixer, sample_zip)
    controller.state.running = True
    payload = {
        "type": "RUNTIME_ERROR",
        "message": "Script error.",
        "stack": "at <anonymous>:1:1",
        "errorType": "Error",
    }

    with caplog.at_level(logging.WARNING, logger="src.self_heal_loop"):
        entry = asyncio.run(loop.handle_runtime_message(payload))

    assert fixer.calls == []
    assert entry is not None and entry.outcome == OUTCOME_NO_SOURCE
    assert any("without a project source frame" in r.getMessage() for r in caplog.records)


def test_runtime_message_is_ignored_unless_running(engine, fixer, sample_zip):
    _, _, loop = _wire(engine, fixer, sample_zip)
    payload = {"type": "RUNTIME_ERROR", "message": "x", "stack": "at src/App.tsx:1:1"}

    assert asyncio.run(loop.handle_runtime_message(payload)) is None
    assert fixer.calls == []


def test_runtime_message_triggers_fix(engine, fixer, sample_zip):
    controller, files, loop = _wire(engine, fixer, sample_zip)
    controller.state.running = True
    payload = {
        "type": "RUNTIME_ERROR",
        "message": "Cannot read properties of undefined (reading 'map')",
        "stack": "TypeError: ...\n    at List (http://localhost:5173/src/main.tsx?t=17:8:21)",
        "errorType": "TypeError",
    }

    entry = asyncio.run(loop.handle_runtime_message(payload))

    assert entry is not None and entry.ok is True
    assert fixer.calls[0]["file_path"] == "my-app/src/main.tsx"
    assert fixer.calls[0]["error_text"].startswith("Runtime Error (TypeError):")
    assert engine.instance.fs.files["src/main.tsx"] == files.get("my-app/src/main.tsx").content


def test_fix_result_is_discarded_after_reset(engine, fixer, sample_zip):
    controller, files, loop = _wire(engine, fixer, sample_zip)
    original = files.get("my-app/src/App.tsx").content

    async def _run():
        fixer.gate = asyncio.Event()
        task = asyncio.ensure_future(loop.handle_candidate(_candidate()))
        await _wait_for(lambda: len(fixer.calls) == 1)
        controller.reset()
        loop.reset()
        fixer.gate.set()
        return await task

    assert asyncio.run(_run()) is None
    assert engine.instance.fs.files == {}
    assert files.get("my-app/src/App.tsx").content == original
    assert loop.state.attempt_count == 0
    assert loop.log == []


def test_outstanding_fixer_call_blocks_next_session(engine, fixer, sample_zip):
    controller, _, loop = _wire(engine, fixer, sample_zip)

    async def _run():
        fixer.gate = asyncio.Event()
        stale = asyncio.ensure_future(loop.handle_candidate(_candidate("TypeError: old")))
        await _wait_for(lambda: len(fixer.calls) == 1)
        controller.reset()
        loop.reset()
        dropped = await loop.handle_candidate(_candidate("TypeError: new"))
        assert loop.snapshot()["in_flight"] is True
        fixer.gate.set()
        assert await stale is None
        accepted = await loop.handle_candidate(_candidate("TypeError: new"))
        return dropped, accepted

    dropped, accepted = asyncio.run(_run())
    assert dropped is None
    assert accepted is not None and accepted.outcome == OUTCOME_FIXED
    assert [c["error_text"] for c in fixer.calls] == ["TypeError: old", "TypeError: new"]
    assert loop.state.attempt_count == 1


def test_reset_during_live_write_leaves_tree_and_log_alone(engine, fixer, sample_zip):
    controller, files, loop = _wire(engine, fixer, sample_zip)
    original = files.get("my-app/src/App.tsx").content

    async def _write_then_reset(path: str, content: str) -> None:
        controller.reset()
        loop.reset()

    engine.instance.fs.write_file = _write_then_reset

    assert asyncio.run(loop.handle_candidate(_candidate())) is None
    assert files.get("my-app/src/App.tsx").content == original
    assert loop.log == []


def test_failed_live_write_is_not_a_fixer_failure(engine, fixer, sample_zip):
    _, files, loop = _wire(engine, fixer, sample_zip)
    original = files.get("my-app/src/App.tsx").content
    engine.instance.fs.fail_writes = True

    entry = asyncio.run(loop.handle_candidate(_candidate()))

    assert entry is not None and entry.ok is False
    assert entry.outcome == OUTCOME_APPLY_FAILED
    assert files.get("my-app/src/App.tsx").content == original
    assert len(fixer.calls) == 1


def test_end_to_end_build_error_is_fixed(engine, fixer, sample_zip):
    async def _run():
        controller = SandboxLifecycleController(engine)
        files = ProjectFiles()
        loop = SelfHealingLoop(controller, files, fixer, debounce_s=0.01)
        session = PreviewSession(controller, loop, files)

        session.load_archive(sample_zip, name="my-app.zip")
        assert await session.start_run() is True
        assert controller.state.running is True

        engine.instance.dev_spawns[0].emit(IMPORT_ERROR, "  Plugin: vite:import-analysis")
        await _wait_for(lambda: bool(loop.log))
        # Later output re-detects the same error; it must not trigger another call.
        engine.instance.dev_spawns[0].emit("hmr update /src/App.tsx")
        await asyncio.sleep(0.05)
        return session

    session = asyncio.run(_run())
    assert len(fixer.calls) == 1
    assert "Failed to resolve import" in fixer.calls[0]["error_text"]
    fixed = session.files.get("my-app/src/App.tsx").content
    assert fixed.endswith("// fixed\n")
    assert engine.instance.fs.files["src/App.tsx"] == fixed
    assert session.loop.state.attempt_count == 1
    assert [e.outcome for e in session.loop.log] == [OUTCOME_FIXED]


def test_disabled_loop_ignores_output(engine, fixer, sample_zip):
    async def _run():
        controller, _, loop = _wire(engine, fixer, sample_zip, enabled=False, debounce_s=0)
        controller.state.running = True
        controller.output.append(IMPORT_ERROR)
        await asyncio.sleep(0.02)
        return await loop.check_output()

    assert asyncio.run(_run()) is None
    assert fixer.calls == []
