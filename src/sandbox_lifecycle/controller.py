from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.sandbox_lifecycle.baseline import (
    DEV_ARGS,
    DEV_COMMAND,
    INSTALL_ARGS,
    INSTALL_COMMAND,
    base_files,
    with_error_reporter,
)
from src.sandbox_lifecycle.errors import BootFailure, InstallFailure, MountFailure
from src.sandbox_lifecycle.output_buffer import OutputBuffer

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import (
        EngineInstance,
        ExecutionEngine,
        MountTree,
        ProcessHandle,
    )
    from src.sandbox_lifecycle.prewarm_cache import PreWarmCache

logger = logging.getLogger(__name__)


class PreWarmStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SessionRunState:
    booting: bool = False
    installing: bool = False
    running: bool = False
    preview_url: str | None = None
    last_error: str | None = None
    error_kind: str | None = None

    @property
    def phase(self) -> str:
        if self.last_error:
            return "error"
        if self.running:
            return "running"
        if self.installing:
            return "installing"
        if self.booting:
            return "booting"
        return "idle"

    def clear(self) -> None:
        self.booting = False
        self.installing = False
        self.running = False
        self.preview_url = None
        self.last_error = None
        self.error_kind = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "booting": bool(self.booting),
            "installing": bool(self.installing),
            "running": bool(self.running),
            "preview_url": self.preview_url,
            "error": self.last_error,
            "error_kind": self.error_kind,
        }


class _BootGate:
    """Process-wide, initialize-once holder for the engine instance.

    Every caller awaits the same in-flight boot. A failed boot clears the
    pending marker so a later caller can retry.
    """

    def __init__(self, engine: ExecutionEngine) -> None:
        self._engine = engine
        self.instance: EngineInstance | None = None
        self._pending: asyncio.Future[EngineInstance] | None = None
        self.boot_count = 0

    async def get(
        self, boot: Callable[[ExecutionEngine], Awaitable[EngineInstance]]
    ) -> EngineInstance:
        if self.instance is not None:
            return self.instance
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._boot_once(boot))
        return await asyncio.shield(self._pending)

    async def _boot_once(
        self, boot: Callable[[ExecutionEngine], Awaitable[EngineInstance]]
    ) -> EngineInstance:
        self.boot_count += 1
        try:
            instance = await boot(self._engine)
        except BaseException:
            self._pending = None
            raise
        self.instance = instance
        return instance


class SandboxLifecycleController:
    """Owns the single sandbox instance and drives it through a preview run.

    The engine instance and the pre-warm outcome live for the whole process.
    `state`, `output` and the active process belong to the current session and
    are cleared by `reset()`.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        *,
        output: OutputBuffer | None = None,
        prewarm_cache: PreWarmCache | None = None,
        trust_prewarm_cache: bool = False,
        drain_timeout_s: float = 5.0,
    ) -> None:
        self._gate = _BootGate(engine)
        self.output = output if output is not None else OutputBuffer()
        self.state = SessionRunState()
        self.prewarm_status = PreWarmStatus.NOT_STARTED
        self.generation = 0

        self._prewarm_cache = prewarm_cache
        self._trust_prewarm_cache = trust_prewarm_cache
        self._drain_timeout_s = drain_timeout_s
        self._prewarm_task: asyncio.Future[PreWarmStatus] | None = None
        self._run_task: asyncio.Future[None] | None = None
        self._process: ProcessHandle | None = None
        # Generation whose dev server may announce readiness; None while no dev
        # server of the current session is starting or running.
        self._ready_generation: int | None = None
        self._background: set[asyncio.Future[Any]] = set()

    @property
    def boot_count(self) -> int:
        return self._gate.boot_count

    @property
    def instance(self) -> EngineInstance | None:
        return self._gate.instance

    @property
    def active_process(self) -> ProcessHandle | None:
        return self._process

    def _append(self, line: str) -> None:
        self.output.append(line)

    def _record_error(self, message: str, *, kind: str) -> None:
        self.state.last_error = message
        self.state.error_kind = kind

    def _spawn_background(self, coro: Awaitable[Any]) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── boot ──────────────────────────────────────────────────────────

    async def boot(self) -> EngineInstance:
        return await self._gate.get(self._boot_engine)

    async def _boot_engine(self, engine: ExecutionEngine) -> EngineInstance:
        self.state.booting = True
        self.state.last_error = None
        self.state.error_kind = None
        self._append("Booting sandbox...")
        try:
            instance = await engine.boot()
        except Exception as exc:
            message = str(exc) or "Failed to boot"
            logger.error("Sandbox boot failed: %s", message, exc_info=True)
            self._record_error(message, kind=BootFailure.kind)
            self._append(f"Error: {message}")
            raise BootFailure(message) from exc
        finally:
            self.state.booting = False

        instance.on_server_ready(self._on_server_ready)
        self._append("Sandbox booted")
        return instance

    def _on_server_ready(self, port: int, url: str) -> None:
        if self._ready_generation != self.generation:
            logger.info("Ignoring stale server-ready event for %s", url)
            return
        logger.info("Dev server ready on port %s at %s", port, url)
        self._append(f"Server ready at {url}")
        self.state.preview_url = url
        self.state.running = True
        self.state.installing = False

    # ── pre-warm ──────────────────────────────────────────────────────

    async def pre_warm(self) -> PreWarmStatus:
        """Install the base dependency set once per process.

        Never raises; a failed pre-warm only means the first run installs more.
        """
        if self.prewarm_status is PreWarmStatus.DONE:
            return self.prewarm_status
        if self._prewarm_task is None:
            self._prewarm_task = asyncio.ensure_future(self._run_pre_warm())
        return await asyncio.shield(self._prewarm_task)

    @property
    def prewarm_in_progress(self) -> bool:
        return self._prewarm_task is not None and not self._prewarm_task.done()

    async def _run_pre_warm(self) -> PreWarmStatus:
        self.prewarm_status = PreWarmStatus.IN_PROGRESS

        if (
            self._trust_prewarm_cache
            and self._prewarm_cache is not None
            and self._prewarm_cache.is_installed()
        ):
            logger.info("Skipping base install, pre-warm cache reports installed")
            self._append("Base packages already installed")
            self.prewarm_status = PreWarmStatus.DONE
            return self.prewarm_status

        try:
            instance = await self.boot()
            self._append("Installing base packages...")
            await instance.mount(base_files())
            process = await instance.spawn(INSTALL_COMMAND, list(INSTALL_ARGS))
            exit_code = await self._run_to_exit(process, generation=None)
        except Exception as exc:
            logger.warning("Pre-warm failed: %s", exc)
            self._append(f"Pre-warm error: {exc}")
            self.prewarm_status = PreWarmStatus.FAILED
            return self.prewarm_status

        if exit_code != 0:
            logger.warning("Pre-warm install exited with code %s", exit_code)
            self._append(f"Pre-warm error: npm install exited with code {exit_code}")
            self.prewarm_status = PreWarmStatus.FAILED
            return self.prewarm_status

        self.prewarm_status = PreWarmStatus.DONE
        if self._prewarm_cache is not None:
            self._prewarm_cache.mark_installed()
        self._append("Base packages installed")
        return self.prewarm_status

    # ── process output ────────────────────────────────────────────────

    async def _pump_output(self, process: ProcessHandle, generation: int | None) -> None:
        # Keep draining after a reset so the child never blocks on a full pipe.
        try:
            async for chunk in process.output:
                if generation is None or generation == self.generation:
                    self.output.extend_chunk(chunk)
        except Exception:
            logger.warning("Process output stream failed", exc_info=True)

    async def _run_to_exit(self, process: ProcessHandle, *, generation: int | None) -> int:
        pump = self._spawn_background(self._pump_output(process, generation))
        exit_code = await process.wait()
        # Exit can resolve before the last buffered lines are read.
        await asyncio.wait({pump}, timeout=self._drain_timeout_s)
        return int(exit_code)

    async def _watch_dev_server(self, process: ProcessHandle, generation: int) -> None:
        exit_code = await process.wait()
        if self._process is not process or generation != self.generation:
            return
        self._process = None
        self._ready_generation = None
        message = f"Dev server exited with code {exit_code}"
        logger.warning(message)
        self.state.running = False
        self.state.installing = False
        self._record_error(message, kind="runtime_error")
        self._append(f"Error: {message}")

    def _kill_active(self) -> None:
        process = self._process
        self._process = None
        if process is None:
            return
        try:
            process.kill()
        except Exception:
            logger.warning("Failed to kill sandbox process", exc_info=True)

    # ── session operations ────────────────────────────────────────────

    async def mount_files(self, tree: MountTree) -> None:
        instance = await self.boot()
        if self.prewarm_in_progress and self._prewarm_task is not None:
            self._append("Waiting for base setup...")
            await asyncio.shield(self._prewarm_task)

        self._append("Mounting project files...")
        tree, injected = with_error_reporter(tree)
        if injected:
            self._append("Error reporter injected")
        try:
            await instance.mount(tree)
        except Exception as exc:
            message = f"Mount failed: {exc}"
            logger.error(message, exc_info=True)
            self._record_error(message, kind=MountFailure.kind)
            self._append(f"Error: {message}")
            raise MountFailure(message) from exc
        self._append("Files mounted")

    async def start_dev_server(self) -> None:
        """Install project dependencies, then start the dev server.

        Concurrent callers share the in-flight run. Raises `BootFailure` or
        `InstallFailure` after recording them in `state`.
        """
        if self._run_task is None or self._run_task.done():
            self._run_task = asyncio.ensure_future(self._start_dev_server())
        await asyncio.shield(self._run_task)

    async def _start_dev_server(self) -> None:
        instance = await self.boot()
        generation = self.generation

        self._kill_active()
        self._ready_generation = None
        self.state.preview_url = None
        self.state.running = False
        self.state.installing = True
        self.state.last_error = None
        self.state.error_kind = None
        self._append("Installing project dependencies...")

        try:
            installer = await instance.spawn(INSTALL_COMMAND, list(INSTALL_ARGS))
        except Exception as exc:
            self._fail_install(f"Dependency install could not start: {exc}")
            raise InstallFailure(str(exc)) from exc
        self._process = installer
        exit_code = await self._run_to_exit(installer, generation=generation)
        if generation != self.generation:
            logger.info("Run superseded by reset during dependency install")
            return
        self._process = None

        if exit_code != 0:
            message = f"Dependency install failed (exit code {exit_code})"
            self._fail_install(message)
            raise InstallFailure(message, exit_code=exit_code)

        self._append("Dependencies ready")
        self._append("Starting dev server...")
        self._ready_generation = generation
        try:
            dev = await instance.spawn(DEV_COMMAND, list(DEV_ARGS))
        except Exception as exc:
            message = f"Dev server could not start: {exc}"
            self._ready_generation = None
            self._fail_install(message)
            raise InstallFailure(message) from exc

        if generation != self.generation:
            dev.kill()
            return
        self._process = dev
        self._spawn_background(self._pump_output(dev, generation))
        self._spawn_background(self._watch_dev_server(dev, generation))

    def _fail_install(self, message: str) -> None:
        logger.error("%s", message)
        self.state.installing = False
        self._record_error(message, kind=InstallFailure.kind)
        self._append(f"Error: {message}")

    async def update_file(self, path: str, content: str) -> bool:
        """Hot-patch one file in the live sandbox without restarting anything."""
        try:
            instance = await self.boot()
            await instance.fs.write_file(path, content)
        except Exception as exc:
            logger.warning("Failed to update %s: %s", path, exc)
            self._append(f"Failed to update {path}: {exc}")
            return False
        self._append(f"Updated: {path}")
        return True

    def reset(self) -> None:
        self._kill_active()
        self._ready_generation = None
        self._run_task = None
        self.generation += 1
        self.state.clear()
        self.output.clear()

    def snapshot(self) -> dict[str, Any]:
        out = self.state.to_dict()
        out["prewarm"] = self.prewarm_status.value
        out["output"] = self.output.lines()
        out["generation"] = self.generation
        return out
