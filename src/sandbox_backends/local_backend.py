from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import signal
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from urllib.parse import urlparse

from src.sandbox_backends.base import MountTree, ServerReadyListener

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
# Vite: "  ➜  Local:   http://localhost:5173/"
_SERVER_READY_RE = re.compile(r"Local:\s+(https?://\S+)")
_STREAM_LIMIT_BYTES = 1024 * 1024


def _decode_output(b: bytes) -> str:
    return b.decode("utf-8", errors="replace")


def _server_url(line: str) -> tuple[int, str] | None:
    m = _SERVER_READY_RE.search(_ANSI_RE.sub("", line))
    if not m:
        return None
    url = m.group(1)
    try:
        parsed = urlparse(url)
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
    except ValueError:
        return None
    return port, url


class LocalProcess:
    """Subprocess started in its own process group."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        on_line: Callable[[str], None] | None = None,
    ) -> None:
        self._proc = proc
        self._on_line = on_line
        self._consumed = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def output(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("process output already consumed")
        self._consumed = True
        return self._iter_lines()

    async def _iter_lines(self) -> AsyncIterator[str]:
        stream = self._proc.stdout
        if stream is None:
            return
        async for raw in stream:
            line = _decode_output(raw).rstrip("\r\n")
            if self._on_line is not None:
                self._on_line(line)
            yield line

    async def wait(self) -> int:
        return int(await self._proc.wait())

    def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        # `start_new_session=True` makes proc.pid the process group id on Linux.
        try:
            os.killpg(self._proc.pid, signal.SIGTERM)
        except Exception:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()


class LocalFs:
    def __init__(self, root: Path) -> None:
        self._root = root

    def resolve(self, rel_path: str) -> Path:
        p = str(rel_path or "").strip().lstrip("/")
        if not p:
            raise ValueError("empty path")
        full = (self._root / p).resolve()
        # Prevent escape from the workspace.
        if self._root not in full.parents and full != self._root:
            raise ValueError("path escapes workspace")
        return full

    async def write_file(self, path: str, content: str) -> None:
        full = self.resolve(path)

        def _write_sync() -> None:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write_sync)


class LocalEngineInstance:
    """Sandbox instance backed by a workspace directory on the host."""

    def __init__(self, root: Path, *, env: dict[str, str] | None = None) -> None:
        self.root = root
        self.fs = LocalFs(root)
        self._env = env
        self._server_ready_listeners: list[ServerReadyListener] = []

    def on_server_ready(self, listener: ServerReadyListener) -> None:
        self._server_ready_listeners.append(listener)

    def _emit_server_ready(self, port: int, url: str) -> None:
        for listener in list(self._server_ready_listeners):
            try:
                listener(port, url)
            except Exception:
                logger.warning("server-ready listener failed", exc_info=True)

    async def mount(self, tree: MountTree) -> None:
        def _mount_sync() -> int:
            return self._write_tree(self.root, tree)

        count = await asyncio.to_thread(_mount_sync)
        logger.info("Mounted %d files into %s", count, self.root)

    def _write_tree(self, base: Path, tree: MountTree) -> int:
        written = 0
        for name, entry in tree.items():
            if not name or "/" in name or name in (".", ".."):
                raise ValueError(f"invalid mount entry name: {name!r}")
            target = base / name
            if not isinstance(entry, dict):
                raise ValueError(f"invalid mount entry for {name!r}")
            if "directory" in entry:
                target.mkdir(parents=True, exist_ok=True)
                written += self._write_tree(target, entry.get("directory") or {})
                continue
            file_obj = entry.get("file") or {}
            contents = file_obj.get("contents", "")
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(contents, bytes):
                target.write_bytes(contents)
            else:
                target.write_text(str(contents), encoding="utf-8")
            written += 1
        return written

    async def spawn(self, command: str, args: list[str]) -> LocalProcess:
        env = dict(self._env) if self._env is not None else os.environ.copy()
        # Dev servers print colors and spinners when attached to a TTY-like env.
        env.setdefault("FORCE_COLOR", "0")
        env.setdefault("CI", "1")
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(self.root),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
            limit=_STREAM_LIMIT_BYTES,
        )
        logger.info("Spawned %s %s (pid=%s)", command, " ".join(args), proc.pid)

        announced = False

        def _on_line(line: str) -> None:
            nonlocal announced
            if announced:
                return
            ready = _server_url(line)
            if ready is not None:
                announced = True
                self._emit_server_ready(*ready)

        return LocalProcess(proc, on_line=_on_line)


class LocalEngine:
    """Execution engine running sandbox processes as local subprocesses."""

    def __init__(self, workspace_dir: str | Path, *, env: dict[str, str] | None = None) -> None:
        self.workspace_dir = Path(workspace_dir)
        self._env = env

    async def boot(self) -> LocalEngineInstance:
        root = self.workspace_dir.resolve()
        await asyncio.to_thread(root.mkdir, parents=True, exist_ok=True)
        logger.info("Booted local sandbox at %s", root)
        return LocalEngineInstance(root, env=self._env)
