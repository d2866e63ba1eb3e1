import asyncio
import copy
import io
import sys
import zipfile
from pathlib import Path
from typing import Any

import pytest

# Ensure the repo root is on sys.path so tests can import the local `src/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(autouse=True)
def _disable_prewarm_on_startup_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    # Unit tests never want a real `npm install` scheduled by the app startup hook.
    monkeypatch.setenv("PREVIEW_PREWARM_ON_STARTUP", "0")


class FakeProcess:
    def __init__(self, command: str, args: list[str]) -> None:
        self.command = command
        self.args = list(args)
        self.killed = False
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    @property
    def is_install(self) -> bool:
        return self.args[:1] == ["install"]

    def emit(self, *lines: str) -> None:
        for line in lines:
            self._queue.put_nowait(line)

    def finish(self, code: int = 0) -> None:
        if self._exit.done():
            return
        self._queue.put_nowait(None)
        self._exit.set_result(code)

    @property
    def output(self):
        return self._iter()

    async def _iter(self):
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    async def wait(self) -> int:
        return await asyncio.shield(self._exit)

    def kill(self) -> None:
        self.killed = True
        self.finish(-15)


class FakeFs:
    def __init__(self) -> None:
        self.files: dict[str, str] = {}
        self.fail_writes = False

    async def write_file(self, path: str, content: str) -> None:
        if self.fail_writes:
            raise OSError("read-only file system")
        self.files[path] = content


class FakeInstance:
    """Scriptable sandbox: installs exit at once, dev servers run until killed."""

    def __init__(self) -> None:
        self.fs = FakeFs()
        self.mounts: list[dict[str, Any]] = []
        self.processes: list[FakeProcess] = []
        self.listeners: list[Any] = []
        self.install_exit_code = 0
        self.install_lines: list[str] = ["added 120 packages in 3s"]
        self.dev_lines: list[str] = ["VITE v5.4.0  ready in 300 ms"]
        self.announce_on_dev = True
        self.mount_error: Exception | None = None
        self.install_gate: asyncio.Event | None = None

    def on_server_ready(self, listener) -> None:
        self.listeners.append(listener)

    def announce(self, port: int = 5173, url: str = "http://localhost:5173/") -> None:
        for listener in list(self.listeners):
            listener(port, url)

    async def mount(self, tree: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if self.mount_error is not None:
            raise self.mount_error
        self.mounts.append(copy.deepcopy(tree))

    async def spawn(self, command: str, args: list[str]) -> FakeProcess:
        proc = FakeProcess(command, args)
        self.processes.append(proc)
        if proc.is_install:
            proc.emit(*self.install_lines)
            if self.install_gate is None:
                proc.finish(self.install_exit_code)
            else:
                asyncio.ensure_future(self._finish_when_released(proc))
        else:
            proc.emit(*self.dev_lines)
            if self.announce_on_dev:
                self.announce()
        return proc

    async def _finish_when_released(self, proc: FakeProcess) -> None:
        assert self.install_gate is not None
        await self.install_gate.wait()
        proc.finish(self.install_exit_code)

    @property
    def install_spawns(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.is_install]

    @property
    def dev_spawns(self) -> list[FakeProcess]:
        return [p for p in self.processes if not p.is_install]


class FakeEngine:
    def __init__(self) -> None:
        self.instance = FakeInstance()
        self.boot_calls = 0
        self.fail_boots = 0

    async def boot(self) -> FakeInstance:
        self.boot_calls += 1
        await asyncio.sleep(0.01)
        if self.fail_boots > 0:
            self.fail_boots -= 1
            raise OSError("engine unavailable")
        return self.instance


class FakeFixer:
    """Returns `response(file_content)` or raises `error`; records every call."""

    def __init__(self) -> None:
        self.calls: list[dict[str, str]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.response = lambda content: content + "\n// fixed\n"

    async def fix(self, *, error_text: str, file_path: str, file_content: str) -> str:
        self.calls.append(
            {"error_text": error_text, "file_path": file_path, "file_content": file_content}
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.response(file_content)


def make_zip(files: dict[str, str], *, dirs: tuple[str, ...] = ()) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for d in dirs:
            zf.writestr(d.rstrip("/") + "/", "")
        for path, content in files.items():
            zf.writestr(path, content)
    return buf.getvalue()


SAMPLE_PROJECT = {
    "my-app/package.json": '{"name": "my-app", "scripts": {"dev": "vite"}}',
    "my-app/index.html": "<html><head><title>x</title></head><body></body></html>",
    "my-app/src/App.tsx": "import Foo from './Foo'\nexport default function App() { return <Foo /> }\n",
    "my-app/src/main.tsx": "import App from './App'\n",
}


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fixer() -> FakeFixer:
    return FakeFixer()


@pytest.fixture
def sample_zip() -> bytes:
    return make_zip(SAMPLE_PROJECT)


@pytest.fixture
def zip_bytes():
    return make_zip
