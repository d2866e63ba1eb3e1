from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

MountTree = dict[str, Any]
ServerReadyListener = Callable[[int, str], None]


class ProcessHandle(Protocol):
    """A process spawned inside the sandbox.

    `output` yields decoded lines (stdout and stderr merged) until the process
    closes its output. It supports a single consumer.
    """

    @property
    def output(self) -> AsyncIterator[str]: ...

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class EngineFs(Protocol):
    async def write_file(self, path: str, content: str) -> None: ...


class EngineInstance(Protocol):
    """A booted sandbox environment.

    Mount trees use the nested shape
      {"name": {"file": {"contents": "..."}}}
      {"name": {"directory": {...}}}
    rooted at the project directory.
    """

    fs: EngineFs

    async def mount(self, tree: MountTree) -> None: ...

    async def spawn(self, command: str, args: list[str]) -> ProcessHandle: ...

    def on_server_ready(self, listener: ServerReadyListener) -> None: ...


class ExecutionEngine(Protocol):
    async def boot(self) -> EngineInstance: ...
