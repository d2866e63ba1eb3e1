from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.fixer_client import FixerClient
from src.preview_session import PreviewSession
from src.runtime_error_feedback import RUNTIME_ERROR_TYPE
from src.sandbox_backends.factory import get_engine
from src.sandbox_files.archive import ArchiveError
from src.sandbox_files.tree import ProjectFiles
from src.sandbox_lifecycle.config import PreviewConfig
from src.sandbox_lifecycle.controller import SandboxLifecycleController
from src.sandbox_lifecycle.output_buffer import OutputBuffer
from src.sandbox_lifecycle.prewarm_cache import PreWarmCache
from src.self_heal_loop import SelfHealingLoop

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

app = FastAPI(title="Preview Sandbox", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_session: PreviewSession | None = None
logger = logging.getLogger(__name__)

_background: set[asyncio.Task[Any]] = set()


class FileUpdateRequest(BaseModel):
    path: str
    content: str


class RuntimeErrorRequest(BaseModel):
    type: str
    message: str = ""
    stack: str = ""
    errorType: str = "Error"


def build_session(config: PreviewConfig) -> PreviewSession:
    output = OutputBuffer(max_lines=config.output_max_lines)
    controller = SandboxLifecycleController(
        get_engine(config),
        output=output,
        prewarm_cache=PreWarmCache(config.prewarm_cache_path),
        trust_prewarm_cache=config.prewarm_trust_cache,
    )
    files = ProjectFiles()
    loop = SelfHealingLoop(
        controller,
        files,
        FixerClient(config.fixer_url, timeout_s=config.fixer_timeout_s),
        max_attempts=config.autoheal_max_attempts,
        debounce_s=config.autoheal_debounce_s,
        enabled=config.autoheal_enabled,
    )
    return PreviewSession(controller, loop, files)


def _get_session() -> PreviewSession:
    global _session
    if _session is None:
        _session = build_session(PreviewConfig.from_env())
    return _session


def _spawn(coro: Any) -> asyncio.Task[Any]:
    task = asyncio.ensure_future(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


@app.on_event("startup")
async def _startup() -> None:
    config = PreviewConfig.from_env()
    session = _get_session()
    if config.prewarm_on_startup:
        logger.info("Scheduling base dependency pre-warm")
        _spawn(session.controller.pre_warm())


@app.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/state")
async def api_state(include_content: bool = False) -> JSONResponse:
    return JSONResponse(_get_session().snapshot(include_content=include_content))


@app.post("/api/project")
async def api_upload_project(request: Request, name: str | None = None) -> JSONResponse:
    # Raw zip bytes as the request body; no multipart parsing.
    data = await request.body()
    if not data:
        return JSONResponse({"error": "empty_body"}, status_code=400)

    session = _get_session()
    try:
        session.load_archive(data, name=name)
    except ArchiveError as e:
        return JSONResponse({"error": "invalid_archive", "detail": str(e)}, status_code=400)
    return JSONResponse(session.snapshot(), status_code=201)


@app.post("/api/run")
async def api_run(wait: bool = False) -> JSONResponse:
    session = _get_session()
    if not session.files.nodes:
        return JSONResponse({"error": "no_project"}, status_code=409)

    if wait:
        ok = await session.start_run()
        return JSONResponse({"ok": ok, **session.snapshot()}, status_code=200 if ok else 500)

    _spawn(session.start_run())
    return JSONResponse({"ok": True, "started": True}, status_code=202)


@app.put("/api/files")
async def api_update_file(body: FileUpdateRequest) -> JSONResponse:
    session = _get_session()
    try:
        applied = await session.update_file(body.path, body.content)
    except PermissionError as e:
        return JSONResponse({"error": "forbidden_path", "detail": str(e)}, status_code=403)
    except FileNotFoundError:
        return JSONResponse({"error": "not_found"}, status_code=404)
    except ValueError as e:
        return JSONResponse({"error": "invalid_path", "detail": str(e)}, status_code=400)
    return JSONResponse({"ok": applied, "path": body.path})


@app.post("/api/reset")
async def api_reset() -> JSONResponse:
    session = _get_session()
    session.reset()
    return JSONResponse(session.snapshot())


@app.post("/api/runtime-error")
async def api_runtime_error(body: RuntimeErrorRequest) -> JSONResponse:
    entry = await _get_session().handle_runtime_message(body.model_dump())
    return JSONResponse({"handled": entry is not None, "entry": entry.to_dict() if entry else None})


async def _handle_ws(ws: WebSocket) -> None:
    await ws.accept()
    session = _get_session()

    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _on_output(line: str | None) -> None:
        if line is None:
            queue.put_nowait({"type": "output_cleared"})
        else:
            queue.put_nowait({"type": "output", "data": {"line": line}})

    await ws.send_json({"type": "snapshot", "data": session.snapshot()})
    unsubscribe = session.controller.output.subscribe(_on_output)

    async def _sender() -> None:
        while True:
            msg = await queue.get()
            await ws.send_json(msg)

    sender = asyncio.ensure_future(_sender())
    try:
        while True:
            try:
                raw = await ws.receive_text()
            except WebSocketDisconnect:
                return

            msg: Any
            try:
                msg = json.loads(raw)
            except Exception:
                continue
            if not isinstance(msg, dict):
                continue

            mtype = msg.get("type")
            if mtype == RUNTIME_ERROR_TYPE:
                entry = await session.handle_runtime_message(msg)
                if entry is not None:
                    queue.put_nowait({"type": "fix", "data": entry.to_dict()})
                continue
            if mtype == "ping":
                queue.put_nowait({"type": "pong"})
                continue
            if mtype == "snapshot":
                queue.put_nowait({"type": "snapshot", "data": session.snapshot()})
                continue
    finally:
        unsubscribe()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await sender


@app.websocket("/ws")
async def websocket_ws(ws: WebSocket) -> None:
    await _handle_ws(ws)
