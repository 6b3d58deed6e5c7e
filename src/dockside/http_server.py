"""Embedded HTTP server: health, exec, logs, stats, files, event history, terminals.

JSON endpoints live under /api/containers/{container_id}/. The terminal
endpoint is a websocket bridging one interactive exec session: stdin and
output travel base64-encoded, and closing the socket stops the session.
"""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Protocol

from aiohttp import WSMsgType, web

from dockside.engine.client import EngineClient
from dockside.errors import EngineError, StreamError, ValidationError
from dockside.event_bus import EVENT_TYPES, EventBroker
from dockside.exec.manager import ExecSessionManager
from dockside.files import ContainerFiles
from dockside.logger import logger
from dockside.logs import fetch_logs
from dockside.stats import fetch_stats
from dockside.types import InteractiveSession


class HttpDeps(Protocol):
    """Dependencies injected by app.py."""

    engine: EngineClient
    broker: EventBroker
    manager: ExecSessionManager
    files: ContainerFiles


deps_key = web.AppKey("deps", HttpDeps)


def _query_int(request: web.Request, name: str) -> int | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None


@web.middleware
async def _error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except EngineError as exc:
        status = exc.status_code or 500
        if status >= 500:
            logger.warning("Request failed", path=request.path, code=exc.code, err=exc.message)
        return web.json_response(exc.to_dict(), status=status)


# ------------------------------------------------------------------
# JSON endpoints
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app[deps_key]
    return web.json_response(
        {
            "status": "ok",
            "engine": await deps.engine.ping(),
            "sessions": len(deps.manager.get_active_sessions()),
        }
    )


async def _handle_sessions(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app[deps_key]
    container_id = request.match_info["container_id"]
    sessions = deps.manager.get_sessions_by_container(container_id)
    return web.json_response([s.to_dict() for s in sessions])


async def _handle_exec(request: web.Request) -> web.Response:
    """Run a one-shot command and return its collected output."""
    deps: HttpDeps = request.app[deps_key]
    container_id = request.match_info["container_id"]
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    cmd = body.get("cmd")
    if not isinstance(cmd, list) or not cmd:
        raise ValidationError("cmd must be a non-empty list of strings")

    result = await deps.manager.command(
        container_id,
        cmd,
        user=body.get("user"),
        working_dir=body.get("working_dir"),
        env=body.get("env"),
    )
    return web.json_response(result.to_dict())


async def _handle_shell(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app[deps_key]
    shell = await deps.manager.find_shell(request.match_info["container_id"])
    return web.json_response({"shell": shell})


async def _handle_logs(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app[deps_key]
    logs = await fetch_logs(
        deps.engine,
        request.match_info["container_id"],
        tail=_query_int(request, "tail"),
        timestamps=request.query.get("timestamps") in ("1", "true"),
        broker=deps.broker,
    )
    return web.json_response({"stdout": logs.stdout, "stderr": logs.stderr})


async def _handle_stats(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app[deps_key]
    stats = await fetch_stats(deps.engine, request.match_info["container_id"], broker=deps.broker)
    return web.json_response(stats.to_dict())


async def _handle_files(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app[deps_key]
    files = await deps.files.list_dir(
        request.match_info["container_id"],
        request.query.get("path", "/"),
        include_hidden=request.query.get("hidden") in ("1", "true"),
    )
    return web.json_response([f.to_dict() for f in files])


async def _handle_events(request: web.Request) -> web.Response:
    """Replay buffered events for one resource (or the global buffer)."""
    deps: HttpDeps = request.app[deps_key]
    type_name = request.query.get("type")
    event_type = None
    if type_name:
        event_type = EVENT_TYPES.get(type_name)
        if event_type is None:
            raise ValidationError(f"Unknown event type: {type_name}")
    events = deps.broker.get_buffered_events(
        request.query.get("resource") or None,
        event_type,
        _query_int(request, "limit"),
    )
    return web.json_response([e.to_dict() for e in events])


# ------------------------------------------------------------------
# Terminal websocket
# ------------------------------------------------------------------


async def _pump_output(ws: web.WebSocketResponse, session: InteractiveSession) -> None:
    """Forward session output until the process exits or the stream fails."""
    try:
        async for chunk in session.stream:
            await ws.send_json({"type": "data", "data": base64.b64encode(chunk).decode("ascii")})
        await ws.send_json({"type": "exit", "exec_id": session.exec_id})
    except StreamError as exc:
        if not ws.closed:
            await ws.send_json({"type": "error", "error": exc.message})


async def _handle_terminal_message(
    ws: web.WebSocketResponse, session: InteractiveSession, data: str
) -> bool:
    """Apply one client message; returns True when the client asked to stop."""
    try:
        message = json.loads(data)
        match message.get("type"):
            case "stdin":
                await session.stream.write(base64.b64decode(message.get("data", "")))
            case "resize":
                await session.resize(int(message["height"]), int(message["width"]))
            case "stop":
                return True
            case other:
                await ws.send_json({"type": "error", "error": f"Unknown message type: {other}"})
    except EngineError as exc:
        await ws.send_json({"type": "error", "error": exc.message})
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        await ws.send_json({"type": "error", "error": f"Malformed message: {exc}"})
    return False


async def _read_input(ws: web.WebSocketResponse, session: InteractiveSession) -> None:
    """Apply client messages until the socket closes or the client sends stop."""
    async for msg in ws:
        if msg.type == WSMsgType.TEXT:
            if await _handle_terminal_message(ws, session, msg.data):
                return
        elif msg.type == WSMsgType.ERROR:
            logger.warning("Terminal socket error", exec_id=session.exec_id, err=ws.exception())
            return


async def _handle_terminal(request: web.Request) -> web.WebSocketResponse:
    deps: HttpDeps = request.app[deps_key]
    container_id = request.match_info["container_id"]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    try:
        session = await deps.manager.interactive(container_id)
    except EngineError as exc:
        await ws.send_json({"type": "error", "error": exc.message})
        await ws.close()
        return ws

    logger.info("Terminal attached", container=container_id, exec_id=session.exec_id)
    tasks = {
        asyncio.create_task(_pump_output(ws, session)),
        asyncio.create_task(_read_input(ws, session)),
    }
    try:
        # The first side to finish ends the bridge
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                logger.debug(
                    "Terminal bridge task failed", exec_id=session.exec_id, err=str(result)
                )
        await session.kill()
        if not ws.closed:
            await ws.close()
        logger.info("Terminal detached", container=container_id, exec_id=session.exec_id)
    return ws


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def create_app(deps: HttpDeps) -> web.Application:
    app = web.Application(middlewares=[_error_middleware])
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/events", _handle_events)
    app.router.add_get("/api/containers/{container_id}/sessions", _handle_sessions)
    app.router.add_post("/api/containers/{container_id}/exec", _handle_exec)
    app.router.add_get("/api/containers/{container_id}/shell", _handle_shell)
    app.router.add_get("/api/containers/{container_id}/logs", _handle_logs)
    app.router.add_get("/api/containers/{container_id}/stats", _handle_stats)
    app.router.add_get("/api/containers/{container_id}/files", _handle_files)
    app.router.add_get("/api/containers/{container_id}/terminal", _handle_terminal)
    return app


async def start_http_server(deps: HttpDeps, host: str, port: int) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
