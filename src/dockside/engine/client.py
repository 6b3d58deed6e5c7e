"""Engine client: the calls the stream/session layer makes against the engine.

:class:`EngineClient` is the contract the exec manager depends on;
:class:`DockerEngineClient` implements it against the Docker Engine REST API
over its unix socket (or TCP). Request/response calls go through the
configured :class:`~dockside.retry.RetryPolicy`. ``exec_create`` and
``exec_start`` are not retried: neither is idempotent, and a create retried
after a lost response would leave an orphan exec instance in the engine.
"""

from __future__ import annotations

import contextlib
import json
from collections.abc import AsyncIterator, Iterator
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp

from dockside.config import EngineConfig
from dockside.engine._hijack import EngineAddress, open_hijacked
from dockside.errors import EngineTimeoutError, NetworkError, error_from_status
from dockside.logger import logger
from dockside.retry import RetryPolicy, retry_until
from dockside.types import ExecInspect, ExecSpec, ExecStartOptions, TerminalSize


@runtime_checkable
class DuplexStream(Protocol):
    """Byte stream returned by ``exec_start``."""

    @property
    def closed(self) -> bool: ...

    async def read(self, n: int = 65536) -> bytes: ...
    async def write(self, data: bytes) -> None: ...
    async def close(self) -> None: ...


class EngineClient(Protocol):
    """Contract for the remote exec calls. 404s surface as NotFoundError."""

    async def exec_create(self, container_id: str, spec: ExecSpec) -> str: ...
    async def exec_start(self, exec_id: str, options: ExecStartOptions) -> DuplexStream: ...
    async def exec_resize(self, exec_id: str, size: TerminalSize) -> None: ...
    async def exec_inspect(self, exec_id: str) -> ExecInspect: ...
    async def container_inspect(self, container_id: str) -> dict[str, Any]: ...
    async def container_logs(
        self, container_id: str, *, tail: int | None = None, timestamps: bool = False
    ) -> bytes: ...
    async def container_stats(self, container_id: str) -> dict[str, Any]: ...
    def container_events(
        self,
        *,
        since: int | None = None,
        until: int | None = None,
        filters: dict[str, list[str]] | None = None,
    ) -> AsyncIterator[dict[str, Any]]: ...
    async def ping(self) -> bool: ...
    async def close(self) -> None: ...


class DockerEngineClient:
    """aiohttp-backed client for the Docker Engine API."""

    def __init__(
        self, config: EngineConfig | None = None, retry: RetryPolicy | None = None
    ) -> None:
        self.config = config or EngineConfig()
        self.retry = retry or RetryPolicy()
        self.address = EngineAddress.parse(self.config.host)
        self._prefix = f"/v{self.config.api_version}" if self.config.api_version else ""
        self._session: aiohttp.ClientSession | None = None

    # ------------------------------------------------------------------

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector: aiohttp.BaseConnector
            if self.address.socket_path:
                connector = aiohttp.UnixConnector(path=self.address.socket_path)
            else:
                connector = aiohttp.TCPConnector()
            self._session = aiohttp.ClientSession(
                base_url=self.address.base_url,
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"User-Agent": self.config.user_agent},
            )
        return self._session

    def _path(self, path: str) -> str:
        return f"{self._prefix}{path}"

    @contextlib.contextmanager
    def _engine_errors(self, method: str, path: str) -> Iterator[None]:
        """Translate aiohttp transport failures into the engine error taxonomy."""
        try:
            yield
        except aiohttp.ClientConnectorError as exc:
            raise NetworkError(
                f"Cannot connect to the Docker daemon at {self.config.host}",
                details={"err": str(exc)},
            ) from exc
        except TimeoutError as exc:
            raise EngineTimeoutError(f"{method} {path}", self.config.timeout) from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(
                f"Engine request {method} {path} failed: {exc}", details={"err": str(exc)}
            ) from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        resource: str = "Resource",
        identifier: str | None = None,
    ) -> bytes:
        session = self._client_session()
        with self._engine_errors(method, path):
            async with session.request(
                method, self._path(path), params=params, json=body
            ) as resp:
                data = await resp.read()
                if resp.status >= 400:
                    raise error_from_status(
                        resp.status,
                        _error_message(data, resp.reason),
                        resource=resource,
                        identifier=identifier,
                    )
                return data

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        data = await self._request(method, path, **kwargs)
        return json.loads(data) if data else {}

    # ------------------------------------------------------------------
    # EngineClient
    # ------------------------------------------------------------------

    async def exec_create(self, container_id: str, spec: ExecSpec) -> str:
        cid = quote(container_id, safe="")
        result = await self._request_json(
            "POST",
            f"/containers/{cid}/exec",
            body=spec.to_engine(),
            resource="Container",
            identifier=container_id,
        )
        return result["Id"]

    async def exec_start(self, exec_id: str, options: ExecStartOptions) -> DuplexStream:
        # No retry: a half-consumed interactive stream can't be replayed.
        return await open_hijacked(
            self.address,
            self._path(f"/exec/{quote(exec_id, safe='')}/start"),
            options.to_engine(),
            user_agent=self.config.user_agent,
            timeout=self.config.timeout,
            identifier=exec_id,
        )

    async def exec_resize(self, exec_id: str, size: TerminalSize) -> None:
        eid = quote(exec_id, safe="")
        await self.retry.run(
            lambda: self._request(
                "POST",
                f"/exec/{eid}/resize",
                params={"h": str(size.height), "w": str(size.width)},
                resource="Exec session",
                identifier=exec_id,
            ),
            operation="exec_resize",
        )

    async def exec_inspect(self, exec_id: str) -> ExecInspect:
        eid = quote(exec_id, safe="")
        raw = await self.retry.run(
            lambda: self._request_json(
                "GET", f"/exec/{eid}/json", resource="Exec session", identifier=exec_id
            ),
            operation="exec_inspect",
        )
        return ExecInspect.from_engine(raw)

    async def container_inspect(self, container_id: str) -> dict[str, Any]:
        cid = quote(container_id, safe="")
        return await self.retry.run(
            lambda: self._request_json(
                "GET", f"/containers/{cid}/json", resource="Container", identifier=container_id
            ),
            operation="container_inspect",
        )

    async def container_logs(
        self, container_id: str, *, tail: int | None = None, timestamps: bool = False
    ) -> bytes:
        cid = quote(container_id, safe="")
        params = {
            "stdout": "1",
            "stderr": "1",
            "timestamps": "1" if timestamps else "0",
            "tail": str(tail) if tail is not None else "all",
        }
        return await self.retry.run(
            lambda: self._request(
                "GET",
                f"/containers/{cid}/logs",
                params=params,
                resource="Container",
                identifier=container_id,
            ),
            operation="container_logs",
        )

    async def container_stats(self, container_id: str) -> dict[str, Any]:
        """One stats sample (``stream=false``); the engine waits for a CPU delta."""
        cid = quote(container_id, safe="")
        return await self.retry.run(
            lambda: self._request_json(
                "GET",
                f"/containers/{cid}/stats",
                params={"stream": "false"},
                resource="Container",
                identifier=container_id,
            ),
            operation="container_stats",
        )

    async def container_events(
        self,
        *,
        since: int | None = None,
        until: int | None = None,
        filters: dict[str, list[str]] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield engine events as they arrive, one JSON object per line.

        Without ``until`` the stream stays open until the engine closes it;
        only the connect phase is bounded by the request timeout.
        """
        params: dict[str, str] = {}
        if since is not None:
            params["since"] = str(since)
        if until is not None:
            params["until"] = str(until)
        if filters:
            params["filters"] = json.dumps(filters)
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.config.timeout)

        session = self._client_session()
        with self._engine_errors("GET", "/events"):
            async with session.get(self._path("/events"), params=params, timeout=timeout) as resp:
                if resp.status >= 400:
                    data = await resp.read()
                    raise error_from_status(resp.status, _error_message(data, resp.reason))
                async for line in resp.content:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed engine event", line=line[:200])
                        continue
                    yield event

    async def ping(self) -> bool:
        try:
            data = await self._request("GET", "/_ping")
        except Exception as exc:
            logger.debug("Engine ping failed", host=self.config.host, err=str(exc))
            return False
        return data.strip() == b"OK"

    async def wait_until_ready(self, max_duration: float = 30.0) -> bool:
        """Poll ``/_ping`` with backoff until the engine answers."""
        try:
            await retry_until(
                self.ping,
                bool,
                policy=RetryPolicy.linear(max_attempts=max(1, int(max_duration)), delay=1.0),
                max_duration=max_duration,
            )
        except Exception:
            logger.warning("Engine did not become ready", host=self.config.host)
            return False
        logger.info("Connected to container engine", host=self.config.host)
        return True

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _error_message(data: bytes, fallback: str | None) -> str:
    text = data.decode("utf-8", errors="replace").strip()
    try:
        return json.loads(text).get("message") or text or (fallback or "")
    except (json.JSONDecodeError, AttributeError):
        return text or (fallback or "")
