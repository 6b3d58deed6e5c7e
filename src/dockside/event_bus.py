"""In-process event broker with bounded per-resource history.

Producers publish typed event dataclasses; consumers subscribe by event class
with an optional filter predicate. Every published event is also kept in a
capped, time-bounded history keyed by container id, image id or "global",
so late joiners (a freshly opened dashboard socket) can replay recent
activity.

A failing subscriber never affects the publisher or other subscribers.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import dataclasses
import inspect
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, Literal, TypeAlias

from dockside.logger import logger
from dockside.stream_codec import Channel

GLOBAL_KEY = "global"


def _now() -> datetime:
    return datetime.now(UTC)


# --- Event types ---


@dataclass(kw_only=True)
class _BaseEvent:
    event_type: ClassVar[str]

    timestamp: datetime = field(default_factory=_now)
    container_id: str | None = None
    image_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def resource_key(self) -> str:
        return self.container_id or self.image_id or GLOBAL_KEY

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form for sockets and HTTP responses."""
        out: dict[str, Any] = {"type": self.event_type}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, bytes):
                value = base64.b64encode(value).decode("ascii")
            elif isinstance(value, Channel):
                value = value.name.lower()
            out[f.name] = value
        return out


@dataclass(kw_only=True)
class ExecEvent(_BaseEvent):
    """Lifecycle change of an exec session."""

    event_type: ClassVar[str] = "container.exec"

    action: Literal["created", "started", "running", "ended", "stopped"]
    exec_id: str
    command: list[str] | None = None
    exit_code: int | None = None


@dataclass(kw_only=True)
class ExecOutputEvent(_BaseEvent):
    """A chunk of session output, in stream order."""

    event_type: ClassVar[str] = "container.exec.output"

    exec_id: str
    channel: Channel
    data: bytes


@dataclass(kw_only=True)
class FilesEvent(_BaseEvent):
    """A filesystem mutation inside a container."""

    event_type: ClassVar[str] = "container.files"

    operation: Literal["delete", "mkdir", "copy", "move"]
    path: str
    destination: str | None = None


@dataclass(kw_only=True)
class LogsEvent(_BaseEvent):
    """Container logs were fetched."""

    event_type: ClassVar[str] = "container.logs"

    stdout_lines: int
    stderr_lines: int
    tail: int | None = None


@dataclass(kw_only=True)
class StatsEvent(_BaseEvent):
    """A resource usage sample for a container."""

    event_type: ClassVar[str] = "container.stats"

    stats: dict[str, Any]


@dataclass(kw_only=True)
class ContainerEventsEvent(_BaseEvent):
    """An event relayed from the engine's own event feed (start, die, oom, ...)."""

    event_type: ClassVar[str] = "system.event"

    kind: str
    action: str
    actor_id: str
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(kw_only=True)
class ErrorEvent(_BaseEvent):
    event_type: ClassVar[str] = "error"

    message: str
    exec_id: str | None = None


Event: TypeAlias = (
    ExecEvent
    | ExecOutputEvent
    | FilesEvent
    | LogsEvent
    | StatsEvent
    | ContainerEventsEvent
    | ErrorEvent
)
Callback: TypeAlias = Callable[[Any], Any]
Filter: TypeAlias = Callable[[Any], bool]

EVENT_TYPES: dict[str, type[_BaseEvent]] = {
    cls.event_type: cls
    for cls in (
        ExecEvent,
        ExecOutputEvent,
        FilesEvent,
        LogsEvent,
        StatsEvent,
        ContainerEventsEvent,
        ErrorEvent,
    )
}
CONTAINER_EVENT_TYPES: tuple[type[_BaseEvent], ...] = (
    ExecEvent,
    ExecOutputEvent,
    FilesEvent,
    LogsEvent,
    StatsEvent,
    ContainerEventsEvent,
)


@dataclass(frozen=True)
class Subscription:
    id: str
    event_type: type[_BaseEvent]
    callback: Callback
    filter: Filter | None = None

    def matches(self, event: _BaseEvent) -> bool:
        if type(event) is not self.event_type:
            return False
        return self.filter is None or bool(self.filter(event))


class EventBroker:
    """Typed publish/subscribe with capped per-resource ring buffers.

    Sync callbacks run inline during ``publish``; a callback that returns an
    awaitable has it scheduled on the running loop. Either way errors are
    logged and swallowed per subscriber.
    """

    def __init__(self, buffer_size: int = 100, buffer_ttl: float = 60.0) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        if buffer_ttl <= 0:
            raise ValueError("buffer_ttl must be positive")
        self.buffer_size = buffer_size
        self.buffer_ttl = buffer_ttl
        self._subscriptions: dict[str, Subscription] = {}
        self._buffers: dict[str, deque[_BaseEvent]] = {}
        self._sweeper: asyncio.Task[None] | None = None

    # --- lifecycle ---

    def start(self) -> None:
        """Start the periodic TTL sweep. Requires a running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.ensure_future(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self.remove_all_subscriptions()

    async def __aenter__(self) -> EventBroker:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.buffer_ttl)
            removed = self.sweep()
            if removed:
                logger.debug("Swept expired events", removed=removed)

    # --- publish / subscribe ---

    def publish(self, event: Event) -> None:
        self._buffer(event)
        # Snapshot so callbacks may (un)subscribe or publish reentrantly
        for sub in list(self._subscriptions.values()):
            try:
                if not sub.matches(event):
                    continue
                result = sub.callback(event)
            except Exception as exc:
                logger.warning(
                    "Event subscriber failed",
                    subscription=sub.id,
                    event_type=event.event_type,
                    err=str(exc),
                )
                continue
            if inspect.isawaitable(result):
                asyncio.ensure_future(_safe_await(sub.id, result))

    def subscribe(
        self,
        event_type: type[_BaseEvent],
        callback: Callback,
        filter: Filter | None = None,
    ) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[sub_id] = Subscription(sub_id, event_type, callback, filter)
        logger.debug("Created subscription", subscription=sub_id, event_type=event_type.event_type)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            logger.debug("Removed subscription", subscription=subscription_id)
        return removed

    def subscribe_to_container(self, container_id: str, callback: Callback) -> list[str]:
        """Subscribe to every container-scoped event for one container."""

        def _same_container(event: _BaseEvent) -> bool:
            return event.container_id == container_id

        return [
            self.subscribe(event_type, callback, _same_container)
            for event_type in CONTAINER_EVENT_TYPES
        ]

    def get_active_subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def remove_all_subscriptions(self) -> None:
        self._subscriptions.clear()
        logger.debug("Removed all subscriptions")

    # --- history ---

    def _buffer(self, event: _BaseEvent) -> None:
        key = event.resource_key
        buf = self._buffers.get(key)
        if buf is None:
            buf = self._buffers[key] = deque(maxlen=self.buffer_size)
        buf.append(event)

    def get_buffered_events(
        self,
        resource_id: str | None = None,
        event_type: type[_BaseEvent] | None = None,
        limit: int | None = None,
    ) -> list[_BaseEvent]:
        """Oldest-first history for one resource, optionally filtered and capped."""
        events = list(self._buffers.get(resource_id or GLOBAL_KEY, ()))
        if event_type is not None:
            events = [e for e in events if type(e) is event_type]
        if limit and limit > 0:
            events = events[-limit:]
        return events

    def clear_buffer(self, resource_id: str | None = None) -> None:
        if resource_id:
            self._buffers.pop(resource_id, None)
        else:
            self._buffers.clear()

    def sweep(self, now: datetime | None = None) -> int:
        """Drop events at least ``buffer_ttl`` old; returns how many were removed."""
        now = now or _now()
        ttl = timedelta(seconds=self.buffer_ttl)
        removed = 0
        for key in list(self._buffers):
            buf = self._buffers[key]
            kept = [e for e in buf if now - e.timestamp < ttl]
            removed += len(buf) - len(kept)
            if kept:
                self._buffers[key] = deque(kept, maxlen=self.buffer_size)
            else:
                del self._buffers[key]
        return removed


async def _safe_await(subscription_id: str, awaitable: Any) -> None:
    try:
        await awaitable
    except Exception as exc:
        logger.warning("Async event subscriber failed", subscription=subscription_id, err=str(exc))
