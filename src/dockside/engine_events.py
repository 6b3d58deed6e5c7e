"""Relay of the engine's ``/events`` feed into the EventBroker.

Container starts, deaths, OOM kills and the like arrive here as raw engine
JSON and are republished as :class:`ContainerEventsEvent`, keyed by the
container (or image) they concern. When the feed drops, the relay reconnects
with exponential backoff; events emitted while disconnected are not replayed.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from dockside.errors import EngineError
from dockside.event_bus import ContainerEventsEvent, ErrorEvent
from dockside.logger import logger
from dockside.retry import RetryPolicy

if TYPE_CHECKING:
    from dockside.engine.client import EngineClient
    from dockside.event_bus import EventBroker

# Actions worth an info line; everything else is logged at debug.
SIGNIFICANT_ACTIONS = frozenset(
    {"create", "destroy", "die", "kill", "oom", "pause", "unpause", "restart", "start", "stop"}
)


def event_from_engine(raw: dict[str, Any]) -> ContainerEventsEvent:
    """Build a broker event from one engine event object (old and new field names)."""
    kind = raw.get("Type") or raw.get("type") or "container"
    action = raw.get("Action") or raw.get("status") or ""
    actor = raw.get("Actor") or {}
    actor_id = actor.get("ID") or raw.get("id") or ""
    attributes = actor.get("Attributes") or {}

    if raw.get("timeNano"):
        timestamp = datetime.fromtimestamp(raw["timeNano"] / 1e9, UTC)
    elif raw.get("time"):
        timestamp = datetime.fromtimestamp(raw["time"], UTC)
    else:
        timestamp = datetime.now(UTC)

    return ContainerEventsEvent(
        kind=kind,
        action=action,
        actor_id=actor_id,
        attributes=attributes,
        timestamp=timestamp,
        container_id=actor_id if kind == "container" else attributes.get("container"),
        image_id=actor_id if kind == "image" else None,
    )


class EngineEventStream:
    """Background task that keeps the engine event feed flowing into the broker."""

    def __init__(
        self,
        engine: EngineClient,
        broker: EventBroker,
        *,
        filters: dict[str, list[str]] | None = None,
        backoff: RetryPolicy | None = None,
    ) -> None:
        self.engine = engine
        self.broker = broker
        self.filters = filters
        self.backoff = backoff or RetryPolicy(min_timeout=1.0, max_timeout=60.0)
        self.received = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.active:
            self._task = asyncio.create_task(self._run(), name="engine-events")
            logger.info("Engine event stream started", filters=self.filters)

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Engine event stream stopped", received=self.received)

    async def _run(self) -> None:
        failures = 0
        while True:
            try:
                async for raw in self.engine.container_events(filters=self.filters):
                    failures = 0
                    self._relay(raw)
                logger.info("Engine event stream ended")
            except EngineError as exc:
                logger.warning("Engine event stream failed", err=str(exc))
                self.broker.publish(ErrorEvent(message=str(exc), metadata={"source": "events"}))
            failures = min(failures + 1, 32)
            delay = self.backoff.delay_for(failures)
            logger.debug("Reconnecting engine event stream", delay=round(delay, 2))
            await asyncio.sleep(delay)

    def _relay(self, raw: Any) -> None:
        if not isinstance(raw, dict):
            logger.debug("Skipping non-object engine event", raw=str(raw)[:200])
            return
        event = event_from_engine(raw)
        self.received += 1
        self.broker.publish(event)
        log = logger.info if event.action in SIGNIFICANT_ACTIONS else logger.debug
        log(
            "Engine event",
            kind=event.kind,
            action=event.action,
            actor=event.actor_id[:12],
        )
