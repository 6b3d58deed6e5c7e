"""Container resource usage.

The engine reports raw counters; CPU percent is the container's share of the
host CPU time elapsed since the previous sample, scaled by the number of
online CPUs, the same figure ``docker stats`` shows.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from dockside.event_bus import StatsEvent
from dockside.logger import logger

if TYPE_CHECKING:
    from dockside.engine.client import EngineClient
    from dockside.event_bus import EventBroker


@dataclass
class ContainerStats:
    read: str | None
    cpu_usage: int
    cpu_system: int
    cpu_percent: float
    memory_usage: int
    memory_limit: int
    memory_percent: float
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_packets: int = 0
    tx_packets: int = 0
    block_read_bytes: int = 0
    block_write_bytes: int = 0
    pids: int = 0
    pids_limit: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def cpu_percent(stats: dict[str, Any]) -> float:
    cpu = stats.get("cpu_stats") or {}
    precpu = stats.get("precpu_stats") or {}
    usage = cpu.get("cpu_usage") or {}
    cpu_delta = usage.get("total_usage", 0) - (precpu.get("cpu_usage") or {}).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    if system_delta <= 0 or cpu_delta < 0:
        return 0.0
    # older engines omit online_cpus
    online = cpu.get("online_cpus") or len(usage.get("percpu_usage") or ()) or 1
    return cpu_delta / system_delta * online * 100.0


def parse_stats(raw: dict[str, Any]) -> ContainerStats:
    """Flatten one engine stats sample. Missing sections read as zero."""
    stats = raw.get("stats") or raw
    cpu = stats.get("cpu_stats") or {}
    memory = stats.get("memory_stats") or {}
    usage = memory.get("usage", 0)
    limit = memory.get("limit", 0)

    rx_bytes = tx_bytes = rx_packets = tx_packets = 0
    for net in (stats.get("networks") or {}).values():
        rx_bytes += net.get("rx_bytes", 0)
        tx_bytes += net.get("tx_bytes", 0)
        rx_packets += net.get("rx_packets", 0)
        tx_packets += net.get("tx_packets", 0)

    read_bytes = write_bytes = 0
    for entry in (stats.get("blkio_stats") or {}).get("io_service_bytes_recursive") or ():
        op = str(entry.get("op", "")).lower()
        if op == "read":
            read_bytes += entry.get("value", 0)
        elif op == "write":
            write_bytes += entry.get("value", 0)

    pids = stats.get("pids_stats") or {}
    return ContainerStats(
        read=stats.get("read"),
        cpu_usage=(cpu.get("cpu_usage") or {}).get("total_usage", 0),
        cpu_system=cpu.get("system_cpu_usage", 0),
        cpu_percent=cpu_percent(stats),
        memory_usage=usage,
        memory_limit=limit,
        memory_percent=usage / limit * 100.0 if limit > 0 else 0.0,
        rx_bytes=rx_bytes,
        tx_bytes=tx_bytes,
        rx_packets=rx_packets,
        tx_packets=tx_packets,
        block_read_bytes=read_bytes,
        block_write_bytes=write_bytes,
        pids=pids.get("current", 0),
        pids_limit=pids.get("limit"),
    )


async def fetch_stats(
    engine: EngineClient,
    container_id: str,
    *,
    broker: EventBroker | None = None,
) -> ContainerStats:
    """Take one stats sample and publish it as a StatsEvent."""
    stats = parse_stats(await engine.container_stats(container_id))
    if broker is not None:
        broker.publish(StatsEvent(stats=stats.to_dict(), container_id=container_id))
    logger.debug(
        "Fetched container stats",
        container=container_id,
        cpu_percent=round(stats.cpu_percent, 2),
        memory_percent=round(stats.memory_percent, 2),
    )
    return stats
