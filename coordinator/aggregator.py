import logging
import time
from typing import Callable

from coordinator.config import STALE_THRESHOLD
from coordinator.models import ClusterSnapshot, NodeMetrics, NodeResources
from coordinator.registry import Node, NodeRegistry

logger = logging.getLogger(__name__)


def drop_rate(previous: float, current: float) -> float:
    """Fraction of clients lost since the previous total; growth counts as 0."""
    if previous <= 0:
        return 0.0
    return max(0.0, (previous - current) / previous)


def _value(value: float | None) -> float:
    return value or 0.0


class MetricsAggregator:
    def __init__(
        self,
        registry: NodeRegistry,
        stale_threshold: float = STALE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.stale_threshold = stale_threshold
        self._clock = clock
        self._snapshot = ClusterSnapshot()
        self._previous_total = 0.0
        self._resources: dict[str, NodeResources] = {}

    @property
    def snapshot(self) -> ClusterSnapshot:
        return self._snapshot

    @property
    def node_resources(self) -> dict[str, NodeResources]:
        return dict(self._resources)

    def is_active(self, node: Node, now: float) -> bool:
        if now - node.last_report_at >= self.stale_threshold:
            return False
        return node.latest_metrics is not None and node.latest_metrics.connected is not None

    def active_nodes(self, now: float | None = None) -> list[Node]:
        now = self._clock() if now is None else now
        return [n for n in self.registry.snapshot() if self.is_active(n, now)]

    def aggregate(self, now: float | None = None) -> ClusterSnapshot:
        now = self._clock() if now is None else now
        active = self.active_nodes(now)
        if not active:
            # keep the previous view through an all-stale window
            return self._snapshot

        total = 0.0
        sum_startup = sum_bitrate = sum_buffers = sum_buffer_time = 0.0
        for node in active:
            m: NodeMetrics = node.latest_metrics
            total += _value(m.connected)
            sum_startup += _value(m.avgStartup)
            sum_bitrate += _value(m.avgBitrate)
            sum_buffers += _value(m.avgBuffers)
            sum_buffer_time += _value(m.avgBufferTime)

            self._resources[node.id] = NodeResources(
                cpu=_value(m.cpu),
                mem=_value(m.mem),
                clients=_value(m.clients),
                failures=_value(m.failures),
            )

        count = len(active)
        rate = drop_rate(self._previous_total, total)
        self._previous_total = total

        self._snapshot = ClusterSnapshot(
            total_clients=total,
            avg_startup_ms=sum_startup / count,
            avg_bitrate_bps=sum_bitrate / count,
            avg_buffer_events=sum_buffers / count,
            avg_buffer_time_ms=sum_buffer_time / count,
            drop_rate=rate,
            active_nodes=count,
            updated_at=now,
        )
        if rate > 0:
            logger.info(f"Cluster clients fell to {total:g} (drop rate {rate:.3f})")
        return self._snapshot

    def forget(self, node_id: str) -> None:
        self._resources.pop(node_id, None)
