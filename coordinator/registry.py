import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from coordinator.models import NodeMetrics

logger = logging.getLogger(__name__)


class DirectiveSink(Protocol):
    def send(self, message: dict[str, Any]) -> None: ...


@dataclass(eq=False)
class Node:
    id: str
    connection: DirectiveSink
    last_report_at: float
    latest_metrics: NodeMetrics | None = None


class NodeRegistry:
    """Live worker nodes, keyed by id and kept in admission order.

    All mutation happens on the event loop thread, so no locking is done here.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._nodes: dict[str, Node] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def admit(self, connection: DirectiveSink) -> Node:
        for existing in self._nodes.values():
            if existing.connection is connection:
                return existing

        node = Node(
            id=f"node-{next(self._ids)}",
            connection=connection,
            last_report_at=self._clock(),
        )
        self._nodes[node.id] = node
        logger.info(f"Node joined: {node.id}")
        return node

    def remove(self, node: Node | str) -> bool:
        node_id = node if isinstance(node, str) else node.id
        removed = self._nodes.pop(node_id, None)
        if removed is None:
            return False
        logger.info(f"Node disconnected: {node_id}")
        return True

    def snapshot(self) -> list[Node]:
        # dicts keep insertion order, which is admission order
        return list(self._nodes.values())

    def record_report(self, node: Node | str, metrics: NodeMetrics) -> Node | None:
        node_id = node if isinstance(node, str) else node.id
        current = self._nodes.get(node_id)
        if current is None:
            logger.debug(f"Dropping late report from {node_id}")
            return None
        current.last_report_at = self._clock()
        current.latest_metrics = metrics
        return current
