import asyncio
import enum
import logging
from typing import Awaitable, Callable, Sequence

from coordinator.config import RAMP_INTERVAL, START_DELAY, WAIT_BACKOFF
from coordinator.models import RampMessage
from coordinator.registry import Node, NodeRegistry

logger = logging.getLogger(__name__)


class RampState(str, enum.Enum):
    WAITING_FOR_NODES = "waiting_for_nodes"
    STEPPING = "stepping"
    DONE = "done"


def partition(total: int, n: int) -> list[int]:
    """Split ``total`` over ``n`` nodes; the first ``total % n`` get one extra."""
    if n < 1:
        raise ValueError("cannot partition load over zero nodes")
    base, remainder = divmod(total, n)
    return [base + 1 if idx < remainder else base for idx in range(n)]


class RampScheduler:
    """Walks the load curve once, pushing a ramp directive to every live node per step.

    A step is never skipped: when the registry is empty at the moment a step is
    due, the scheduler re-checks every ``wait_backoff`` seconds until a node is
    present. This holds for every step, not only the first one.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        sequence: Sequence[int],
        interval: float = RAMP_INTERVAL,
        wait_backoff: float = WAIT_BACKOFF,
        start_delay: float = START_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if any(step < 0 for step in sequence):
            raise ValueError("ramp targets must be non-negative")
        self.registry = registry
        self.sequence = tuple(sequence)
        self.interval = interval
        self.wait_backoff = wait_backoff
        self.start_delay = start_delay
        self._sleep = sleep
        self.state = RampState.WAITING_FOR_NODES
        self.current_step = -1

    async def run(self) -> None:
        if self.start_delay > 0:
            await self._sleep(self.start_delay)

        for index in range(len(self.sequence)):
            await self.run_step(index)
            await self._sleep(self.interval)

        self.state = RampState.DONE
        logger.info("Ramp finished.")

    async def run_step(self, index: int) -> dict[str, int]:
        nodes = await self._wait_for_nodes()
        self.state = RampState.STEPPING
        return self.ship(index, nodes)

    async def _wait_for_nodes(self) -> list[Node]:
        nodes = self.registry.snapshot()
        while not nodes:
            self.state = RampState.WAITING_FOR_NODES
            logger.warning("Waiting for nodes...")
            await self._sleep(self.wait_backoff)
            nodes = self.registry.snapshot()
        return nodes

    def ship(self, index: int, nodes: list[Node]) -> dict[str, int]:
        total = self.sequence[index]
        logger.info(f"Ramp step {index + 1}/{len(self.sequence)}: {total} total")

        targets = {}
        for node, target in zip(nodes, partition(total, len(nodes))):
            message = RampMessage(clients=target, step=index).model_dump()
            try:
                node.connection.send(message)
            except Exception as e:
                # a dead transport is the same as a disconnect; no retry
                logger.warning(f"Failed to send ramp to {node.id}: {e}")
                self.registry.remove(node)
                continue
            targets[node.id] = target
            logger.info(f"-> {node.id}: {target}")

        self.current_step = index
        return targets
