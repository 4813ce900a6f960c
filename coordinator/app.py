import asyncio
import contextlib
import json
import logging
import time
from dataclasses import asdict
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Response, WebSocket, WebSocketDisconnect
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError

from coordinator import config
from coordinator.aggregator import MetricsAggregator
from coordinator.channel import WebSocketChannel
from coordinator.exporter import build_registry
from coordinator.models import InboundMessage, RegisterMessage, ReportMessage
from coordinator.registry import Node, NodeRegistry
from coordinator.scheduler import RampScheduler
from coordinator.sink import ReportSink

logger = logging.getLogger(__name__)


class Coordinator:
    """Owns the registry and everything that reads or writes it."""

    def __init__(
        self,
        registry: NodeRegistry,
        scheduler: RampScheduler,
        aggregator: MetricsAggregator,
        sink: ReportSink | None = None,
    ) -> None:
        self.registry = registry
        self.scheduler = scheduler
        self.aggregator = aggregator
        self.sink = sink

    def admit(self, channel) -> Node:
        node = self.registry.admit(channel)
        channel.send(RegisterMessage(nodeId=node.id).model_dump())
        return node

    def drop(self, node: Node) -> None:
        self.registry.remove(node)
        self.aggregator.forget(node.id)

    def handle_message(self, node: Node, raw: str | bytes) -> bool:
        """Apply one inbound frame. Returns True if it was an accepted report."""
        try:
            data = json.loads(raw)
            message = InboundMessage.model_validate(data)
            if message.type != "report":
                logger.debug(f"Ignoring {message.type!r} message from {node.id}")
                return False
            report = ReportMessage.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Bad message from {node.id}: {e}")
            return False

        if self.registry.record_report(node, report.metrics) is None:
            return False

        if self.sink is not None:
            try:
                self.sink.append(node.id, self.scheduler.current_step, report.metrics, datetime.now(timezone.utc))
            except OSError as e:
                logger.error(f"Report sink write failed: {e}")
        self.aggregator.aggregate()
        return True


def build_coordinator() -> Coordinator:
    registry = NodeRegistry()
    scheduler = RampScheduler(registry, config.parse_sequence(config.RAMP_SEQUENCE))
    aggregator = MetricsAggregator(registry)
    sink = ReportSink(config.REPORT_CSV) if config.REPORT_CSV else None
    return Coordinator(registry, scheduler, aggregator, sink)


def create_app(coordinator: Coordinator | None = None, start_ramp: bool = True) -> FastAPI:
    coordinator = coordinator or build_coordinator()
    metrics_registry = build_registry(coordinator.aggregator)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(coordinator.scheduler.run()) if start_ramp else None
        yield
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if coordinator.sink is not None:
            coordinator.sink.close()

    app = FastAPI(title="Ramp Coordinator", lifespan=lifespan)
    app.state.coordinator = coordinator

    @app.get("/health")
    async def health():
        return {"status": "ok", "nodes": len(coordinator.registry)}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(metrics_registry), media_type=CONTENT_TYPE_LATEST)

    @app.get("/nodes")
    async def nodes():
        now = time.time()
        return [
            {"id": n.id, "last_report_age": round(now - n.last_report_at, 3)}
            for n in coordinator.registry.snapshot()
        ]

    @app.get("/snapshot")
    async def snapshot():
        return {
            **asdict(coordinator.aggregator.snapshot),
            "nodes": {k: asdict(v) for k, v in coordinator.aggregator.node_resources.items()},
        }

    @app.get("/ramp")
    async def ramp():
        scheduler = coordinator.scheduler
        return {
            "state": scheduler.state.value,
            "step": scheduler.current_step,
            "steps": len(scheduler.sequence),
        }

    @app.websocket("/ws")
    async def node_socket(websocket: WebSocket):
        await websocket.accept()
        channel = WebSocketChannel(websocket)
        channel.start()
        node = coordinator.admit(channel)
        channel.on_failure = lambda: coordinator.drop(node)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                coordinator.handle_message(node, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await channel.close()
            coordinator.drop(node)

    return app


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
    app = create_app()
    logger.info(f"Coordinator listening on ws://{config.HOST}:{config.PORT}/ws")
    logger.info(f"Prometheus metrics: http://{config.HOST}:{config.PORT}/metrics")
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
