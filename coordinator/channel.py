import asyncio
import contextlib
import logging
from typing import Any, Callable

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class WebSocketChannel:
    """Outbound side of a node's WebSocket.

    ``send`` only queues the message; a writer task drains the queue so the
    event loop never waits on a slow or dead peer.
    """

    def __init__(self, websocket: WebSocket, on_failure: Callable[[], None] | None = None) -> None:
        self.websocket = websocket
        self.on_failure = on_failure
        self.closed = False
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._writer: asyncio.Task | None = None

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("channel is closed")
        self._outbox.put_nowait(message)

    async def _drain(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.warning(f"Send failed, dropping {message.get('type')} directive: {e!r}")
                self.closed = True
                if self.on_failure is not None:
                    self.on_failure()
                return

    async def close(self) -> None:
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
