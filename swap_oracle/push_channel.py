"""Shared websocket connection carrying order updates from the exchange."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import structlog
import websockets

logger = structlog.get_logger()

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
DisconnectHandler = Callable[[], None]


class PushChannel:
    """
    One websocket shared by every push-tracked swap.

    Connects on demand, reads in a background task and hands decoded JSON
    messages to the registered handler. Sends go through a lock so
    subscribe/unsubscribe calls from concurrent swap workflows never
    interleave on the wire.
    """

    def __init__(self, url: str, ping_interval: float = 20, ping_timeout: float = 10):
        self.url = url
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self._on_message: Optional[MessageHandler] = None
        self._on_disconnect: Optional[DisconnectHandler] = None

    def set_handlers(self, on_message: MessageHandler, on_disconnect: DisconnectHandler):
        self._on_message = on_message
        self._on_disconnect = on_disconnect

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self, timeout: float) -> bool:
        """Open the connection unless already open; False on failure or timeout."""
        async with self._connect_lock:
            if self._ws is not None:
                return True
            self._closing = False
            try:
                ws = await asyncio.wait_for(
                    websockets.connect(
                        self.url,
                        ping_interval=self.ping_interval,
                        ping_timeout=self.ping_timeout,
                        close_timeout=10,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Push channel connect timed out", url=self.url, timeout=timeout)
                return False
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning("Push channel connect failed", url=self.url, error=str(e))
                return False

            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws), name="push-reader")
            logger.info("Connected to push channel", url=self.url)
            return True

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Malformed push message", raw=str(raw)[:200])
                    continue
                if not isinstance(message, dict):
                    logger.warning("Unexpected push message shape", raw=str(raw)[:200])
                    continue
                if self._on_message is None:
                    continue
                try:
                    await self._on_message(message)
                except Exception as e:
                    logger.error(
                        "Push message handler failed",
                        error=str(e),
                        message_type=message.get("type"),
                        exc_info=True,
                    )
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("Push channel connection closed", error=str(e))
        finally:
            if self._ws is ws:
                self._ws = None
            if not self._closing and self._on_disconnect is not None:
                self._on_disconnect()

    async def send(self, message: dict[str, Any]) -> bool:
        async with self._send_lock:
            ws = self._ws
            if ws is None:
                return False
            try:
                await ws.send(json.dumps(message))
                return True
            except websockets.exceptions.ConnectionClosed:
                logger.warning("Push channel send failed, connection closed", type=message.get("type"))
                return False

    async def subscribe(self, swap_id: str, order_reference: str) -> bool:
        return await self.send(
            {"type": "subscribe", "swapId": swap_id, "orderReference": order_reference}
        )

    async def unsubscribe(self, swap_id: str, order_reference: str) -> bool:
        return await self.send(
            {"type": "unsubscribe", "swapId": swap_id, "orderReference": order_reference}
        )

    async def close(self):
        """Close without triggering the disconnect handler."""
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None
        logger.info("Push channel closed")
