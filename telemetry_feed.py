"""
Telemetry WebSocket Feed

Subscribes to a substrate-telemetry style feed for one chain and yields raw
text lines forever, reconnecting after a fixed delay whenever the connection
drops or cannot be established.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 5.0
# Feed frames carrying a full chain snapshot can be several MB
MAX_MESSAGE_SIZE = 16 * 1024 * 1024
CONNECT_TIMEOUT = 30


class TelemetryFeed:
    """Reconnecting subscription to a telemetry feed."""

    def __init__(self, url: str, genesis_hash: str,
                 reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
                 session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None):
        self.url = url
        self.genesis_hash = genesis_hash
        self.reconnect_delay = reconnect_delay
        self.session_factory = session_factory or self._default_session
        self.connections = 0

    @staticmethod
    def _default_session() -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT)
        return aiohttp.ClientSession(timeout=timeout)

    @property
    def subscribe_message(self) -> str:
        return f"subscribe:{self.genesis_hash}"

    async def _stream(self, session: aiohttp.ClientSession) -> AsyncIterator[str]:
        logger.info("Attempting WebSocket connection to: %s", self.url)

        async with session.ws_connect(self.url, max_msg_size=MAX_MESSAGE_SIZE) as ws:
            logger.info("WebSocket connection established")
            await ws.send_str(self.subscribe_message)
            logger.debug("Sent subscription message: %s", self.subscribe_message)

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    yield msg.data
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    try:
                        yield msg.data.decode('utf-8')
                    except UnicodeDecodeError as e:
                        logger.error("Failed to convert binary message to UTF-8: %s", str(e))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("WebSocket error: %s", ws.exception())
                    break

            logger.info("WebSocket closed")

    async def lines(self, max_attempts: Optional[int] = None) -> AsyncIterator[str]:
        """
        Yield feed lines across reconnects.

        Runs forever unless `max_attempts` bounds the number of connection attempts.
        """
        async with self.session_factory() as session:
            while max_attempts is None or self.connections < max_attempts:
                self.connections += 1
                try:
                    async for line in self._stream(session):
                        yield line
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                    logger.error("Failed to connect: %s", str(e))

                if max_attempts is not None and self.connections >= max_attempts:
                    break

                logger.info("Connection lost or error occurred. Reconnecting in %.0f seconds...",
                            self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)
