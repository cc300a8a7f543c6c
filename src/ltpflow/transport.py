"""
MQTT transport with reconnection logic.

Delivers (topic, payload) pairs to the ingestion dispatcher and exposes
subscribe() to the subscription controller.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

import aiomqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None]]
ConnectHandler = Callable[[bool], Awaitable[None]]


class TransportError(Exception):
    """Raised when a broker operation cannot be performed."""
    pass


class MqttTransport:
    """
    MQTT client for the market data feed.

    Features:
    - Automatic reconnection with exponential backoff and jitter
    - on_connect hook (used to subscribe or re-subscribe topics)
    - Message delivery to an async handler, one message at a time
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageHandler,
        on_connect: Optional[ConnectHandler] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "ltpflow",
        base_reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
    ):
        """
        Initialize MQTT transport.

        Args:
            host: Broker hostname
            port: Broker port
            on_message: Coroutine called with (topic, payload) per message
            on_connect: Coroutine called after each connect; receives True on reconnects
            username: Optional broker username
            password: Optional broker password
            client_id: MQTT client identifier
            base_reconnect_delay: Base delay in seconds for reconnection (exponential backoff)
            max_reconnect_delay: Maximum delay in seconds between reconnection attempts
        """
        self.host = host
        self.port = port
        self.on_message = on_message
        self.on_connect = on_connect
        self.username = username
        self.password = password
        self.client_id = client_id
        self.base_reconnect_delay = base_reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

        self._client: Optional[aiomqtt.Client] = None
        self._task: Optional[asyncio.Task] = None
        self.is_connected = False
        self.should_reconnect = True
        self.reconnect_attempts = 0
        self.connections = 0

        logger.info(f"Initialized MQTT transport for {host}:{port}")

    async def subscribe(self, topic: str) -> None:
        """
        Subscribe to a topic on the live connection.

        Raises:
            TransportError: If not connected or the broker rejects the request
        """
        if self._client is None or not self.is_connected:
            raise TransportError(f"Not connected, cannot subscribe to {topic}")
        try:
            await self._client.subscribe(topic)
        except aiomqtt.MqttError as e:
            raise TransportError(f"Subscribe to {topic} failed: {e}") from e

    def _create_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=self.client_id,
        )

    async def run(self) -> None:
        """Connect and deliver messages until stop() is called, reconnecting on failure."""
        logger.info("Starting MQTT transport")
        self.should_reconnect = True

        while self.should_reconnect:
            try:
                async with self._create_client() as client:
                    self._client = client
                    self.is_connected = True
                    self.reconnect_attempts = 0
                    self.connections += 1
                    logger.info(f"Connected to MQTT broker {self.host}:{self.port}")

                    if self.on_connect:
                        await self.on_connect(self.connections > 1)

                    async for message in client.messages:
                        await self._deliver(message)

            except aiomqtt.MqttError as e:
                logger.warning(f"MQTT connection lost: {e}")
            finally:
                self._client = None
                self.is_connected = False

            if self.should_reconnect:
                await self._sleep_before_reconnect()

        logger.info("MQTT transport stopped")

    async def _deliver(self, message) -> None:
        payload = message.payload
        if payload is None:
            payload = b""
        elif isinstance(payload, str):
            payload = payload.encode("utf-8")
        elif isinstance(payload, (bytes, bytearray)):
            payload = bytes(payload)
        else:
            payload = str(payload).encode("utf-8")

        try:
            await self.on_message(message.topic.value, payload)
        except Exception as e:
            # Handler is expected to contain its own errors; keep the loop alive regardless
            logger.error(f"Message handler failed for {message.topic.value}: {e}")

    async def _sleep_before_reconnect(self) -> None:
        self.reconnect_attempts += 1
        delay = min(
            self.base_reconnect_delay * (2 ** (self.reconnect_attempts - 1)),
            self.max_reconnect_delay
        )
        # Add some jitter to avoid thundering herd
        total_delay = delay + random.uniform(0.1, 0.3) * delay
        logger.info(f"Reconnection attempt {self.reconnect_attempts} in {total_delay:.1f} seconds")
        await asyncio.sleep(total_delay)

    def start(self) -> asyncio.Task:
        """Run the transport as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Stop delivering messages and disconnect."""
        logger.info("Stopping MQTT transport")
        self.should_reconnect = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
