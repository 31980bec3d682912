import asyncio
import json
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Type

import stomp
from pydantic import BaseModel, ValidationError
from stomp.exception import StompException

from constants import QUEUE_CONNECT_TIMEOUT_SECONDS
from errors import EnvelopeError, QueueUnavailableError
from logging_config import get_logger

logger = get_logger(__name__)

QueueHandler = Callable[[Any], Awaitable[None]]


class BridgeState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class RegisteredHandler:
    def __init__(self, queue_name: str, handler: QueueHandler, envelope_type: Optional[Type[BaseModel]] = None):
        self.queue_name = queue_name
        self.handler = handler
        self.envelope_type = envelope_type


class Subscription:
    """One queue subscription: frames are buffered here and consumed strictly in order."""

    def __init__(self, subscription_id: str, registered: RegisteredHandler):
        self.subscription_id = subscription_id
        self.registered = registered
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None


class _BridgeListener(stomp.ConnectionListener):
    """Hands frames from stomp.py's receiver thread over to the event loop."""

    def __init__(self, bridge: "QueueBridge", role: str):
        self.bridge = bridge
        self.role = role

    def on_message(self, frame):
        self.bridge.loop.call_soon_threadsafe(self.bridge.enqueue_frame, frame)

    def on_error(self, frame):
        logger.error(f"Broker error on {self.role} connection: {frame.headers.get('message')} {frame.body}")

    def on_disconnected(self):
        self.bridge.loop.call_soon_threadsafe(self.bridge.connection_lost, self.role)


def default_connection_factory(host: str, port: int) -> Callable[[], stomp.Connection]:
    return lambda: stomp.Connection(host_and_ports=[(host, port)], heartbeats=(10000, 10000))


class QueueBridge:
    """Keeps a publish and a subscribe connection to the broker and dispatches queue messages.

    Every message is acknowledged only after its handler succeeded and
    negatively acknowledged otherwise, so the broker redelivers it. A failing
    or malformed message never stops the subscription.
    """

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        username: str,
        password: str,
        connect_timeout: float = QUEUE_CONNECT_TIMEOUT_SECONDS,
    ):
        self.connection_factory = connection_factory
        self.username = username
        self.password = password
        self.connect_timeout = connect_timeout
        self.state = BridgeState.DISCONNECTED
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.publish_connection = None
        self.subscribe_connection = None
        # Insertion order is registration order
        self.handlers: Dict[str, RegisteredHandler] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self._available = False
        self._closing = False
        self._subscription_counter = 0
        self._retry_policy = (5, 3.0, "fixed")
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_available(self) -> bool:
        return self._available and self.state == BridgeState.CONNECTED

    async def connect(self, max_attempts: int = 5, backoff_delay: float = 3.0, backoff: str = "fixed"):
        """Open both connections and subscribe every registered queue, retrying up to ``max_attempts``."""
        if self.is_available:
            logger.info("Already connected to the message broker")
            return
        self.loop = asyncio.get_running_loop()
        self._closing = False
        self._retry_policy = (max_attempts, backoff_delay, backoff)

        for attempt in range(1, max_attempts + 1):
            self.state = BridgeState.CONNECTING
            try:
                self.publish_connection = await self._open_connection("publish")
                self.subscribe_connection = await self._open_connection("subscribe")
                self._available = True
                self.state = BridgeState.CONNECTED
                await self._setup_consumers()
                logger.info("Successfully connected to the message broker")
                return
            except (StompException, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Failed to connect to the message broker (attempt {attempt} of {max_attempts}): {e}")
                self._available = False
                await self._stop_consumers()
                await self._close_connections()
                if attempt < max_attempts:
                    delay = backoff_delay * (2 ** (attempt - 1)) if backoff == "exponential" else backoff_delay
                    await asyncio.sleep(delay)
                else:
                    self.state = BridgeState.FAILED
                    raise QueueUnavailableError(f"Could not connect to the message broker after {max_attempts} attempts") from e

    async def register_handler(self, queue_name: str, handler: QueueHandler, envelope_type: Optional[Type[BaseModel]] = None):
        """Associate ``handler`` with ``queue_name``; subscribes right away when already connected."""
        registered = RegisteredHandler(queue_name, handler, envelope_type)
        self.handlers[queue_name] = registered
        logger.info(f"Registered handler for queue {queue_name}")
        if self.is_available and self.subscribe_connection is not None:
            await self._subscribe(registered)

    async def publish(self, queue_name: str, payload: Any):
        if not self.is_available or self.publish_connection is None:
            raise QueueUnavailableError("Message broker is not available")
        if isinstance(payload, BaseModel):
            body = payload.model_dump_json(by_alias=True, exclude_none=True)
        else:
            body = json.dumps(payload)
        await self._run(partial(self.publish_connection.send, f"/queue/{queue_name}", body, content_type="application/json"))
        logger.debug(f"Published message to queue {queue_name}")

    async def disconnect(self):
        """Close both connections. Publishing or subscribing afterwards fails fast."""
        self._closing = True
        self._available = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        await self._stop_consumers()
        await self._close_connections()
        self.state = BridgeState.DISCONNECTED
        logger.info("Disconnected from the message broker")

    def enqueue_frame(self, frame):
        subscription = self.subscriptions.get(frame.headers.get("subscription"))
        if subscription is None:
            logger.warning(f"Dropping frame for unknown subscription {frame.headers.get('subscription')}")
            return
        subscription.inbox.put_nowait(frame)

    def connection_lost(self, role: str):
        if self._closing or self.state != BridgeState.CONNECTED:
            return
        logger.error(f"Lost {role} connection to the message broker, reconnecting")
        self._available = False
        self.state = BridgeState.DISCONNECTED
        self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self):
        await self._stop_consumers()
        await self._close_connections()
        max_attempts, backoff_delay, backoff = self._retry_policy
        try:
            await self.connect(max_attempts, backoff_delay, backoff)
        except QueueUnavailableError as e:
            logger.error(f"Reconnect to the message broker failed: {e}", exc_info=True)

    async def _open_connection(self, role: str):
        connection = self.connection_factory()
        connection.set_listener(role, _BridgeListener(self, role))
        loop = self.loop or asyncio.get_running_loop()
        pending = loop.run_in_executor(None, partial(connection.connect, self.username, self.password, wait=True))
        try:
            await asyncio.wait_for(asyncio.shield(pending), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            # The executor call cannot be interrupted; close the connection once it returns
            logger.error(f"Timed out opening {role} connection to the message broker after {self.connect_timeout}s")
            pending.add_done_callback(partial(self._discard_late_connection, connection, role))
            raise
        logger.debug(f"Opened {role} connection to the message broker")
        return connection

    def _discard_late_connection(self, connection, role: str, pending: asyncio.Future):
        if pending.cancelled() or pending.exception() is not None:
            return
        logger.warning(f"Closing {role} connection that completed after its connect timeout")
        pending.get_loop().run_in_executor(None, partial(self._disconnect_quietly, connection, role))

    @staticmethod
    def _disconnect_quietly(connection, role: str):
        try:
            connection.disconnect()
        except (StompException, OSError) as e:
            logger.error(f"Error disconnecting timed out {role} connection: {e}")

    async def _setup_consumers(self):
        for registered in self.handlers.values():
            await self._subscribe(registered)

    async def _subscribe(self, registered: RegisteredHandler):
        if not self.is_available or self.subscribe_connection is None:
            raise QueueUnavailableError("Subscriber not connected")
        self._subscription_counter += 1
        subscription_id = f"{registered.queue_name}-{self._subscription_counter}"
        subscription = Subscription(subscription_id, registered)
        self.subscriptions[subscription_id] = subscription
        subscription.task = asyncio.create_task(self._consume(subscription))
        await self._run(partial(
            self.subscribe_connection.subscribe,
            destination=f"/queue/{registered.queue_name}",
            id=subscription_id,
            ack="client-individual",
            headers={"activemq.prefetchSize": "1"},
        ))
        logger.info(f"Subscribed to queue: {registered.queue_name}")

    async def _consume(self, subscription: Subscription):
        queue_name = subscription.registered.queue_name
        while True:
            frame = await subscription.inbox.get()
            try:
                await self.dispatch(subscription.registered, frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error dispatching message from queue {queue_name}: {e}", exc_info=True)

    async def dispatch(self, registered: RegisteredHandler, frame):
        queue_name = registered.queue_name
        try:
            message = self.parse(frame.body, registered.envelope_type)
        except EnvelopeError as e:
            logger.error(f"Read message error for queue {queue_name}: {e}")
            await self._nack(frame)
            return

        try:
            await registered.handler(message)
        except Exception as e:
            logger.error(f"Process message error for queue {queue_name}: {e}", exc_info=True)
            await self._nack(frame)
            return
        await self._ack(frame)

    @staticmethod
    def parse(body: Any, envelope_type: Optional[Type[BaseModel]] = None):
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        if not body:
            raise EnvelopeError("Empty message body")
        try:
            if envelope_type is not None:
                return envelope_type.model_validate_json(body)
            return json.loads(body)
        except (ValidationError, json.JSONDecodeError) as e:
            raise EnvelopeError(str(e)) from e

    async def _ack(self, frame):
        connection = self.subscribe_connection
        if connection is None:
            logger.warning(f"Cannot ack message {frame.headers.get('message-id')}: subscriber not connected")
            return
        await self._run(partial(connection.ack, frame.headers["message-id"], frame.headers["subscription"]))

    async def _nack(self, frame):
        connection = self.subscribe_connection
        if connection is None:
            logger.warning(f"Cannot nack message {frame.headers.get('message-id')}: subscriber not connected")
            return
        await self._run(partial(connection.nack, frame.headers["message-id"], frame.headers["subscription"]))

    async def _stop_consumers(self):
        tasks = [sub.task for sub in self.subscriptions.values() if sub.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.subscriptions.clear()

    async def _close_connections(self):
        for role in ("publish_connection", "subscribe_connection"):
            connection = getattr(self, role)
            if connection is None:
                continue
            try:
                if connection.is_connected():
                    await self._run(connection.disconnect)
            except (StompException, OSError) as e:
                logger.error(f"Error disconnecting {role} from the message broker: {e}")
            setattr(self, role, None)

    async def _run(self, func: Callable[[], Any]):
        # stomp.py is blocking; keep it off the event loop
        loop = self.loop or asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)
