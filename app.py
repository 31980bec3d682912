import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

import constants
from backend import RedisStore, create_redis_client
from errors import InfrastructureError, RoutingError, UserUnreachableError
from logging_config import get_logger
from routers.rooms import rooms_router
from routers.users import users_router
from schemas.messages import ChatMessage, Notification
from services.connection_registry import ConnectionRegistry
from services.message_relay import MessageRelay
from services.queue_bridge import QueueBridge, default_connection_factory
from services.queue_handlers import QueueMessageHandlers
from services.room_directory import RoomDirectory
from transport import WebSocketTransport, encode_event

logger = get_logger(__name__)


class Services:
    """The component graph, built once per process and shared through ``app.state``."""

    def __init__(
        self,
        store: RedisStore,
        transport: Any,
        bridge: Optional[QueueBridge] = None,
        server_id: str = constants.SERVER_ID,
    ):
        self.server_id = server_id
        self.store = store
        self.registry = ConnectionRegistry(store)
        self.directory = RoomDirectory(store)
        self.transport = transport
        self.relay = MessageRelay(self.registry, self.directory, transport, server_id)
        self.handlers = QueueMessageHandlers(self.relay, constants.WS_CHANNEL_MESSAGE, constants.WS_CHANNEL_NOTIFICATION)
        self.bridge = bridge


def build_services(
    redis_client: Optional[Redis] = None,
    connection_factory: Optional[Callable[[], Any]] = None,
    server_id: str = constants.SERVER_ID,
) -> Services:
    redis_client = redis_client or create_redis_client()
    store = RedisStore(redis_client)
    transport = WebSocketTransport(redis_client, server_id)
    bridge = QueueBridge(
        connection_factory or default_connection_factory(constants.ACTIVEMQ_HOST, constants.ACTIVEMQ_PORT),
        constants.ACTIVEMQ_USERNAME,
        constants.ACTIVEMQ_PASSWORD,
    )
    return Services(store, transport, bridge, server_id)


async def start_services(services: Services):
    await services.store.ping()
    # Connections left behind by a previous run with the same SERVER_ID are stale
    await services.registry.sweep_process(services.server_id)
    await services.transport.start()

    bridge = services.bridge
    await bridge.register_handler(constants.QUEUE_CHAT_MESSAGE, services.handlers.handle_chat_message, ChatMessage)
    await bridge.register_handler(constants.QUEUE_NOTIFICATION, services.handlers.handle_notification, Notification)
    await bridge.connect(constants.QUEUE_CONNECT_RETRIES, constants.QUEUE_RETRY_DELAY_SECONDS, constants.QUEUE_RETRY_BACKOFF)
    logger.info("Queue service initialized successfully")


async def stop_services(services: Services):
    if services.bridge is not None:
        await services.bridge.disconnect()
    await services.transport.stop()
    await services.store.close()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI app. Passing ``services`` skips startup of the real backends."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        built = build_services()
        app.state.services = built
        await start_services(built)
        try:
            yield
        finally:
            await stop_services(built)

    app = FastAPI(title="Room Relay", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=constants.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(RoutingError)
    async def routing_error_handler(request: Request, exc: RoutingError):
        status_code = 409 if isinstance(exc, UserUnreachableError) else 404
        logger.warning(f"Routing error on {request.url.path}: {exc}")
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
        logger.error(f"Infrastructure error on {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=503, content={"error": "Service unavailable"})

    app.include_router(rooms_router)
    app.include_router(users_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Live connection endpoint.

        The server sends ``connected`` with the connection id; the client then sends
        ``{"event": "register", "data": "<userId>"}`` to bind the connection to a user.
        """
        state: Services = websocket.app.state.services
        connection_id = str(uuid.uuid4())
        await websocket.accept()
        state.transport.attach(connection_id, websocket)
        logger.info(f"New client connected: {connection_id}")

        try:
            await websocket.send_text(encode_event("connected", {"connectionId": connection_id}))
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Ignoring non-JSON frame from connection {connection_id}")
                    continue
                if not isinstance(message, dict):
                    continue

                if message.get("event") == "register" and isinstance(message.get("data"), str) and message["data"]:
                    user_id = message["data"]
                    try:
                        rooms = await state.relay.on_connect(connection_id, user_id)
                    except InfrastructureError as e:
                        logger.error(f"Registration error for connection {connection_id}: {e}")
                        await websocket.send_text(encode_event("error", {"message": "Registration failed"}))
                        continue
                    await websocket.send_text(encode_event("registered", {"userId": user_id, "rooms": rooms}))
                else:
                    logger.debug(f"Ignoring event {message.get('event')} from connection {connection_id}")
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
        finally:
            await state.transport.detach(connection_id)
            try:
                await state.relay.on_disconnect(connection_id)
            except InfrastructureError as e:
                logger.error(f"Disconnect error for connection {connection_id}: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
