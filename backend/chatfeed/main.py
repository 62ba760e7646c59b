from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Callable

import uvicorn
from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import SETTINGS, Settings
from .errors import StoreCommandError, StoreError, StoreUnavailable
from .models import Message, PostMessageRequest, UserJoinedEvent
from .registry import ChannelReader, SubscriptionRegistry
from .service import ChatService
from .storage import DurableStore, create_store, wait_until_ready


logger = logging.getLogger(__name__)

router = APIRouter()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _chat(conn: Request | WebSocket) -> ChatService:
    return conn.app.state.chat


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.error("Store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": exc.message, "code": "STORE_UNAVAILABLE"})

    @app.exception_handler(StoreCommandError)
    async def store_command_handler(request: Request, exc: StoreCommandError) -> JSONResponse:
        logger.error("Store command failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": exc.message, "code": "STORE_COMMAND_FAILED"})


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/ready")
async def ready(request: Request) -> dict:
    chat = _chat(request)
    await chat.store.ping()
    return {"status": "ok", "subscribers": chat.registry.subscriber_counts()}


@router.get("/api/messages", response_model=list[Message])
async def list_messages(request: Request) -> list[Message]:
    return await _chat(request).list_messages()


@router.get("/api/users")
async def list_users(request: Request) -> list[str]:
    return sorted(await _chat(request).list_users())


@router.post("/api/messages", response_model=Message)
async def post_message(request: Request, body: PostMessageRequest) -> Message:
    return await _chat(request).post_message(body.user, body.text)


async def _watch_disconnect(websocket: WebSocket, disconnected: asyncio.Event) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        disconnected.set()


async def _relay(
    websocket: WebSocket,
    reader: ChannelReader[Any],
    disconnected: asyncio.Event,
    encode: Callable[[Any], dict],
) -> None:
    """Accept the connection and stream events; the subscription is released however this exits."""
    watcher: asyncio.Task[None] | None = None
    try:
        await websocket.accept()
        watcher = asyncio.create_task(_watch_disconnect(websocket, disconnected))
        async for event in reader:
            await websocket.send_json(encode(event))
    except WebSocketDisconnect:
        pass
    finally:
        disconnected.set()
        if watcher is not None:
            watcher.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await watcher


@router.websocket("/ws/messages")
async def ws_message_posted(websocket: WebSocket, user: str = Query(min_length=1)) -> None:
    disconnected = asyncio.Event()
    try:
        # Registered before accept so the client never misses events sent after the handshake.
        reader = await _chat(websocket).subscribe_messages(user, disconnected)
    except StoreError as exc:
        await websocket.close(code=1011, reason=exc.message)
        return
    await _relay(websocket, reader, disconnected, lambda m: m.model_dump(mode="json", by_alias=True))


@router.websocket("/ws/users")
async def ws_user_joined(websocket: WebSocket, user: str = Query(min_length=1)) -> None:
    disconnected = asyncio.Event()
    try:
        reader = await _chat(websocket).subscribe_user_joined(user, disconnected)
    except StoreError as exc:
        await websocket.close(code=1011, reason=exc.message)
        return
    await _relay(websocket, reader, disconnected, lambda u: UserJoinedEvent(user=u).model_dump())


def create_app(settings: Settings = SETTINGS, store: DurableStore | None = None) -> FastAPI:
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        chat_store = store or create_store(settings)
        await wait_until_ready(
            chat_store,
            interval=settings.store_retry_interval,
            max_attempts=settings.store_retry_attempts,
        )
        app.state.chat = ChatService(
            chat_store,
            SubscriptionRegistry(settings.channel_capacity),
            messages_key=settings.messages_key,
            users_key=settings.users_key,
        )
        logger.info("chatfeed started (store=%s)", settings.store_backend if store is None else type(store).__name__)
        yield
        await app.state.chat.aclose()
        logger.info("chatfeed stopped")

    app = FastAPI(title="chatfeed", lifespan=lifespan)

    allow_all = "*" in settings.cors_allow_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else list(settings.cors_allow_origins),
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run(app, host=SETTINGS.host, port=SETTINGS.port, log_level=SETTINGS.log_level.lower())
