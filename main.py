import logging
import os
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.status import WS_1008_POLICY_VIOLATION
from starlette.websockets import WebSocketState

import settings
from auth import decode_token
from database import COLLECTIONS, ensure_indexes, get_database
from errors import ChatError, NotFound, UpstreamFailure, ValidationError
from media import LocalMediaStore, MediaStore, default_media_store, media_kind
from presence import PresenceTracker
from protocol import ProtocolHandler
from schemas import Envelope, MarkReadRequest, MessageStatus, WsInbound
from store import ChatStore

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

router = APIRouter()


def configure_logging():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def respond(status_code: int, message: str, data=None):
    envelope = Envelope(status="success" if status_code < 400 else "error", message=message, data=data)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


# ------------ Services ------------

def get_store(request: Request) -> ChatStore:
    return request.app.state.store


def get_presence(request: Request) -> PresenceTracker:
    return request.app.state.presence


def get_media_store(request: Request) -> MediaStore:
    return request.app.state.media_store


def get_current_user(token: str = Depends(oauth2_scheme), store: ChatStore = Depends(get_store)):
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    user_id = decode_token(token)
    if user_id is None:
        raise credentials_exception
    user = store.get_user(user_id)
    if not user:
        raise credentials_exception
    return user


# ------------ Users & presence ------------

@router.get("/me")
def me(current=Depends(get_current_user)):
    return respond(200, "Profile fetched", current)


@router.get("/api/users/{user_id}/status")
async def user_status(user_id: str, current=Depends(get_current_user), presence: PresenceTracker = Depends(get_presence)):
    return respond(200, "Status fetched", await presence.query_status(user_id))


# ------------ Chats & Messages ------------

@router.get("/api/chats/conversations")
def get_all_conversations(current=Depends(get_current_user), store: ChatStore = Depends(get_store)):
    conversations = store.populate_conversations(store.list_conversations(current["_id"]))
    return respond(200, "Conversations fetched successfully", conversations)


@router.get("/api/chats/conversations/{conversation_id}/messages")
def get_messages(conversation_id: str, current=Depends(get_current_user), store: ChatStore = Depends(get_store)):
    uid = current["_id"]
    store.require_participant(conversation_id, uid)
    # Opening the history reads everything addressed to the caller
    store.mark_read(conversation_id, uid)
    messages = store.populate_messages(store.list_messages(conversation_id))
    return respond(200, "Messages retrieved", messages)


@router.post("/api/chats/send-message")
async def send_message(
    receiver_id: str = Form(...),
    content: Optional[str] = Form(None),
    media: Optional[UploadFile] = File(None),
    current=Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    presence: PresenceTracker = Depends(get_presence),
    media_store: MediaStore = Depends(get_media_store),
):
    sender_id = current["_id"]
    if receiver_id == sender_id:
        raise ValidationError("Cannot send a message to yourself")
    if not await run_in_threadpool(store.get_user, receiver_id):
        raise NotFound("Receiver not found")

    media_url = kind = None
    if media is not None and media.filename:
        kind = media_kind(media.content_type)
        try:
            media_url = await run_in_threadpool(media_store.store, media.file, media.filename, kind)
        except ChatError:
            raise
        except Exception:
            logger.exception("Media upload from %s failed", sender_id)
            raise UpstreamFailure("Failed to upload media")
    elif not content or not content.strip():
        raise ValidationError("Message content is required")

    conversation = await run_in_threadpool(store.find_or_create_conversation, sender_id, receiver_id)
    message = await run_in_threadpool(
        store.append_message, conversation["_id"], sender_id, receiver_id, content, media_url, kind,
    )

    if presence.lookup(receiver_id) is not None:
        populated = await run_in_threadpool(store.populate_message, message)
        if await presence.send_to(receiver_id, "message-forward", {**populated, "message_status": MessageStatus.DELIVERED.value}):
            message = await run_in_threadpool(store.mark_delivered, message["_id"], sender_id, receiver_id)

    return respond(201, "Message sent successfully", await run_in_threadpool(store.populate_message, message))


@router.put("/api/chats/messages/read")
async def mark_as_read(
    body: MarkReadRequest,
    current=Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    presence: PresenceTracker = Depends(get_presence),
):
    updated = await run_in_threadpool(store.mark_read_by_ids, body.message_ids, current["_id"])

    by_sender = defaultdict(list)
    for m in updated:
        by_sender[m["sender_id"]].append(m["_id"])
    for sender_id, ids in by_sender.items():
        await presence.send_to(sender_id, "status-update", {"message_ids": ids, "status": MessageStatus.READ.value})

    return respond(200, "Messages marked as read", updated)


@router.delete("/api/chats/messages/{message_id}")
async def delete_message(
    message_id: str,
    current=Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    presence: PresenceTracker = Depends(get_presence),
):
    message = await run_in_threadpool(store.delete_message, message_id, current["_id"])
    await presence.send_to(message["receiver_id"], "message-deleted", {
        "message_id": message["_id"],
        "conversation_id": message["conversation_id"],
    })
    return respond(200, "Message deleted successfully", {"message_id": message["_id"]})


# ------------ Live channel ------------

@router.websocket("/ws")
async def live_channel(websocket: WebSocket, token: Optional[str] = None):
    user_id = decode_token(token) if token else None
    if user_id is None:
        await websocket.close(code=WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    state = websocket.app.state
    handler = ProtocolHandler(state.store, state.presence, websocket, authenticated_user_id=user_id)
    logger.info("Live session opened for %s", user_id)
    try:
        while not handler.closed:
            raw = await websocket.receive_text()
            try:
                inbound = WsInbound.model_validate_json(raw)
            except PydanticValidationError:
                logger.debug("Malformed frame from %s dropped", user_id)
                continue
            await handler.handle(inbound.type, inbound.data)
    except WebSocketDisconnect:
        pass
    finally:
        if not handler.closed:
            await handler.handle("disconnect")
    if websocket.client_state is WebSocketState.CONNECTED:
        await websocket.close()


# --------- Health & Schema ---------

@router.get("/")
def root():
    return {"message": "Chat backend running"}


@router.get("/schema")
def get_schema_names():
    return {"collections": COLLECTIONS}


# --------- Application ---------

@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    if state.database is None:
        state.database = get_database()
    ensure_indexes(state.database)
    state.store = ChatStore(state.database)
    state.presence = PresenceTracker(state.store, typing_quiet_period=state.typing_quiet_period)
    logger.info("Chat services started")
    try:
        yield
    finally:
        await state.presence.shutdown()
        logger.info("Chat services stopped")


def create_app(database=None, media_store: Optional[MediaStore] = None, typing_quiet_period: Optional[float] = None) -> FastAPI:
    app = FastAPI(title="Chat API", lifespan=lifespan)
    app.state.database = database
    app.state.media_store = media_store or default_media_store()
    app.state.typing_quiet_period = typing_quiet_period if typing_quiet_period is not None else settings.TYPING_QUIET_PERIOD

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return respond(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return respond(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
        return respond(400, f"Invalid request: {fields}")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return respond(500, "Internal server error")

    app.include_router(router)
    if isinstance(app.state.media_store, LocalMediaStore):
        app.mount(settings.MEDIA_URL, StaticFiles(directory=app.state.media_store.root, check_dir=False), name="media")
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    configure_logging()
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
