"""
FastAPI application, the chatdesk entry point.

Serves the JSON API the web client talks to:
  - /api/chat            streamed chat turns (text/event-stream)
  - /api/demo/chat       unauthenticated demo, same event shape
  - /api/auth/*          signed-cookie session
  - /api/conversations   conversation CRUD, pin/archive, search
  - /api/folders         folder CRUD
  - /api/messages/*      reactions
  - /api/admin/*         users, stats, provider API keys
"""

import json
import logging
import secrets
from contextlib import aclosing, asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.middleware.sessions import SessionMiddleware

from chatdesk.backends import make_backend
from chatdesk.bootstrap import Bootstrap
from chatdesk.config import get_config, get_section
from chatdesk.errors import (
    AuthorizationError,
    ChatError,
    ConflictError,
    NotAuthenticatedError,
    NotFoundError,
    ValidationError,
)
from chatdesk.relay import ChatRelay, ChatRequest
from chatdesk.schemas import (
    AdminFlag,
    ApiKeyCreate,
    ApiKeyUpdate,
    ChatBody,
    ConversationCreate,
    ConversationUpdate,
    DemoChatBody,
    FolderCreate,
    FolderUpdate,
    LoginBody,
    ReactionCreate,
)
from chatdesk.storage.gateway import StoreGateway
from chatdesk.storage.models import Conversation, Folder, Message, Reaction, User
from chatdesk.storage.sqlite_store import ANY_FOLDER, SQLiteStore
from chatdesk.tasks import BackgroundQueue
from chatdesk.titles import TitleGenerator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
store: SQLiteStore | None = None
relay: ChatRelay | None = None
title_queue: BackgroundQueue | None = None
bootstrap: Bootstrap | None = None

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Conversation columns that may be cleared to NULL through PATCH
_NULLABLE_FIELDS = {"folder_id", "system_prompt"}


def _setup_logging(cfg: dict):
    log_cfg = get_section("logging", cfg)
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


async def _startup() -> ChatRelay:
    """Build storage, provider backend and relay. Runs once per process."""
    global store, relay, title_queue

    cfg = get_config()
    store = SQLiteStore(get_section("storage", cfg)["sqlite_path"])
    backend = make_backend(cfg)

    title_queue = BackgroundQueue("titles")
    title_queue.start()

    relay = ChatRelay(
        gateway=StoreGateway(store),
        backend=backend,
        titles=TitleGenerator(backend, cfg),
        queue=title_queue,
        cfg=cfg,
    )

    provider = get_section("provider", cfg)
    server = get_section("server", cfg)
    logger.info(
        "chatdesk started: listening on %s:%s, provider %s (%s)",
        server["host"], server["port"], provider["name"], provider["url"],
    )
    logger.info("Storage: SQLite=%s", store.db_path)
    logger.info("Default model: %s", provider["default_model"])
    if get_section("auth", cfg).get("dev_login"):
        logger.warning("Development login is ENABLED, anyone can sign in by email")
    return relay


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global bootstrap

    cfg = get_config()
    _setup_logging(cfg)

    bootstrap = Bootstrap(_startup)
    await bootstrap.ready()

    yield

    if title_queue is not None:
        await title_queue.stop()
    logger.info("chatdesk shutting down")


def _session_options() -> dict:
    """SessionMiddleware settings; needed at import time, before lifespan runs."""
    try:
        cfg = get_config()
    except FileNotFoundError:
        cfg = {}
    auth = get_section("auth", cfg)
    secret = auth.get("session_secret")
    if not secret:
        logger.warning("auth.session_secret is not set; sessions will not survive a restart")
        secret = secrets.token_hex(32)
    return {
        "secret_key": secret,
        "session_cookie": "chatdesk_session",
        "max_age": int(auth.get("session_max_age", 30 * 24 * 60 * 60)),
        "same_site": "lax",
        "https_only": bool(auth.get("https_only", False)),
    }


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatdesk",
    description="Multi-user AI chat with streamed answers.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, **_session_options())


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def require_ready():
    """Wait for startup to finish; 503 if the app was never started."""
    if bootstrap is None:
        raise ChatError("Service is starting, try again shortly", status_code=503)
    await bootstrap.ready()


def current_user(request: Request, _ready=Depends(require_ready)) -> User:
    user_id = request.session.get("user_id")
    if not user_id:
        raise NotAuthenticatedError()
    user = store.get_user(user_id)
    if user is None:
        request.session.clear()
        raise NotAuthenticatedError()
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise AuthorizationError("Admin access required")
    return user


def _owned_conversation(conversation_id: str, user: User) -> Conversation:
    conv = store.get_conversation(conversation_id)
    if conv is None:
        raise NotFoundError("Conversation not found")
    if conv.user_id != user.id:
        raise AuthorizationError("You do not have access to this conversation")
    return conv


def _owned_folder(folder_id: str, user: User) -> Folder:
    folder = store.get_folder(folder_id)
    if folder is None:
        raise NotFoundError("Folder not found")
    if folder.user_id != user.id:
        raise AuthorizationError("You do not have access to this folder")
    return folder


def _owned_message(message_id: str, user: User) -> Message:
    msg = store.get_message(message_id)
    if msg is None:
        raise NotFoundError("Message not found")
    _owned_conversation(msg.conversation_id, user)
    return msg


async def _event_stream(events):
    """Render relay events as text/event-stream frames."""
    async with aclosing(events) as stream:
        async for event in stream:
            yield f"data: {json.dumps(event)}\n\n"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat(body: ChatBody, user: User = Depends(current_user)):
    """
    Start a chat turn and stream the answer.
    Validation, ownership and credential failures answer with a JSON error
    before the stream opens; later failures arrive as an error event.
    """
    turn = await relay.open_turn(
        user,
        ChatRequest(
            message=body.message,
            conversation_id=body.conversation_id,
            model=body.model,
            image_url=body.image_url,
        ),
    )
    return StreamingResponse(
        _event_stream(relay.stream_turn(turn)),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Turn-Id": turn.id},
        background=BackgroundTask(turn.release),
    )


@app.post("/api/chat/{turn_id}/cancel")
async def cancel_chat(turn_id: str, user: User = Depends(current_user)):
    """Stop button: the turn ends without storing an answer."""
    if not relay.cancel(turn_id, user):
        raise NotFoundError("No active turn with that id")
    return JSONResponse({"success": True})


@app.post("/api/demo/chat", dependencies=[Depends(require_ready)])
async def demo_chat(body: DemoChatBody):
    turn = await relay.open_demo(body.message)
    return StreamingResponse(
        _event_stream(relay.demo_turn(turn)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@app.post("/api/auth/login", dependencies=[Depends(require_ready)])
def login(body: LoginBody, request: Request):
    """Development sign-in by email. Creates the user on first login."""
    if not get_section("auth").get("dev_login"):
        raise AuthorizationError("Development login is disabled")

    email = body.email.strip().lower()
    if "@" not in email:
        raise ValidationError("Invalid email address")

    user = store.get_user_by_email(email)
    if user is None:
        user = store.create_user(User(
            email=email,
            name=body.name.strip() or email.split("@")[0],
            picture=body.picture,
        ))
    request.session["user_id"] = user.id
    logger.info("User %s signed in", user.id)
    return JSONResponse(user.to_api())


@app.get("/api/auth/me")
def me(user: User = Depends(current_user)):
    return JSONResponse(user.to_api())


@app.post("/api/auth/logout")
def logout(request: Request):
    request.session.clear()
    return JSONResponse({"success": True})


@app.post("/api/auth/make-admin")
def make_admin(user: User = Depends(current_user)):
    """First user to ask becomes admin; afterwards only admins may call this."""
    has_admin = any(u.is_admin for u in store.list_users())
    if has_admin and not user.is_admin:
        raise AuthorizationError("Only admins can grant admin access")
    updated = store.set_user_admin(user.id, True)
    logger.info("User %s is now an admin", user.id)
    return JSONResponse({"success": True, "user": updated.to_api()})


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.get("/api/conversations")
def list_conversations(
    q: str | None = None,
    folder_id: str | None = Query(None, alias="folderId"),
    archived: bool = False,
    user: User = Depends(current_user),
):
    """
    List the caller's conversations, pinned first, newest first.
    q searches titles and message text; folderId=null lists unfiled ones.
    """
    if q and q.strip():
        convs = store.search_conversations(q.strip(), user.id)
    else:
        if folder_id is None:
            folder = ANY_FOLDER
        elif folder_id == "null":
            folder = None
        else:
            folder = folder_id
        convs = store.list_conversations(user.id, folder_id=folder, include_archived=archived)
    return JSONResponse([c.to_api() for c in convs])


@app.post("/api/conversations")
def create_conversation(body: ConversationCreate, user: User = Depends(current_user)):
    if body.folder_id:
        _owned_folder(body.folder_id, user)

    chat_cfg = get_section("chat")
    conv = Conversation(
        user_id=user.id,
        folder_id=body.folder_id,
        title=(body.title or "").strip() or chat_cfg["default_title"],
        model=body.model or get_section("provider")["default_model"],
        system_prompt=body.system_prompt,
    )
    if body.id:
        if store.get_conversation(body.id):
            raise ConflictError("A conversation with this id already exists")
        conv.id = body.id
    store.create_conversation(conv)
    return JSONResponse(conv.to_api())


@app.get("/api/conversations/{conversation_id}")
def get_conversation(conversation_id: str, user: User = Depends(current_user)):
    conv = _owned_conversation(conversation_id, user)
    messages = []
    for msg in store.get_messages(conv.id):
        data = msg.to_api()
        data["attachments"] = [a.to_api() for a in store.get_attachments(msg.id)]
        messages.append(data)
    return JSONResponse({**conv.to_api(), "messages": messages})


@app.patch("/api/conversations/{conversation_id}/pin")
def toggle_pin(conversation_id: str, user: User = Depends(current_user)):
    conv = _owned_conversation(conversation_id, user)
    updated = store.update_conversation(conv.id, is_pinned=not conv.is_pinned)
    return JSONResponse(updated.to_api())


@app.patch("/api/conversations/{conversation_id}/archive")
def toggle_archive(conversation_id: str, user: User = Depends(current_user)):
    conv = _owned_conversation(conversation_id, user)
    updated = store.update_conversation(conv.id, is_archived=not conv.is_archived)
    return JSONResponse(updated.to_api())


@app.patch("/api/conversations/{conversation_id}")
def update_conversation(
    conversation_id: str,
    body: ConversationUpdate,
    user: User = Depends(current_user),
):
    conv = _owned_conversation(conversation_id, user)
    updates = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k in _NULLABLE_FIELDS
    }
    if updates.get("folder_id"):
        _owned_folder(updates["folder_id"], user)
    if "title" in updates:
        updates["title"] = updates["title"].strip() or get_section("chat")["default_title"]

    updated = store.update_conversation(conv.id, **updates)
    if updated is None:
        raise NotFoundError("Conversation not found")
    return JSONResponse(updated.to_api())


@app.delete("/api/conversations/{conversation_id}")
def delete_conversation(conversation_id: str, user: User = Depends(current_user)):
    conv = _owned_conversation(conversation_id, user)
    store.delete_conversation(conv.id)
    return JSONResponse({"success": True})


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

@app.get("/api/folders")
def list_folders(user: User = Depends(current_user)):
    return JSONResponse([f.to_api() for f in store.list_folders(user.id)])


@app.post("/api/folders")
def create_folder(body: FolderCreate, user: User = Depends(current_user)):
    name = body.name.strip()
    if not name:
        raise ValidationError("Folder name is required")
    folder = store.create_folder(Folder(user_id=user.id, name=name, color=body.color))
    return JSONResponse(folder.to_api())


@app.patch("/api/folders/{folder_id}")
def update_folder(folder_id: str, body: FolderUpdate, user: User = Depends(current_user)):
    folder = _owned_folder(folder_id, user)
    updates = body.model_dump(exclude_unset=True)
    if "name" in updates:
        name = (updates["name"] or "").strip()
        if not name:
            raise ValidationError("Folder name is required")
        updates["name"] = name
    updated = store.update_folder(folder.id, **updates)
    return JSONResponse(updated.to_api())


@app.delete("/api/folders/{folder_id}")
def delete_folder(folder_id: str, user: User = Depends(current_user)):
    folder = _owned_folder(folder_id, user)
    store.delete_folder(folder.id)
    return JSONResponse({"success": True})


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------

@app.get("/api/messages/{message_id}/reactions")
def list_reactions(message_id: str, user: User = Depends(current_user)):
    msg = _owned_message(message_id, user)
    return JSONResponse([r.to_api() for r in store.get_reactions(msg.id)])


@app.post("/api/messages/{message_id}/reactions")
def add_reaction(message_id: str, body: ReactionCreate, user: User = Depends(current_user)):
    msg = _owned_message(message_id, user)
    reaction = body.reaction.strip()
    if not reaction:
        raise ValidationError("Reaction is required")
    saved = store.add_reaction(Reaction(message_id=msg.id, user_id=user.id, reaction=reaction))
    return JSONResponse(saved.to_api())


@app.delete("/api/messages/{message_id}/reactions/{reaction}")
def remove_reaction(message_id: str, reaction: str, user: User = Depends(current_user)):
    msg = _owned_message(message_id, user)
    store.remove_reaction(msg.id, user.id, reaction)
    return JSONResponse({"success": True})


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.get("/api/admin/stats")
def admin_stats(admin: User = Depends(require_admin)):
    stats = store.get_stats()
    stats["activeTurns"] = len(relay.registry)
    return JSONResponse(stats)


@app.get("/api/admin/users")
def admin_users(admin: User = Depends(require_admin)):
    return JSONResponse([u.to_api() for u in store.list_users()])


@app.get("/api/admin/conversations")
def admin_conversations(admin: User = Depends(require_admin)):
    convs = store.list_conversations(include_archived=True)
    return JSONResponse([c.to_api() for c in convs])


@app.patch("/api/admin/users/{user_id}/admin")
def admin_set_admin(user_id: str, body: AdminFlag, admin: User = Depends(require_admin)):
    if store.get_user(user_id) is None:
        raise NotFoundError("User not found")
    updated = store.set_user_admin(user_id, body.is_admin)
    logger.info("Admin %s set is_admin=%s for user %s", admin.id, body.is_admin, user_id)
    return JSONResponse(updated.to_api())


@app.get("/api/admin/settings")
def admin_settings(admin: User = Depends(require_admin)):
    provider = get_section("provider")
    stored = store.get_active_api_key(provider["name"])
    return JSONResponse({
        "provider": provider["name"],
        "providerApiKeySet": bool(stored or provider.get("api_key")),
        "providerApiKeySource": "admin" if stored else ("config" if provider.get("api_key") else None),
        "defaultModel": provider["default_model"],
        "devLogin": bool(get_section("auth").get("dev_login")),
    })


@app.get("/api/admin/api-keys")
def admin_list_api_keys(admin: User = Depends(require_admin)):
    return JSONResponse([k.to_api() for k in store.list_api_keys()])


@app.post("/api/admin/api-keys")
def admin_save_api_key(body: ApiKeyCreate, admin: User = Depends(require_admin)):
    """Create the provider's key, or replace it if one exists."""
    provider = body.provider.strip()[:50]
    secret = body.api_key.strip()
    if not provider or not secret:
        raise ValidationError("provider and apiKey are required")
    key = store.upsert_api_key(provider, secret)
    logger.info("Admin %s saved API key for %s", admin.id, provider)
    return JSONResponse(key.to_api())


@app.patch("/api/admin/api-keys/{key_id}")
def admin_update_api_key(key_id: str, body: ApiKeyUpdate, admin: User = Depends(require_admin)):
    if store.get_api_key(key_id) is None:
        raise NotFoundError("API key not found")
    updates = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    if "api_key" in updates:
        updates["api_key"] = updates["api_key"].strip()
        if not updates["api_key"]:
            raise ValidationError("apiKey must not be blank")
    updated = store.update_api_key(key_id, **updates)
    return JSONResponse(updated.to_api())


@app.delete("/api/admin/api-keys/{key_id}")
def admin_delete_api_key(key_id: str, admin: User = Depends(require_admin)):
    store.delete_api_key(key_id)
    return JSONResponse({"success": True})


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    return JSONResponse({
        "status": "ok",
        "ready": bool(bootstrap and bootstrap.is_ready),
        "activeTurns": len(relay.registry) if relay else 0,
    })
