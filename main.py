"""
Gist Chat - Main Entry Point

A local FastAPI application that keeps all key material and plaintext on
this device. Runs on http://127.0.0.1:18422 and talks to Supabase or
GitHub Gists for public profiles and encrypted messages only.
"""

import logging
from typing import Optional
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from config import config, VERSION
from backends import create_stores
from backends.base import parse_timestamp
from chat import ChatService
from custody import ANONYMOUS, KeyCustody, Session, validate_user_id
from e2e.key_store import LocalKeyStore
from errors import (
    BackendError,
    CooldownActive,
    GistChatError,
    IdentityNotFound,
    IdentityTaken,
    InvalidPassphrase,
    KeyImportError,
    KeyMismatch,
    KeyNotOnDevice,
    NotMessageOwner,
    PublishError,
    SessionStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

__version__ = VERSION


# Global state
class AppState:
    """Application state container."""
    custody: Optional[KeyCustody] = None
    chat: Optional[ChatService] = None
    session: Session = ANONYMOUS
    activity_logs: list[dict] = []
    _clients: list = []

    def add_log(self, level: str, message: str, details: str = ""):
        """Add an activity log entry."""
        self.activity_logs.append({
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": message,
            "details": details,
        })
        # Keep only last 100 logs
        if len(self.activity_logs) > 100:
            self.activity_logs = self.activity_logs[-100:]
        getattr(logger, level if level in ("info", "warning", "error") else "info")("%s %s", message, details)


app_state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    directory, messages, clients = create_stores(config)
    app_state._clients = clients
    app_state.custody = KeyCustody(directory, LocalKeyStore(config.keys_dir))
    app_state.chat = ChatService(
        directory,
        messages,
        cooldown_seconds=config.COOLDOWN_SECONDS,
        max_dm_slots=config.MAX_DM_SLOTS,
        max_gc_slots=config.MAX_GC_SLOTS,
        max_gc_participants=config.MAX_GC_PARTICIPANTS,
    )
    app_state.session = app_state.custody.resume()

    app_state.add_log("info", "Gist Chat started", f"Backend: {config.BACKEND}, session: {app_state.session.state.value}")

    yield

    # Shutdown - drop unlocked keys from memory
    app_state.session = ANONYMOUS
    for client in app_state._clients:
        await client.close()
    app_state.add_log("info", "Gist Chat stopped", "Session cleared from memory")


app = FastAPI(
    title="Gist Chat",
    description="Local client for end-to-end encrypted chat",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"http://{config.HOST}:{config.PORT}", "http://localhost"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = [
    (SessionStateError, 409),
    (IdentityTaken, 409),
    (IdentityNotFound, 404),
    (KeyNotOnDevice, 403),
    (KeyMismatch, 403),
    (NotMessageOwner, 403),
    (InvalidPassphrase, 401),
    (CooldownActive, 429),
    (KeyImportError, 400),
    (ValidationError, 400),
    (PublishError, 502),
    (BackendError, 502),
]


@app.exception_handler(GistChatError)
async def gist_chat_error_handler(request: Request, exc: GistChatError):
    """Map domain errors to HTTP responses."""
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "detail": exc.message, **exc.details},
    )


async def _json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="JSON object expected")
    return data


# ============================================================================
# Authentication API
# ============================================================================

@app.get("/api/auth/status")
async def auth_status():
    """Current session state, plus the interval the UI polls messages at."""
    return {**app_state.session.to_status(), "poll_interval_seconds": config.POLL_INTERVAL_SECONDS}


@app.post("/api/auth/register")
async def api_register(request: Request):
    """Register a new identity on this device."""
    data = await _json(request)
    user_id = data.get("user_id", "")
    passphrase = data.get("passphrase", "")

    try:
        app_state.session = await app_state.custody.register(app_state.session, user_id, passphrase)
    except GistChatError as e:
        app_state.add_log("warning", "Registration failed", e.message)
        raise

    app_state.add_log("info", "Registered", f"User: {user_id}")
    return {"success": True, **app_state.session.to_status()}


@app.post("/api/auth/login")
async def api_login(request: Request):
    """Handle login request."""
    data = await _json(request)
    user_id = data.get("user_id", "")
    passphrase = data.get("passphrase", "")

    try:
        app_state.session = await app_state.custody.login(app_state.session, user_id, passphrase)
    except GistChatError as e:
        app_state.add_log("warning", "Login failed", e.message)
        raise

    app_state.add_log("info", "Login successful", f"User: {user_id}")
    return {"success": True, **app_state.session.to_status()}


@app.post("/api/auth/logout")
async def api_logout():
    """Handle logout request."""
    app_state.session = app_state.custody.logout(app_state.session)
    app_state.add_log("info", "Logout successful", "Session cleared, device keys kept")
    return {"success": True, "message": "Logged out"}


@app.post("/api/auth/lock")
async def api_lock():
    """Lock the session (clear keys from memory)."""
    app_state.session = app_state.custody.lock(app_state.session)
    app_state.add_log("info", "Session locked", "Private key cleared from memory")
    return {"success": True, **app_state.session.to_status()}


@app.post("/api/auth/unlock")
async def api_unlock(request: Request):
    """Unlock a locked session with the passphrase."""
    data = await _json(request)
    try:
        app_state.session = await app_state.custody.unlock(app_state.session, data.get("passphrase", ""))
    except InvalidPassphrase:
        app_state.add_log("warning", "Unlock failed", "Invalid passphrase")
        raise

    app_state.add_log("info", "Session unlocked", f"User: {app_state.session.user_id}")
    return {"success": True, **app_state.session.to_status()}


# ============================================================================
# Key Management API
# ============================================================================

@app.post("/api/keys/export")
async def export_keys():
    """Export private keys for backup."""
    backup = app_state.custody.export_backup(app_state.session)
    app_state.add_log("warning", "Keys exported", f"User: {backup['user_id']}")
    return backup


@app.post("/api/keys/import")
async def import_keys(request: Request):
    """Install a key backup on this device."""
    data = await _json(request)
    app_state.session = await app_state.custody.import_backup(
        app_state.session,
        data.get("user_id", ""),
        data.get("private_key", ""),
        data.get("passphrase", ""),
        signing_key=data.get("signing_key"),
    )
    app_state.add_log("warning", "Keys imported", f"User: {app_state.session.user_id}")
    return {"success": True, **app_state.session.to_status()}


# ============================================================================
# Directory API
# ============================================================================

@app.get("/api/users/{user_id}")
async def search_user(user_id: str):
    """Look up a public profile."""
    user_id = validate_user_id(user_id.upper())
    profile = await app_state.custody.directory.get_profile(user_id)
    if profile is None:
        raise IdentityNotFound(user_id)
    return profile.to_dict()


# ============================================================================
# Rooms & Messages API
# ============================================================================

@app.get("/api/rooms")
async def list_rooms():
    rooms = await app_state.chat.list_rooms(app_state.session)
    return {"rooms": [room.to_dict() for room in rooms]}


@app.post("/api/rooms")
async def create_room(request: Request):
    """Create a DM or group room."""
    data = await _json(request)
    participants = data.get("participants", [])
    if not isinstance(participants, list):
        raise HTTPException(status_code=400, detail="participants must be a list")

    room = await app_state.chat.create_room(app_state.session, data.get("type", "dm"), participants)
    app_state.add_log("info", "Room created", f"{room.type} {room.room_id}")
    return room.to_dict()


@app.post("/api/rooms/{room_id}/messages")
async def send_message(room_id: str, request: Request):
    """Encrypt and send a message."""
    data = await _json(request)
    message = await app_state.chat.send_message(
        app_state.session,
        room_id,
        data.get("text", ""),
        passphrase=data.get("passphrase"),
    )
    return message.to_dict()


@app.post("/api/rooms/{room_id}/messages/fetch")
async def fetch_messages(room_id: str, request: Request):
    """
    Fetch and decrypt messages.

    POST so a room passphrase can be sent in the body instead of the URL.
    """
    data = await _json(request)
    since = data.get("since")
    try:
        since_ts = parse_timestamp(since) if since else None
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid 'since' timestamp")

    views = await app_state.chat.fetch_messages(
        app_state.session,
        room_id,
        since=since_ts,
        passphrase=data.get("passphrase"),
    )
    return {
        "messages": [view.to_dict() for view in views],
        "cooldown_remaining": app_state.chat.cooldown_remaining(app_state.session, room_id),
    }


@app.delete("/api/rooms/{room_id}/messages/{message_id}")
async def delete_message(room_id: str, message_id: str):
    await app_state.chat.delete_message(app_state.session, room_id, message_id)
    return {"success": True}


# ============================================================================
# Logs
# ============================================================================

@app.get("/api/logs")
async def get_logs():
    """Recent activity log."""
    return {"logs": app_state.activity_logs}


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="info",
    )
