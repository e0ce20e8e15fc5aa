"""FastAPI application: auth, articles, users, chats and the live relay."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, File, Request, Response, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from . import __version__
from .articles import ArticleService
from .chats import ChatService
from .config import as_list, load_config
from .errors import BazaarError, InvalidInput, StorageFailure, Unauthenticated
from .guard import require_admin, require_authenticated
from .models import (
    ArticleCreate,
    ArticleUpdate,
    LoginRequest,
    MembersAdd,
    Message,
    MessageCreate,
    RoomCreate,
    RoomRename,
    UserCreate,
    UserUpdate,
)
from .relay import Relay
from .sessions import InMemorySessionStore, Session, SessionStore
from .store import RecordStore
from .uploads import UploadStore
from .users import UserService

logger = logging.getLogger(__name__)


# -----------------------------
# Utilities
# -----------------------------
def _extract_token(conn: Union[Request, WebSocket], cookie_name: str) -> Optional[str]:
    # Prefer cookie for browser flows
    token = conn.cookies.get(cookie_name)
    if token:
        return token
    # Fallback to Authorization: Bearer <token>
    auth_header = conn.headers.get("authorization") or ""
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


def _validation_detail(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def _make_sessions(cfg: Dict[str, Any]) -> InMemorySessionStore:
    auth_cfg = cfg.get("auth", {})
    return InMemorySessionStore(
        as_list(auth_cfg.get("admins")),
        idle_seconds=float(auth_cfg.get("session_idle_seconds", 0) or 0),
        max_age_seconds=float(auth_cfg.get("session_max_age_seconds", 0) or 0),
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    store: Optional[RecordStore] = None,
    sessions: Optional[SessionStore] = None,
    relay: Optional[Relay] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    server_cfg = cfg.get("server", {})
    storage_cfg = cfg.get("storage", {})
    auth_cfg = cfg.get("auth", {})
    cookie_name = server_cfg.get("cookie_name", "sid")
    cookie_secure = bool(server_cfg.get("cookie_secure", False))
    cookie_max_age = int(auth_cfg.get("session_max_age_seconds", 0) or 0) or None

    # Services
    store = store or RecordStore(storage_cfg.get("data_dir", "data"))
    sessions = sessions or _make_sessions(cfg)
    relay = relay or Relay()
    uploads = UploadStore(
        storage_cfg.get("uploads_dir", "data/uploads"),
        max_bytes=int(float(storage_cfg.get("max_upload_mb", 8)) * 1024 * 1024),
    )
    users = UserService(store, bcrypt_rounds=int(auth_cfg.get("bcrypt_rounds", 12)))
    articles = ArticleService(store)
    chats = ChatService(store, users.exists)
    users.seed(auth_cfg.get("bootstrap_users") or [])

    app = FastAPI(title="Bazaar", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=as_list(server_cfg.get("cors_origins")) or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = cfg
    app.state.store = store
    app.state.sessions = sessions
    app.state.relay = relay
    app.state.uploads = uploads
    app.state.users = users
    app.state.articles = articles
    app.state.chats = chats

    # ---------- errors ----------
    @app.exception_handler(BazaarError)
    async def bazaar_error(request: Request, exc: BazaarError) -> JSONResponse:
        if isinstance(exc, StorageFailure):
            logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        err = InvalidInput(_validation_detail(exc))
        return JSONResponse(err.to_dict(), status_code=err.status_code)

    # ---------- dependencies ----------
    def current_session(request: Request) -> Optional[Session]:
        return sessions.resolve(_extract_token(request, cookie_name))

    def authenticated(session: Optional[Session] = Depends(current_session)) -> Session:
        return require_authenticated(session)

    def admin(session: Optional[Session] = Depends(current_session)) -> Session:
        return require_admin(session)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "dataDir": str(store.root)}

    # ---------- auth ----------
    @app.post("/api/login")
    def login(req: LoginRequest, response: Response) -> Dict[str, Any]:
        if not users.authenticate(req.id, req.secret):
            logger.warning("Failed login for %s", req.id)
            raise Unauthenticated("Invalid credentials")
        session = sessions.create(req.id)
        response.set_cookie(
            key=cookie_name,
            value=session.token,
            max_age=cookie_max_age,
            httponly=True,
            secure=cookie_secure,
            samesite="lax",
        )
        logger.info("User %s logged in", req.id)
        return {"ok": True, "id": session.user_id, "isAdmin": session.is_admin}

    @app.post("/api/logout")
    def logout(request: Request, response: Response) -> Dict[str, Any]:
        sessions.destroy(_extract_token(request, cookie_name))
        response.delete_cookie(cookie_name)
        return {"ok": True}

    @app.get("/api/session")
    def get_session(session: Optional[Session] = Depends(current_session)) -> Dict[str, Any]:
        if session is None:
            return {"ok": False}
        return {"ok": True, "id": session.user_id, "isAdmin": session.is_admin}

    # ---------- articles ----------
    @app.get("/api/articles")
    def list_articles() -> List[Dict[str, Any]]:
        return articles.list()

    @app.post("/api/articles")
    def create_article(req: ArticleCreate, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        return {"ok": True, "article": articles.create(session, req)}

    @app.put("/api/articles/{article_id}")
    def update_article(
        article_id: str, req: ArticleUpdate, session: Session = Depends(authenticated)
    ) -> Dict[str, Any]:
        return {"ok": True, "article": articles.update(session, article_id, req)}

    @app.delete("/api/articles/{article_id}")
    def delete_article(article_id: str, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        articles.delete(session, article_id)
        return {"ok": True}

    @app.post("/api/articles/{article_id}/image")
    def upload_article_image(
        article_id: str,
        image: UploadFile = File(...),
        session: Session = Depends(authenticated),
    ) -> Dict[str, Any]:
        # Check rights before storing the file; set_image re-checks under the lock.
        previous = articles.authorize(session, article_id)
        reference = uploads.save(image.file, image.filename)
        try:
            article = articles.set_image(session, article_id, reference)
        except BazaarError:
            uploads.delete(reference)
            raise
        if previous.get("image") and previous.get("image") != reference:
            uploads.delete(previous.get("image"))
        return {"ok": True, "article": article}

    # ---------- users (admin) ----------
    @app.get("/api/users")
    def list_users(session: Session = Depends(admin)) -> List[Dict[str, str]]:
        return users.list()

    @app.post("/api/users")
    def create_user(req: UserCreate, session: Session = Depends(admin)) -> Dict[str, Any]:
        user = users.create(req.id, req.secret)
        return {"ok": True, "id": user.id}

    @app.put("/api/users/{user_id}")
    def update_user(user_id: str, req: UserUpdate, session: Session = Depends(admin)) -> Dict[str, Any]:
        users.update(user_id, req.secret)
        return {"ok": True}

    @app.delete("/api/users/{user_id}")
    def delete_user(user_id: str, session: Session = Depends(admin)) -> Dict[str, Any]:
        users.delete(user_id)
        dropped = sessions.destroy_user(user_id)
        logger.info("Admin %s deleted %s (%d sessions dropped)", session.user_id, user_id, dropped)
        return {"ok": True}

    # ---------- profile pictures ----------
    @app.post("/api/profile")
    def upload_profile(photo: UploadFile = File(...), session: Session = Depends(authenticated)) -> Dict[str, Any]:
        reference = uploads.save(photo.file, photo.filename)
        with store.transaction("profiles") as profiles:
            previous = profiles.get(session.user_id)
            profiles[session.user_id] = reference
        if previous and previous != reference:
            uploads.delete(previous)
        return {"ok": True, "file": reference}

    @app.get("/api/profile/{user_id}")
    def get_profile(user_id: str) -> FileResponse:
        reference = store.load("profiles").get(user_id)
        return FileResponse(uploads.path(reference or ""))

    # ---------- chats ----------
    @app.get("/api/chats")
    async def list_chats(session: Session = Depends(authenticated)) -> List[Dict[str, Any]]:
        rooms = await run_in_threadpool(chats.list_rooms, session.user_id)
        return [r.dump() for r in rooms]

    @app.post("/api/chats")
    async def create_chat(req: RoomCreate, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        room = await run_in_threadpool(chats.create_room, session.user_id, req.member_ids, req.display_name)
        return room.dump()

    @app.get("/api/chats/{room_id}")
    async def get_chat(room_id: str, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        room = await run_in_threadpool(
            lambda: chats.get_room(session.user_id, room_id, is_admin=session.is_admin)
        )
        return room.dump()

    @app.put("/api/chats/{room_id}")
    async def rename_chat(room_id: str, req: RoomRename, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        room = await run_in_threadpool(chats.rename, session.user_id, room_id, req.display_name)
        await relay.broadcast(room_id, "room", {"room": room.dump()})
        return room.dump()

    @app.post("/api/chats/{room_id}/members")
    async def add_chat_members(
        room_id: str, req: MembersAdd, session: Session = Depends(authenticated)
    ) -> Dict[str, Any]:
        room, added = await run_in_threadpool(chats.add_members, session.user_id, room_id, req.member_ids)
        if added:
            await relay.broadcast(room_id, "room", {"room": room.dump()})
        return {"ok": True, "room": room.dump(), "added": added}

    async def _post_message(user_id: str, room_id: str, body: str) -> Message:
        # queued inside the chats lock so live order matches stored order
        def queue_frame(message: Message) -> None:
            relay.publish(room_id, "message", {"message": message.dump()})

        message = await run_in_threadpool(chats.append_message, user_id, room_id, body, queue_frame)
        await relay.flush(room_id)
        return message

    @app.post("/api/messages")
    async def post_message(req: MessageCreate, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        message = await _post_message(session.user_id, req.room_id, req.body)
        return {"ok": True, "message": message.dump()}

    # ---------- live connection ----------
    async def _handle_event(websocket: WebSocket, token: Optional[str], data: Any) -> None:
        if not isinstance(data, dict):
            raise InvalidInput("Expected a JSON object")
        event = data.get("event")
        room_id = data.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            raise InvalidInput("roomId is required")
        if event == "join":
            relay.join(websocket, room_id)
            await websocket.send_json({"event": "joined", "roomId": room_id})
        elif event == "leave":
            relay.leave(websocket, room_id)
            await websocket.send_json({"event": "left", "roomId": room_id})
        elif event == "message":
            # re-resolve on every write; the session may have ended since connect
            session = require_authenticated(sessions.resolve(token))
            body = data.get("body")
            if not isinstance(body, str):
                raise InvalidInput("body is required")
            await _post_message(session.user_id, room_id, body)
        else:
            raise InvalidInput(f"Unknown event: {event!r}")

    @app.websocket("/ws")
    async def live(websocket: WebSocket) -> None:
        token = _extract_token(websocket, cookie_name)
        session = sessions.resolve(token)
        if session is None:
            await websocket.close(code=4401)
            return
        await websocket.accept()
        logger.debug("Live connection opened for %s", session.user_id)
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    try:
                        data = json.loads(text)
                    except ValueError:
                        raise InvalidInput("Frame is not valid JSON")
                    await _handle_event(websocket, token, data)
                except BazaarError as exc:
                    await websocket.send_json({"event": "error", "error": exc.code, "detail": exc.detail})
        except WebSocketDisconnect:
            pass
        finally:
            relay.disconnect(websocket)
            logger.debug("Live connection closed for %s", session.user_id)

    return app
