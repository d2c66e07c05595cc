from __future__ import annotations

import os
import time
import json
import re
import logging
import asyncio
import base64
import hmac
import hashlib
import secrets
from enum import Enum
from urllib.parse import quote
from contextlib import asynccontextmanager
from typing import Dict, Optional, List, Tuple

import psycopg
from psycopg.rows import dict_row

from fastapi import (
    FastAPI,
    WebSocket,
    WebSocketDisconnect,
    Request,
    Depends,
    Response,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException


LOGGER = logging.getLogger("chat.api")


# =========================
# Config
# =========================
JWT_SECRET = (os.environ.get("JWT_SECRET") or "").strip()
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET env is required")
if len(JWT_SECRET) < 16:
    raise RuntimeError("JWT_SECRET must be at least 16 characters")

DATABASE_URL = (os.environ.get("DATABASE_URL") or "").strip()
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL env is required")

# Normalize for psycopg
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql://" + DATABASE_URL[len("postgres://"):]

APP_ENV = (os.environ.get("APP_ENV") or "development").strip().lower()
COOKIE_SECURE = APP_ENV == "production"

SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS", str(60 * 60 * 24 * 15)))  # 15 days
CSRF_TTL_SECONDS = int(os.environ.get("CSRF_TTL_SECONDS", str(60 * 60)))  # 1 hour
SESSION_COOKIE_NAME = "jwt"
CSRF_SECRET_COOKIE_NAME = "_csrf"
CSRF_TOKEN_COOKIE_NAME = "XSRF-TOKEN"
CSRF_HEADER_NAMES = ("csrf-token", "xsrf-token", "x-csrf-token", "x-xsrf-token")
CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
CSRF_PROTECTED_PREFIX = "/api/"
CSRF_EXEMPT_PREFIXES = ("/api/auth/",)

PASSWORD_HASH_ITERATIONS = int(os.environ.get("PASSWORD_HASH_ITERATIONS", "200000"))
if PASSWORD_HASH_ITERATIONS < 1:
    raise RuntimeError("PASSWORD_HASH_ITERATIONS must be positive")

MAX_MESSAGE_LENGTH = int(os.environ.get("MAX_MESSAGE_LENGTH", "2000"))

USERNAME_RE = re.compile(r"[A-Za-z0-9_.-]{3,30}")
FULL_NAME_MIN_LENGTH = 3
FULL_NAME_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 8
AVATAR_BASE_URL = "https://avatar.iran.liara.run/public"

WS_HEARTBEAT_INTERVAL_SECONDS = float(os.environ.get("WS_HEARTBEAT_INTERVAL_SECONDS", "20"))
WS_HEARTBEAT_TIMEOUT_SECONDS = float(os.environ.get("WS_HEARTBEAT_TIMEOUT_SECONDS", "45"))


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["http://localhost"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


CORS_ORIGINS = parse_cors_origins(os.environ.get("CORS_ORIGINS"))


# =========================
# Errors
# =========================
class ChatError(Exception):
    """Base for errors rendered to the client as ``{"error": message}``."""

    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatError):
    status_code = 400
    default_message = "Invalid input fields"


class ConflictError(ChatError):
    status_code = 400
    default_message = "Username already exists"


class AuthError(ChatError):
    # Same text whether the user is missing or the password is wrong.
    status_code = 400
    default_message = "Invalid username or password"


class UnauthorizedError(ChatError):
    status_code = 401
    default_message = "Unauthorized"


class ForbiddenError(ChatError):
    status_code = 403
    default_message = "Invalid CSRF token"


class ServiceUnavailable(ChatError):
    status_code = 503
    default_message = "Service unavailable - DB not connected"


class InternalError(ChatError):
    status_code = 500
    default_message = "Internal Server Error"


def error_response(exc: ChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# =========================
# DB helpers
# =========================
def db():
    # new connection per action (simple + safe)
    return psycopg.connect(DATABASE_URL, row_factory=dict_row)


def init_db() -> None:
    """
    Safe "migrations" via CREATE ... IF NOT EXISTS.
    """
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    full_name TEXT NOT NULL,
                    pass_hash TEXT NOT NULL,
                    gender TEXT NOT NULL,
                    profile_pic TEXT NOT NULL,
                    created_at BIGINT NOT NULL
                );
                """
            )
            # one row per unordered pair; "C" collation matches the codepoint order of conversation_key
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    participant_lo TEXT COLLATE "C" NOT NULL,
                    participant_hi TEXT COLLATE "C" NOT NULL,
                    message_ids TEXT[] NOT NULL DEFAULT '{}',
                    created_at BIGINT NOT NULL,
                    updated_at BIGINT NOT NULL,
                    UNIQUE(participant_lo, participant_hi),
                    CHECK (participant_lo < participant_hi)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    sender_id TEXT NOT NULL,
                    receiver_id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at BIGINT NOT NULL
                );
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender_id, receiver_id);"
            )
        conn.commit()


def get_user_by_username(username: str) -> Optional[dict]:
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, username, full_name, pass_hash, gender, profile_pic, created_at FROM users WHERE username=%s",
                (username,),
            )
            return cur.fetchone()


def get_user_by_id(user_id: str) -> Optional[dict]:
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, username, full_name, pass_hash, gender, profile_pic, created_at FROM users WHERE id=%s",
                (user_id,),
            )
            return cur.fetchone()


def insert_user(user: dict) -> None:
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users(id, username, full_name, pass_hash, gender, profile_pic, created_at)
                VALUES (%s,%s,%s,%s,%s,%s,%s)
                """,
                (
                    user["id"],
                    user["username"],
                    user["full_name"],
                    user["pass_hash"],
                    user["gender"],
                    user["profile_pic"],
                    user["created_at"],
                ),
            )
        conn.commit()


def list_users_except(user_id: str) -> List[dict]:
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, username, full_name, profile_pic FROM users WHERE id<>%s ORDER BY full_name ASC",
                (user_id,),
            )
            return cur.fetchall()


# =========================
# Conversation directory
# =========================
def conversation_key(a: str, b: str) -> Tuple[str, str, str]:
    lo, hi = sorted([a, b])
    # deterministic id so the pair maps to one conversation
    h = hashlib.sha256(f"{lo}|{hi}".encode()).hexdigest()[:24]
    return f"conv_{h}", lo, hi


def find_or_create_conversation(user_a: str, user_b: str) -> dict:
    if user_a == user_b:
        raise ValidationError("Cannot start a conversation with yourself")

    conversation_id, lo, hi = conversation_key(user_a, user_b)
    now = now_ts()
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversations(id, participant_lo, participant_hi, message_ids, created_at, updated_at)
                VALUES (%s,%s,%s,'{}',%s,%s)
                ON CONFLICT DO NOTHING
                """,
                (conversation_id, lo, hi, now, now),
            )
            cur.execute(
                "SELECT id, participant_lo, participant_hi, message_ids, created_at, updated_at FROM conversations WHERE participant_lo=%s AND participant_hi=%s",
                (lo, hi),
            )
            row = cur.fetchone()
        conn.commit()
    return row


def get_conversation_messages(user_a: str, user_b: str) -> List[dict]:
    _, lo, hi = conversation_key(user_a, user_b)
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT m.id, m.sender_id, m.receiver_id, m.body, m.created_at
                FROM conversations c
                CROSS JOIN LATERAL unnest(c.message_ids) WITH ORDINALITY AS seq(message_id, pos)
                JOIN messages m ON m.id = seq.message_id
                WHERE c.participant_lo = %s AND c.participant_hi = %s
                ORDER BY seq.pos ASC
                """,
                (lo, hi),
            )
            return cur.fetchall()


# =========================
# Message store
# =========================
def insert_message(message: dict) -> None:
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages(id, sender_id, receiver_id, body, created_at)
                VALUES (%s,%s,%s,%s,%s)
                """,
                (
                    message["id"],
                    message["sender_id"],
                    message["receiver_id"],
                    message["body"],
                    message["created_at"],
                ),
            )
        conn.commit()


def append_to_conversation(conversation_id: str, message_id: str, ts: int) -> None:
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE conversations SET message_ids = array_append(message_ids, %s), updated_at=%s WHERE id=%s",
                (message_id, ts, conversation_id),
            )
            if cur.rowcount == 0:
                raise InternalError(f"Conversation {conversation_id} not found")
        conn.commit()


def normalize_message_body(body: Optional[str]) -> str:
    text = (body or "").strip()
    if not text:
        raise ValidationError("Message text required")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message too long (max {MAX_MESSAGE_LENGTH})")
    return text


async def append_message(conversation_id: str, sender_id: str, receiver_id: str, body: str) -> dict:
    """
    Store a message and index it in its conversation.

    The message row is written first and the conversation index second; the
    call fails if either write fails. A failed index update leaves a stored
    but unindexed message behind, which is logged.
    """
    message = {
        "id": make_id("msg_"),
        "sender_id": sender_id,
        "receiver_id": receiver_id,
        "body": normalize_message_body(body),
        "created_at": now_ts(),
    }
    await run_in_threadpool(insert_message, message)
    try:
        await run_in_threadpool(append_to_conversation, conversation_id, message["id"], message["created_at"])
    except Exception:
        LOGGER.warning(
            "orphaned message id=%s conversation=%s: index update failed",
            message["id"],
            conversation_id,
        )
        raise
    return message


# =========================
# Password hashing (PBKDF2)
# =========================
def hash_password(password: str, salt: Optional[str] = None, iterations: Optional[int] = None) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    if iterations is None:
        iterations = PASSWORD_HASH_ITERATIONS
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, iterations, salt, _ = stored.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    return hmac.compare_digest(hash_password(password, salt, rounds), stored)


# Compared against when the username is unknown, so both failure paths cost one hash.
DUMMY_PASSWORD_HASH = hash_password(secrets.token_urlsafe(16))


# =========================
# Minimal JWT HS256
# =========================
def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64urldecode(data: str) -> bytes:
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def jwt_sign(payload: dict) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = b64url(json.dumps(header, separators=(",", ":")).encode())
    payload_b64 = b64url(json.dumps(payload, separators=(",", ":")).encode())
    msg = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = hmac.new(JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{b64url(sig)}"


def jwt_verify(token: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".", 2)
        msg = f"{header_b64}.{payload_b64}".encode("ascii")
    except ValueError:
        raise UnauthorizedError("Unauthorized - Invalid Token")

    expected = hmac.new(JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    if not hmac.compare_digest(b64url(expected).encode(), sig_b64.encode()):
        raise UnauthorizedError("Unauthorized - Invalid Token")

    try:
        payload = json.loads(b64urldecode(payload_b64))
    except ValueError:
        raise UnauthorizedError("Unauthorized - Invalid Token")
    if not isinstance(payload, dict) or not payload.get("sub"):
        raise UnauthorizedError("Unauthorized - Invalid Token")
    if int(payload.get("exp", 0)) < now_ts():
        raise UnauthorizedError("Unauthorized - Invalid Token")
    return payload


def issue_session_token(user_id: str) -> str:
    now = now_ts()
    return jwt_sign({"sub": user_id, "iat": now, "exp": now + SESSION_TTL_SECONDS})


# =========================
# Anti-forgery (double submit)
# =========================
def new_csrf_secret() -> str:
    return secrets.token_urlsafe(18)


def csrf_digest(salt: str, secret: str) -> str:
    return b64url(hashlib.sha256(f"{salt}-{secret}".encode()).digest())


def create_csrf_token(secret: str) -> str:
    # hex salt never contains the "-" separator
    salt = secrets.token_hex(8)
    return f"{salt}-{csrf_digest(salt, secret)}"


def verify_csrf_token(secret: Optional[str], token: Optional[str]) -> bool:
    if not secret or not token or "-" not in token:
        return False
    salt, _ = token.split("-", 1)
    return hmac.compare_digest(f"{salt}-{csrf_digest(salt, secret)}".encode(), token.encode())


def read_csrf_header(headers) -> str:
    for name in CSRF_HEADER_NAMES:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return ""


def requires_csrf(method: str, path: str) -> bool:
    if method.upper() in CSRF_SAFE_METHODS:
        return False
    if not path.startswith(CSRF_PROTECTED_PREFIX):
        return False
    return not path.startswith(CSRF_EXEMPT_PREFIXES)


# =========================
# Cookies
# =========================
def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def set_csrf_cookies(request: Request, response: Response) -> str:
    """Issue a fresh anti-forgery token, creating the per-session secret if needed."""
    secret = (request.cookies.get(CSRF_SECRET_COOKIE_NAME) or "").strip()
    if not secret:
        secret = new_csrf_secret()
        response.set_cookie(
            key=CSRF_SECRET_COOKIE_NAME,
            value=secret,
            max_age=SESSION_TTL_SECONDS,
            httponly=True,
            secure=COOKIE_SECURE,
            samesite="lax",
            path="/",
        )
    token = create_csrf_token(secret)
    # script-readable: the client echoes it back in a header
    response.set_cookie(
        key=CSRF_TOKEN_COOKIE_NAME,
        value=token,
        max_age=CSRF_TTL_SECONDS,
        httponly=False,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    return token


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    response.delete_cookie(
        key=CSRF_TOKEN_COOKIE_NAME,
        httponly=False,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def issue_credentials(user: dict, request: Request, response: Response) -> None:
    set_session_cookie(response, issue_session_token(user["id"]))
    set_csrf_cookies(request, response)


# =========================
# Auth dependencies
# =========================
def get_session_token(request: Request) -> str:
    token = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
    if not token:
        raise UnauthorizedError("Unauthorized - No Token Provided")
    return token


async def get_current_user(token: str = Depends(get_session_token)) -> dict:
    user_id = jwt_verify(token)["sub"]
    user = await run_in_threadpool(get_user_by_id, user_id)
    if not user:
        raise UnauthorizedError("User not found")
    return user


# =========================
# Misc helpers
# =========================
class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


AVATAR_VARIANTS = {
    Gender.MALE: "boy",
    Gender.FEMALE: "girl",
}


def profile_pic_for(gender: Gender, username: str) -> str:
    return f"{AVATAR_BASE_URL}/{AVATAR_VARIANTS[gender]}?username={quote(username, safe='')}"


def make_id(prefix: str = "") -> str:
    return prefix + secrets.token_urlsafe(10)


def now_ts() -> int:
    return int(time.time())


def public_user(row: dict) -> dict:
    return {
        "id": row["id"],
        "fullName": row["full_name"],
        "username": row["username"],
        "profilePic": row["profile_pic"],
    }


def message_out(row: dict) -> dict:
    return {
        "id": row["id"],
        "senderId": row["sender_id"],
        "receiverId": row["receiver_id"],
        "message": row["body"],
        "createdAt": row["created_at"],
    }


def extract_user_id_from_request(request: Request) -> Optional[str]:
    token = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
    if not token:
        return None
    try:
        return str(jwt_verify(token).get("sub") or "").strip() or None
    except UnauthorizedError:
        return None


def get_build_meta() -> Dict[str, str]:
    version = (os.environ.get("APP_VERSION") or os.environ.get("VERSION") or "unknown").strip() or "unknown"
    commit = (os.environ.get("APP_COMMIT") or os.environ.get("COMMIT_SHA") or "unknown").strip() or "unknown"
    return {"version": version, "commit": commit}


# =========================
# Presence
# =========================
class PresenceRegistry:
    """
    Maps each user to the one live connection that currently owns it.

    ``connect`` is last-write-wins. ``disconnect`` only removes the entry
    when it still points at the disconnecting connection, so a late
    disconnect from a superseded socket leaves the newer one in place.
    """

    def __init__(self) -> None:
        self._by_user: Dict[str, str] = {}
        self._owners: Dict[str, str] = {}

    def connect(self, user_id: str, connection_id: str) -> Optional[str]:
        previous = self._by_user.get(user_id)
        self._by_user[user_id] = connection_id
        self._owners[connection_id] = user_id
        return previous

    def disconnect(self, connection_id: str) -> bool:
        user_id = self._owners.pop(connection_id, None)
        if user_id is None:
            return False
        if self._by_user.get(user_id) != connection_id:
            return False
        del self._by_user[user_id]
        return True

    def lookup(self, user_id: str) -> Optional[str]:
        return self._by_user.get(user_id)

    def online_users(self) -> List[str]:
        return list(self._by_user)

    def clear(self) -> None:
        self._by_user.clear()
        self._owners.clear()


PRESENCE = PresenceRegistry()
LIVE_SOCKETS: Dict[str, WebSocket] = {}


# =========================
# Realtime delivery
# =========================
async def ws_send_safe(ws: WebSocket, payload: dict) -> bool:
    try:
        await ws.send_text(json.dumps(payload))
        return True
    except (RuntimeError, OSError, WebSocketDisconnect) as exc:
        # socket is gone; its own lifecycle handler cleans up
        LOGGER.debug("live push failed: %s", exc)
        return False


async def dispatch_new_message(message: dict) -> bool:
    """Push a stored message to the receiver's live connection, if any."""
    connection_id = PRESENCE.lookup(message["receiver_id"])
    if connection_id is None:
        return False
    ws = LIVE_SOCKETS.get(connection_id)
    if ws is None:
        return False
    return await ws_send_safe(ws, {"type": "new_message", "message": message_out(message)})


async def broadcast_online_users() -> None:
    payload = {"type": "online_users", "users": PRESENCE.online_users()}
    for ws in list(LIVE_SOCKETS.values()):
        await ws_send_safe(ws, payload)


# =========================
# App
# =========================
@asynccontextmanager
async def _lifespan(app: FastAPI):
    init_db()
    PRESENCE.clear()
    LIVE_SOCKETS.clear()
    LOGGER.info("chat api started env=%s", APP_ENV)
    yield
    PRESENCE.clear()
    LIVE_SOCKETS.clear()


app = FastAPI(lifespan=_lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(InternalError() if isinstance(exc, InternalError) else exc)
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, _exc: RequestValidationError):
    return error_response(ValidationError())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(psycopg.OperationalError)
async def db_unavailable_handler(request: Request, exc: psycopg.OperationalError):
    LOGGER.error("%s %s: database unavailable: %s", request.method, request.url.path, exc)
    return error_response(ServiceUnavailable())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    LOGGER.exception("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(InternalError())


@app.middleware("http")
async def csrf_guard_middleware(request: Request, call_next):
    if requires_csrf(request.method, request.url.path):
        secret = request.cookies.get(CSRF_SECRET_COOKIE_NAME)
        if not verify_csrf_token(secret, read_csrf_header(request.headers)):
            LOGGER.warning("csrf rejected %s %s", request.method, request.url.path)
            return error_response(ForbiddenError())
    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    user_id = extract_user_id_from_request(request)
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        LOGGER.info(
            json.dumps(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "latency_ms": latency_ms,
                    "user_id": user_id,
                },
                ensure_ascii=False,
            )
        )


@app.get("/api/health")
def healthcheck():
    return {"ok": True, "ts": now_ts(), **get_build_meta()}


# =========================
# Schemas
# =========================
class SignupIn(BaseModel):
    fullName: str
    username: str
    password: str
    confirmPassword: str
    gender: Gender


class LoginIn(BaseModel):
    username: str
    password: str


class MessageIn(BaseModel):
    message: str


# =========================
# Auth API
# =========================
@app.post("/api/auth/signup", status_code=201)
async def signup(data: SignupIn, request: Request, response: Response):
    full_name = data.fullName.strip()
    username = data.username.strip()

    if (
        not (FULL_NAME_MIN_LENGTH <= len(full_name) <= FULL_NAME_MAX_LENGTH)
        or not USERNAME_RE.fullmatch(username)
        or len(data.password) < PASSWORD_MIN_LENGTH
    ):
        raise ValidationError("Invalid input fields")

    if data.password != data.confirmPassword:
        raise ValidationError("Passwords do not match")

    if await run_in_threadpool(get_user_by_username, username):
        LOGGER.warning("signup rejected: username=%s taken", username)
        raise ConflictError("Username already exists")

    user = {
        "id": make_id("u_"),
        "username": username,
        "full_name": full_name,
        "pass_hash": await run_in_threadpool(hash_password, data.password),
        "gender": data.gender.value,
        "profile_pic": profile_pic_for(data.gender, username),
        "created_at": now_ts(),
    }
    try:
        await run_in_threadpool(insert_user, user)
    except psycopg.errors.UniqueViolation:
        # lost a race with a concurrent signup for the same name
        LOGGER.warning("signup rejected: username=%s taken (unique violation)", username)
        raise ConflictError("Username already exists")

    issue_credentials(user, request, response)
    LOGGER.info("user signed up: %s", username)
    return public_user(user)


@app.post("/api/auth/login")
async def login(data: LoginIn, request: Request, response: Response):
    username = data.username.strip()
    if not USERNAME_RE.fullmatch(username) or not data.password:
        raise AuthError()

    user = await run_in_threadpool(get_user_by_username, username)
    stored = user["pass_hash"] if user else DUMMY_PASSWORD_HASH
    password_ok = await run_in_threadpool(verify_password, data.password, stored)
    if not user or not password_ok:
        LOGGER.warning("failed login for username=%s", username)
        raise AuthError()

    issue_credentials(user, request, response)
    return public_user(user)


@app.post("/api/auth/logout")
def logout(response: Response, user: dict = Depends(get_current_user)):
    # The signed token stays valid until it expires; only the cookies go.
    clear_auth_cookies(response)
    return {"message": "Logged out successfully"}


@app.get("/api/csrf-token")
def csrf_token(request: Request, response: Response):
    return {"csrfToken": set_csrf_cookies(request, response)}


# =========================
# Users API
# =========================
@app.get("/api/users")
async def list_users(user: dict = Depends(get_current_user)):
    rows = await run_in_threadpool(list_users_except, user["id"])
    return [public_user(r) for r in rows]


# =========================
# Messages API
# =========================
@app.post("/api/messages/send/{peer_id}", status_code=201)
async def send_message(
    peer_id: str,
    data: MessageIn,
    user: dict = Depends(get_current_user),
):
    sender_id = user["id"]
    receiver_id = (peer_id or "").strip()
    body = normalize_message_body(data.message)

    if not receiver_id or receiver_id == sender_id:
        raise ValidationError("Invalid receiver")
    if not await run_in_threadpool(get_user_by_id, receiver_id):
        raise ValidationError("Invalid receiver")

    conversation = await run_in_threadpool(find_or_create_conversation, sender_id, receiver_id)
    message = await append_message(conversation["id"], sender_id, receiver_id, body)

    delivered = await dispatch_new_message(message)
    LOGGER.info("message %s stored live_delivery=%s", message["id"], delivered)
    return message_out(message)


@app.get("/api/messages/{peer_id}")
async def get_messages(peer_id: str, user: dict = Depends(get_current_user)):
    peer = (peer_id or "").strip()
    if not peer or peer == user["id"]:
        return []
    rows = await run_in_threadpool(get_conversation_messages, user["id"], peer)
    return [message_out(r) for r in rows]


# =========================
# WebSocket: live channel
# =========================
@app.websocket("/ws")
async def ws_live(ws: WebSocket):
    """
    Authenticates with the session cookie (or ?token=...).
    Sends:
      - new_message
      - online_users
      - ping
    Receives:
      - pong
    """
    token = (ws.cookies.get(SESSION_COOKIE_NAME) or ws.query_params.get("token") or "").strip()
    if not token:
        await ws.close(code=4401)
        return

    try:
        user_id = jwt_verify(token)["sub"]
    except UnauthorizedError:
        await ws.close(code=4401)
        return

    await ws.accept()
    connection_id = make_id("conn_")
    LIVE_SOCKETS[connection_id] = ws
    replaced = PRESENCE.connect(user_id, connection_id)
    LOGGER.info("ws connect user=%s connection=%s replaced=%s", user_id, connection_id, replaced or "-")
    await broadcast_online_users()

    last_pong_at = time.monotonic()
    stop_heartbeat = asyncio.Event()

    async def heartbeat_loop() -> None:
        try:
            while not stop_heartbeat.is_set():
                await asyncio.sleep(WS_HEARTBEAT_INTERVAL_SECONDS)
                if stop_heartbeat.is_set():
                    break
                if (time.monotonic() - last_pong_at) > WS_HEARTBEAT_TIMEOUT_SECONDS:
                    await ws.close(code=1011, reason="heartbeat timeout")
                    break
                await ws_send_safe(ws, {"type": "ping", "ts": now_ts()})
        except (RuntimeError, OSError) as exc:
            LOGGER.debug("heartbeat stopped for connection=%s: %s", connection_id, exc)

    heartbeat_task = asyncio.create_task(heartbeat_loop())

    try:
        while True:
            frame = await ws.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                # binary frames carry nothing we understand
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                continue

            if isinstance(data, dict) and data.get("type") == "pong":
                last_pong_at = time.monotonic()
    finally:
        stop_heartbeat.set()
        heartbeat_task.cancel()
        try:
            await heartbeat_task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            LOGGER.warning("heartbeat failed for connection=%s: %s", connection_id, exc)
        LIVE_SOCKETS.pop(connection_id, None)
        removed = PRESENCE.disconnect(connection_id)
        LOGGER.info("ws disconnect user=%s connection=%s presence_removed=%s", user_id, connection_id, removed)
        await broadcast_online_users()
