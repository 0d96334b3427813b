"""
PropYield — JWT Authentication
===============================
Features:
  • PBKDF2-HMAC-SHA256 password hashing (100k rounds, random salt)
  • HS256 JWT access + refresh tokens with rotation
  • Token blacklist (logout / refresh rotation)
  • Login attempts rate-limited per IP through the shared limiter
  • get_current_user FastAPI dependency for route protection
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import ratelimit, store

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET", secrets.token_urlsafe(64))
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MIN = int(os.getenv("ACCESS_TOKEN_EXPIRE_MIN", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
LOGIN_RATE_WINDOW = 300  # 5 minutes
LOGIN_RATE_MAX = 20      # max attempts per window
MIN_PASSWORD_LENGTH = 8

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def _hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000)
    return f"{salt}${dk.hex()}"


def _verify_password(password: str, stored_hash: str) -> bool:
    salt, sep, dk_hex = stored_hash.partition("$")
    if not sep:
        return False
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000)
    return secrets.compare_digest(dk.hex(), dk_hex)


def validate_password_strength(password: str) -> str | None:
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if not re.search(r"[A-Z]", password):
        return "Must contain at least one uppercase letter."
    if not re.search(r"[a-z]", password):
        return "Must contain at least one lowercase letter."
    if not re.search(r"\d", password):
        return "Must contain at least one digit."
    return None


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class UserRecord:
    id: int
    username: str
    email: str
    full_name: str
    role: str
    subscription_tier: str
    is_active: bool
    created_at: str
    last_login: str | None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = ACCESS_TOKEN_EXPIRE_MIN * 60


# ---------------------------------------------------------------------------
# JWT creation
# ---------------------------------------------------------------------------

def _create_token(data: dict, expires_delta: timedelta) -> str:
    payload = data.copy()
    now = datetime.now(timezone.utc)
    payload.update({
        "iat": now,
        "exp": now + expires_delta,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _create_token_pair(user: UserRecord) -> TokenPair:
    access = _create_token(
        {"sub": user.username, "role": user.role, "tier": user.subscription_tier, "type": "access"},
        timedelta(minutes=ACCESS_TOKEN_EXPIRE_MIN),
    )
    refresh = _create_token(
        {"sub": user.username, "type": "refresh"},
        timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
    )
    return TokenPair(access_token=access, refresh_token=refresh)


# ---------------------------------------------------------------------------
# Token blacklist
# ---------------------------------------------------------------------------

def _blacklist_token(token: str) -> None:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        logger.info("Ignoring logout for an invalid or expired token")
        return
    with store.get_conn() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO token_blacklist (jti, expires_at) VALUES (?, ?)",
            (payload.get("jti", ""), str(payload.get("exp", ""))),
        )


def _is_blacklisted(jti: str) -> bool:
    with store.get_conn() as conn:
        row = conn.execute(
            "SELECT 1 FROM token_blacklist WHERE jti = ?", (jti,)
        ).fetchone()
        return row is not None


def cleanup_blacklist() -> None:
    now = int(datetime.now(timezone.utc).timestamp())
    with store.get_conn() as conn:
        conn.execute(
            "DELETE FROM token_blacklist WHERE CAST(expires_at AS INTEGER) < ?",
            (now,),
        )


# ---------------------------------------------------------------------------
# Core: signup / login / refresh / logout
# ---------------------------------------------------------------------------

def signup(username: str, email: str, password: str, full_name: str = "") -> TokenPair:
    username = username.strip().lower()
    email = email.strip().lower()

    if not username or len(username) < 3:
        raise HTTPException(400, "Username must be at least 3 characters.")
    if not re.match(r"^[a-z0-9_]+$", username):
        raise HTTPException(400, "Username: only a-z, 0-9, underscore.")
    if not re.match(r"^[^@]+@[^@]+\.[^@]+$", email):
        raise HTTPException(400, "Invalid email address.")
    err = validate_password_strength(password)
    if err:
        raise HTTPException(400, err)

    hashed = _hash_password(password)
    with store.get_conn() as conn:
        try:
            conn.execute(
                "INSERT INTO users (username, email, password, full_name) VALUES (?, ?, ?, ?)",
                (username, email, hashed, full_name),
            )
        except sqlite3.IntegrityError:
            existing = conn.execute(
                "SELECT username FROM users WHERE username = ? OR email = ?",
                (username, email),
            ).fetchone()
            if existing and existing["username"] == username:
                raise HTTPException(409, "Username already taken.")
            raise HTTPException(409, "Email already registered.")
        row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()

    logger.info("New user registered: %s", username)
    return _create_token_pair(_row_to_user(row))


def login(username_or_email: str, password: str, ip: str = "0.0.0.0") -> TokenPair:
    limit = ratelimit.check(f"login:{ip}", LOGIN_RATE_MAX, LOGIN_RATE_WINDOW)
    if not limit.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many attempts. Try again in {limit.retry_after}s.",
        )
    identifier = username_or_email.strip().lower()

    row = _fetch_user_row(identifier, by_email=True)
    if not row or not _verify_password(password, row["password"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials.",
        )
    if not row["is_active"]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled.")

    with store.get_conn() as conn:
        conn.execute("UPDATE users SET last_login = datetime('now') WHERE id = ?", (row["id"],))

    user = _row_to_user(row)
    logger.info("User logged in: %s", user.username)
    return _create_token_pair(user)


def refresh_tokens(refresh_token: str) -> TokenPair:
    try:
        payload = jwt.decode(refresh_token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(401, "Refresh token expired. Please login again.")
    except jwt.PyJWTError:
        raise HTTPException(401, "Invalid refresh token.")

    if payload.get("type") != "refresh":
        raise HTTPException(401, "Invalid token type.")
    if _is_blacklisted(payload.get("jti", "")):
        raise HTTPException(401, "Token has been revoked.")

    row = _fetch_user_row(payload.get("sub", ""))
    if not row or not row["is_active"]:
        raise HTTPException(401, "User not found or disabled.")

    _blacklist_token(refresh_token)
    return _create_token_pair(_row_to_user(row))


def logout(token: str) -> None:
    _blacklist_token(token)


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        full_name=row["full_name"],
        role=row["role"],
        subscription_tier=row["subscription_tier"] or "free",
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        last_login=row["last_login"],
    )


def _fetch_user_row(identifier: str, by_email: bool = False):
    """Synchronous helper for SQLite lookup (called via to_thread)."""
    with store.get_conn() as conn:
        if by_email:
            return conn.execute(
                "SELECT * FROM users WHERE username = ? OR email = ?",
                (identifier, identifier),
            ).fetchone()
        return conn.execute(
            "SELECT * FROM users WHERE username = ?", (identifier,)
        ).fetchone()


# ---------------------------------------------------------------------------
# FastAPI dependency: protects routes
# ---------------------------------------------------------------------------
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> UserRecord:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(401, "Token expired. Please login again.")
    except jwt.PyJWTError:
        raise HTTPException(401, "Invalid token.")

    if payload.get("type") != "access":
        raise HTTPException(401, "Invalid token type.")
    if await asyncio.to_thread(_is_blacklisted, payload.get("jti", "")):
        raise HTTPException(401, "Token has been revoked.")

    row = await asyncio.to_thread(_fetch_user_row, payload.get("sub", ""))
    if not row or not row["is_active"]:
        raise HTTPException(401, "User not found or disabled.")
    return _row_to_user(row)
