"""Account, session and request authentication helpers."""
from __future__ import annotations

import logging
import secrets
from typing import Dict, Optional

from fastapi import Header, HTTPException

from earnsight import database
from earnsight.config import get_session_ttl_hours
from earnsight.passwords import hash_password, verify_password

logger = logging.getLogger(__name__)


class AuthError(Exception):
    pass


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _issue_token(user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    database.create_session(user_id, token, get_session_ttl_hours())
    return token


def register(email: str, password: str) -> Dict[str, str]:
    email = _normalize_email(email)
    if not email:
        raise AuthError("Email is required.")
    if not password:
        raise AuthError("Password is required.")
    if database.get_user_by_email(email):
        raise AuthError("Account already exists.")
    user = database.create_user(email, hash_password(password))
    logger.info(f"Registered account {user['id']}")
    return {"token": _issue_token(user["id"]), "user_id": user["id"], "email": user["email"]}


def login(email: str, password: str) -> Dict[str, str]:
    user = database.get_user_by_email(_normalize_email(email))
    if not user or not verify_password(password, user["password_hash"]):
        raise AuthError("Invalid email or password.")
    return {"token": _issue_token(user["id"]), "user_id": user["id"], "email": user["email"]}


def logout(token: str) -> None:
    database.delete_session(token)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(authorization: Optional[str] = Header(default=None)) -> Dict[str, str]:
    """FastAPI dependency: resolve the bearer token or answer 401."""
    token = _bearer_token(authorization)
    user = database.get_session_user(token) if token else None
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user["token"] = token
    return user
