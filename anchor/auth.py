"""Accounts and the session identity attached to requests and sockets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import bcrypt
from fastapi import Request
from sqlmodel import or_, select
from starlette.requests import HTTPConnection

from .db import session_scope
from .errors import AuthRequired, ValidationFailure
from .models import User

logger = logging.getLogger(__name__)

SESSION_KEY = "user"
_ROUNDS = 10


@dataclass(frozen=True)
class Identity:
    id: str
    username: str

    def to_session(self) -> dict:
        return {"id": self.id, "username": self.username}


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(_ROUNDS)).decode("ascii")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
    except ValueError:
        return False


def register_user(username: str, email: str, password: str) -> User:
    username = (username or "").strip()
    email = (email or "").strip().lower()
    if not username or not email or not password:
        raise ValidationFailure("username, email and password are required")
    with session_scope() as s:
        clash = s.exec(select(User).where(or_(User.username == username, User.email == email))).first()
        if clash:
            raise ValidationFailure("username or email already registered")
        user = User(username=username, email=email, password_hash=hash_password(password))
        s.add(user)
        s.flush()
        s.refresh(user)
        logger.info("registered user %s", user.username)
        return user


def find_user_by_email(email: str) -> Optional[User]:
    with session_scope() as s:
        return s.exec(select(User).where(User.email == (email or "").strip().lower())).first()


def authenticate(email: str, password: str) -> Optional[Identity]:
    user = find_user_by_email(email)
    if user is None or not check_password(password or "", user.password_hash):
        logger.info("failed login for %s", email)
        return None
    return Identity(id=user.id, username=user.username)


def session_identity(conn: HTTPConnection) -> Optional[Identity]:
    data = conn.session.get(SESSION_KEY)
    if not data:
        return None
    return Identity(id=data["id"], username=data["username"])


def login(request: Request, identity: Identity) -> None:
    request.session[SESSION_KEY] = identity.to_session()


def logout(request: Request) -> None:
    request.session.clear()


def require_identity(request: Request) -> Identity:
    """FastAPI dependency: the caller's identity, or AuthRequired."""
    identity = session_identity(request)
    if identity is None:
        raise AuthRequired()
    return identity
