from __future__ import annotations
from datetime import datetime, UTC
from typing import Optional
from uuid import uuid4
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # sqlite hands datetimes back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class User(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    password_hash: str

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Note(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    title: str = "Untitled"
    content: str = ""
    # set once at creation, never reassigned
    owner_id: str = Field(foreign_key="user.id", index=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    def touch(self, now: Optional[datetime] = None) -> None:
        """Bump updated_at without ever moving it backwards."""
        now = as_utc(now or utcnow())
        self.updated_at = max(now, as_utc(self.updated_at))
