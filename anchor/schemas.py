"""Wire payloads shared by the HTTP routes, the relay and the sync client."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import as_utc


class NoteWrite(BaseModel):
    title: Optional[str] = ""
    content: Optional[str] = ""


class NoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    content: str = ""
    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return None if value is None else as_utc(value)


class NotePage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notes: list[NoteOut] = Field(default_factory=list)
    has_more: bool = Field(default=False, alias="hasMore")


class RelayFrame(BaseModel):
    event: str
    payload: object = None


__all__ = ["NoteWrite", "NoteOut", "NotePage", "RelayFrame"]
