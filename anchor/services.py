from __future__ import annotations
import logging
from typing import Optional
from sqlmodel import func, select

from .config import MAX_PAGE_SIZE, NOTES_PER_PAGE
from .db import session_scope
from .errors import NotFound, ValidationFailure
from .models import Note, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled"


def _normal_title(title: Optional[str]) -> str:
    if title is None:
        return DEFAULT_TITLE
    if not isinstance(title, str):
        raise ValidationFailure("title must be text")
    return title if title.strip() else DEFAULT_TITLE


def _normal_content(content: Optional[str]) -> str:
    if content is None:
        return ""
    if not isinstance(content, str):
        raise ValidationFailure("content must be text")
    return content


def _owned(s, owner_id: str, note_id: str) -> Note:
    # foreign notes look exactly like missing ones
    note = s.get(Note, note_id)
    if note is None or note.owner_id != owner_id:
        raise NotFound()
    return note


def create_note(owner_id: str, title: Optional[str] = "", content: Optional[str] = "") -> Note:
    note = Note(title=_normal_title(title), content=_normal_content(content), owner_id=owner_id)
    with session_scope() as s:
        s.add(note)
        s.flush()  # get the ID assigned
        s.refresh(note)  # get any defaults set by DB
        logger.debug("created note %s for %s", note.id, owner_id)
        return note


def list_notes(
    owner_id: str,
    page: int = 1,
    limit: int = NOTES_PER_PAGE,
) -> tuple[list[Note], bool]:
    """
    Return one page of the owner's notes, newest update first, and whether more follow.
    Skip/limit based: a note bumped by an update can move across page boundaries.
    """
    if page < 1:
        raise ValidationFailure("page must be >= 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationFailure(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    with session_scope() as s:
        stmt = (
            select(Note)
            .where(Note.owner_id == owner_id)
            .order_by(Note.updated_at.desc(), Note.created_at.desc(), Note.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        notes = list(s.exec(stmt))
        total = s.exec(select(func.count()).select_from(Note).where(Note.owner_id == owner_id)).one()
        return notes, total > page * limit


def get_note(owner_id: str, note_id: str) -> Note:
    with session_scope() as s:
        return _owned(s, owner_id, note_id)


def update_note(
    owner_id: str,
    note_id: str,
    title: Optional[str],
    content: Optional[str],
) -> Note:
    """
    Replace title and content together and bump updated_at. Returns the updated note.
    """
    with session_scope() as s:
        note = _owned(s, owner_id, note_id)
        note.title = _normal_title(title)
        note.content = _normal_content(content)
        note.touch(utcnow())
        s.add(note)
        s.flush()
        s.refresh(note)
        logger.debug("updated note %s", note_id)
        return note


def delete_note(owner_id: str, note_id: str) -> None:
    with session_scope() as s:
        note = _owned(s, owner_id, note_id)
        s.delete(note)
        logger.debug("deleted note %s", note_id)
