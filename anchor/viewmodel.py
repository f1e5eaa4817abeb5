"""Read-only projection of a sync engine's state for display."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from .config import PREVIEW_CHARS, TICK_INTERVAL
from .models import as_utc, utcnow
from .state import EditorStatus

APP_NAME = "Anchor"

_UNITS = (
    ("year", 365 * 24 * 3600),
    ("month", 30 * 24 * 3600),
    ("week", 7 * 24 * 3600),
    ("day", 24 * 3600),
    ("hour", 3600),
    ("minute", 60),
    ("second", 1),
)


def content_preview(content: Optional[str], limit: int = PREVIEW_CHARS) -> str:
    if not content:
        return ""
    return f"{content[:limit]}..." if len(content) > limit else content


def time_ago(when: datetime, now: Optional[datetime] = None) -> str:
    """Relative label in the style of timeago: "just now", "3 minutes ago", "in 2 hours"."""
    now = as_utc(now or utcnow())
    delta = (now - as_utc(when)).total_seconds()
    future = delta < 0
    delta = abs(delta)
    if delta < 10:
        return "just now" if not future else "right now"
    for name, size in _UNITS:
        if delta >= size:
            count = int(delta // size)
            unit = name if count == 1 else f"{name}s"
            return f"in {count} {unit}" if future else f"{count} {unit} ago"
    return "just now"


def document_title(title: Optional[str]) -> str:
    return f"{title} - {APP_NAME}" if title else APP_NAME


@dataclass(frozen=True)
class NoteListItem:
    id: str
    title: str
    preview: str
    updated_at: datetime
    age: str
    active: bool = False


@dataclass(frozen=True)
class EditorView:
    note_id: Optional[str]
    title: str
    content: str
    status: EditorStatus
    document_title: str
    alerts: tuple[str, ...] = ()


@dataclass
class Rendered:
    items: list[NoteListItem] = field(default_factory=list)
    editor: Optional[EditorView] = None
    has_more: bool = False


class ViewModel:
    """Wraps an engine (anything with ``notes``, ``editor``, ``alerts`` and ``has_more``).

    Only reads from it.
    """

    def __init__(self, engine, preview_chars: int = PREVIEW_CHARS) -> None:
        self.engine = engine
        self.preview_chars = preview_chars
        self.current: Rendered = Rendered()

    def render(self, now: Optional[datetime] = None) -> Rendered:
        now = now or utcnow()
        ed = self.engine.editor
        items = [
            NoteListItem(
                id=n.id,
                title=n.title or "Untitled",
                preview=content_preview(n.content, self.preview_chars),
                updated_at=n.updated_at,
                age=time_ago(n.updated_at, now),
                active=n.id == ed.current_note_id,
            )
            for n in self.engine.notes
        ]
        shown_title = ed.title_draft if ed.current_note_id is not None else ""
        editor = EditorView(
            note_id=ed.current_note_id,
            title=ed.title_draft,
            content=ed.content_draft,
            status=ed.status,
            document_title=document_title(shown_title),
            alerts=tuple(self.engine.alerts),
        )
        self.current = Rendered(items=items, editor=editor, has_more=self.engine.has_more)
        return self.current

    def tick(self, now: Optional[datetime] = None) -> list[NoteListItem]:
        """Recompute the relative-time labels of the last render, nothing else."""
        now = now or utcnow()
        self.current.items = [replace(item, age=time_ago(item.updated_at, now)) for item in self.current.items]
        return self.current.items


async def run_ticker(viewmodel: ViewModel, interval: float = TICK_INTERVAL) -> None:
    while True:
        await asyncio.sleep(interval)
        viewmodel.tick()


__all__ = [
    "ViewModel",
    "NoteListItem",
    "EditorView",
    "Rendered",
    "content_preview",
    "time_ago",
    "document_title",
    "run_ticker",
]
