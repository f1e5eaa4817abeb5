"""Client-side state owned by the sync engine: the editor and the visible list."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, Optional

from .schemas import NoteOut


class EditorStatus(str, Enum):
    IDLE = "idle"
    CLEAN = "clean"
    DIRTY = "dirty"
    SAVING = "saving"


@dataclass
class LocalEditingState:
    current_note_id: Optional[str] = None
    title_draft: str = ""
    content_draft: str = ""
    dirty: bool = False
    # a save issued for this generation is in flight
    saving: bool = False
    # updated_at of the version the editor last took from the store
    base_updated_at: Optional[datetime] = None
    # bumped on every switch of note; responses carry it to detect staleness
    generation: int = 0
    # bumped on every edit; a save only cleans the draft if nothing changed meanwhile
    edit_seq: int = 0

    @property
    def status(self) -> EditorStatus:
        if self.saving:
            return EditorStatus.SAVING
        if self.dirty:
            return EditorStatus.DIRTY
        if self.current_note_id is None:
            return EditorStatus.IDLE
        return EditorStatus.CLEAN

    def reset(self) -> None:
        self.current_note_id = None
        self.title_draft = ""
        self.content_draft = ""
        self.dirty = False
        self.saving = False
        self.base_updated_at = None
        self.generation += 1

    def show(self, note: NoteOut) -> None:
        self.current_note_id = note.id
        self.title_draft = note.title
        self.content_draft = note.content
        self.dirty = False
        self.base_updated_at = note.updated_at


class VisibleNoteList:
    """Summaries sorted by ``updated_at`` descending; at most one entry per id."""

    def __init__(self, notes: Iterable[NoteOut] = ()) -> None:
        self._items: list[NoteOut] = []
        for note in notes:
            self.upsert(note)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[NoteOut]:
        return iter(self._items)

    def __contains__(self, note_id: object) -> bool:
        return self.get(note_id) is not None  # type: ignore[arg-type]

    def ids(self) -> list[str]:
        return [n.id for n in self._items]

    def get(self, note_id: str) -> Optional[NoteOut]:
        for note in self._items:
            if note.id == note_id:
                return note
        return None

    def upsert(self, note: NoteOut) -> bool:
        """Insert or replace by id. Older versions than the one held are ignored.

        Returns True when the list changed.
        """
        for i, held in enumerate(self._items):
            if held.id != note.id:
                continue
            if note.updated_at < held.updated_at or note == held:
                return False
            self._items[i] = note
            self._sort()
            return True
        self._items.append(note)
        self._sort()
        return True

    def extend(self, notes: Iterable[NoteOut]) -> None:
        for note in notes:
            self.upsert(note)

    def remove(self, note_id: str) -> Optional[NoteOut]:
        for i, held in enumerate(self._items):
            if held.id == note_id:
                return self._items.pop(i)
        return None

    def _sort(self) -> None:
        self._items.sort(key=lambda n: n.updated_at, reverse=True)
