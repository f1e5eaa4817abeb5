"""Client sync engine.

One ``SyncEngine`` per open session owns the editor draft and the visible
note list. Every input (user actions, timer fires, peer events, gateway
results) is a message on one queue and is handled to completion before the
next, so the only interleaving happens between messages. Gateway and relay
calls run as tasks that post their outcome back onto the queue.

Reconciliation rules:

* at most one save in flight; edits made meanwhile stay dirty and are saved
  when it resolves
* a response issued under an older editor generation never touches the editor
* list upserts ignore versions older than the one held, so replayed or
  reordered peer events are harmless
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError

from .config import AUTOSAVE_DELAY, NOTES_PER_PAGE
from .errors import NotFound
from .gateway import NoteGateway
from .relay import NOTE_CREATED, NOTE_DELETED, NOTE_UPDATED
from .schemas import NoteOut, NotePage
from .state import EditorStatus, LocalEditingState, VisibleNoteList

logger = logging.getLogger(__name__)

CONFIRM_NEW = "You have unsaved changes. Are you sure you want to create a new note?"
CONFIRM_LEAVE = "You have unsaved changes. Are you sure you want to navigate away?"
CONFIRM_DELETE = "Are you sure you want to delete this note?"

ALERT_SAVE = "Failed to save note. Please try again."
ALERT_LOAD_LIST = "Failed to load notes. Please try again."
ALERT_LOAD_NOTE = "Failed to fetch note. Please try again."
ALERT_DELETE = "Failed to delete note. Please try again."
ALERT_ORPHANED = "This note was deleted elsewhere. Your unsaved changes are kept as a new note."


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class RelayLink(Protocol):
    async def emit(self, event: str, payload: Any) -> None: ...


# ---------- messages ----------
@dataclass(frozen=True)
class Start:
    initial_note_id: Optional[str] = None


@dataclass(frozen=True)
class Edit:
    title: Optional[str] = None
    content: Optional[str] = None


@dataclass(frozen=True)
class AutosaveDue:
    token: int


@dataclass(frozen=True)
class SaveRequested:
    pass


@dataclass(frozen=True)
class NewNote:
    pass


@dataclass(frozen=True)
class OpenNote:
    note_id: str
    confirmed: bool = False


@dataclass(frozen=True)
class DeleteNote:
    note_id: str


@dataclass(frozen=True)
class LoadMore:
    pass


@dataclass(frozen=True)
class PeerEvent:
    event: str
    payload: Any


@dataclass(frozen=True)
class SaveDone:
    generation: int
    note_id: Optional[str]
    edit_seq: int
    note: Optional[NoteOut] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class NoteLoaded:
    generation: int
    note_id: str
    note: Optional[NoteOut] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class PageLoaded:
    page: int
    result: Optional[NotePage] = None
    error: Optional[Exception] = None
    open_note_id: Optional[str] = None


@dataclass(frozen=True)
class DeleteDone:
    note_id: str
    summary: Optional[NoteOut] = None
    error: Optional[Exception] = None


def _decline(message: str) -> bool:
    logger.info("no confirmation handler; declining: %s", message)
    return False


class SyncEngine:
    def __init__(
        self,
        gateway: NoteGateway,
        relay: Optional[RelayLink] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        on_alert: Optional[Callable[[str], None]] = None,
        autosave_delay: float = AUTOSAVE_DELAY,
        page_size: int = NOTES_PER_PAGE,
    ) -> None:
        self.gateway = gateway
        self.relay = relay
        self.scheduler = scheduler or LoopScheduler()
        self.confirm = confirm or _decline
        self.on_alert = on_alert
        self.autosave_delay = autosave_delay
        self.page_size = page_size

        self.editor = LocalEditingState()
        self.notes = VisibleNoteList()
        self.page = 0
        self.has_more = False
        self.alerts: list[str] = []

        self._queue: deque = deque()
        self._tasks: set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._timer: Optional[TimerHandle] = None
        self._timer_token = 0
        self._resave = False
        self._in_flight = False
        # ids deleted here, pending or done; late saves and echoes for them are dropped
        self._deleted: set[str] = set()
        self._loading = False
        self._handlers = {
            Start: self._on_start,
            Edit: self._on_edit,
            AutosaveDue: self._on_autosave_due,
            SaveRequested: self._on_save_requested,
            NewNote: self._on_new_note,
            OpenNote: self._on_open_note,
            DeleteNote: self._on_delete_note,
            LoadMore: self._on_load_more,
            PeerEvent: self._on_peer_event,
            SaveDone: self._on_save_done,
            NoteLoaded: self._on_note_loaded,
            PageLoaded: self._on_page_loaded,
            DeleteDone: self._on_delete_done,
        }

    # ---------- public actions ----------
    @property
    def status(self) -> EditorStatus:
        return self.editor.status

    @property
    def has_unsaved_changes(self) -> bool:
        return self.editor.dirty

    def start(self, initial_note_id: Optional[str] = None) -> None:
        self.post(Start(initial_note_id))

    def edit(self, *, title: Optional[str] = None, content: Optional[str] = None) -> None:
        self.post(Edit(title=title, content=content))

    def save(self) -> None:
        self.post(SaveRequested())

    def new_note(self) -> None:
        self.post(NewNote())

    def open_note(self, note_id: str) -> None:
        self.post(OpenNote(note_id))

    def delete_note(self, note_id: str) -> None:
        self.post(DeleteNote(note_id))

    def load_more(self) -> None:
        self.post(LoadMore())

    def receive(self, event: str, payload: Any) -> None:
        """Entry point for frames relayed from peers."""
        self.post(PeerEvent(event, payload))

    def dismiss_alerts(self) -> None:
        self.alerts.clear()

    def post(self, message: Any) -> None:
        self._queue.append(message)
        self._wakeup.set()

    async def drain(self) -> None:
        """Handle queued messages until nothing is queued or in flight."""
        while True:
            while self._queue:
                self._dispatch(self._queue.popleft())
            if not self._tasks:
                return
            # wake on whichever comes first: a finished call or newly posted input
            self._wakeup.clear()
            waiter = asyncio.ensure_future(self._wakeup.wait())
            try:
                await asyncio.wait({waiter, *self._tasks}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()

    async def run_forever(self) -> None:
        while True:
            await self.drain()
            self._wakeup.clear()
            if not self._queue:
                await self._wakeup.wait()

    def close(self) -> None:
        self._cancel_autosave()
        for task in list(self._tasks):
            task.cancel()

    # ---------- plumbing ----------
    def _dispatch(self, message: Any) -> None:
        handler = self._handlers.get(type(message))
        if handler is None:
            logger.warning("unhandled message %r", message)
            return
        handler(message)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _alert(self, message: str) -> None:
        self.alerts.append(message)
        if self.on_alert is not None:
            self.on_alert(message)

    def _emit(self, event: str, payload: Any) -> None:
        if self.relay is not None:
            self._spawn(self._broadcast(event, payload))

    async def _broadcast(self, event: str, payload: Any) -> None:
        try:
            await self.relay.emit(event, payload)
        except Exception as exc:
            # best effort
            logger.debug("broadcast of %s failed: %s", event, exc)

    def _arm_autosave(self) -> None:
        self._cancel_autosave()
        self._timer_token += 1
        token = self._timer_token
        self._timer = self.scheduler.call_later(self.autosave_delay, lambda: self.post(AutosaveDue(token)))

    def _cancel_autosave(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._timer_token += 1

    # ---------- editing ----------
    def _on_edit(self, msg: Edit) -> None:
        if msg.title is None and msg.content is None:
            return
        ed = self.editor
        if msg.title is not None:
            ed.title_draft = msg.title
        if msg.content is not None:
            ed.content_draft = msg.content
        ed.dirty = True
        ed.edit_seq += 1
        self._arm_autosave()

    def _on_autosave_due(self, msg: AutosaveDue) -> None:
        if msg.token != self._timer_token:
            return  # superseded by a later keystroke
        self._timer = None
        if self.editor.dirty:
            self._start_save()

    def _on_save_requested(self, msg: SaveRequested) -> None:
        self._cancel_autosave()
        if not self.editor.dirty and self.editor.current_note_id is not None:
            return
        self._start_save()

    def _start_save(self) -> None:
        ed = self.editor
        if self._in_flight:
            self._resave = True
            return
        if ed.current_note_id in self._deleted:
            return  # its delete is pending; the editor resets when it lands
        self._in_flight = True
        ed.saving = True
        self._spawn(self._save(ed.generation, ed.current_note_id, ed.title_draft, ed.content_draft, ed.edit_seq))

    async def _save(self, generation: int, note_id: Optional[str], title: str, content: str, edit_seq: int) -> None:
        try:
            if note_id is None:
                note = await self.gateway.create(title, content)
            else:
                note = await self.gateway.update(note_id, title, content)
        except Exception as exc:
            self.post(SaveDone(generation, note_id, edit_seq, error=exc))
        else:
            self.post(SaveDone(generation, note_id, edit_seq, note=note))

    def _on_save_done(self, msg: SaveDone) -> None:
        ed = self.editor
        self._in_flight = False
        resave, self._resave = self._resave, False
        current = msg.generation == ed.generation
        if current:
            ed.saving = False

        if msg.error is not None:
            self._save_failed(msg, current)
        elif msg.note.id in self._deleted:
            logger.info("save of %s landed after its delete; dropped", msg.note.id)
        else:
            self._save_succeeded(msg, current)

        if not (resave and ed.dirty):
            return
        # no automatic retry of the very draft that just failed
        if current and msg.error is not None and ed.edit_seq == msg.edit_seq and ed.current_note_id == msg.note_id:
            return
        self._start_save()

    def _save_failed(self, msg: SaveDone, current: bool) -> None:
        ed = self.editor
        logger.warning("save of %s failed: %s", msg.note_id or "new note", msg.error)
        if not current or msg.note_id in self._deleted:
            return
        if isinstance(msg.error, NotFound) and msg.note_id is not None:
            # gone on the server: keep the draft, the next save creates it
            self.notes.remove(msg.note_id)
            if ed.current_note_id == msg.note_id:
                ed.current_note_id = None
                ed.base_updated_at = None
                self._alert(ALERT_ORPHANED)
        else:
            self._alert(ALERT_SAVE)

    def _save_succeeded(self, msg: SaveDone, current: bool) -> None:
        ed = self.editor
        note = msg.note
        self.notes.upsert(note)
        self._emit(NOTE_CREATED if msg.note_id is None else NOTE_UPDATED, note.model_dump(mode="json"))

        if not current:
            logger.info("discarding stale save response for %s", note.id)
            return
        if ed.base_updated_at is not None and ed.base_updated_at > note.updated_at:
            logger.info("save of %s superseded by a newer peer version", note.id)
            return
        ed.current_note_id = note.id
        ed.base_updated_at = note.updated_at
        if ed.edit_seq == msg.edit_seq:
            ed.dirty = False
            ed.title_draft = note.title
            ed.content_draft = note.content

    # ---------- navigation ----------
    def _on_new_note(self, msg: NewNote) -> None:
        if self.editor.dirty and not self.confirm(CONFIRM_NEW):
            return
        self._cancel_autosave()
        self.editor.reset()

    def _on_open_note(self, msg: OpenNote) -> None:
        if self.editor.dirty and not msg.confirmed and not self.confirm(CONFIRM_LEAVE):
            return
        self._cancel_autosave()
        self.editor.reset()
        self._spawn(self._load_note(self.editor.generation, msg.note_id))

    async def _load_note(self, generation: int, note_id: str) -> None:
        try:
            note = await self.gateway.get(note_id)
        except Exception as exc:
            self.post(NoteLoaded(generation, note_id, error=exc))
        else:
            self.post(NoteLoaded(generation, note_id, note=note))

    def _on_note_loaded(self, msg: NoteLoaded) -> None:
        if msg.generation != self.editor.generation:
            logger.info("discarding stale load of %s", msg.note_id)
            return
        if msg.error is not None:
            logger.warning("loading note %s failed: %s", msg.note_id, msg.error)
            self._alert(ALERT_LOAD_NOTE)
            self.editor.reset()
            return
        self.notes.upsert(msg.note)
        self.editor.show(msg.note)

    # ---------- list ----------
    def _on_start(self, msg: Start) -> None:
        self.page = 1
        self._fetch_page(1, msg.initial_note_id)

    def _on_load_more(self, msg: LoadMore) -> None:
        if self._loading:
            return
        self.page += 1
        self._fetch_page(self.page)

    def _fetch_page(self, page: int, open_note_id: Optional[str] = None) -> None:
        self._loading = True
        self._spawn(self._load_page(page, open_note_id))

    async def _load_page(self, page: int, open_note_id: Optional[str]) -> None:
        try:
            result = await self.gateway.list(page, self.page_size)
        except Exception as exc:
            self.post(PageLoaded(page, error=exc, open_note_id=open_note_id))
        else:
            self.post(PageLoaded(page, result=result, open_note_id=open_note_id))

    def _on_page_loaded(self, msg: PageLoaded) -> None:
        self._loading = False
        if msg.error is not None:
            logger.warning("loading page %s failed: %s", msg.page, msg.error)
            self.page = msg.page - 1
            self._alert(ALERT_LOAD_LIST)
        else:
            self.notes.extend(msg.result.notes)
            self.has_more = msg.result.has_more
        if msg.open_note_id is not None:
            self.post(OpenNote(msg.open_note_id, confirmed=True))

    # ---------- deletion ----------
    def _on_delete_note(self, msg: DeleteNote) -> None:
        if not self.confirm(CONFIRM_DELETE):
            return
        self._deleted.add(msg.note_id)
        summary = self.notes.remove(msg.note_id)
        if self.editor.current_note_id == msg.note_id:
            self._cancel_autosave()
        self._spawn(self._delete(msg.note_id, summary))

    async def _delete(self, note_id: str, summary: Optional[NoteOut]) -> None:
        try:
            await self.gateway.delete(note_id)
        except Exception as exc:
            self.post(DeleteDone(note_id, summary, error=exc))
        else:
            self.post(DeleteDone(note_id, summary))

    def _on_delete_done(self, msg: DeleteDone) -> None:
        if msg.error is not None and not isinstance(msg.error, NotFound):
            logger.warning("deleting %s failed: %s", msg.note_id, msg.error)
            self._deleted.discard(msg.note_id)
            if msg.summary is not None:
                self.notes.upsert(msg.summary)
            self._alert(ALERT_DELETE)
            if self.editor.current_note_id == msg.note_id and self.editor.dirty:
                self._arm_autosave()
            return
        self._emit(NOTE_DELETED, msg.note_id)
        self.notes.remove(msg.note_id)
        if self.editor.current_note_id == msg.note_id:
            self._cancel_autosave()
            self.editor.reset()

    # ---------- peers ----------
    def _on_peer_event(self, msg: PeerEvent) -> None:
        try:
            if msg.event == NOTE_DELETED:
                self._peer_deleted(str(msg.payload))
            elif msg.event in (NOTE_CREATED, NOTE_UPDATED):
                self._peer_upsert(NoteOut.model_validate(msg.payload))
        except ValidationError as exc:
            logger.warning("ignoring malformed %s payload: %s", msg.event, exc)

    def _peer_upsert(self, note: NoteOut) -> None:
        if note.id in self._deleted:
            return
        self.notes.upsert(note)
        ed = self.editor
        if note.id != ed.current_note_id:
            return
        if ed.base_updated_at is not None and note.updated_at <= ed.base_updated_at:
            return  # replayed or older than what the editor shows
        # last write wins over the local draft
        self._cancel_autosave()
        ed.show(note)

    def _peer_deleted(self, note_id: str) -> None:
        self.notes.remove(note_id)
        ed = self.editor
        if note_id != ed.current_note_id:
            return
        if ed.dirty:
            ed.current_note_id = None
            ed.base_updated_at = None
            self._alert(ALERT_ORPHANED)
            self._arm_autosave()
        else:
            self._cancel_autosave()
            ed.reset()


__all__ = [
    "SyncEngine",
    "Scheduler",
    "LoopScheduler",
    "TimerHandle",
    "RelayLink",
]
