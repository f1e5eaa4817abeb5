import asyncio
from datetime import datetime, timedelta, UTC
from uuid import uuid4

import pytest

from anchor.db import init_db, reset_engine
from anchor.errors import NotFound
from anchor.schemas import NoteOut, NotePage
from anchor.sync import SyncEngine


class _Timer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Timers that only fire when the test advances the clock."""

    def __init__(self):
        self.now = 0.0
        self._timers = []

    def call_later(self, delay, callback):
        timer = _Timer(self.now + delay, callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self):
        return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, seconds):
        self.now += seconds
        due = sorted((t for t in self._timers if not t.cancelled and t.when <= self.now), key=lambda t: t.when)
        for timer in due:
            self._timers.remove(timer)
            timer.callback()


class MemoryGateway:
    """In-memory store for one owner. ``fail`` makes every call raise it, ``fail_next``
    only the next one; ``hold`` parks calls."""

    def __init__(self, owner_id="owner"):
        self.owner_id = owner_id
        self.notes = {}
        self.calls = []
        self.fail = None
        self.fail_next = None
        self.hold = None
        self._clock = datetime(2024, 1, 1, tzinfo=UTC)

    def _tick(self):
        self._clock += timedelta(seconds=1)
        return self._clock

    async def _enter(self, call):
        self.calls.append(call)
        if self.hold is not None:
            await self.hold.wait()
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        if self.fail is not None:
            raise self.fail

    def seed(self, title, content=""):
        now = self._tick()
        note = NoteOut(id=uuid4().hex, title=title, content=content, owner_id=self.owner_id,
                       created_at=now, updated_at=now)
        self.notes[note.id] = note
        return note

    async def list(self, page, limit):
        await self._enter(("list", page, limit))
        ordered = sorted(self.notes.values(), key=lambda n: n.updated_at, reverse=True)
        start = (page - 1) * limit
        return NotePage(notes=ordered[start:start + limit], has_more=len(ordered) > page * limit)

    async def get(self, note_id):
        await self._enter(("get", note_id))
        if note_id not in self.notes:
            raise NotFound()
        return self.notes[note_id]

    async def create(self, title, content):
        await self._enter(("create", title, content))
        now = self._tick()
        note = NoteOut(id=uuid4().hex, title=title if title.strip() else "Untitled", content=content,
                       owner_id=self.owner_id, created_at=now, updated_at=now)
        self.notes[note.id] = note
        return note

    async def update(self, note_id, title, content):
        await self._enter(("update", note_id, title, content))
        if note_id not in self.notes:
            raise NotFound()
        note = self.notes[note_id].model_copy(update={
            "title": title if title.strip() else "Untitled",
            "content": content,
            "updated_at": self._tick(),
        })
        self.notes[note_id] = note
        return note

    async def delete(self, note_id):
        await self._enter(("delete", note_id))
        if self.notes.pop(note_id, None) is None:
            raise NotFound()


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("ANCHOR_DB_PATH", str(tmp_path / "anchor.sqlite"))
    reset_engine()
    init_db()
    yield
    reset_engine()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def gateway():
    return MemoryGateway()


@pytest.fixture
def confirmations():
    return []


@pytest.fixture
def engine(gateway, scheduler, confirmations):
    def confirm(message):
        confirmations.append(message)
        return True

    return SyncEngine(gateway, scheduler=scheduler, confirm=confirm)


async def settle(*engines):
    """Drain several engines until none of them has work left."""
    for _ in range(10):
        for e in engines:
            await e.drain()
        await asyncio.sleep(0)
        if not any(e._queue or e._tasks for e in engines):
            return


@pytest.fixture
def settle_all():
    return settle


@pytest.fixture
def scheduler_factory():
    return ManualScheduler


async def spin(times=10):
    for _ in range(times):
        await asyncio.sleep(0)


@pytest.fixture
def yield_loop():
    return spin
