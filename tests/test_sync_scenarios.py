"""Two devices of one user, each with its own engine, joined by one relay."""

import pytest

from anchor import services
from anchor.auth import register_user
from anchor.gateway import LocalNoteGateway
from anchor.relay import BroadcastRelay, LocalRelayLink
from anchor.state import EditorStatus
from anchor.sync import SyncEngine


def _device(owner_id, relay, scheduler):
    link = LocalRelayLink(relay, owner_id)
    engine = SyncEngine(LocalNoteGateway(owner_id), link, scheduler=scheduler, confirm=lambda message: True)
    link.attach(engine.receive)
    return engine


@pytest.fixture
def user(db):
    return register_user("ann", "ann@example.com", "pw")


@pytest.fixture
def devices(user, scheduler_factory):
    relay = BroadcastRelay()
    laptop_clock, phone_clock = scheduler_factory(), scheduler_factory()
    laptop = _device(user.id, relay, laptop_clock)
    phone = _device(user.id, relay, phone_clock)
    return laptop, laptop_clock, phone, phone_clock


async def test_edit_on_laptop_shows_on_phone(user, devices, settle_all):
    laptop, laptop_clock, phone, _ = devices
    note = services.create_note(user.id, "Shared", "v1")
    laptop.start(note.id)
    phone.start(note.id)
    await settle_all(laptop, phone)

    laptop.edit(content="v2 from laptop")
    await settle_all(laptop, phone)
    laptop_clock.advance(1)
    await settle_all(laptop, phone)

    assert laptop.status is EditorStatus.CLEAN
    assert phone.editor.current_note_id == note.id
    assert phone.editor.content_draft == "v2 from laptop"
    assert phone.notes.get(note.id).content == "v2 from laptop"
    assert services.get_note(user.id, note.id).content == "v2 from laptop"


async def test_note_created_on_phone_appears_on_laptop(user, devices, settle_all):
    laptop, _, phone, _ = devices
    laptop.start()
    phone.start()
    await settle_all(laptop, phone)

    phone.edit(title="Groceries", content="milk")
    phone.save()
    await settle_all(laptop, phone)

    assert [n.title for n in laptop.notes] == ["Groceries"]
    assert laptop.status is EditorStatus.IDLE


async def test_delete_on_laptop_closes_note_on_phone(user, devices, settle_all):
    laptop, _, phone, _ = devices
    keep = services.create_note(user.id, "Keep", "")
    gone = services.create_note(user.id, "Gone", "")
    laptop.start(gone.id)
    phone.start(gone.id)
    await settle_all(laptop, phone)

    laptop.delete_note(gone.id)
    await settle_all(laptop, phone)

    for device in (laptop, phone):
        assert device.status is EditorStatus.IDLE
        assert device.notes.ids() == [keep.id]


async def test_other_users_devices_hear_nothing(user, scheduler_factory, settle_all):
    relay = BroadcastRelay()
    other = register_user("bob", "bob@example.com", "pw")
    mine = _device(user.id, relay, scheduler_factory())
    theirs = _device(other.id, relay, scheduler_factory())
    mine.start()
    theirs.start()
    await settle_all(mine, theirs)

    mine.edit(content="private")
    mine.save()
    await settle_all(mine, theirs)

    assert len(mine.notes) == 1
    assert len(theirs.notes) == 0
