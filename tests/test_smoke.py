from anchor.db import init_db, get_session, reset_engine
from anchor.models import Note, User

def test_create_note(tmp_path, monkeypatch):
    monkeypatch.setenv("ANCHOR_DB_PATH", str(tmp_path / "smoke.sqlite"))
    reset_engine()
    init_db()

    s = get_session()
    user = User(username="ann", email="ann@example.com", password_hash="x")
    s.add(user)
    s.commit()
    note = Note(owner_id=user.id)
    s.add(note)
    s.commit()
    s.refresh(note)
    assert note.id
    assert note.title == "Untitled"
    assert note.content == ""
    s.close()
