import tempfile
from pathlib import Path

import pytest

from chat_core.infrastructure.storage.sqlite_store import SqliteConversationStore
from chat_core.domain.models import Conversation, Message
from chat_core.domain.exceptions import PersistenceError


def test_sqlite_store_round_trip():
    with tempfile.TemporaryDirectory() as d:
        db = Path(d) / "chat.db"
        store = SqliteConversationStore(db_path=db)
        convs = [
            Conversation(
                id="c2",
                title="second",
                messages=[
                    Message(id="m1", role="user", content="look", image_ref="data:image/png;base64,AAAA"),
                    Message(id="m2", role="assistant", content="a cat"),
                ],
            ),
            Conversation(id="c1", title="first", messages=[Message(id="m1", role="user", content="hi")]),
        ]
        store.save_all(convs)
        loaded = SqliteConversationStore(db_path=db).load_all()
        assert [c.id for c in loaded] == ["c2", "c1"]
        assert loaded[0].messages[0].image_ref == "data:image/png;base64,AAAA"
        assert [m.id for m in store.load_messages("c2")] == ["m1", "m2"]


def test_sqlite_store_save_all_replaces_previous_state():
    with tempfile.TemporaryDirectory() as d:
        store = SqliteConversationStore(db_path=Path(d) / "chat.db")
        store.save_all([Conversation(id="c1"), Conversation(id="c2")])
        store.save_all([Conversation(id="c2", title="renamed")])
        loaded = store.load_all()
        assert [(c.id, c.title) for c in loaded] == [("c2", "renamed")]
        with pytest.raises(PersistenceError):
            store.load_messages("c1")


def test_sqlite_store_open_error_is_persistence_error():
    with tempfile.TemporaryDirectory() as d:
        db = Path(d) / "chat.db"
        db.write_bytes(b"this is not a sqlite database" * 200)
        with pytest.raises(PersistenceError) as exc:
            SqliteConversationStore(db_path=db)
        assert exc.value.code == "STORE_OPEN_ERROR"
