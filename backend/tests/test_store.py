"""Tests for the DuckDB message log and chat directory."""
import pytest

from courier.chats.service import ChatDirectory, participant_key
from courier.errors import TransientStoreError
from courier.media.service import MediaStore
from courier.store.database import Database
from courier.store.service import MessageStore

from conftest import new_id


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return MessageStore(db)


@pytest.fixture
def chats(db):
    return ChatDirectory(db)


class TestCreateMessage:
    def test_sender_is_first_reader(self, store):
        chat_id, alice = new_id(), new_id()
        message, created = store.create_message(chat_id, alice, text="hi")
        assert created is True
        assert message.readBy == [alice]
        assert message.deliveredTo == []
        assert store.get_message(message.id).readBy == [alice]

    def test_replayed_temp_id_returns_existing(self, store):
        chat_id, alice = new_id(), new_id()
        first, created = store.create_message(chat_id, alice, text="hi", temp_id="t1")
        again, replayed = store.create_message(chat_id, alice, text="hi", temp_id="t1")
        assert created is True
        assert replayed is False
        assert again.id == first.id
        assert store.count_messages(chat_id) == 1

    def test_same_temp_id_from_other_sender_is_new(self, store):
        chat_id = new_id()
        store.create_message(chat_id, new_id(), text="a", temp_id="t1")
        store.create_message(chat_id, new_id(), text="b", temp_id="t1")
        assert store.count_messages(chat_id) == 2

    def test_list_is_in_insertion_order(self, store):
        chat_id, alice = new_id(), new_id()
        for text in ("one", "two", "three"):
            store.create_message(chat_id, alice, text=text)
        assert [m.text for m in store.list_messages(chat_id)] == ["one", "two", "three"]


class TestReceipts:
    def test_mark_read_is_idempotent(self, store):
        chat_id, alice, bob = new_id(), new_id(), new_id()
        m1, _ = store.create_message(chat_id, alice, text="1")
        m2, _ = store.create_message(chat_id, alice, text="2")

        assert store.mark_read(chat_id, bob) == [m1.id, m2.id]
        assert store.mark_read(chat_id, bob) == []
        assert store.get_message(m1.id).readBy == [alice, bob]

    def test_mark_read_skips_own_messages_already_read(self, store):
        chat_id, alice = new_id(), new_id()
        store.create_message(chat_id, alice, text="mine")
        assert store.mark_read(chat_id, alice) == []

    def test_mark_delivered_excludes_own_messages(self, store):
        chat_id, alice, bob = new_id(), new_id(), new_id()
        from_alice, _ = store.create_message(chat_id, alice, text="from alice")
        store.create_message(chat_id, bob, text="from bob")

        assert store.mark_delivered(chat_id, bob) == [from_alice.id]
        assert store.mark_delivered(chat_id, bob) == []
        assert store.get_message(from_alice.id).deliveredTo == [bob]

    def test_record_delivery_only_reports_new_receipts(self, store):
        chat_id, alice, bob, carol = new_id(), new_id(), new_id(), new_id()
        message, _ = store.create_message(chat_id, alice, text="hi")
        assert store.record_delivery(message.id, [bob]) == [bob]
        assert store.record_delivery(message.id, [bob, carol]) == [carol]


class TestEditDelete:
    def test_update_text_sets_edited(self, store):
        message, _ = store.create_message(new_id(), new_id(), text="old")
        updated = store.update_text(message.id, "new")
        assert updated.text == "new"
        assert updated.edited is True
        assert updated.updatedAt >= message.updatedAt

    def test_update_text_refuses_image_messages(self, store):
        message, _ = store.create_message(new_id(), new_id(), image_url="/media/x")
        assert store.update_text(message.id, "caption") is None

    def test_soft_delete_keeps_receipts_and_suppresses_content(self, store):
        chat_id, alice, bob = new_id(), new_id(), new_id()
        message, _ = store.create_message(chat_id, alice, text="secret")
        store.mark_read(chat_id, bob)

        deleted = store.soft_delete(message.id)
        assert deleted.deleted is True
        assert deleted.readBy == [alice, bob]
        assert deleted.to_client()["text"] is None
        assert store.soft_delete(message.id) is None
        assert store.update_text(message.id, "again") is None

    def test_latest_visible_skips_deleted(self, store):
        chat_id, alice = new_id(), new_id()
        first, _ = store.create_message(chat_id, alice, text="1")
        second, _ = store.create_message(chat_id, alice, text="2")
        store.soft_delete(second.id)
        assert store.latest_visible_message_id(chat_id) == first.id
        store.soft_delete(first.id)
        assert store.latest_visible_message_id(chat_id) is None


class TestDatabase:
    def test_schema_bootstrap_is_repeatable(self, db):
        MessageStore(db)
        store = MessageStore(db)
        chat_id, alice, bob = new_id(), new_id(), new_id()
        message, _ = store.create_message(chat_id, alice, text="hi")
        store.record_delivery(message.id, [bob])
        store.mark_read(chat_id, bob)

        columns = {
            row[0]
            for row in db.execute(
                "SELECT column_name FROM information_schema.columns "
                "WHERE table_name = 'message_receipts'"
            )
        }
        assert "recorded_at" in columns
        stored = store.get_message(message.id)
        assert stored.readBy == [alice, bob]
        assert stored.deliveredTo == [bob]

    def test_driver_errors_become_transient_store_errors(self, db):
        with pytest.raises(TransientStoreError):
            db.execute("SELECT * FROM no_such_table")

    def test_failed_transaction_rolls_back(self, db):
        db.execute("CREATE TABLE notes (body VARCHAR)")
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.execute("INSERT INTO notes VALUES (?)", ["draft"])
                raise RuntimeError("boom")
        assert db.execute("SELECT COUNT(*) FROM notes") == [(0,)]


class TestChatDirectory:
    def test_get_or_create_finds_existing_set(self, chats):
        alice, bob = new_id(), new_id()
        chat, created = chats.get_or_create([alice, bob])
        same, created_again = chats.get_or_create([bob, alice])
        assert created is True
        assert created_again is False
        assert same.id == chat.id
        assert chat.participants == sorted([alice, bob])

    def test_different_sets_get_different_chats(self, chats):
        alice, bob, carol = new_id(), new_id(), new_id()
        pair, _ = chats.get_or_create([alice, bob])
        group, _ = chats.get_or_create([alice, bob, carol])
        assert pair.id != group.id

    def test_needs_two_participants(self, chats):
        alice = new_id()
        with pytest.raises(ValueError):
            chats.get_or_create([alice, alice])

    def test_participant_key_is_order_independent(self):
        assert participant_key(["b", "a", "b"]) == "a,b"

    def test_latest_pointer_and_listing(self, chats):
        alice, bob, carol = new_id(), new_id(), new_id()
        older, _ = chats.get_or_create([alice, bob])
        newer, _ = chats.get_or_create([alice, carol])
        message_id = new_id()
        chats.set_latest_message(older.id, message_id)

        assert chats.get_chat(older.id).latestMessageId == message_id
        assert [c.id for c in chats.list_for_user(alice)][0] == older.id
        assert {c.id for c in chats.list_for_user(alice)} == {older.id, newer.id}
        assert [c.id for c in chats.list_for_user(bob)] == [older.id]
        assert chats.is_participant(older.id, bob)
        assert not chats.is_participant(older.id, carol)


class TestMediaStore:
    def test_failed_metadata_insert_leaves_no_file(self, db, tmp_path, monkeypatch):
        media = MediaStore(db, str(tmp_path / "media"), max_bytes=1024)

        def failing_execute(sql, params=None):
            raise TransientStoreError("disk full")

        monkeypatch.setattr(db, "execute", failing_execute)
        with pytest.raises(TransientStoreError):
            media.save_image(new_id(), new_id(), "cat.png", b"\x89PNG" + b"\x00" * 16, "image/png")
        assert list((tmp_path / "media").rglob("*.png")) == []

    def test_discard_removes_file_and_metadata(self, db, tmp_path):
        media = MediaStore(db, str(tmp_path / "media"), max_bytes=1024)
        saved = media.save_image(new_id(), new_id(), "cat.png", b"\x89PNG" + b"\x00" * 16, "image/png")
        path = media.get_media_path(saved.id)
        assert path is not None and path.exists()

        media.discard(saved.id)
        assert not path.exists()
        assert media.get_media(saved.id) is None
