"""Integration tests for the SQLite record store."""

import sqlite3
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from qrpop_store.errors import StoreFailure
from qrpop_store.persistence import database
from qrpop_store.persistence.database import (
    SCHEMA_VERSION,
    ChangeType,
    RecordStore,
)
from qrpop_store.persistence.location import StoreDescription
from qrpop_store.records import QRRecord, RecordKind, TemplateRecord


@pytest.fixture
def store():
    with RecordStore(StoreDescription(url=":memory:")) as s:
        assert s.load()
        yield s


class TestLoading:
    """Tests for opening stores."""

    def test_load_creates_schema(self, store):
        assert store.is_loaded
        assert store.store_uuid
        assert store.count(RecordKind.QR) == 0

    def test_load_failure_is_logged_not_raised(self, tmp_path, caplog):
        """A directory is not a database; the error is kept, not raised."""
        store = RecordStore(StoreDescription(url=str(tmp_path)))

        assert store.load() is False
        assert store.load_error is not None
        assert "could not be loaded" in caplog.text

    def test_operations_on_unloaded_store_fail(self, tmp_path):
        store = RecordStore(StoreDescription(url=str(tmp_path)))
        store.load()

        with pytest.raises(StoreFailure):
            store.fetch_all(RecordKind.QR)
        assert store.object_for_reference("x-qrpop://abc/QREntity/p1") is None

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "Database.sqlite"
        path.write_bytes(b"this is not a sqlite database" * 200)

        store = RecordStore(StoreDescription(url=str(path)))
        assert store.load() is False
        assert isinstance(store.load_error, sqlite3.Error)

    def test_migrates_version_one_file(self, tmp_path):
        """Files without field clocks gain them on load."""
        path = tmp_path / "Database.sqlite"
        conn = sqlite3.connect(path)
        conn.execute(
            """
            CREATE TABLE qr_entities (
                pk INTEGER PRIMARY KEY AUTOINCREMENT, id TEXT NOT NULL,
                created TEXT NOT NULL, viewed TEXT NOT NULL, title TEXT,
                design BLOB, builder BLOB
            )
            """
        )
        conn.execute(
            "INSERT INTO qr_entities (id, created, viewed, title) VALUES (?, ?, ?, ?)",
            (
                str(uuid.uuid4()),
                "2023-04-12T00:00:00.000000+00:00",
                "2023-04-12T00:00:00.000000+00:00",
                "Legacy",
            ),
        )
        conn.commit()
        conn.close()

        with RecordStore(StoreDescription(url=str(path))) as store:
            assert store.load()
            records = store.fetch_all(RecordKind.QR)
            assert [r.title for r in records] == ["Legacy"]

            records[0].title = "Migrated"
            assert store.save() == 1

    def test_newer_schema_rejected(self, tmp_path):
        path = tmp_path / "Database.sqlite"
        with RecordStore(StoreDescription(url=str(path))) as store:
            store.load()
            store._get_conn().execute(
                "UPDATE store_metadata SET value = ? WHERE key = 'schema_version'",
                (str(SCHEMA_VERSION + 1),),
            )
            store._get_conn().commit()

        reopened = RecordStore(StoreDescription(url=str(path)))
        assert reopened.load() is False
        assert isinstance(reopened.load_error, StoreFailure)


class TestWrites:
    """Tests for insert, save and batch delete."""

    def test_insert_attaches_record(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4(), title="Menu"))

        assert record.object_reference is not None
        assert record.object_reference.startswith(f"x-qrpop://{store.store_uuid}/QREntity/p")

    def test_insert_twice_rejected(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4()))
        with pytest.raises(ValueError):
            store.insert(record)

    def test_string_identifier_coerced(self, store):
        identifier = uuid.uuid4()
        record = store.insert(QRRecord(id=str(identifier)))
        assert record.id == identifier

    def test_immutable_fields(self, store):
        record = store.insert(TemplateRecord(id=uuid.uuid4()))

        with pytest.raises(AttributeError):
            record.id = uuid.uuid4()
        with pytest.raises(AttributeError):
            record.created = datetime.now(timezone.utc)

    def test_assignment_then_save(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4(), title="Before"))
        record.title = "After"
        assert store.has_changes

        assert store.save() == 1
        assert not store.has_changes
        assert store.fetch_by_id(RecordKind.QR, record.id).title == "After"

    def test_read_flushes_pending_assignments(self, store):
        """A read after a local write on the same store observes it."""
        record = store.insert(QRRecord(id=uuid.uuid4(), title="Draft"))
        record.viewed = datetime(2030, 1, 1, tzinfo=timezone.utc)

        fetched = store.fetch_by_id(RecordKind.QR, record.id)
        assert fetched.viewed == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_failed_save_does_not_break_reads(self, store, caplog):
        """An unwritable assignment stays pending; other records stay readable."""
        good = store.insert(QRRecord(id=uuid.uuid4(), title="Good"))
        bad = store.insert(QRRecord(id=uuid.uuid4(), title="Bad"))
        bad.title = ["not", "bindable"]

        with pytest.raises(StoreFailure):
            store.save()

        for _ in range(3):
            assert len(store.fetch_all(RecordKind.QR)) == 2
        assert store.fetch_by_id(RecordKind.QR, good.id) == good
        assert store.object_for_reference(good.object_reference) == good
        assert "left unsaved" in caplog.text

        assert store.has_changes
        with pytest.raises(StoreFailure):
            store.save()

    def test_unflushed_read_leaves_assignments_pending(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4(), title="Original"))
        record.title = "Half edited"

        fetched = store.fetch_by_row(RecordKind.QR, record._row, flush=False)
        assert fetched.title == "Original"
        assert [r.title for r in store.fetch_all(RecordKind.QR, flush=False)] == ["Original"]
        assert record.has_changes

    def test_fresh_handles_on_every_read(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4()))
        first = store.fetch_by_id(RecordKind.QR, record.id)
        second = store.fetch_by_id(RecordKind.QR, record.id)

        assert first is not second
        assert first == second == record

    def test_save_without_changes(self, store):
        assert store.save() == 0

    def test_batch_delete_counts(self, store):
        for _ in range(3):
            store.insert(QRRecord(id=uuid.uuid4()))
        store.insert(TemplateRecord(id=uuid.uuid4()))

        assert store.batch_delete(RecordKind.QR) == 3
        assert store.count(RecordKind.QR) == 0
        assert store.count(RecordKind.TEMPLATE) == 1

    def test_save_after_delete_skips_record(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4()))
        record.title = "Gone"
        store.batch_delete(RecordKind.QR)

        assert store.save() == 0


class TestReferences:
    """Tests for stable object references."""

    def test_resolve_reference(self, store):
        record = store.insert(TemplateRecord(id=uuid.uuid4(), title="Logo"))
        resolved = store.object_for_reference(record.object_reference)

        assert isinstance(resolved, TemplateRecord)
        assert resolved.id == record.id

    @pytest.mark.parametrize(
        "reference",
        [
            None,
            "",
            "https://example.com",
            "x-qrpop://OTHER-STORE/QREntity/p1",
            "x-qrpop://{uuid}/UnknownEntity/p1",
            "x-qrpop://{uuid}/QREntity/1",
            "x-qrpop://{uuid}/QREntity/pabc",
            "x-qrpop://{uuid}/QREntity/p999",
        ],
    )
    def test_unresolvable_references(self, store, reference):
        if reference:
            reference = reference.replace("{uuid}", store.store_uuid)
        store.insert(QRRecord(id=uuid.uuid4()))
        assert store.object_for_reference(reference) is None

    def test_reference_after_delete(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4()))
        reference = record.object_reference
        store.batch_delete(RecordKind.QR)

        assert store.object_for_reference(reference) is None

    def test_references_survive_reopen(self, tmp_path):
        path = tmp_path / "Database.sqlite"
        with RecordStore(StoreDescription(url=str(path))) as store:
            store.load()
            reference = store.insert(QRRecord(id=uuid.uuid4(), title="Kept")).object_reference

        with RecordStore(StoreDescription(url=str(path))) as store:
            store.load()
            assert store.object_for_reference(reference).title == "Kept"


class TestNotifications:
    """Tests for change notifications and history."""

    def test_observers_receive_changes(self, store):
        received = []
        store.add_observer(received.append)

        record = store.insert(QRRecord(id=uuid.uuid4()))
        record.title = "Changed"
        store.save()
        store.batch_delete(RecordKind.QR)

        types = [n.changes[0].change_type for n in received]
        assert types == [ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE]
        assert all(n.author == "local" for n in received)
        assert received[0].changes[0].reference == record.object_reference

    def test_removed_observer_not_called(self, store):
        received = []
        store.add_observer(received.append)
        store.remove_observer(received.append)

        store.insert(QRRecord(id=uuid.uuid4()))
        assert received == []

    def test_failing_observer_does_not_block_others(self, store):
        received = []

        def broken(notification):
            raise RuntimeError("boom")

        store.add_observer(broken)
        store.add_observer(received.append)
        store.insert(QRRecord(id=uuid.uuid4()))

        assert len(received) == 1

    def test_notifications_disabled(self):
        description = StoreDescription(url=":memory:", remote_change_notifications=False)
        with RecordStore(description) as store:
            store.load()
            received = []
            store.add_observer(received.append)
            store.insert(QRRecord(id=uuid.uuid4()))
            assert received == []

    def test_history_tracks_changes(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4()))
        record.title = "Renamed"
        store.save()

        history = store.fetch_history()
        assert [h.change_type for h in history] == [ChangeType.INSERT, ChangeType.UPDATE]
        assert all(h.record_id == record.id for h in history)

        newer = store.fetch_history(after=history[0].sequence)
        assert len(newer) == 1

    def test_purge_history(self, store):
        for _ in range(3):
            store.insert(QRRecord(id=uuid.uuid4()))
        last = store.fetch_history()[-1].sequence

        assert store.purge_history(before=last) == 2
        assert len(store.fetch_history()) == 1

    def test_history_disabled(self):
        with RecordStore(StoreDescription(url=":memory:", history_tracking=False)) as store:
            store.load()
            store.insert(QRRecord(id=uuid.uuid4()))
            assert store.fetch_history() == []


class TestRemoteMerge:
    """Tests for property-level merging of remote changes."""

    def test_unknown_record_inserted(self, store):
        identifier = uuid.uuid4()
        stamp = datetime(2024, 6, 1, tzinfo=timezone.utc)

        merged = store.merge_remote_changes(
            "QREntity", identifier, {"title": "From iPad"}, modified_at=stamp
        )

        assert merged.id == identifier
        assert merged.title == "From iPad"
        assert merged.created == stamp
        assert store.fetch_history()[-1].author == "remote"

    def test_newer_remote_field_wins(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4(), title="Local"))
        future = datetime.now(timezone.utc) + timedelta(minutes=5)

        merged = store.merge_remote_changes(
            RecordKind.QR, record.id, {"title": "Remote"}, modified_at=future
        )
        assert merged.title == "Remote"

    def test_older_remote_field_loses(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4(), title="Local"))
        past = datetime.now(timezone.utc) - timedelta(days=1)

        merged = store.merge_remote_changes(
            RecordKind.QR, record.id, {"title": "Stale"}, modified_at=past
        )
        assert merged is None
        assert store.fetch_by_id(RecordKind.QR, record.id).title == "Local"

    def test_merge_is_per_property(self, store, monkeypatch):
        """A newer local edit of one field does not block another field."""
        now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
        monkeypatch.setattr(database, "utcnow", lambda: now[0])

        record = store.insert(QRRecord(id=uuid.uuid4(), title="Local"))
        now[0] = datetime(2024, 1, 3, tzinfo=timezone.utc)
        record.title = "Local edit"
        store.save()

        merged = store.merge_remote_changes(
            RecordKind.QR,
            record.id,
            {"title": "Remote", "design": b"remote-design"},
            modified_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
        )

        assert merged.design == b"remote-design"
        assert merged.title == "Local edit"

    def test_immutable_fields_not_merged(self, store):
        record = store.insert(QRRecord(id=uuid.uuid4()))
        original_created = store.fetch_by_id(RecordKind.QR, record.id).created
        future = datetime.now(timezone.utc) + timedelta(minutes=5)

        store.merge_remote_changes(
            RecordKind.QR, record.id, {"created": future, "title": "x"}, modified_at=future
        )
        assert store.fetch_by_id(RecordKind.QR, record.id).created == original_created

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.merge_remote_changes(
                RecordKind.TEMPLATE, uuid.uuid4(), {"builder": b""}, datetime.now(timezone.utc)
            )

    def test_remote_notification_author(self, store):
        received = []
        store.add_observer(received.append)
        store.merge_remote_changes(
            RecordKind.TEMPLATE, uuid.uuid4(), {"title": "t"}, datetime.now(timezone.utc)
        )
        assert received[0].author == "remote"
