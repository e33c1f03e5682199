"""Record Store - SQLite persistence for QR and template records.

Owns the single database connection of a store. Every operation runs under
one re-entrant lock, so concurrent callers are serialized against the same
view of the data. Committed changes are written to a persistent history
table and published to observers (search indexing, cloud sync) after the
commit.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import unicodedata
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from ..errors import InvalidIdentifier, PersistenceError, StoreFailure
from ..records import (
    IMMUTABLE_FIELDS,
    ManagedRecord,
    Recency,
    RecordKind,
    from_storage,
    to_storage,
    utcnow,
)
from .location import StoreDescription

logger = logging.getLogger(__name__)

REFERENCE_SCHEME = "x-qrpop"
SCHEMA_VERSION = 2

# Version 1 layout; later versions are reached through MIGRATIONS
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS store_metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS qr_entities (
    pk INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL,
    created TEXT NOT NULL,
    viewed TEXT NOT NULL,
    title TEXT,
    design BLOB,
    builder BLOB
);

CREATE TABLE IF NOT EXISTS template_entities (
    pk INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL,
    created TEXT NOT NULL,
    viewed TEXT NOT NULL,
    title TEXT,
    logo BLOB,
    design BLOB
);

CREATE TABLE IF NOT EXISTS change_history (
    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
    entity TEXT NOT NULL,
    row_id INTEGER NOT NULL,
    record_id TEXT NOT NULL,
    change_type TEXT NOT NULL,
    author TEXT NOT NULL,
    changed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_qr_entities_id ON qr_entities(id);
CREATE INDEX IF NOT EXISTS idx_qr_entities_created ON qr_entities(created);
CREATE INDEX IF NOT EXISTS idx_qr_entities_viewed ON qr_entities(viewed);
CREATE INDEX IF NOT EXISTS idx_template_entities_id ON template_entities(id);
CREATE INDEX IF NOT EXISTS idx_template_entities_created ON template_entities(created);
CREATE INDEX IF NOT EXISTS idx_template_entities_viewed ON template_entities(viewed);
"""

MIGRATIONS: dict[int, list[str]] = {
    # Per-field write clocks for property-level merging
    2: [
        "ALTER TABLE qr_entities ADD COLUMN field_clock TEXT NOT NULL DEFAULT '{}'",
        "ALTER TABLE template_entities ADD COLUMN field_clock TEXT NOT NULL DEFAULT '{}'",
    ],
}


def fold_text(value: str | None) -> str | None:
    """Case- and diacritic-insensitive form of a string.

    Registered as the SQL function ``fold``.
    """
    if value is None:
        return None
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def coerce_identifier(value: uuid.UUID | str | None) -> uuid.UUID:
    """Return value as a UUID.

    Raises:
        InvalidIdentifier: If value is None or not a UUID
    """
    if value is None:
        raise InvalidIdentifier("identifier is missing")
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise InvalidIdentifier(f"{value!r} is not a UUID") from e


class ChangeType(str, Enum):
    """Kinds of change published by the store."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class ObjectChange:
    """A single changed record."""

    kind: RecordKind
    reference: str
    record_id: uuid.UUID
    change_type: ChangeType


@dataclass(slots=True)
class StoreChangeNotification:
    """Changes committed together, published after the commit.

    ``author`` is ``"local"`` for changes made through this store and
    ``"remote"`` for changes merged from the sync engine.
    """

    changes: list[ObjectChange] = field(default_factory=list)
    author: str = "local"

    def of_kind(self, kind: RecordKind) -> list[ObjectChange]:
        return [change for change in self.changes if change.kind is kind]


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """A row of the persistent change history."""

    sequence: int
    kind: RecordKind
    row: int
    record_id: uuid.UUID
    change_type: ChangeType
    author: str
    changed_at: datetime


ChangeObserver = Callable[[StoreChangeNotification], None]


class RecordStore:
    """Repository for QR and template records.

    Example:
        with RecordStore(StoreDescription(url=":memory:")) as store:
            store.load()
            record = store.insert(QRRecord(id=uuid.uuid4(), title="Menu"))
            record.title = "Dinner Menu"
            store.save()

            latest = store.fetch_most_recent(RecordKind.QR, 3)
    """

    def __init__(self, description: StoreDescription) -> None:
        """Initialize the store without opening it.

        Args:
            description: Location and options of the database
        """
        self.description = description
        self.store_uuid: str | None = None
        self.load_error: BaseException | None = None
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._observers: list[ChangeObserver] = []
        self._pending: dict[int, ManagedRecord] = {}

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._conn is not None

    def load(self) -> bool:
        """Open the database and bring its schema up to date.

        Failures are logged and kept in ``load_error``; they are not raised.
        Operations on a store that failed to load raise ``StoreFailure``.

        Returns:
            True if the store is open
        """
        with self._lock:
            if self._conn is not None:
                return True

            conn: sqlite3.Connection | None = None
            try:
                conn = sqlite3.connect(self.description.url, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.create_function("fold", 1, fold_text, deterministic=True)
                if not self.description.in_memory:
                    conn.execute("PRAGMA journal_mode = WAL")
                    conn.execute("PRAGMA synchronous = NORMAL")
                conn.execute("PRAGMA busy_timeout = 5000")
                self._migrate(conn)
                self.store_uuid = self._ensure_store_uuid(conn)
            except (sqlite3.Error, PersistenceError) as e:
                logger.error("The store could not be loaded: %s", e)
                self.load_error = e
                if conn is not None:
                    conn.close()
                return False

            self._conn = conn
            self.load_error = None
            logger.info(
                "Loaded store %s (schema v%d, history=%s, cloud=%s)",
                self.description.url,
                SCHEMA_VERSION,
                self.description.history_tracking,
                self.description.cloud_sync is not None,
            )
            return True

    def _migrate(self, conn: sqlite3.Connection) -> None:
        conn.executescript(SCHEMA_SQL)
        row = conn.execute(
            "SELECT value FROM store_metadata WHERE key = 'schema_version'"
        ).fetchone()
        version = int(row["value"]) if row else 1
        if version > SCHEMA_VERSION:
            raise StoreFailure(
                f"store schema v{version} is newer than supported v{SCHEMA_VERSION}"
            )

        for target in range(version + 1, SCHEMA_VERSION + 1):
            for statement in MIGRATIONS[target]:
                conn.execute(statement)
            logger.info("Migrated store schema to v%d", target)

        conn.execute(
            """
            INSERT INTO store_metadata (key, value) VALUES ('schema_version', ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (str(SCHEMA_VERSION),),
        )
        conn.commit()

    def _ensure_store_uuid(self, conn: sqlite3.Connection) -> str:
        row = conn.execute(
            "SELECT value FROM store_metadata WHERE key = 'store_uuid'"
        ).fetchone()
        if row is not None:
            return row["value"]
        store_uuid = str(uuid.uuid4()).upper()
        conn.execute(
            "INSERT INTO store_metadata (key, value) VALUES ('store_uuid', ?)",
            (store_uuid,),
        )
        conn.commit()
        return store_uuid

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection, failing if the store never loaded."""
        if self._conn is None:
            raise StoreFailure("store is not loaded") from self.load_error
        return self._conn

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: ChangeObserver) -> None:
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def remove_observer(self, observer: ChangeObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _notify(self, notification: StoreChangeNotification) -> None:
        if not notification.changes or not self.description.remote_change_notifications:
            return
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(notification)
            except Exception:
                # Already committed; the remaining observers still get notified
                logger.exception("Change observer %r failed", observer)

    # ------------------------------------------------------------------
    # Object references
    # ------------------------------------------------------------------

    def reference_for(self, kind: RecordKind, row: int) -> str:
        return f"{REFERENCE_SCHEME}://{self.store_uuid}/{kind.value}/p{row}"

    def parse_reference(self, reference: str | None) -> tuple[RecordKind, int] | None:
        """Split a reference into kind and row, or None if it is not ours."""
        if not reference:
            return None
        try:
            parts = urlsplit(str(reference))
            if parts.scheme != REFERENCE_SCHEME or parts.netloc != self.store_uuid:
                return None
            _, kind_name, row_part = parts.path.split("/")
            kind = RecordKind.parse(kind_name)
            if not row_part.startswith("p"):
                return None
            return kind, int(row_part[1:])
        except ValueError:
            return None

    def object_for_reference(
        self, reference: str | None, flush: bool = True
    ) -> ManagedRecord | None:
        """Resolve a reference to a live record; never raises for bad input."""
        if self._conn is None:
            return None
        parsed = self.parse_reference(reference)
        if parsed is None:
            return None
        kind, row = parsed
        try:
            return self.fetch_by_row(kind, row, flush=flush)
        except StoreFailure:
            logger.warning("Reference %s could not be resolved", reference)
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, record: ManagedRecord) -> ManagedRecord:
        """Insert a new record and attach it to this store.

        Args:
            record: Unattached record with a caller-supplied identifier

        Returns:
            The same record, now attached

        Raises:
            InvalidIdentifier: If the record has no valid identifier
            StoreFailure: If the database rejects the insert
        """
        if record._store is not None:
            raise ValueError("record is already attached to a store")
        identifier = coerce_identifier(record.id)
        if identifier != record.id:
            object.__setattr__(record, "id", identifier)

        kind = record.kind
        values = record.field_values()
        stamp = to_storage(utcnow())
        clock = {name: stamp for name in values}

        with self._lock:
            conn = self._get_conn()
            columns = list(values) + ["field_clock"]
            params = [_to_column(values[name]) for name in values] + [json.dumps(clock)]
            try:
                cursor = conn.execute(
                    f"INSERT INTO {kind.table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' * len(columns))})",
                    params,
                )
                row = cursor.lastrowid
                self._record_history(conn, kind, row, identifier, ChangeType.INSERT, "local")
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreFailure(f"insert into {kind.value} failed") from e

            object.__setattr__(record, "_store", self)
            object.__setattr__(record, "_row", row)
            record._changed.clear()
            reference = self.reference_for(kind, row)

        self._notify(
            StoreChangeNotification(
                changes=[ObjectChange(kind, reference, identifier, ChangeType.INSERT)]
            )
        )
        return record

    def _mark_changed(self, record: ManagedRecord) -> None:
        with self._lock:
            self._pending[id(record)] = record

    @property
    def has_changes(self) -> bool:
        with self._lock:
            return any(record.has_changes for record in self._pending.values())

    def save(self) -> int:
        """Write every pending field assignment.

        Returns:
            Number of records updated

        Raises:
            StoreFailure: If the database rejects the update; nothing is written
        """
        changes: list[ObjectChange] = []
        with self._lock:
            pending = [record for record in self._pending.values() if record.has_changes]
            if not pending:
                self._pending.clear()
                return 0

            conn = self._get_conn()
            stamp = to_storage(utcnow())
            try:
                for record in pending:
                    kind = record.kind
                    row = conn.execute(
                        f"SELECT field_clock FROM {kind.table} WHERE pk = ?",
                        (record._row,),
                    ).fetchone()
                    if row is None:
                        logger.warning(
                            "Skipping save of deleted %s %s", kind.value, record.id
                        )
                        continue

                    names = sorted(record._changed)
                    clock = json.loads(row["field_clock"])
                    clock.update({name: stamp for name in names})
                    assignments = ", ".join(f"{name} = ?" for name in names)
                    conn.execute(
                        f"UPDATE {kind.table} SET {assignments}, field_clock = ? WHERE pk = ?",
                        [_to_column(getattr(record, name)) for name in names]
                        + [json.dumps(clock), record._row],
                    )
                    self._record_history(
                        conn, kind, record._row, record.id, ChangeType.UPDATE, "local"
                    )
                    changes.append(
                        ObjectChange(
                            kind,
                            self.reference_for(kind, record._row),
                            record.id,
                            ChangeType.UPDATE,
                        )
                    )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreFailure("saving changes failed") from e

            for record in pending:
                record._changed.clear()
            self._pending.clear()

        self._notify(StoreChangeNotification(changes=changes))
        return len(changes)

    def batch_delete(self, kind: RecordKind) -> int:
        """Delete every record of a kind with a single DELETE statement.

        Returns:
            Number of records deleted

        Raises:
            StoreFailure: If the database rejects the delete
        """
        with self._lock:
            conn = self._get_conn()
            try:
                rows = conn.execute(f"SELECT pk, id FROM {kind.table}").fetchall()
                conn.execute(f"DELETE FROM {kind.table}")
                for row in rows:
                    self._record_history(
                        conn, kind, row["pk"], uuid.UUID(row["id"]), ChangeType.DELETE, "local"
                    )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreFailure(f"batch delete of {kind.value} failed") from e

            for key, record in list(self._pending.items()):
                if record.kind is kind:
                    del self._pending[key]
            changes = [
                ObjectChange(
                    kind, self.reference_for(kind, row["pk"]), uuid.UUID(row["id"]), ChangeType.DELETE
                )
                for row in rows
            ]

        logger.info("Batch deleted %d %s records", len(rows), kind.value)
        self._notify(StoreChangeNotification(changes=changes))
        return len(rows)

    # ------------------------------------------------------------------
    # Remote merge
    # ------------------------------------------------------------------

    def merge_remote_changes(
        self,
        kind: RecordKind | str,
        record_id: uuid.UUID | str | None,
        fields: Mapping[str, Any],
        modified_at: datetime,
    ) -> ManagedRecord | None:
        """Apply a change replicated from another device.

        Each field is applied only if ``modified_at`` is not older than the
        last write of that field on this device (property-level, most
        recent write wins). An unknown identifier inserts the record.

        Args:
            kind: Record kind or entity name
            record_id: Identifier of the changed record
            fields: Remote field values
            modified_at: When the remote device wrote the fields

        Returns:
            The merged record, or None if every field was older than ours

        Raises:
            InvalidIdentifier: If record_id is missing or malformed
            ValueError: If fields names an unknown field
            StoreFailure: If the database rejects the merge
        """
        kind = RecordKind.parse(kind)
        identifier = coerce_identifier(record_id)
        known = set(kind.record_class.persistent_fields())
        unknown = set(fields) - known
        if unknown:
            raise ValueError(f"unknown {kind.value} fields: {sorted(unknown)}")

        stamp = to_storage(modified_at)
        with self._lock:
            conn = self._get_conn()
            try:
                existing = conn.execute(
                    f"SELECT pk, field_clock FROM {kind.table} WHERE id = ? ORDER BY pk LIMIT 1",
                    (str(identifier),),
                ).fetchone()

                if existing is None:
                    values: dict[str, Any] = {name: None for name in known}
                    values.update(fields)
                    values["id"] = identifier
                    values["created"] = values["created"] or modified_at
                    values["viewed"] = values["viewed"] or modified_at
                    clock = {name: stamp for name in values}
                    columns = list(values) + ["field_clock"]
                    cursor = conn.execute(
                        f"INSERT INTO {kind.table} ({', '.join(columns)}) "
                        f"VALUES ({', '.join('?' * len(columns))})",
                        [_to_column(values[name]) for name in values] + [json.dumps(clock)],
                    )
                    row = cursor.lastrowid
                    change_type = ChangeType.INSERT
                else:
                    row = existing["pk"]
                    clock = json.loads(existing["field_clock"])
                    applied = {
                        name: value
                        for name, value in fields.items()
                        if name not in IMMUTABLE_FIELDS and stamp >= clock.get(name, "")
                    }
                    if not applied:
                        return None
                    clock.update({name: stamp for name in applied})
                    assignments = ", ".join(f"{name} = ?" for name in applied)
                    conn.execute(
                        f"UPDATE {kind.table} SET {assignments}, field_clock = ? WHERE pk = ?",
                        [_to_column(value) for value in applied.values()]
                        + [json.dumps(clock), row],
                    )
                    change_type = ChangeType.UPDATE

                self._record_history(conn, kind, row, identifier, change_type, "remote")
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreFailure(f"merging remote {kind.value} failed") from e

            reference = self.reference_for(kind, row)

        merged = self.fetch_by_row(kind, row, flush=False)
        self._notify(
            StoreChangeNotification(
                changes=[ObjectChange(kind, reference, identifier, change_type)],
                author="remote",
            )
        )
        return merged

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _record_history(
        self,
        conn: sqlite3.Connection,
        kind: RecordKind,
        row: int,
        record_id: uuid.UUID,
        change_type: ChangeType,
        author: str,
    ) -> None:
        if not self.description.history_tracking:
            return
        conn.execute(
            """
            INSERT INTO change_history
            (entity, row_id, record_id, change_type, author, changed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (kind.value, row, str(record_id), change_type.value, author, to_storage(utcnow())),
        )

    def fetch_history(self, after: int = 0, limit: int | None = None) -> list[HistoryEntry]:
        """List history entries with a sequence greater than ``after``.

        Args:
            after: Last sequence number already consumed
            limit: Maximum number of entries to return

        Returns:
            Entries in commit order
        """
        sql = """
            SELECT sequence, entity, row_id, record_id, change_type, author, changed_at
            FROM change_history
            WHERE sequence > ?
            ORDER BY sequence
        """
        params: list[Any] = [after]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return [
            HistoryEntry(
                sequence=row["sequence"],
                kind=RecordKind(row["entity"]),
                row=row["row_id"],
                record_id=uuid.UUID(row["record_id"]),
                change_type=ChangeType(row["change_type"]),
                author=row["author"],
                changed_at=from_storage(row["changed_at"]),
            )
            for row in self._query(sql, params)
        ]

    def purge_history(self, before: int) -> int:
        """Remove history entries with a sequence lower than ``before``.

        Returns:
            Number of entries removed
        """
        with self._lock:
            conn = self._get_conn()
            try:
                cursor = conn.execute(
                    "DELETE FROM change_history WHERE sequence < ?", (before,)
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreFailure("purging history failed") from e
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _flush_pending(self) -> None:
        """Write pending assignments before a read, without failing the read.

        Records that cannot be written stay pending; an explicit save()
        reports the failure.
        """
        try:
            self.save()
        except StoreFailure as e:
            logger.warning("Pending changes left unsaved before read: %s", e)

    def _query(
        self, sql: str, params: Iterable[Any] = (), flush: bool = True
    ) -> list[sqlite3.Row]:
        if flush and self._pending:
            self._flush_pending()
        with self._lock:
            conn = self._get_conn()
            try:
                return conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StoreFailure(str(e)) from e

    def _fetch(
        self,
        kind: RecordKind,
        where: str = "",
        params: Iterable[Any] = (),
        order: str = "pk",
        limit: int | None = None,
        flush: bool = True,
    ) -> list[ManagedRecord]:
        columns = ", ".join(("pk",) + kind.record_class.persistent_fields())
        sql = f"SELECT {columns} FROM {kind.table}"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order}"
        params = list(params)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._materialize(kind, row) for row in self._query(sql, params, flush)]

    def _materialize(self, kind: RecordKind, row: sqlite3.Row) -> ManagedRecord:
        values = {name: row[name] for name in kind.record_class.persistent_fields()}
        values["id"] = uuid.UUID(values["id"])
        values["created"] = from_storage(values["created"])
        values["viewed"] = from_storage(values["viewed"])
        record = kind.record_class(**values)
        object.__setattr__(record, "_store", self)
        object.__setattr__(record, "_row", row["pk"])
        return record

    def fetch_by_row(
        self, kind: RecordKind, row: int, flush: bool = True
    ) -> ManagedRecord | None:
        records = self._fetch(kind, "pk = ?", (row,), flush=flush)
        return records[0] if records else None

    def fetch_by_id(self, kind: RecordKind, record_id: uuid.UUID) -> ManagedRecord | None:
        """First record with the identifier, in insertion order."""
        records = self._fetch(kind, "id = ?", (str(record_id),), limit=1)
        return records[0] if records else None

    def fetch_title_contains(self, kind: RecordKind, text: str) -> list[ManagedRecord]:
        return self._fetch(kind, "instr(fold(title), ?) > 0", (fold_text(text),))

    def fetch_most_recent(
        self, kind: RecordKind, k: int = 1, by: Recency = Recency.CREATED
    ) -> list[ManagedRecord]:
        """At most k records, newest first. Ties keep SQLite's native order."""
        if k < 1:
            return []
        return self._fetch(kind, order=f"{Recency(by).value} DESC", limit=k)

    def fetch_all(self, kind: RecordKind, flush: bool = True) -> list[ManagedRecord]:
        """Every record of a kind.

        Observers reading from other threads pass flush=False so they
        never commit assignments the caller has not saved.
        """
        return self._fetch(kind, flush=flush)

    def count(self, kind: RecordKind) -> int:
        rows = self._query(f"SELECT COUNT(*) AS count FROM {kind.table}")
        return rows[0]["count"] if rows else 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> RecordStore:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - closes connection."""
        self.close()


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_storage(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


__all__ = [
    "REFERENCE_SCHEME",
    "SCHEMA_VERSION",
    "ChangeType",
    "ObjectChange",
    "StoreChangeNotification",
    "HistoryEntry",
    "ChangeObserver",
    "RecordStore",
    "coerce_identifier",
    "fold_text",
]
