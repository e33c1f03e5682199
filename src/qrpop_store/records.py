"""Record kinds held by the store.

A record handle returned by the store stays attached to it: assigning a
persistent field marks the handle as changed and the next
``RecordStore.save()`` writes it back. The identifier and creation
timestamp cannot be reassigned once attached.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from .persistence.database import RecordStore

# Fixed width so that lexical order equals chronological order in SQL
_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

IMMUTABLE_FIELDS = frozenset({"id", "created"})


class RecordKind(str, Enum):
    """The two entity schemas, valued by their entity names."""

    QR = "QREntity"
    TEMPLATE = "TemplateEntity"

    @property
    def table(self) -> str:
        return _TABLES[self]

    @property
    def record_class(self) -> type[ManagedRecord]:
        return QRRecord if self is RecordKind.QR else TemplateRecord

    @classmethod
    def parse(cls, value: RecordKind | str) -> RecordKind:
        """Resolve a kind from itself or its entity name.

        Raises:
            ValueError: If the name is not a known entity
        """
        if isinstance(value, RecordKind):
            return value
        return cls(value)


_TABLES = {
    RecordKind.QR: "qr_entities",
    RecordKind.TEMPLATE: "template_entities",
}


class Recency(str, Enum):
    """The timestamps records can be ordered by."""

    CREATED = "created"
    VIEWED = "viewed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_storage(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC string (naive = UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_STORAGE_FORMAT)


def from_storage(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass(eq=False)
class ManagedRecord:
    """Fields shared by both record kinds."""

    kind: ClassVar[RecordKind]

    id: uuid.UUID
    title: str | None = None
    created: datetime = field(default_factory=utcnow)
    viewed: datetime = field(default_factory=utcnow)
    design: bytes | None = None

    _store: RecordStore | None = field(default=None, init=False, repr=False)
    _row: int | None = field(default=None, init=False, repr=False)
    _changed: set[str] = field(default_factory=set, init=False, repr=False)

    @classmethod
    def persistent_fields(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if not f.name.startswith("_"))

    def __setattr__(self, name: str, value: Any) -> None:
        store = self.__dict__.get("_store")
        if store is not None and name in IMMUTABLE_FIELDS:
            raise AttributeError(f"{type(self).__name__}.{name} cannot be reassigned")
        object.__setattr__(self, name, value)
        if store is not None and not name.startswith("_"):
            self._changed.add(name)
            store._mark_changed(self)

    @property
    def object_reference(self) -> str | None:
        """Stable reference of this record, or None if it is not stored."""
        if self._store is None or self._row is None:
            return None
        return self._store.reference_for(self.kind, self._row)

    @property
    def has_changes(self) -> bool:
        return bool(self._changed)

    def field_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.persistent_fields()}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ManagedRecord):
            return NotImplemented
        if self._row is not None and self._store is not None:
            return (
                self.kind is other.kind
                and self._store is other._store
                and self._row == other._row
            )
        return self is other

    def __hash__(self) -> int:
        if self._row is not None:
            return hash((self.kind, self._row))
        return id(self)


@dataclass(eq=False)
class QRRecord(ManagedRecord):
    """An archived QR code."""

    kind: ClassVar[RecordKind] = RecordKind.QR

    builder: bytes | None = None


@dataclass(eq=False)
class TemplateRecord(ManagedRecord):
    """A reusable design template."""

    kind: ClassVar[RecordKind] = RecordKind.TEMPLATE

    logo: bytes | None = None


__all__ = [
    "RecordKind",
    "Recency",
    "ManagedRecord",
    "QRRecord",
    "TemplateRecord",
    "utcnow",
    "to_storage",
    "from_storage",
]
