"""Persistence - the access facade used by the application.

Wraps a ``RecordStore`` opened from a ``PersistenceConfig`` together with
the search indexer selected for it. There is no shared instance: the
application constructs one and passes it where it is needed.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import NamedTuple

from .config import PersistenceConfig
from .errors import NotFound, PersistenceError, StoreFailure
from .indexing.indexer import SearchIndexer, create_search_indexer
from .indexing.search_index import SearchIndex
from .logging import configure_from_config, get_logger, store_context
from .persistence.database import RecordStore, coerce_identifier
from .persistence.location import StoreDescription, describe_store
from .records import ManagedRecord, QRRecord, Recency, RecordKind, TemplateRecord

logger = get_logger(__name__)


def _resolve_kind(name: RecordKind | str) -> RecordKind:
    try:
        return RecordKind.parse(name)
    except ValueError as e:
        raise StoreFailure(f"unknown entity {name!r}") from e


class AllEntities(NamedTuple):
    """Every record in the store, by kind."""

    qr_entities: list[QRRecord]
    template_entities: list[TemplateRecord]


class Persistence:
    """Access facade over the record store.

    Example:
        persistence = Persistence(PersistenceConfig.for_testing())
        record = persistence.insert(QRRecord(id=uuid.uuid4(), title="Menu"))

        same = persistence.get_entity_with_id(RecordKind.QR, record.id)
        latest = persistence.get_most_recent(RecordKind.QR, 3, by=Recency.VIEWED)
        persistence.delete_all_entities()
    """

    def __init__(
        self,
        config: PersistenceConfig,
        search_index: SearchIndex | None = None,
    ) -> None:
        """Initialize the facade. The store opens on first use.

        Args:
            config: Persistence configuration
            search_index: Search engine for the indexer; in-memory if None

        Raises:
            SharedContainerUnavailable: If the on-disk location cannot be resolved
        """
        self.config = config
        self.description: StoreDescription = describe_store(config)
        self._search_index = search_index
        self._store: RecordStore | None = None
        self._indexer: SearchIndexer | None = None

    @classmethod
    def from_env(cls, search_index: SearchIndex | None = None) -> Persistence:
        """Build a facade from QRPOP_* variables and set up logging from them."""
        config = PersistenceConfig.from_env()
        configure_from_config(config)
        return cls(config, search_index)

    @property
    def store(self) -> RecordStore:
        """The record store, opened and indexed on first access."""
        if self._store is None:
            with store_context(self.description):
                store = RecordStore(self.description)
                if store.load():
                    logger.info("store_loaded", store_uuid=store.store_uuid)
                else:
                    logger.error("container_load_failed", error=str(store.load_error))
                self._store = store
                self._indexer = create_search_indexer(
                    self.config, store, self._search_index
                )
                if store.is_loaded:
                    self._indexer.start_indexing()
        return self._store

    @property
    def search_indexer(self) -> SearchIndexer:
        if self._indexer is None:
            _ = self.store
        assert self._indexer is not None
        return self._indexer

    @property
    def cloud_available(self) -> bool:
        return self.config.cloud_available

    def toggle_search_indexing(self, enabled: bool, purge: bool = False) -> None:
        """Start or stop search indexing.

        Args:
            enabled: Start indexing if True, stop it otherwise
            purge: When stopping, also remove the entries already indexed
        """
        indexer = self.search_indexer
        if enabled:
            indexer.start_indexing()
            return
        indexer.stop_indexing()
        if purge:
            indexer.purge()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, record: ManagedRecord) -> ManagedRecord:
        """Insert a new record with its caller-supplied identifier."""
        return self.store.insert(record)

    def save(self) -> int:
        """Write pending field assignments made on record handles."""
        return self.store.save()

    def delete_entity(self, name: RecordKind | str) -> int:
        """Delete every record of a kind in one batch.

        Args:
            name: Record kind or its entity name ("QREntity", "TemplateEntity")

        Returns:
            Number of records deleted

        Raises:
            StoreFailure: If the kind is unknown or the store rejects the delete
        """
        kind = _resolve_kind(name)
        deleted = self.store.batch_delete(kind)
        logger.info("entities_deleted", entity=kind.value, count=deleted)
        return deleted

    def delete_all_entities(self) -> int:
        """Delete every record of every kind, one batch per kind.

        Not atomic across kinds: if a later kind fails, earlier kinds stay
        deleted.

        Returns:
            Number of records deleted
        """
        return sum(self.delete_entity(kind) for kind in RecordKind)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_object_reference(
        self, reference: str | None, kind: RecordKind | None = None
    ) -> ManagedRecord | None:
        """Resolve a stable reference to a record, or None.

        Args:
            reference: Reference previously read from ``record.object_reference``
            kind: Only accept records of this kind
        """
        record = self.store.object_for_reference(reference)
        if record is None or (kind is not None and record.kind is not kind):
            return None
        return record

    def get_qr_entity_with_reference(self, reference: str | None) -> QRRecord | None:
        return self.get_by_object_reference(reference, RecordKind.QR)

    def get_template_entity_with_reference(
        self, reference: str | None
    ) -> TemplateRecord | None:
        return self.get_by_object_reference(reference, RecordKind.TEMPLATE)

    def get_entity_with_id(
        self, kind: RecordKind | str, identifier: uuid.UUID | str | None
    ) -> ManagedRecord:
        """Fetch the record of a kind with an identifier.

        Duplicated identifiers resolve to the first record inserted.

        Raises:
            InvalidIdentifier: If identifier is None or not a UUID
            NotFound: If no record has the identifier
            StoreFailure: If the kind is unknown or the query fails
        """
        kind = _resolve_kind(kind)
        try:
            identifier = coerce_identifier(identifier)
        except PersistenceError:
            logger.info("invalid_identifier_requested", entity=kind.value)
            raise

        record = self.store.fetch_by_id(kind, identifier)
        if record is None:
            logger.warning("entity_not_found", entity=kind.value, id=str(identifier))
            raise NotFound(f"{kind.value} {identifier}")
        return record

    def get_qr_entity_with_id(self, identifier: uuid.UUID | str | None) -> QRRecord:
        return self.get_entity_with_id(RecordKind.QR, identifier)

    def get_template_entity_with_id(
        self, identifier: uuid.UUID | str | None
    ) -> TemplateRecord:
        return self.get_entity_with_id(RecordKind.TEMPLATE, identifier)

    def get_entities_with_ids(
        self, kind: RecordKind | str, identifiers: Iterable[uuid.UUID | str | None]
    ) -> list[ManagedRecord]:
        """Fetch the records matching identifiers, skipping any that fail.

        Returns:
            Matching records in the order of identifiers; empty if none match
        """
        kind = _resolve_kind(kind)
        results: list[ManagedRecord] = []
        for identifier in identifiers:
            try:
                results.append(self.get_entity_with_id(kind, identifier))
            except PersistenceError:
                continue
        return results

    def get_entities_with_title(self, kind: RecordKind | str, text: str) -> list[ManagedRecord]:
        """Records whose title contains text, ignoring case and diacritics."""
        return self.store.fetch_title_contains(_resolve_kind(kind), text)

    def get_most_recent(
        self,
        kind: RecordKind | str,
        k: int = 1,
        by: Recency = Recency.CREATED,
    ) -> list[ManagedRecord]:
        """The k most recent records, newest first.

        Records with equal timestamps come back in no guaranteed order.
        """
        return self.store.fetch_most_recent(_resolve_kind(kind), k, Recency(by))

    def get_all(self, kind: RecordKind | str) -> list[ManagedRecord]:
        return self.store.fetch_all(_resolve_kind(kind))

    def get_all_qr_entities(self) -> list[QRRecord]:
        return self.get_all(RecordKind.QR)

    def get_all_template_entities(self) -> list[TemplateRecord]:
        return self.get_all(RecordKind.TEMPLATE)

    def get_all_entities(self) -> AllEntities:
        return AllEntities(
            qr_entities=self.get_all_qr_entities(),
            template_entities=self.get_all_template_entities(),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop indexing and close the store."""
        if self._indexer is not None:
            self._indexer.stop_indexing()
        if self._store is not None:
            self._store.close()
            self._store = None
            self._indexer = None

    def __enter__(self) -> Persistence:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = ["AllEntities", "Persistence"]
