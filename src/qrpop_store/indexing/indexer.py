"""Search indexer - keeps the search index consistent with the store.

The indexer observes store change notifications and projects every
changed QR record into searchable attributes on a background worker, so
indexing never blocks the caller that changed the store. Template records
are not indexed.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor

from ..config import DEFAULT_SEARCH_DOMAIN, DEFAULT_THUMBNAIL_SIZE, PersistenceConfig
from ..errors import PayloadDecodeError, ThumbnailError
from ..payloads import decode_builder
from ..persistence.database import ChangeType, RecordStore, StoreChangeNotification
from ..records import ManagedRecord, QRRecord, RecordKind
from .search_index import (
    InMemorySearchIndex,
    SearchableItem,
    SearchableItemAttributes,
    SearchIndex,
)
from .thumbnails import jpeg_thumbnail

logger = logging.getLogger(__name__)

FALLBACK_DISPLAY_NAME = "Archived QR Code"
FALLBACK_BUILDER_TITLE = "Generic"


class SearchIndexer(ABC):
    """Capability interface for search indexing."""

    @property
    @abstractmethod
    def is_indexing(self) -> bool:
        pass

    @abstractmethod
    def start_indexing(self) -> None:
        pass

    @abstractmethod
    def stop_indexing(self) -> None:
        """Stop projecting changes. Existing entries stay indexed."""
        pass

    def flush(self, timeout: float | None = None) -> None:
        """Wait until queued indexing work is done."""

    def purge(self) -> int:
        """Remove every entry this indexer created.

        Returns:
            Number of entries removed
        """
        return 0


class NoOpSearchIndexer(SearchIndexer):
    """Indexer used when search indexing is unavailable or disabled."""

    @property
    def is_indexing(self) -> bool:
        return False

    def start_indexing(self) -> None:
        logger.debug("Search indexing unavailable; start ignored")

    def stop_indexing(self) -> None:
        pass


class QRCodeSearchDelegate(SearchIndexer):
    """Projects QR records into a search index.

    Example:
        delegate = QRCodeSearchDelegate(store, InMemorySearchIndex())
        delegate.start_indexing()
        store.insert(QRRecord(id=uuid.uuid4(), title="Menu"))
        delegate.flush()
    """

    def __init__(
        self,
        store: RecordStore,
        index: SearchIndex,
        domain_identifier: str = DEFAULT_SEARCH_DOMAIN,
        thumbnail_size: int = DEFAULT_THUMBNAIL_SIZE,
    ) -> None:
        """Initialize the delegate without starting it.

        Args:
            store: Store whose notifications are observed
            index: Search engine receiving the projected entries
            domain_identifier: Domain under which entries are grouped
            thumbnail_size: Pixel size of entry thumbnails
        """
        self.store = store
        self.index = index
        self.domain_identifier = domain_identifier
        self.thumbnail_size = thumbnail_size
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    @property
    def index_name(self) -> str:
        return self.index.index_name

    @property
    def is_indexing(self) -> bool:
        return self._executor is not None

    def attribute_set(self, record: ManagedRecord) -> SearchableItemAttributes | None:
        """Searchable attributes of a record, or None if it is not indexed."""
        if not isinstance(record, QRRecord):
            return None

        builder_title: str | None = None
        try:
            builder_title = decode_builder(record.builder).title or None
        except PayloadDecodeError as e:
            logger.debug("No builder for %s: %s", record.id, e)

        thumbnail: bytes | None = None
        try:
            thumbnail = jpeg_thumbnail(record.design, self.thumbnail_size, seed=str(record.id))
        except ThumbnailError as e:
            logger.debug("No thumbnail for %s: %s", record.id, e)

        return SearchableItemAttributes(
            display_name=record.title or FALLBACK_DISPLAY_NAME,
            content_description=f"{builder_title or FALLBACK_BUILDER_TITLE} QR Code",
            kind=builder_title,
            user_created=True,
            thumbnail=thumbnail,
        )

    def _item_for(self, record: ManagedRecord) -> SearchableItem | None:
        attributes = self.attribute_set(record)
        reference = record.object_reference
        if attributes is None or reference is None:
            return None
        return SearchableItem(
            unique_identifier=reference,
            domain_identifier=self.domain_identifier,
            attributes=attributes,
        )

    def start_indexing(self) -> None:
        """Observe the store and index every existing QR record once."""
        with self._lock:
            if self._executor is not None:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="qrpop-index-"
            )
        # Observe before the snapshot so no commit falls between the two
        self.store.add_observer(self._on_change)
        with self._lock:
            if self._executor is not None:
                self._executor.submit(self._reindex_all)
        logger.info("Search indexing started (%s)", self.index_name)

    def stop_indexing(self) -> None:
        self.store.remove_observer(self._on_change)
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
            logger.info("Search indexing stopped (%s)", self.index_name)

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            executor = self._executor
        if executor is not None:
            executor.submit(lambda: None).result(timeout)

    def purge(self) -> int:
        removed = self.index.delete_all(self.domain_identifier)
        logger.info("Purged %d entries from %s", removed, self.index_name)
        return removed

    def _on_change(self, notification: StoreChangeNotification) -> None:
        with self._lock:
            if self._executor is None:
                return
            self._executor.submit(self._process, notification)

    def _process(self, notification: StoreChangeNotification) -> None:
        try:
            items: list[SearchableItem] = []
            stale: list[str] = []
            for change in notification.of_kind(RecordKind.QR):
                if change.change_type is ChangeType.DELETE:
                    stale.append(change.reference)
                    continue
                record = self.store.object_for_reference(change.reference, flush=False)
                item = self._item_for(record) if record is not None else None
                if item is None:
                    stale.append(change.reference)
                else:
                    items.append(item)

            if items:
                self.index.index_items(items)
            if stale:
                self.index.delete_items(stale)
        except Exception:
            # Runs on the worker thread; the submitting caller never sees the result
            logger.exception("Indexing %d changes failed", len(notification.changes))

    def _reindex_all(self) -> None:
        try:
            records = self.store.fetch_all(RecordKind.QR, flush=False)
            items = [item for item in map(self._item_for, records) if item is not None]
            self.index.index_items(items)
            logger.info("Indexed %d existing QR records", len(items))
        except Exception:
            logger.exception("Initial indexing of %s failed", self.index_name)


def create_search_indexer(
    config: PersistenceConfig,
    store: RecordStore,
    index: SearchIndex | None = None,
) -> SearchIndexer:
    """Factory function to select the search indexer at startup.

    Args:
        config: Persistence configuration
        store: Store the indexer observes
        index: Search engine to use; an in-memory index if None

    Returns:
        QRCodeSearchDelegate when indexing is enabled, otherwise NoOpSearchIndexer
    """
    if not config.search_indexing:
        return NoOpSearchIndexer()
    return QRCodeSearchDelegate(
        store,
        index if index is not None else InMemorySearchIndex(config.search_index_name),
        domain_identifier=config.search_domain_identifier,
        thumbnail_size=config.thumbnail_size,
    )


__all__ = [
    "FALLBACK_DISPLAY_NAME",
    "FALLBACK_BUILDER_TITLE",
    "SearchIndexer",
    "NoOpSearchIndexer",
    "QRCodeSearchDelegate",
    "create_search_indexer",
]
