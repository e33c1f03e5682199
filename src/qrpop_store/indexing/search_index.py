"""Search Index - interface to the on-device search engine.

The engine itself is an external collaborator; this module defines what
the indexer needs from it and an in-memory engine used when no platform
engine is available and in tests.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SearchableItemAttributes:
    """Searchable projection of a record."""

    display_name: str
    content_description: str
    kind: str | None = None
    user_created: bool = True
    thumbnail: bytes | None = None
    content_type: str = "text"


@dataclass(slots=True)
class SearchableItem:
    """An entry of the search index."""

    unique_identifier: str
    domain_identifier: str
    attributes: SearchableItemAttributes


class SearchIndex(ABC):
    """Abstract base class for search engines."""

    def __init__(self, index_name: str) -> None:
        self.index_name = index_name

    @abstractmethod
    def index_items(self, items: list[SearchableItem]) -> None:
        """Add or replace entries, keyed by unique identifier."""
        pass

    @abstractmethod
    def delete_items(self, unique_identifiers: Iterable[str]) -> int:
        """Remove entries.

        Returns:
            Number of entries removed
        """
        pass

    @abstractmethod
    def delete_all(self, domain_identifier: str) -> int:
        """Remove every entry of a domain.

        Returns:
            Number of entries removed
        """
        pass

    @abstractmethod
    def get(self, unique_identifier: str) -> SearchableItem | None:
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class InMemorySearchIndex(SearchIndex):
    """Dictionary-backed search index."""

    def __init__(self, index_name: str = "qrcode-index") -> None:
        super().__init__(index_name)
        self._items: dict[str, SearchableItem] = {}
        self._lock = threading.Lock()

    def index_items(self, items: list[SearchableItem]) -> None:
        with self._lock:
            for item in items:
                self._items[item.unique_identifier] = item
        logger.debug("Indexed %d items in %s", len(items), self.index_name)

    def delete_items(self, unique_identifiers: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for identifier in unique_identifiers:
                if self._items.pop(identifier, None) is not None:
                    removed += 1
        return removed

    def delete_all(self, domain_identifier: str) -> int:
        with self._lock:
            doomed = [
                key
                for key, item in self._items.items()
                if item.domain_identifier == domain_identifier
            ]
            for key in doomed:
                del self._items[key]
        return len(doomed)

    def get(self, unique_identifier: str) -> SearchableItem | None:
        with self._lock:
            return self._items.get(unique_identifier)

    def items(self) -> list[SearchableItem]:
        with self._lock:
            return list(self._items.values())

    def search(self, text: str) -> list[SearchableItem]:
        """Items whose display name or description contains text (case-insensitive)."""
        needle = text.casefold()
        return [
            item
            for item in self.items()
            if needle in item.attributes.display_name.casefold()
            or needle in item.attributes.content_description.casefold()
        ]

    def count(self) -> int:
        with self._lock:
            return len(self._items)


__all__ = [
    "SearchableItemAttributes",
    "SearchableItem",
    "SearchIndex",
    "InMemorySearchIndex",
]
