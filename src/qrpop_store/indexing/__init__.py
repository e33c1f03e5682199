"""Search indexing - Projection of QR records into an on-device search index."""

from .indexer import (
    NoOpSearchIndexer,
    QRCodeSearchDelegate,
    SearchIndexer,
    create_search_indexer,
)
from .search_index import (
    InMemorySearchIndex,
    SearchableItem,
    SearchableItemAttributes,
    SearchIndex,
)

__all__ = [
    "NoOpSearchIndexer",
    "QRCodeSearchDelegate",
    "SearchIndexer",
    "create_search_indexer",
    "InMemorySearchIndex",
    "SearchableItem",
    "SearchableItemAttributes",
    "SearchIndex",
]
