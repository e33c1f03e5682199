"""Persistence layer - Record store and store location."""

from .database import (
    ChangeType,
    HistoryEntry,
    ObjectChange,
    RecordStore,
    StoreChangeNotification,
)
from .location import CloudSyncOptions, StoreDescription, describe_store

__all__ = [
    "ChangeType",
    "HistoryEntry",
    "ObjectChange",
    "RecordStore",
    "StoreChangeNotification",
    "CloudSyncOptions",
    "StoreDescription",
    "describe_store",
]
