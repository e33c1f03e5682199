"""Store location and description.

Decides where the database lives and which options are attached to it
before the store is opened.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..config import PersistenceConfig
from ..errors import SharedContainerUnavailable

logger = logging.getLogger(__name__)

DATABASE_EXTENSION = ".sqlite"
IN_MEMORY_URL = ":memory:"


@dataclass(slots=True)
class CloudSyncOptions:
    """Options consumed by the cloud-sync engine."""

    container_identifier: str


@dataclass(slots=True)
class StoreDescription:
    """Where and how a record store is opened.

    Attributes:
        url: Database file path, or ':memory:' for a discardable store
        remote_change_notifications: Publish a notification after every commit
        history_tracking: Record every change in the persistent history table
        cloud_sync: Cloud-sync options, None when replication is off
    """

    url: str
    remote_change_notifications: bool = True
    history_tracking: bool = True
    cloud_sync: CloudSyncOptions | None = None

    @property
    def in_memory(self) -> bool:
        return self.url == IN_MEMORY_URL


def store_path(group_identifier: str, database_name: str, shared_root: Path | None) -> Path:
    """Return the path of the database inside the shared group container.

    Creates the container directory if needed.

    Raises:
        SharedContainerUnavailable: If the container cannot be resolved or created
    """
    if shared_root is None:
        logger.critical("The shared file container could not be resolved.")
        raise SharedContainerUnavailable(group_identifier)

    container = Path(shared_root) / group_identifier
    try:
        container.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.critical("The shared file container could not be created: %s", e)
        raise SharedContainerUnavailable(str(container)) from e

    return container / f"{database_name}{DATABASE_EXTENSION}"


def describe_store(config: PersistenceConfig) -> StoreDescription:
    """Build the store description for a configuration.

    - In-memory: nothing survives the process and cloud sync stays off.
    - On disk: the file lives in the shared group container; cloud-sync
      options are attached when sync is enabled and an account is present.
    """
    if config.in_memory:
        return StoreDescription(url=IN_MEMORY_URL)

    path = store_path(config.group_identifier, config.database_name, config.shared_root)
    description = StoreDescription(url=str(path))
    if config.cloud_sync_enabled:
        description.cloud_sync = CloudSyncOptions(
            container_identifier=config.cloud_container_identifier
        )
    elif config.use_cloud_sync:
        logger.info("Cloud sync requested but no cloud account is available")
    return description


__all__ = [
    "DATABASE_EXTENSION",
    "IN_MEMORY_URL",
    "CloudSyncOptions",
    "StoreDescription",
    "store_path",
    "describe_store",
]
