"""Configuration primitives for the persistence layer."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_GROUP_IDENTIFIER = "group.shwndvs.qr-pop"
DEFAULT_DATABASE_NAME = "Database"
DEFAULT_CLOUD_CONTAINER = "iCloud.shwndvs.QR-Pop"
DEFAULT_SEARCH_DOMAIN = "shwndvs.qr-pop.archiveContent"
DEFAULT_SEARCH_INDEX_NAME = "qrcode-index"
DEFAULT_THUMBNAIL_SIZE = 180

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUTHY


def default_shared_root() -> Path | None:
    """Return the directory under which app-group containers live.

    Uses ``XDG_DATA_HOME`` when set, otherwise ``~/.local/share``. Returns
    None when neither can be determined (no home directory).
    """
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "app-groups"
    try:
        home = Path.home()
    except RuntimeError:
        return None
    return home / ".local" / "share" / "app-groups"


@dataclass(slots=True)
class PersistenceConfig:
    """Runtime configuration for the persistence layer.

    Configuration Sources (priority order):
    1. Direct constructor arguments
    2. Environment variables (QRPOP_*)
    3. Default values

    Attributes:
        in_memory: Back the store with a discardable in-memory database
        group_identifier: App-group identifier naming the shared container
        database_name: Database file name, without extension
        shared_root: Directory holding app-group containers (None = unresolvable)
        cloud_container_identifier: Identifier of the cloud-sync container
        use_cloud_sync: User preference for cloud replication
        cloud_identity_token: Opaque token present while a cloud account is signed in
        search_indexing: Select the search indexer at startup
        search_domain_identifier: Domain under which index entries are grouped
        search_index_name: Name of the on-device search index
        thumbnail_size: Pixel size of index thumbnails
        log_level: Root log level name
        log_json: JSON log lines if True, console if False, auto-detect if None
    """

    in_memory: bool = False
    group_identifier: str = DEFAULT_GROUP_IDENTIFIER
    database_name: str = DEFAULT_DATABASE_NAME
    shared_root: Path | None = None
    cloud_container_identifier: str = DEFAULT_CLOUD_CONTAINER
    use_cloud_sync: bool = True
    cloud_identity_token: str | None = None
    search_indexing: bool = True
    search_domain_identifier: str = DEFAULT_SEARCH_DOMAIN
    search_index_name: str = DEFAULT_SEARCH_INDEX_NAME
    thumbnail_size: int = DEFAULT_THUMBNAIL_SIZE
    log_level: str = "INFO"
    log_json: bool | None = None

    @property
    def cloud_available(self) -> bool:
        """True if a cloud account is present on this device."""
        return bool(self.cloud_identity_token)

    @property
    def cloud_sync_enabled(self) -> bool:
        """True if cloud-sync options should be attached to the store."""
        return not self.in_memory and self.use_cloud_sync and self.cloud_available

    @classmethod
    def from_env(cls) -> PersistenceConfig:
        """Create configuration from environment variables.

        Optional:
            QRPOP_IN_MEMORY: '1' to use a discardable in-memory store
            QRPOP_GROUP_IDENTIFIER: App-group identifier
            QRPOP_DATABASE_NAME: Database name (default: Database)
            QRPOP_SHARED_ROOT: Directory holding app-group containers
            QRPOP_CLOUD_CONTAINER: Cloud-sync container identifier
            QRPOP_USE_CLOUD_SYNC: '0' to disable cloud replication
            QRPOP_CLOUD_IDENTITY_TOKEN: Present while a cloud account is signed in
            QRPOP_SEARCH_INDEXING: '0' to disable search indexing
            QRPOP_THUMBNAIL_SIZE: Thumbnail size in pixels (default: 180)
            QRPOP_LOG_LEVEL: Log level (default: INFO)
            QRPOP_LOG_JSON: '1' for JSON log lines, '0' for console output
        """
        shared_root_env = os.environ.get("QRPOP_SHARED_ROOT")
        shared_root = Path(shared_root_env) if shared_root_env else default_shared_root()
        log_json_env = os.environ.get("QRPOP_LOG_JSON", "").strip()

        return cls(
            in_memory=_env_flag("QRPOP_IN_MEMORY", False),
            group_identifier=os.environ.get(
                "QRPOP_GROUP_IDENTIFIER", DEFAULT_GROUP_IDENTIFIER
            ),
            database_name=os.environ.get("QRPOP_DATABASE_NAME", DEFAULT_DATABASE_NAME),
            shared_root=shared_root,
            cloud_container_identifier=os.environ.get(
                "QRPOP_CLOUD_CONTAINER", DEFAULT_CLOUD_CONTAINER
            ),
            use_cloud_sync=_env_flag("QRPOP_USE_CLOUD_SYNC", True),
            cloud_identity_token=os.environ.get("QRPOP_CLOUD_IDENTITY_TOKEN") or None,
            search_indexing=_env_flag("QRPOP_SEARCH_INDEXING", True),
            thumbnail_size=int(
                os.environ.get("QRPOP_THUMBNAIL_SIZE", str(DEFAULT_THUMBNAIL_SIZE))
            ),
            log_level=os.environ.get("QRPOP_LOG_LEVEL", "INFO"),
            log_json=_env_flag("QRPOP_LOG_JSON", False) if log_json_env else None,
        )

    @classmethod
    def for_testing(cls, **overrides) -> PersistenceConfig:
        """In-memory configuration with cloud sync off."""
        overrides.setdefault("in_memory", True)
        overrides.setdefault("use_cloud_sync", False)
        return cls(**overrides)
