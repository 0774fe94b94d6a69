from .crawler import CrawlContext, Crawler, ResourceRecord, archive_site
from .resolver import ArchiveResolver
from .retry import RetryPolicy
from .settings import Settings, StorageConfig
from .storage import (
    FilesystemStorage,
    S3Storage,
    StorageEngine,
    create_storage_engine,
    generate_archive_path,
)

__version__ = "0.1.0"

__all__ = [
    "ArchiveResolver",
    "CrawlContext",
    "Crawler",
    "FilesystemStorage",
    "ResourceRecord",
    "RetryPolicy",
    "S3Storage",
    "Settings",
    "StorageConfig",
    "StorageEngine",
    "archive_site",
    "create_storage_engine",
    "generate_archive_path",
]
