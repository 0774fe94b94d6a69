from typing import Any, Dict, Optional


class ArchiverError(Exception):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(ArchiverError):
    pass


# -------------------- Storage --------------------


class StorageError(ArchiverError):
    pass


class StorageUnavailable(StorageError):
    pass


class ObjectNotFound(StorageError):
    def __init__(self, key: str):
        super().__init__(f"object not found: {key}", {"key": key})
        self.key = key


class StorageWriteError(StorageError):
    def __init__(self, key: str, reason: str):
        super().__init__(f"failed to write {key}: {reason}", {"key": key})
        self.key = key


# -------------------- Crawl --------------------


class NavigationError(ArchiverError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"navigation failed for {url}: {reason}", {"url": url})
        self.url = url


class RewriteError(ArchiverError):
    def __init__(self, reference: str, reason: str):
        super().__init__(f"cannot rewrite {reference!r}: {reason}")
        self.reference = reference


# -------------------- Serving --------------------


class PathTraversalRejected(ArchiverError):
    def __init__(self, path: str):
        super().__init__(f"unsafe request path: {path!r}", {"path": path})
        self.path = path
