import logging
import mimetypes
import posixpath
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .errors import ObjectNotFound, PathTraversalRejected, StorageError
from .storage import StorageEngine

DANGEROUS_PATTERNS = [
    re.compile(r"\.\.[/\\]"),
    re.compile(r"(^|/)\.\.$"),
    re.compile(r"\x00"),
    re.compile(r"^/etc/"),
    re.compile(r"^/proc/"),
    re.compile(r"^/sys/"),
    re.compile(r"^/dev/"),
]
LONG_CACHE = "public, max-age=3600"
NO_CACHE = "no-cache"


def is_path_safe(request_path: str) -> bool:
    return not any(p.search(request_path) for p in DANGEROUS_PATTERNS)


def content_type_for(key: str) -> str:
    name = posixpath.basename(key)
    if key.endswith("/") or not posixpath.splitext(name)[1]:
        return "text/html"
    ctype, _ = mimetypes.guess_type(name)
    return ctype or "application/octet-stream"


def cache_control_for(key: str, content_type: str) -> str:
    if content_type.startswith(("image/", "font/")) or key.endswith((".css", ".js")):
        return LONG_CACHE
    return NO_CACHE


@dataclass(frozen=True)
class ResolvedResource:
    key: str
    content: bytes
    content_type: str
    cache_control: str


class ArchiveResolver:
    def __init__(
        self,
        storage: StorageEngine,
        cache_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.cache_ttl = cache_ttl
        self.clock = clock
        self._latest: Dict[str, Tuple[str, float]] = {}

    def find_latest_archive(self, domain: str) -> Optional[str]:
        prefix = f"{domain}/source/"
        try:
            keys = self.storage.list(prefix)
        except StorageError as e:
            logging.error("Error finding latest archive for %s: %s", domain, e)
            return None
        timestamps = set()
        for key in keys:
            parts = key.split("/")
            if len(parts) >= 3 and parts[1] == "source" and parts[2]:
                timestamps.add(parts[2])
        if not timestamps:
            return None
        return f"{domain}/source/{max(timestamps)}"

    def latest_archive(self, domain: str) -> Optional[str]:
        now = self.clock()
        cached = self._latest.get(domain)
        if cached and now - cached[1] <= self.cache_ttl:
            return cached[0]
        path = self.find_latest_archive(domain)
        if path is not None:
            self._latest[domain] = (path, now)
            logging.info("Using archive: %s", path)
        return path

    def build_resource_path(
        self, archive_path: str, domain: str, resource_path: str
    ) -> str:
        clean = resource_path.lstrip("/")
        if clean == "":
            return f"{archive_path}/{domain}/index.html"
        return f"{archive_path}/{domain}/{clean}"

    def resource_exists(self, path: str) -> bool:
        try:
            return self.storage.exists(path)
        except StorageError as e:
            logging.error("Error checking resource existence at %s: %s", path, e)
            return False

    def get_resource(self, path: str) -> Optional[bytes]:
        try:
            return self.storage.read(path)
        except StorageError as e:
            logging.debug("Error reading resource at %s: %s", path, e)
            return None

    def locate(
        self, archive_path: str, domain: str, request_path: str
    ) -> Optional[str]:
        resource_path = request_path.lstrip("/") or "index.html"
        key = self.build_resource_path(archive_path, domain, resource_path)
        if self.resource_exists(key):
            return key
        if "." in posixpath.basename(resource_path.rstrip("/")):
            return None
        index_path = (
            f"{resource_path}index.html"
            if resource_path.endswith("/")
            else f"{resource_path}/index.html"
        )
        key = self.build_resource_path(archive_path, domain, index_path)
        return key if self.resource_exists(key) else None

    def resolve(self, domain: str, request_path: str) -> ResolvedResource:
        if not is_path_safe(request_path):
            raise PathTraversalRejected(request_path)
        archive_path = self.latest_archive(domain)
        if archive_path is None:
            raise ObjectNotFound(f"{domain}/source/")
        key = self.locate(archive_path, domain, request_path)
        if key is None:
            raise ObjectNotFound(request_path)
        content = self.get_resource(key)
        if content is None:
            raise ObjectNotFound(key)
        ctype = content_type_for(key)
        return ResolvedResource(key, content, ctype, cache_control_for(key, ctype))
