import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    ConfigError,
    ObjectNotFound,
    StorageUnavailable,
    StorageWriteError,
)
from .retry import RetryPolicy, error_code, error_status
from .settings import S3Config, StorageConfig

MULTI_SLASH_RE = re.compile(r"/+")
LEADING_SLASH_RE = re.compile(r"^/+")
TRAILING_SLASH_RE = re.compile(r"/+$")
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
DELETE_BATCH = 1000

# -------------------- Keys --------------------


def generate_archive_path(domain: str, now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"{domain}/source/{ts.strftime('%Y-%m-%dT%H-%M-%SZ')}"


def join_key(*parts: str) -> str:
    return MULTI_SLASH_RE.sub("/", "/".join(p.strip("/") for p in parts if p))


def sanitize_s3_key(key: str) -> str:
    key = LEADING_SLASH_RE.sub("", key)
    key = MULTI_SLASH_RE.sub("/", key)
    if not key.endswith("/index.html"):
        key = TRAILING_SLASH_RE.sub("", key)
    return key


def has_parent_segment(key: str) -> bool:
    return ".." in re.split(r"[/\\]", key)


def chunked(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


# -------------------- Engine --------------------


class StorageEngine:
    def initialize(self) -> None:
        raise NotImplementedError

    def save(self, key: str, content: bytes) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def read(self, key: str) -> bytes:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list(self, prefix: str) -> List[str]:
        raise NotImplementedError

    def cleanup_incomplete(self, prefix: str) -> None:
        raise NotImplementedError


class FilesystemStorage(StorageEngine):
    def __init__(self, base_path: str):
        self.base_path = Path(base_path).resolve()

    def _path_for(self, key: str) -> Optional[Path]:
        if has_parent_segment(key):
            return None
        p = (self.base_path / key.lstrip("/")).resolve()
        if p != self.base_path and self.base_path not in p.parents:
            return None
        return p

    def initialize(self) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(
                f"cannot create storage root {self.base_path}: {e}"
            ) from e

    def save(self, key: str, content: bytes) -> None:
        p = self._path_for(key)
        if p is None:
            raise StorageWriteError(key, "key has '..' segments or escapes the root")
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(content)
        except OSError as e:
            raise StorageWriteError(key, str(e)) from e

    def exists(self, key: str) -> bool:
        p = self._path_for(key)
        return p is not None and p.is_file()

    def read(self, key: str) -> bytes:
        p = self._path_for(key)
        if p is None or not p.is_file():
            raise ObjectNotFound(key)
        try:
            return p.read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFound(key) from e
        except OSError as e:
            raise StorageUnavailable(f"cannot read {key}: {e}") from e

    def delete(self, key: str) -> None:
        p = self._path_for(key)
        if p is None:
            return
        try:
            p.unlink(missing_ok=True)
        except IsADirectoryError:
            pass

    def list(self, prefix: str) -> List[str]:
        # walk the deepest directory the prefix names, then filter
        head = prefix.lstrip("/")
        root = self._path_for(head.rsplit("/", 1)[0] if "/" in head else "")
        if root is None or not root.is_dir():
            return []
        keys: List[str] = []
        for f in root.rglob("*"):
            if not f.is_file():
                continue
            key = f.relative_to(self.base_path).as_posix()
            if key.startswith(head):
                keys.append(key)
        return keys

    def cleanup_incomplete(self, prefix: str) -> None:
        p = self._path_for(prefix)
        if p is None or p == self.base_path:
            return
        if p.is_dir():
            try:
                shutil.rmtree(p)
            except OSError as e:
                raise StorageUnavailable(
                    f"cannot remove incomplete archive {prefix}: {e}"
                ) from e
            logging.info("removed incomplete archive at %s", prefix)
            return
        for key in self.list(prefix):
            self.delete(key)


class S3Storage(StorageEngine):
    def __init__(
        self,
        config: S3Config,
        client: Any = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.bucket = config.bucket
        self.region = config.region or "us-east-1"
        self.retry = retry or RetryPolicy()
        if client is None:
            use_ssl = config.use_ssl
            if use_ssl is None:
                use_ssl = config.endpoint.startswith("https://")
            client = boto3.client(
                "s3",
                endpoint_url=config.endpoint,
                aws_access_key_id=config.access_key_id,
                aws_secret_access_key=config.secret_access_key,
                region_name=self.region,
                use_ssl=use_ssl,
                config=BotoConfig(
                    s3={
                        "addressing_style": "path"
                        if config.force_path_style
                        else "auto"
                    },
                    retries={"total_max_attempts": 1},
                ),
            )
        self.client = client

    @staticmethod
    def _is_not_found(e: Exception) -> bool:
        return error_status(e) == 404 or error_code(e) in NOT_FOUND_CODES

    def initialize(self) -> None:
        try:
            self.retry.call(self.client.head_bucket, Bucket=self.bucket)
            return
        except ClientError as e:
            if not self._is_not_found(e):
                raise StorageUnavailable(
                    f"bucket {self.bucket} not reachable: {e}"
                ) from e
        except BotoCoreError as e:
            raise StorageUnavailable(f"bucket {self.bucket} not reachable: {e}") from e
        kwargs = {"Bucket": self.bucket}
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            self.retry.call(self.client.create_bucket, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailable(f"cannot create bucket {self.bucket}: {e}") from e
        logging.info("created bucket: %s", self.bucket)

    def save(self, key: str, content: bytes) -> None:
        k = sanitize_s3_key(key)
        if has_parent_segment(k):
            raise StorageWriteError(k, "key has '..' segments")
        try:
            self.retry.call(
                self.client.put_object, Bucket=self.bucket, Key=k, Body=content
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageWriteError(k, str(e)) from e

    def exists(self, key: str) -> bool:
        k = sanitize_s3_key(key)
        try:
            self.retry.call(self.client.head_object, Bucket=self.bucket, Key=k)
            return True
        except ClientError as e:
            if self._is_not_found(e):
                return False
            raise StorageUnavailable(f"cannot stat {k}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailable(f"cannot stat {k}: {e}") from e

    def read(self, key: str) -> bytes:
        k = sanitize_s3_key(key)

        def _get() -> bytes:
            resp = self.client.get_object(Bucket=self.bucket, Key=k)
            body = resp.get("Body")
            if body is None:
                raise StorageUnavailable(f"no body returned for object: {k}")
            return body.read()

        try:
            return self.retry.call(_get)
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFound(k) from e
            raise StorageUnavailable(f"cannot read {k}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailable(f"cannot read {k}: {e}") from e

    def delete(self, key: str) -> None:
        k = sanitize_s3_key(key)
        try:
            self.retry.call(self.client.delete_object, Bucket=self.bucket, Key=k)
        except ClientError as e:
            if self._is_not_found(e):
                return
            raise StorageUnavailable(f"cannot delete {k}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailable(f"cannot delete {k}: {e}") from e

    def list(self, prefix: str) -> List[str]:
        p = sanitize_s3_key(prefix)
        if prefix.endswith("/") and p and not p.endswith("/"):
            p += "/"
        keys: List[str] = []
        token: Optional[str] = None
        while True:
            kwargs = {"Bucket": self.bucket, "Prefix": p}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                resp = self.retry.call(self.client.list_objects_v2, **kwargs)
            except (ClientError, BotoCoreError) as e:
                raise StorageUnavailable(f"cannot list {p}: {e}") from e
            for obj in resp.get("Contents") or []:
                if obj.get("Key"):
                    keys.append(obj["Key"])
            token = resp.get("NextContinuationToken")
            if not token:
                break
        return keys

    def cleanup_incomplete(self, prefix: str) -> None:
        keys = self.list(prefix)
        for batch in chunked(keys, DELETE_BATCH):
            try:
                self.retry.call(
                    self.client.delete_objects,
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as e:
                raise StorageUnavailable(f"cannot clean up {prefix}: {e}") from e
        if keys:
            logging.info("cleaned up %d incomplete files from %s", len(keys), prefix)


# -------------------- Factory --------------------


def create_storage_engine(config: StorageConfig) -> StorageEngine:
    if config.engine == "filesystem":
        if config.filesystem is None or not config.filesystem.base_path:
            raise ConfigError("Filesystem storage requires base_path configuration")
        return FilesystemStorage(config.filesystem.base_path)
    if config.engine == "s3":
        s3 = config.s3
        if s3 is None:
            raise ConfigError("S3 storage requires configuration")
        if not (
            s3.endpoint and s3.access_key_id and s3.secret_access_key and s3.bucket
        ):
            raise ConfigError(
                "S3 storage requires endpoint, access_key_id, "
                "secret_access_key, and bucket"
            )
        return S3Storage(s3)
    raise ConfigError(f"Unsupported storage engine: {config.engine}")
