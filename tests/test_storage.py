"""
Unit tests for storage engines.

Tests cover:
- Archive path and key helpers
- FilesystemStorage operations and root containment
- S3Storage against an in-memory client
- Engine factory
"""

import re
from datetime import datetime, timezone

import pytest

from site_archiver.errors import (
    ConfigError,
    ObjectNotFound,
    StorageUnavailable,
    StorageWriteError,
)
from site_archiver.retry import RetryPolicy
from site_archiver.settings import FilesystemConfig, S3Config, StorageConfig
from site_archiver.storage import (
    FilesystemStorage,
    S3Storage,
    chunked,
    create_storage_engine,
    generate_archive_path,
    has_parent_segment,
    join_key,
    sanitize_s3_key,
)

from .conftest import FakeS3Client, client_error


class TestKeys:
    """Tests for key helpers."""

    def test_archive_path_format(self):
        now = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
        assert (
            generate_archive_path("example.com", now)
            == "example.com/source/2024-01-02T03-04-05Z"
        )

    def test_archive_path_defaults_to_now(self):
        path = generate_archive_path("example.com")
        assert re.fullmatch(
            r"example\.com/source/\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}Z", path
        )

    def test_join_key(self):
        assert join_key("a/source/t/", "/example.com/index.html") == (
            "a/source/t/example.com/index.html"
        )

    @pytest.mark.parametrize(
        "key,expected",
        [
            ("//a//b/", "a/b"),
            ("/x/y.css", "x/y.css"),
            ("a/b/index.html", "a/b/index.html"),
            ("a///b", "a/b"),
        ],
    )
    def test_sanitize_s3_key(self, key, expected):
        assert sanitize_s3_key(key) == expected

    @pytest.mark.parametrize(
        "key,expected",
        [
            ("a/../b", True),
            ("..", True),
            ("a\\..\\b", True),
            ("a/..b/c", False),
            ("a/b_.._c", False),
        ],
    )
    def test_has_parent_segment(self, key, expected):
        assert has_parent_segment(key) is expected

    def test_chunked(self):
        assert [list(c) for c in chunked(["a", "b", "c"], 2)] == [["a", "b"], ["c"]]


class TestFilesystemStorage:
    """Tests for FilesystemStorage."""

    def test_initialize_is_idempotent(self, tmp_path):
        storage = FilesystemStorage(str(tmp_path / "root"))
        storage.initialize()
        storage.initialize()
        assert (tmp_path / "root").is_dir()

    def test_save_creates_directories(self, fs_storage):
        key = "example.com/source/t/example.com/css/site.css"
        fs_storage.save(key, b"body{}")
        assert fs_storage.read(key) == b"body{}"

    def test_save_overwrites(self, fs_storage):
        fs_storage.save("k/a.txt", b"one")
        fs_storage.save("k/a.txt", b"two")
        assert fs_storage.read("k/a.txt") == b"two"

    def test_exists(self, fs_storage):
        fs_storage.save("k/a.txt", b"x")
        assert fs_storage.exists("k/a.txt")
        assert not fs_storage.exists("k/b.txt")
        assert not fs_storage.exists("k")

    def test_read_missing(self, fs_storage):
        with pytest.raises(ObjectNotFound) as info:
            fs_storage.read("nope.txt")
        assert info.value.key == "nope.txt"

    def test_delete_is_idempotent(self, fs_storage):
        fs_storage.save("k/a.txt", b"x")
        fs_storage.delete("k/a.txt")
        fs_storage.delete("k/a.txt")
        assert not fs_storage.exists("k/a.txt")

    def test_list_by_prefix(self, fs_storage):
        fs_storage.save("example.com/source/t1/example.com/index.html", b"1")
        fs_storage.save("example.com/source/t1/example.com/css/a.css", b"2")
        fs_storage.save("example.com/source/t2/example.com/index.html", b"3")
        fs_storage.save("other.org/source/t1/other.org/index.html", b"4")

        keys = sorted(fs_storage.list("example.com/source/t1/"))
        assert keys == [
            "example.com/source/t1/example.com/css/a.css",
            "example.com/source/t1/example.com/index.html",
        ]
        assert len(fs_storage.list("example.com/source/")) == 3
        assert fs_storage.list("missing.com/source/") == []

    def test_cleanup_incomplete_only_touches_prefix(self, fs_storage):
        fs_storage.save("example.com/source/t1/example.com/index.html", b"old")
        fs_storage.save("example.com/source/t2/example.com/index.html", b"keep")
        fs_storage.cleanup_incomplete("example.com/source/t1")
        assert fs_storage.list("example.com/source/t1/") == []
        assert fs_storage.exists("example.com/source/t2/example.com/index.html")

    def test_cleanup_of_missing_prefix(self, fs_storage):
        fs_storage.cleanup_incomplete("example.com/source/none")

    def test_keys_cannot_escape_root(self, fs_storage, tmp_path):
        with pytest.raises(StorageWriteError):
            fs_storage.save("../evil.txt", b"x")
        assert not (tmp_path / "evil.txt").exists()
        assert not fs_storage.exists("../../etc/passwd")

    def test_parent_segments_rejected_inside_root(self, fs_storage):
        """A key may not climb out of its archive even if it stays under the root."""
        victim = "victim.com/source/2020-01-01T00-00-00Z/victim.com/index.html"
        fs_storage.save(victim, b"ORIGINAL")
        with pytest.raises(StorageWriteError):
            fs_storage.save(
                f"example.com/source/t/example.com/../../../../{victim}", b"EVIL"
            )
        assert fs_storage.read(victim) == b"ORIGINAL"
        with pytest.raises(ObjectNotFound):
            fs_storage.read(f"example.com/../{victim}")

    def test_cleanup_failure_surfaces(self, fs_storage, monkeypatch):
        fs_storage.save("example.com/source/t1/example.com/index.html", b"old")

        def fail(path):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr("site_archiver.storage.shutil.rmtree", fail)
        with pytest.raises(StorageUnavailable):
            fs_storage.cleanup_incomplete("example.com/source/t1")
        assert fs_storage.exists("example.com/source/t1/example.com/index.html")


class TestS3Storage:
    """Tests for S3Storage."""

    def make(self, client=None, **cfg):
        client = client or FakeS3Client()
        retry = RetryPolicy(sleep=lambda _: None)
        return S3Storage(S3Config(**cfg), client=client, retry=retry), client

    def test_round_trip_with_sanitized_keys(self):
        storage, client = self.make()
        storage.save("//a//b/", b"data")
        assert "a/b" in client.objects
        assert storage.exists("a/b")
        assert storage.read("/a/b") == b"data"
        storage.delete("a/b")
        assert not storage.exists("a/b")

    def test_parent_segments_rejected(self):
        storage, client = self.make()
        with pytest.raises(StorageWriteError):
            storage.save("example.com/source/t/../../victim.com/index.html", b"x")
        assert "put_object" not in client.calls

    def test_exists_missing_is_single_call(self):
        storage, client = self.make()
        assert not storage.exists("missing")
        assert client.calls.count("head_object") == 1

    def test_read_missing(self):
        storage, _ = self.make()
        with pytest.raises(ObjectNotFound):
            storage.read("missing")

    def test_delete_missing_is_ignored(self):
        storage, client = self.make()
        client.fail("delete_object", client_error("NoSuchKey", 404))
        storage.delete("missing")

    def test_exists_other_errors_surface(self):
        storage, client = self.make()
        client.fail("head_object", client_error("AccessDenied", 403))
        with pytest.raises(StorageUnavailable):
            storage.exists("k")

    def test_list_paginates(self):
        storage, client = self.make(FakeS3Client(page_size=2))
        for i in range(5):
            client.objects[f"example.com/source/t/{i}.css"] = b""
        client.objects["example.com/sourcex/t/0.css"] = b""
        keys = storage.list("example.com/source/")
        assert sorted(keys) == [f"example.com/source/t/{i}.css" for i in range(5)]
        assert client.calls.count("list_objects_v2") == 3

    def test_cleanup_incomplete_batches(self):
        storage, client = self.make()
        for i in range(2500):
            client.objects[f"p/source/t/{i}"] = b""
        client.objects["p/source/other/keep"] = b""
        storage.cleanup_incomplete("p/source/t")
        assert client.calls.count("delete_objects") == 3
        assert list(client.objects) == ["p/source/other/keep"]

    def test_save_retries_transient_errors(self):
        storage, client = self.make()
        client.fail("put_object", client_error("x", 503), client_error("x", 503))
        storage.save("k", b"v")
        assert client.objects["k"] == b"v"
        assert client.calls.count("put_object") == 3

    def test_save_failure_after_retries(self):
        storage, client = self.make()
        client.fail("put_object", *[client_error("x", 500) for _ in range(4)])
        with pytest.raises(StorageWriteError) as info:
            storage.save("k", b"v")
        assert info.value.key == "k"
        assert client.calls.count("put_object") == 4

    def test_initialize_creates_missing_bucket(self):
        storage, client = self.make(FakeS3Client(bucket_exists=False))
        storage.initialize()
        assert client.calls == ["head_bucket", "create_bucket"]
        assert client.bucket_exists

    def test_initialize_existing_bucket(self):
        storage, client = self.make()
        storage.initialize()
        assert client.calls == ["head_bucket"]

    def test_initialize_denied(self):
        storage, client = self.make()
        client.fail("head_bucket", client_error("AccessDenied", 403))
        with pytest.raises(StorageUnavailable):
            storage.initialize()


class TestFactory:
    """Tests for create_storage_engine."""

    def test_filesystem(self, tmp_path):
        cfg = StorageConfig("filesystem", filesystem=FilesystemConfig(str(tmp_path)))
        assert isinstance(create_storage_engine(cfg), FilesystemStorage)

    def test_s3(self):
        cfg = StorageConfig("s3", s3=S3Config())
        assert isinstance(create_storage_engine(cfg), S3Storage)

    def test_missing_section(self):
        with pytest.raises(ConfigError):
            create_storage_engine(StorageConfig("s3"))

    def test_unknown_engine(self):
        with pytest.raises(ConfigError):
            create_storage_engine(StorageConfig("ftp"))
