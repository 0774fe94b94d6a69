"""
Shared fakes for the archiver tests.

Nothing here touches the network or launches a browser:
- FakeBrowser / FakePage / FakeResponse mimic the sync Playwright surface
  the crawler uses (new_page, on, goto, content, close).
- FakeSession mimics requests.Session.get for direct fetches.
- FakeS3Client keeps objects in memory and raises botocore ClientErrors.
"""

import io
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from botocore.exceptions import ClientError
from playwright.sync_api import Error as PlaywrightError

from site_archiver.storage import FilesystemStorage


def client_error(code: str, status: int, op: str = "Op") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        op,
    )


# -------------------- Browser --------------------


@dataclass
class FakeRequest:
    resource_type: str


class FakeResponse:
    def __init__(
        self,
        url: str,
        resource_type: str,
        body: bytes = b"",
        late: Optional[List["FakeResponse"]] = None,
    ):
        self.url = url
        self.request = FakeRequest(resource_type)
        self._body = body
        # responses the page delivers while this body is being read
        self.late = list(late or [])
        self.page: Optional["FakePage"] = None

    def body(self) -> bytes:
        late, self.late = self.late, []
        for response in late:
            self.page.emit(response)
        return self._body


@dataclass
class FakeSitePage:
    html: str
    responses: List[FakeResponse] = field(default_factory=list)
    error: Optional[str] = None


class FakePage:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.handlers: Dict[str, List[Callable]] = {}
        self.url: Optional[str] = None
        self.closed = False

    def on(self, event: str, handler: Callable) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def goto(self, url: str, wait_until: str = "load", timeout: int = 0) -> None:
        self.browser.goto_log.append(url)
        site_page = self.browser.site.get(url)
        if site_page is None:
            raise PlaywrightError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        if site_page.error:
            raise PlaywrightError(site_page.error)
        self.url = url
        for response in [FakeResponse(url, "document", b"")] + site_page.responses:
            self.emit(response)

    def emit(self, response: FakeResponse) -> None:
        response.page = self
        for handler in self.handlers.get("response", []):
            handler(response)

    def content(self) -> str:
        return self.browser.site[self.url].html

    def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, site: Dict[str, FakeSitePage]):
        self.site = site
        self.goto_log: List[str] = []
        self.pages: List[FakePage] = []
        self.closed = False

    def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    def close(self) -> None:
        self.closed = True


# -------------------- HTTP --------------------


class FakeHTTPResponse:
    def __init__(self, status_code: int, content: bytes = b"", content_type: str = ""):
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": content_type} if content_type else {}


class FakeSession:
    def __init__(self, routes: Optional[Dict[str, Tuple[bytes, str]]] = None):
        self.routes = routes or {}
        self.calls: List[str] = []

    def get(self, url: str, timeout: float = 0) -> FakeHTTPResponse:
        self.calls.append(url)
        if url not in self.routes:
            return FakeHTTPResponse(404)
        body, ctype = self.routes[url]
        return FakeHTTPResponse(200, body, ctype)


# -------------------- S3 --------------------


class FakeS3Client:
    def __init__(self, bucket_exists: bool = True, page_size: int = 1000):
        self.bucket_exists = bucket_exists
        self.page_size = page_size
        self.objects: Dict[str, bytes] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}

    def fail(self, op: str, *errors: Exception) -> None:
        self.failures.setdefault(op, []).extend(errors)

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def head_bucket(self, Bucket: str) -> dict:
        self._enter("head_bucket")
        if not self.bucket_exists:
            raise client_error("404", 404, "HeadBucket")
        return {}

    def create_bucket(self, Bucket: str, **kwargs) -> dict:
        self._enter("create_bucket")
        self.bucket_exists = True
        return {}

    def put_object(self, Bucket: str, Key: str, Body: bytes) -> dict:
        self._enter("put_object")
        self.objects[Key] = Body
        return {}

    def head_object(self, Bucket: str, Key: str) -> dict:
        self._enter("head_object")
        if Key not in self.objects:
            raise client_error("404", 404, "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def get_object(self, Bucket: str, Key: str) -> dict:
        self._enter("get_object")
        if Key not in self.objects:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def delete_object(self, Bucket: str, Key: str) -> dict:
        self._enter("delete_object")
        self.objects.pop(Key, None)
        return {}

    def delete_objects(self, Bucket: str, Delete: dict) -> dict:
        self._enter("delete_objects")
        for obj in Delete["Objects"]:
            self.objects.pop(obj["Key"], None)
        return {}

    def list_objects_v2(
        self, Bucket: str, Prefix: str = "", ContinuationToken: Optional[str] = None
    ) -> dict:
        self._enter("list_objects_v2")
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        start = int(ContinuationToken or 0)
        chunk = keys[start : start + self.page_size]
        resp: dict = {"Contents": [{"Key": k} for k in chunk]}
        if start + self.page_size < len(keys):
            resp["NextContinuationToken"] = str(start + self.page_size)
        return resp


# -------------------- Fixtures --------------------


@pytest.fixture
def fs_storage(tmp_path):
    storage = FilesystemStorage(str(tmp_path / "mirror"))
    storage.initialize()
    return storage
