import json
import logging
import re
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse

import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import NavigationError, StorageError
from .paths import strip_fragment, url_to_local_path
from .rewrite import rewrite_css, rewrite_html
from .settings import Settings
from .storage import StorageEngine, generate_archive_path, join_key

CAPTURE_TYPES = {"document", "stylesheet", "image", "font", "script", "media"}
SVG_SPRITE_RE = re.compile(r"/svg/[^\"'\s]+\.svg")

# -------------------- HTTP --------------------


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    if headers:
        s.headers.update(headers)
    return s


def fetch_resource(
    session: requests.Session, url: str, timeout: float
) -> Optional[Tuple[bytes, str]]:
    try:
        r = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        logging.warning("error downloading %s: %s", url, e)
        return None
    if r.status_code >= 400:
        logging.debug("failed %s -> HTTP %s", url, r.status_code)
        return None
    return r.content, r.headers.get("Content-Type") or ""


def is_stylesheet(url: str, content_type: str) -> bool:
    if content_type.split(";")[0].strip().lower() == "text/css":
        return True
    return urlparse(url).path.lower().endswith(".css")


# -------------------- Crawl state --------------------


class ResourceRecord:
    """Source URL -> archive-relative local path for one crawl.

    Stylesheets being rewritten are marked pending so that references to
    them (including cyclic @imports) resolve without a second download.
    """

    def __init__(self):
        self._m: Dict[str, str] = {}
        self._pending: Set[str] = set()
        self._lock = Lock()

    def get(self, url: str) -> Optional[str]:
        with self._lock:
            return self._m.get(url)

    def lookup(self, url: str) -> Optional[str]:
        local = self.get(url)
        if local is None and urlparse(url).path == "":
            local = self.get(url + "/")
        return local

    def set(self, url: str, local_path: str) -> None:
        with self._lock:
            self._m[url] = local_path

    def claim(self, url: str) -> bool:
        with self._lock:
            if url in self._m or url in self._pending:
                return False
            self._pending.add(url)
            return True

    def release(self, url: str) -> None:
        with self._lock:
            self._pending.discard(url)

    def is_pending(self, url: str) -> bool:
        with self._lock:
            return url in self._pending

    def items(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._m.items())

    def __contains__(self, url: str) -> bool:
        return self.get(url) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._m)


@dataclass
class CrawlContext:
    start_url: str
    archive_path: str
    base_host: str
    visited: Set[str] = field(default_factory=set)
    resources: ResourceRecord = field(default_factory=ResourceRecord)
    queue: Deque[Tuple[str, int]] = field(default_factory=deque)
    pages: List[str] = field(default_factory=list)

    @classmethod
    def create(cls, start_url: str, archive_path: str) -> "CrawlContext":
        ctx = cls(start_url, archive_path, urlparse(start_url).netloc)
        ctx.queue.append((start_url, 0))
        return ctx

    def local_path(self, url: str) -> str:
        return url_to_local_path(url, self.start_url)


# -------------------- Browser --------------------


class BrowserSession:
    def __init__(self, headless: bool = True, user_agent: Optional[str] = None):
        self.headless = headless
        self.user_agent = user_agent
        self._pl = None
        self._browser = None
        self._context = None
        self.closed = False

    def _ensure_browser(self) -> None:
        if self._context is None:
            self._pl = sync_playwright().start()
            self._browser = self._pl.chromium.launch(headless=self.headless)
            self._context = self._browser.new_context(user_agent=self.user_agent)

    def new_page(self) -> Any:
        self._ensure_browser()
        return self._context.new_page()

    def close(self) -> None:
        self.closed = True
        try:
            if self._browser:
                self._browser.close()
        except PlaywrightError as e:
            logging.debug("browser close failed: %s", e)
        try:
            if self._pl:
                self._pl.stop()
        except PlaywrightError as e:
            logging.debug("playwright stop failed: %s", e)


# -------------------- Crawler --------------------


class Crawler:
    def __init__(
        self,
        storage: StorageEngine,
        settings: Optional[Settings] = None,
        browser: Any = None,
        session: Optional[requests.Session] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.browser = browser
        self.session = session or build_session(self.settings.headers)

    # ---- saving ----

    def save_resource(self, ctx: CrawlContext, url: str, body: bytes) -> str:
        existing = ctx.resources.get(url)
        if existing is not None:
            return existing
        local = ctx.local_path(url)
        self.storage.save(join_key(ctx.archive_path, local), body)
        ctx.resources.set(url, local)
        return local

    def _save_stylesheet(
        self, ctx: CrawlContext, url: str, body: bytes
    ) -> Optional[str]:
        if not ctx.resources.claim(url):
            return ctx.resources.get(url) or ctx.local_path(url)
        try:
            css = body.decode("utf-8", errors="replace")
            css = rewrite_css(
                css, url, ctx.local_path(url), lambda u: self.ensure_resource(ctx, u)
            )
            return self.save_resource(ctx, url, css.encode("utf-8"))
        finally:
            ctx.resources.release(url)

    def ensure_resource(self, ctx: CrawlContext, url: str) -> Optional[str]:
        url = strip_fragment(url)
        local = ctx.resources.lookup(url)
        if local is not None:
            return local
        if ctx.resources.is_pending(url):
            return ctx.local_path(url)
        fetched = fetch_resource(self.session, url, self.settings.fetch_timeout)
        if fetched is None:
            return None
        body, content_type = fetched
        try:
            if is_stylesheet(url, content_type):
                return self._save_stylesheet(ctx, url, body)
            return self.save_resource(ctx, url, body)
        except StorageError as e:
            logging.warning("could not store %s: %s", url, e)
            return None

    def _store_response(
        self, ctx: CrawlContext, url: str, resource_type: str, body: bytes
    ) -> None:
        if url in ctx.resources:
            return
        if resource_type == "stylesheet":
            self._save_stylesheet(ctx, url, body)
        else:
            self.save_resource(ctx, url, body)

    def _store_captured(self, ctx: CrawlContext, captured: List[Any]) -> None:
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            futures = {}
            i = 0
            # late responses may still arrive while bodies are read
            while i < len(captured):
                response = captured[i]
                i += 1
                try:
                    body = response.body()
                except PlaywrightError as e:
                    logging.debug("no body for %s: %s", response.url, e)
                    continue
                rtype = response.request.resource_type
                fut = pool.submit(self._store_response, ctx, response.url, rtype, body)
                futures[fut] = response.url
            for fut in as_completed(futures):
                try:
                    fut.result()
                except Exception as e:
                    logging.warning("Error saving resource %s: %s", futures[fut], e)

    # ---- pages ----

    def _probe_extras(self, ctx: CrawlContext, url: str, html: str) -> None:
        if self.settings.probe_favicon:
            favicon = urljoin(ctx.start_url, "/favicon.ico")
            if self.ensure_resource(ctx, favicon) is None:
                logging.debug("no favicon at %s", favicon)
        if self.settings.probe_svg_sprites:
            for ref in dict.fromkeys(SVG_SPRITE_RE.findall(html)):
                svg_url = urljoin(url, ref)
                if self.ensure_resource(ctx, svg_url) is None:
                    logging.debug("SVG sprite not fetched: %s", svg_url)

    def _enqueue_links(self, ctx: CrawlContext, links: List[str], depth: int) -> None:
        if depth + 1 > self.settings.max_depth:
            return
        for link in links:
            if self.settings.same_domain and urlparse(link).netloc != ctx.base_host:
                continue
            if link not in ctx.visited:
                ctx.queue.append((link, depth + 1))

    def process_page(self, ctx: CrawlContext, url: str, depth: int) -> None:
        page = None
        captured: List[Any] = []

        def on_response(response: Any) -> None:
            rtype = response.request.resource_type
            # the page itself is taken from the rendered DOM afterwards
            if rtype in CAPTURE_TYPES and rtype != "document":
                captured.append(response)

        try:
            page = self.browser.new_page()
            page.on("response", on_response)
            try:
                page.goto(
                    url,
                    wait_until=self.settings.wait_until,
                    timeout=self.settings.page_timeout_ms,
                )
            except PlaywrightError as e:
                raise NavigationError(url, str(e)) from e

            self._store_captured(ctx, captured)
            html = page.content()
            self._probe_extras(ctx, url, html)

            page_local = ctx.local_path(url)
            rewritten, links = rewrite_html(
                html,
                url,
                page_local,
                ctx.resources.lookup,
                lambda u: self.ensure_resource(ctx, u),
            )
            ctx.pages.append(self.save_resource(ctx, url, rewritten.encode("utf-8")))
            self._enqueue_links(ctx, links, depth)
        except Exception as e:
            logging.warning("Failed %s: %s", url, e)
        finally:
            if page is not None:
                try:
                    page.close()
                except PlaywrightError as e:
                    logging.debug("page close failed for %s: %s", url, e)

    def run(self, ctx: CrawlContext) -> None:
        own_browser = self.browser is None
        if own_browser:
            self.browser = BrowserSession(
                headless=self.settings.headless,
                user_agent=self.settings.headers.get("User-Agent"),
            )
        try:
            while ctx.queue and not getattr(self.browser, "closed", False):
                url, depth = ctx.queue.popleft()
                if url in ctx.visited or depth > self.settings.max_depth:
                    continue
                ctx.visited.add(url)
                logging.info("Processing: %s (depth: %d)", url, depth)
                self.process_page(ctx, url, depth)
        finally:
            if own_browser:
                self.browser.close()
        logging.info("Archiving complete! Archive saved to: %s", ctx.archive_path)
        logging.info("Total resources saved: %d", len(ctx.resources))


# -------------------- Manifest --------------------


def write_manifest(storage: StorageEngine, ctx: CrawlContext) -> str:
    created_ts = (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )
    pages = list(dict.fromkeys(ctx.pages))
    data = {
        "site": ctx.start_url,
        "created_utc": created_ts,
        "pages": pages,
        "resources": sorted(
            local for _, local in ctx.resources.items() if local not in pages
        ),
    }
    key = join_key(ctx.archive_path, "manifest.json")
    storage.save(key, json.dumps(data, indent=2).encode("utf-8"))
    return key


# -------------------- Entrypoint --------------------


def archive_site(
    start_url: str,
    storage: StorageEngine,
    settings: Optional[Settings] = None,
    browser: Any = None,
    session: Optional[requests.Session] = None,
    now: Optional[datetime] = None,
) -> str:
    settings = settings or Settings()
    domain = urlparse(start_url).netloc
    archive_path = generate_archive_path(domain, now)
    logging.info("Starting archive of %s", start_url)
    logging.info("Archive path: %s", archive_path)

    storage.initialize()
    storage.cleanup_incomplete(archive_path)

    ctx = CrawlContext.create(start_url, archive_path)
    Crawler(storage, settings, browser, session).run(ctx)
    if settings.write_manifest:
        write_manifest(storage, ctx)
    return archive_path
