import logging
import re
from typing import Callable, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .errors import RewriteError
from .paths import relative_path, split_fragment

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_STRING_RE = re.compile(r"@import\s+([\"'])([^\"']+)\1", re.IGNORECASE)
SRCSET_URL_RE = re.compile(r"[\s,]*(\S+)")
# descriptors end at a comma outside parentheses
SRCSET_DESC_RE = re.compile(r"((?:\([^)]*\)?|[^,(])*),?")
WS_RE = re.compile(r"\s+")

URL_ATTRIBUTES: List[Tuple[str, str]] = [
    ("a", "href"),
    ("link", "href"),
    ("script", "src"),
    ("img", "src"),
    ("video", "src"),
    ("audio", "src"),
    ("use", "href"),
    ("use", "xlink:href"),
    ("iframe", "src"),
    ("embed", "src"),
    ("object", "data"),
]
# source/srcset and img/srcset carry candidate lists, handled separately
SRCSET_TAGS = ("img", "source")
INTEGRITY_ATTRS = ("integrity", "crossorigin", "referrerpolicy")

# abs_url -> archive-relative local path, or None to leave the reference alone
Locator = Callable[[str], Optional[str]]

# -------------------- Utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return urljoin(fallback, tag["href"])
        except ValueError:
            return fallback
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def parse_srcset(v: str) -> List[Tuple[str, str]]:
    """Split a srcset into (url, descriptor) candidates.

    A URL runs up to whitespace and may itself contain commas; candidates
    are separated by a trailing comma on the URL or by the first comma
    after the descriptors.
    """
    out: List[Tuple[str, str]] = []
    s = v or ""
    pos = 0
    while True:
        m = SRCSET_URL_RE.match(s, pos)
        if m is None:
            break
        url = m.group(1)
        pos = m.end()
        desc = ""
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            d = SRCSET_DESC_RE.match(s, pos)
            desc = WS_RE.sub(" ", d.group(1)).strip()
            pos = d.end()
        if url:
            out.append((url, desc))
    return out


def resolve_reference(ref: str, base_url: str) -> str:
    """Resolve a fragment-free reference found in a document at base_url.

    References are classified the way they appear in markup: absolute,
    protocol-relative, root-relative, or relative to the document.
    """
    try:
        b = urlparse(base_url)
        if ref.startswith(("http://", "https://")):
            absu = ref
        elif ref.startswith("//"):
            absu = f"{b.scheme or 'https'}:{ref}"
        elif ref.startswith("/"):
            absu = urljoin(f"{b.scheme}://{b.netloc}", ref)
        else:
            absu = urljoin(base_url, ref)
        # raises on unbalanced IPv6 brackets and similar malformed hosts
        urlparse(absu)
        return absu
    except ValueError as e:
        raise RewriteError(ref, str(e)) from e


# -------------------- CSS --------------------


def rewrite_css(
    css_text: str, css_url: str, css_local_path: str, locate: Locator
) -> str:
    def map_ref(ref: str) -> Optional[str]:
        ref = ref.strip()
        if not can_fetch_url(ref):
            return None
        url_part, frag = split_fragment(ref)
        try:
            absu = resolve_reference(url_part, css_url)
        except RewriteError as e:
            logging.debug("%s", e)
            return None
        local = locate(absu)
        if local is None:
            return None
        return relative_path(css_local_path, local) + frag

    def repl_url(m: re.Match) -> str:
        rel = map_ref(m.group(2))
        return m.group(0) if rel is None else f"url('{rel}')"

    def repl_import(m: re.Match) -> str:
        rel = map_ref(m.group(2))
        return m.group(0) if rel is None else f"@import url('{rel}')"

    t = CSS_URL_RE.sub(repl_url, css_text)
    return CSS_IMPORT_STRING_RE.sub(repl_import, t)


# -------------------- HTML --------------------


def _rewrite_one(
    ref: str, base: str, page_local_path: str, lookup: Locator
) -> Optional[str]:
    url_part, frag = split_fragment(ref.strip())
    if not can_fetch_url(url_part):
        return None
    local = lookup(resolve_reference(url_part, base))
    if local is None:
        return None
    return relative_path(page_local_path, local) + frag


def extract_anchor_links(soup: BeautifulSoup, page_url: str) -> List[str]:
    base = effective_base_url(soup, page_url)
    links: List[str] = []
    for a in soup.select("a[href]"):
        href = a.get("href")
        if not can_fetch_url(href):
            continue
        try:
            absu = split_fragment(resolve_reference(href.strip(), base))[0]
        except RewriteError:
            continue
        if urlparse(absu).scheme in ("http", "https") and absu not in links:
            links.append(absu)
    return links


def rewrite_html(
    html: str,
    page_url: str,
    page_local_path: str,
    lookup: Locator,
    css_locate: Optional[Locator] = None,
) -> Tuple[str, List[str]]:
    """Point every archived reference in a page at its local copy.

    Returns the rewritten markup and the page's anchor targets, taken from
    the hrefs as they were before rewriting.
    """
    soup = bs4_parse(html)
    base = effective_base_url(soup, page_url)
    links = extract_anchor_links(soup, page_url)

    for tag_name, attr in URL_ATTRIBUTES:
        for tag in soup.find_all(tag_name):
            val = tag.get(attr)
            if not val or not isinstance(val, str):
                continue
            try:
                new = _rewrite_one(val, base, page_local_path, lookup)
            except RewriteError as e:
                logging.debug("%s", e)
                continue
            if new is not None:
                tag[attr] = new
                for rm in INTEGRITY_ATTRS:
                    if rm in tag.attrs:
                        del tag.attrs[rm]

    for tag in soup.select(", ".join(f"{t}[srcset]" for t in SRCSET_TAGS)):
        parts = []
        changed = False
        for url_part, desc in parse_srcset(tag.get("srcset", "")):
            try:
                new = _rewrite_one(url_part, base, page_local_path, lookup)
            except RewriteError as e:
                logging.debug("%s", e)
                new = None
            changed = changed or new is not None
            parts.append((new or url_part, desc))
        if changed:
            tag["srcset"] = ", ".join(f"{u} {d}".strip() for u, d in parts)

    locate = css_locate or lookup
    for tag in soup.select("[style]"):
        css = tag.get("style")
        if not css or "url(" not in css:
            continue
        new_css = rewrite_css(css, base, page_local_path, locate)
        if new_css != css:
            tag["style"] = new_css
    for style in soup.find_all("style"):
        if style.string and ("url(" in style.string or "@import" in style.string):
            new_text = rewrite_css(style.string, base, page_local_path, locate)
            if new_text != style.string:
                style.string.replace_with(new_text)

    return serialize_html(soup), links
