import posixpath
import re
from typing import List, Optional, Tuple
from urllib.parse import urlparse

# the query stays inside one path segment
QUERY_CHARS_RE = re.compile(r"[?&=/\\]")


def split_fragment(ref: str) -> Tuple[str, str]:
    if "#" not in ref:
        return ref, ""
    head, frag = ref.split("#", 1)
    return head, f"#{frag}"


def strip_fragment(url: str) -> str:
    return split_fragment(url)[0]


def _clean_segments(path: str) -> List[str]:
    segs: List[str] = []
    for seg in path.split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            if segs:
                segs.pop()
            continue
        segs.append(seg)
    return segs


def url_to_local_path(url: str, start_url: Optional[str] = None) -> str:
    clean = strip_fragment(url)
    p = urlparse(clean)
    host = p.netloc

    if start_url is not None and clean.rstrip("/") == strip_fragment(
        start_url
    ).rstrip("/"):
        return f"{host}/index.html"

    pathname = p.path or "/"
    local = "/".join([host] + _clean_segments(pathname))
    if pathname.endswith("/") and local != host:
        local += "/"
    elif local == host:
        local += "/"

    if p.query:
        local += QUERY_CHARS_RE.sub("_", f"?{p.query}")

    if local.endswith("/"):
        return local + "index.html"
    if not posixpath.splitext(local)[1]:
        return local + "/index.html"
    return local


def relative_path(from_path: str, to_path: str) -> str:
    from_dir = posixpath.dirname(from_path) or "."
    rel = posixpath.relpath(to_path, from_dir)
    if not rel.startswith((".", "/")):
        rel = "./" + rel
    return rel
