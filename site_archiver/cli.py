import argparse
import logging
import sys
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .crawler import archive_site
from .errors import ArchiverError, ObjectNotFound, PathTraversalRejected
from .resolver import ArchiveResolver
from .settings import Settings, StorageConfig, load_config_file
from .storage import create_storage_engine

# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="site-archiver",
        description="Mirror a website into timestamped archives and read them back.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("crawl", help="archive a site starting from URL")
    c.add_argument("url", help="http(s) seed URL")
    c.add_argument("--max-depth", type=int, default=None, help="max link depth")
    c.add_argument(
        "--external", action="store_true", help="follow links to other hosts"
    )
    c.add_argument(
        "--page-timeout-ms", type=int, default=None, help="navigation timeout ms"
    )
    c.add_argument("--workers", type=int, default=None, help="concurrent saves")
    c.add_argument("--no-favicon", action="store_true", help="skip /favicon.ico probe")
    c.add_argument(
        "--no-svg-probe", action="store_true", help="skip /svg/*.svg sprite probe"
    )
    c.add_argument(
        "--manifest", action="store_true", help="write manifest.json to the archive"
    )
    c.add_argument("--headed", action="store_true", help="show the browser window")

    lt = sub.add_parser("latest", help="print the latest archive for DOMAIN")
    lt.add_argument("domain")

    g = sub.add_parser("get", help="resolve PATH in the latest archive for DOMAIN")
    g.add_argument("domain")
    g.add_argument("path", nargs="?", default="/")
    g.add_argument("-o", "--output", type=str, default=None, help="write to file")
    return p


def build_settings(args: argparse.Namespace, cfg: Dict[str, Any]) -> Settings:
    crawl = dict(cfg.get("crawl") or {})
    known = {k: v for k, v in crawl.items() if k in Settings.__dataclass_fields__}
    s = Settings(**known)
    if args.max_depth is not None:
        s.max_depth = max(0, args.max_depth)
    if args.external:
        s.same_domain = False
    if args.page_timeout_ms is not None:
        s.page_timeout_ms = max(1000, args.page_timeout_ms)
    if args.workers is not None:
        s.workers = max(1, args.workers)
    if args.no_favicon:
        s.probe_favicon = False
    if args.no_svg_probe:
        s.probe_svg_sprites = False
    if args.manifest:
        s.write_manifest = True
    if args.headed:
        s.headless = False
    return s


def main(argv: Optional[List[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    try:
        cfg = load_config_file(args.config) if args.config else {}
        storage_cfg = StorageConfig.from_env()
        if isinstance(cfg.get("storage"), dict):
            storage_cfg = StorageConfig.from_mapping(cfg["storage"], storage_cfg)
        storage = create_storage_engine(storage_cfg)
        if args.command == "crawl":
            if urlparse(args.url).scheme not in {"http", "https"}:
                print("Invalid URL. Use http:// or https://")
                sys.exit(1)
            settings = build_settings(args, cfg)
            logging.info("Storage engine: %s", storage_cfg.engine)
            archive_path = archive_site(args.url, storage, settings)
            print(f"Archive saved to: {archive_path}")
        elif args.command == "latest":
            path = ArchiveResolver(storage).find_latest_archive(args.domain)
            if path is None:
                print(f"No archives found for domain: {args.domain}")
                sys.exit(1)
            print(path)
        elif args.command == "get":
            res = ArchiveResolver(storage).resolve(args.domain, args.path)
            if args.output:
                with open(args.output, "wb") as f:
                    f.write(res.content)
                logging.info("%s (%s) -> %s", res.key, res.content_type, args.output)
            else:
                sys.stdout.buffer.write(res.content)
    except PathTraversalRejected as e:
        print(f"Invalid path: {e.path}")
        sys.exit(1)
    except ObjectNotFound as e:
        print(f"Not found: {e.key}")
        sys.exit(1)
    except ArchiverError as e:
        logging.error("%s", e)
        sys.exit(1)
