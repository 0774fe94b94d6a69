import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigError

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

# -------------------- Settings --------------------


@dataclass
class Settings:
    # Crawl
    max_depth: int = 2
    same_domain: bool = True

    # Rendering
    page_timeout_ms: int = 30000
    wait_until: str = "networkidle"
    headless: bool = True

    # Direct fetches
    fetch_timeout: float = 15.0
    workers: int = 8
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    # Extras
    probe_favicon: bool = True
    probe_svg_sprites: bool = True
    write_manifest: bool = False


# -------------------- Storage config --------------------


def _env_flag(name: str, default: Optional[bool] = None) -> Optional[bool]:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() == "true"


@dataclass(frozen=True)
class FilesystemConfig:
    base_path: str = "./mirror"


@dataclass(frozen=True)
class S3Config:
    endpoint: str = "http://localhost:9000"
    access_key_id: str = "minioadmin"
    secret_access_key: str = "minioadmin"
    bucket: str = "website-archives"
    region: str = "us-east-1"
    force_path_style: bool = True
    use_ssl: Optional[bool] = None  # None: follow the endpoint scheme


@dataclass(frozen=True)
class StorageConfig:
    engine: str = "filesystem"  # filesystem | s3
    filesystem: Optional[FilesystemConfig] = None
    s3: Optional[S3Config] = None

    @classmethod
    def from_env(cls) -> "StorageConfig":
        engine = os.getenv("STORAGE_ENGINE", "filesystem")
        if engine == "s3":
            return cls(
                engine="s3",
                s3=S3Config(
                    endpoint=os.getenv("S3_ENDPOINT", "http://localhost:9000"),
                    access_key_id=os.getenv("S3_ACCESS_KEY", "minioadmin"),
                    secret_access_key=os.getenv("S3_SECRET_KEY", "minioadmin"),
                    bucket=os.getenv("S3_BUCKET", "website-archives"),
                    region=os.getenv("S3_REGION", "us-east-1"),
                    force_path_style=bool(_env_flag("S3_FORCE_PATH_STYLE", True)),
                    use_ssl=_env_flag("S3_USE_SSL"),
                ),
            )
        return cls(
            engine="filesystem",
            filesystem=FilesystemConfig(
                base_path=os.getenv("STORAGE_PATH", "./mirror")
            ),
        )

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any], fallback: Optional["StorageConfig"] = None
    ) -> "StorageConfig":
        base = fallback or cls.from_env()
        engine = str(data.get("engine", base.engine))
        if engine == "s3":
            s3 = dict(data.get("s3") or {})
            defaults = base.s3 or S3Config()
            return cls(
                engine="s3",
                s3=S3Config(
                    endpoint=s3.get("endpoint", defaults.endpoint),
                    access_key_id=s3.get("access_key_id", defaults.access_key_id),
                    secret_access_key=s3.get(
                        "secret_access_key", defaults.secret_access_key
                    ),
                    bucket=s3.get("bucket", defaults.bucket),
                    region=s3.get("region", defaults.region),
                    force_path_style=bool(
                        s3.get("force_path_style", defaults.force_path_style)
                    ),
                    use_ssl=s3.get("use_ssl", defaults.use_ssl),
                ),
            )
        if engine == "filesystem":
            fs = dict(data.get("filesystem") or {})
            defaults_fs = base.filesystem or FilesystemConfig()
            return cls(
                engine="filesystem",
                filesystem=FilesystemConfig(
                    base_path=fs.get("base_path", defaults_fs.base_path)
                ),
            )
        raise ConfigError(f"Unsupported storage engine: {engine}")


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError("Top-level YAML must be a mapping")
        return data
    raise ConfigError("Unsupported config format. Use .toml or .yaml")
