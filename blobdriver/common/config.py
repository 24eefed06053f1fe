from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

# Multipart parts other than the last must be at least this large (S3 contract).
MIN_CHUNK_SIZE = 5 << 20
DEFAULT_CHUNK_SIZE = 2 * MIN_CHUNK_SIZE
# Largest page S3 returns for list calls.
MAX_LIST_PAGE_SIZE = 1000


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    # Accepts 0x / 0o prefixes like the registry's YAML chunksize option.
    return int(value.strip(), 0)


@dataclass
class Settings:
    S3_BUCKET: str | None = None
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_USE_SSL: bool = True
    S3_ADDRESSING_STYLE: str = "path"
    S3_ROOT_DIRECTORY: str = ""
    STORAGE_CHUNK_SIZE_BYTES: int = DEFAULT_CHUNK_SIZE
    STORAGE_PRESIGN_EXPIRES_SECONDS: int = 20 * 60
    STORAGE_LIST_PAGE_SIZE: int = MAX_LIST_PAGE_SIZE
    STORAGE_POOL_MAX_IDLE: int = 16
    LOG_LEVEL: str = "INFO"
    ENABLE_METRICS: bool = True

    def __post_init__(self) -> None:
        if self.STORAGE_CHUNK_SIZE_BYTES < MIN_CHUNK_SIZE:
            raise ValueError(
                "STORAGE_CHUNK_SIZE_BYTES must be larger than or equal to "
                f"{MIN_CHUNK_SIZE} (got {self.STORAGE_CHUNK_SIZE_BYTES})."
            )
        if not 1 <= self.STORAGE_LIST_PAGE_SIZE <= MAX_LIST_PAGE_SIZE:
            raise ValueError(
                f"STORAGE_LIST_PAGE_SIZE must be between 1 and {MAX_LIST_PAGE_SIZE}."
            )
        if self.STORAGE_PRESIGN_EXPIRES_SECONDS <= 0:
            raise ValueError("STORAGE_PRESIGN_EXPIRES_SECONDS must be positive.")

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            S3_BUCKET=os.environ.get("S3_BUCKET") or None,
            S3_ENDPOINT_URL=os.environ.get("S3_ENDPOINT_URL") or None,
            S3_REGION=os.environ.get("S3_REGION", cls.S3_REGION),
            S3_ACCESS_KEY_ID=os.environ.get("S3_ACCESS_KEY_ID"),
            S3_SECRET_ACCESS_KEY=os.environ.get("S3_SECRET_ACCESS_KEY"),
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            S3_ADDRESSING_STYLE=os.environ.get(
                "S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE
            ),
            S3_ROOT_DIRECTORY=os.environ.get(
                "S3_ROOT_DIRECTORY", cls.S3_ROOT_DIRECTORY
            ),
            STORAGE_CHUNK_SIZE_BYTES=_as_int(
                os.environ.get("STORAGE_CHUNK_SIZE_BYTES"),
                cls.STORAGE_CHUNK_SIZE_BYTES,
            ),
            STORAGE_PRESIGN_EXPIRES_SECONDS=_as_int(
                os.environ.get("STORAGE_PRESIGN_EXPIRES_SECONDS"),
                cls.STORAGE_PRESIGN_EXPIRES_SECONDS,
            ),
            STORAGE_LIST_PAGE_SIZE=_as_int(
                os.environ.get("STORAGE_LIST_PAGE_SIZE"), cls.STORAGE_LIST_PAGE_SIZE
            ),
            STORAGE_POOL_MAX_IDLE=_as_int(
                os.environ.get("STORAGE_POOL_MAX_IDLE"), cls.STORAGE_POOL_MAX_IDLE
            ),
            LOG_LEVEL=os.environ.get("LOG_LEVEL", cls.LOG_LEVEL).upper(),
            ENABLE_METRICS=_as_bool(
                os.environ.get("ENABLE_METRICS"), cls.ENABLE_METRICS
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
