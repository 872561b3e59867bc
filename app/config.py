"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    default_page_size: int = 10
    max_page_size: int = 100
    request_timeout_s: float = 30.0
    dispatch_max_pending: int = 256
    dispatch_workers: int = 2
    webhook_timeout_s: float = 10.0
    condition_depth_limit: int = 10
    use_db: bool = False
    database_url: str | None = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    disable_auth: bool = False
    auth_issuer_url: str = ""
    auth_audience: str | None = None


def load_settings(env_file: Path | None = None) -> Settings:
    _load_env_file(env_file or ROOT / "app" / ".env")
    return Settings(
        default_page_size=_int("RECORDS_DEFAULT_PAGE_SIZE", 10),
        max_page_size=_int("RECORDS_MAX_PAGE_SIZE", 100),
        request_timeout_s=_float("RECORDS_REQUEST_TIMEOUT_S", 30.0),
        dispatch_max_pending=_int("DISPATCH_MAX_PENDING", 256),
        dispatch_workers=_int("DISPATCH_WORKERS", 2),
        webhook_timeout_s=_float("WEBHOOK_TIMEOUT_S", 10.0),
        condition_depth_limit=_int("CONDITION_DEPTH_LIMIT", 10),
        use_db=os.getenv("USE_DB", "").strip() == "1",
        database_url=os.getenv("DATABASE_URL") or None,
        db_pool_min=_int("RECORDBASE_DB_POOL_MIN", 1),
        db_pool_max=_int("RECORDBASE_DB_POOL_MAX", 10),
        disable_auth=_flag("RECORDBASE_DISABLE_AUTH"),
        auth_issuer_url=os.getenv("AUTH_ISSUER_URL", "").strip(),
        auth_audience=os.getenv("AUTH_AUDIENCE", "").strip() or None,
    )
