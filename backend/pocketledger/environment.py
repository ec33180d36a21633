import logging
import os
import secrets
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values, set_key

from .config import Settings
from .schemas import DatabaseProvider, DatabaseSetup

logger = logging.getLogger(__name__)

_DATABASE_KEYS = ("DATABASE_URL", "SUPABASE_URL", "SQLITE_DATABASE_PATH", "POSTGRES_HOST", "MYSQL_HOST")


def is_docker() -> bool:
    if Path("/.dockerenv").exists():
        return True
    return os.getenv("DOCKER_CONTAINER", "").strip().lower() in {"1", "true", "yes"}


def has_env_file(settings: Settings) -> bool:
    path = Path(settings.env_file)
    if not path.exists():
        return False
    values = dotenv_values(path)
    return any(values.get(key) for key in _DATABASE_KEYS)


def provider_from_url(url: str) -> Optional[DatabaseProvider]:
    scheme = url.split("://", 1)[0].split("+", 1)[0].lower() if "://" in url else ""
    if scheme in {"postgres", "postgresql"}:
        return DatabaseProvider.neon if "neon.tech" in url else DatabaseProvider.postgresql
    if scheme == "mysql":
        return DatabaseProvider.planetscale if "psdb.cloud" in url else DatabaseProvider.mysql
    if scheme == "sqlite":
        return DatabaseProvider.sqlite
    return None


def detect_environment_config(settings: Settings) -> Optional[DatabaseSetup]:
    """Database settings supplied through environment variables, Supabase first."""
    if settings.supabase_url and settings.supabase_anon_key:
        return DatabaseSetup(
            provider=DatabaseProvider.supabase,
            name="Supabase (environment)",
            supabaseUrl=settings.supabase_url,
            supabaseAnonKey=settings.supabase_anon_key,
            supabaseServiceKey=settings.supabase_service_key or None,
            autoCreateTables=bool(settings.supabase_service_key),
        )
    if settings.database_url:
        provider = provider_from_url(settings.database_url)
        if provider is None:
            logger.warning("DATABASE_URL has an unsupported scheme, ignoring it")
            return None
        if provider == DatabaseProvider.sqlite:
            path = settings.database_url.split(":///", 1)[-1]
            return DatabaseSetup(provider=provider, name="SQLite (environment)", database=path or None)
        return DatabaseSetup(provider=provider, name=f"{provider.value} (environment)", connectionString=settings.database_url)
    return None


def write_env_file(settings: Settings, values: dict[str, str]) -> Path:
    path = Path(settings.env_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    existing = dotenv_values(path)
    for key, value in values.items():
        set_key(str(path), key, value, quote_mode="auto")
    if not existing.get("SESSION_SECRET"):
        set_key(str(path), "SESSION_SECRET", secrets.token_urlsafe(32), quote_mode="auto")
    logger.info("Wrote database settings to %s", path)
    return path
