from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Ensure environment variables from .env are available when running locally.
try:
    load_dotenv()
except PermissionError:
    logger.warning(
        "Could not read .env file due to insufficient permissions. "
        "Continuing with existing environment variables.",
    )


def _get_bool(name: str, default: str = "false") -> bool:
    """Read boolean-ish environment variables safely."""
    value = os.getenv(name, default)
    return value.lower() in {"1", "true", "yes", "on"}


MODEL_MODULES = ["shared.database.workflow_models"]

DATABASE_URL = os.getenv("DATABASE_URL")
DB_MAX_CONNECTIONS = int(os.getenv("DB_MAX_CONNECTIONS", "10"))
DB_MIN_CONNECTIONS = int(os.getenv("DB_MIN_CONNECTIONS", "1"))
DB_GENERATE_SCHEMAS = _get_bool("DB_GENERATE_SCHEMAS", "false")
DEFAULT_DATABASE_URL = "sqlite://:memory:"


def _parse_postgres_credentials(url: str) -> Dict[str, Any]:
    """Convert a postgres-style DSN into asyncpg credential kwargs."""
    parsed = urlparse(url)
    if parsed.scheme not in {"postgres", "postgresql"}:
        raise ValueError("DATABASE_URL must use postgres:// or postgresql:// scheme")

    database = (parsed.path or "").lstrip("/") or "postgres"
    # Get schema from env var, default to 'public' (PostgreSQL default)
    schema = os.getenv("DB_SCHEMA", "public")

    credentials = {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username,
        "password": parsed.password,
        "database": database,
        "minsize": DB_MIN_CONNECTIONS,
        "maxsize": DB_MAX_CONNECTIONS,
    }

    # asyncpg doesn't support "schema" parameter directly
    if schema != "public":
        credentials["server_settings"] = {"search_path": schema}

    return credentials


def _connection_config(url: str) -> Any:
    scheme = urlparse(url).scheme
    if scheme in {"postgres", "postgresql"}:
        return {
            "engine": "tortoise.backends.asyncpg",
            "credentials": _parse_postgres_credentials(url),
        }
    if scheme == "sqlite":
        # Tortoise understands sqlite DSNs natively (local runs and tests).
        return url
    raise ValueError(f"Unsupported DATABASE_URL scheme '{scheme}'")


def build_tortoise_config(url: Optional[str] = None) -> Dict[str, Any]:
    """Build the Tortoise ORM config dict for the given (or configured) URL."""
    resolved = url or DATABASE_URL
    if not resolved:
        logger.warning("DATABASE_URL is not set, falling back to %s", DEFAULT_DATABASE_URL)
        resolved = DEFAULT_DATABASE_URL
    try:
        connection = _connection_config(resolved)
    except ValueError as exc:
        raise RuntimeError(f"Invalid DATABASE_URL: {exc}") from exc

    return {
        "connections": {"default": connection},
        "apps": {
            "models": {
                "models": list(MODEL_MODULES),
                "default_connection": "default",
            },
        },
        "use_tz": True,
        "timezone": "UTC",
    }


TORTOISE_ORM: Dict[str, Any] = build_tortoise_config()


__all__ = [
    "DATABASE_URL",
    "DB_GENERATE_SCHEMAS",
    "DB_MAX_CONNECTIONS",
    "DB_MIN_CONNECTIONS",
    "MODEL_MODULES",
    "TORTOISE_ORM",
    "build_tortoise_config",
]
