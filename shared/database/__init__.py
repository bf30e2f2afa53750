from __future__ import annotations

from typing import Any, Dict, Optional

from tortoise import Tortoise

from shared.logger import get_logger
from shared.database.config import DB_GENERATE_SCHEMAS, TORTOISE_ORM

logger = get_logger("shared.database")


async def init_db(config: Optional[Dict[str, Any]] = None, *, generate_schemas: Optional[bool] = None) -> None:
    """Initialize Tortoise ORM with the configured settings."""

    await Tortoise.init(config=config or TORTOISE_ORM)

    should_generate = DB_GENERATE_SCHEMAS if generate_schemas is None else generate_schemas
    if should_generate:
        logger.warning(
            "Schema generation is enabled; generating schemas at startup. "
            "Disable in production and rely on migrations instead.",
        )
        await Tortoise.generate_schemas()


async def close_db() -> None:
    """Close all ORM connections."""
    await Tortoise.close_connections()


__all__ = ["init_db", "close_db"]
