from __future__ import annotations

from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from .db import get_engine
from .models import Base


async def ensure_schema(engine: Optional[AsyncEngine] = None) -> None:
    """Create the agent tables if they are missing (idempotent)."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Agent schema ensured ({engine.dialect.name})")
