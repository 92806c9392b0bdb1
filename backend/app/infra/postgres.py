"""AsyncPG pool lifecycle for the moderation API."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import asyncpg

from app.settings import settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
		logger.info(
			"postgres pool created",
			extra={"min_size": settings.postgres_min_pool_size, "max_size": settings.postgres_max_pool_size},
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	if _pool is None:
		raise RuntimeError("postgres pool is not configured")
	return _pool


async def ping(timeout: float) -> None:
	"""Round-trip ``SELECT 1``; raises when the pool is missing or the query stalls."""
	pool = await get_pool()
	async with pool.acquire() as conn:
		await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
