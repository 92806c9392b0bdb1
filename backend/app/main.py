"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import ops
from app.infra import postgres
from app.infra.redis import redis_client
from app.moderation import configure_postgres as configure_moderation
from app.moderation import install_error_handlers
from app.moderation import router as moderation_router
from app.obs import init as obs_init
from app.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	if pool is not None:
		configure_moderation(pool, redis_client)
		logger.info("moderation repositories bound to postgres", extra={"service": settings.service_name})
	try:
		yield
	finally:
		await postgres.close_pool()


app = FastAPI(title="Moderation API", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

app.include_router(ops.router)
app.include_router(moderation_router, tags=["moderation"])
