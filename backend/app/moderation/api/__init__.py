"""Moderation API routers."""

from fastapi import APIRouter

from . import actions, analytics, context, discovery, history, reports, reversals, system

router = APIRouter()
router.include_router(reports.router)
router.include_router(actions.router)
router.include_router(reversals.router)
router.include_router(history.router)
router.include_router(analytics.router)
router.include_router(discovery.router)
router.include_router(system.router)
router.include_router(context.router)

__all__ = ["router"]
