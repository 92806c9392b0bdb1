"""Caller identity for FastAPI endpoints.

The gateway in front of the service authenticates the session and forwards
the user id in ``X-User-Id``. Roles are looked up in ``user_roles``; the
``X-User-Role`` header is only trusted in development so local tools can act
as moderators without seeding the database.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from app.moderation.domain.authorization import ActorContext
from app.moderation.domain.container import get_profile_repository
from app.moderation.domain.models import UserRole
from app.moderation.domain.repositories import ProfileRepository
from app.obs import metrics as obs_metrics
from app.settings import settings


def _parse_role(raw: Optional[str]) -> Optional[UserRole]:
	if not raw:
		return None
	try:
		return UserRole(raw.strip().lower())
	except ValueError:
		return None


def get_profiles_dep() -> ProfileRepository:
	return get_profile_repository()


async def get_actor_context(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
	profiles: ProfileRepository = Depends(get_profiles_dep),
) -> ActorContext:
	"""Resolve the acting user and role for the current request."""
	user_id = (x_user_id or "").strip()
	if not user_id:
		obs_metrics.AUTH_REJECTIONS_TOTAL.labels(reason="missing_user").inc()
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_user")

	if settings.is_dev():
		role = _parse_role(x_user_role)
		if role is not None:
			return ActorContext(user_id=user_id, role=role)

	return ActorContext(user_id=user_id, role=await profiles.get_role(user_id))


async def get_staff_actor(actor: ActorContext = Depends(get_actor_context)) -> ActorContext:
	"""Reject plain users before the request reaches a staff-only router."""
	if actor.is_moderator:
		return actor
	obs_metrics.AUTH_REJECTIONS_TOTAL.labels(reason="insufficient_role").inc()
	raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")


__all__ = ["get_actor_context", "get_staff_actor", "get_profiles_dep"]
