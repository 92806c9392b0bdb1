"""Append-only security event log and staff alerting."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from app.moderation.domain.models import SecurityEvent, SecurityEventType, UserRole
from app.moderation.domain.notifications import NotificationContent, NotificationDispatcher
from app.moderation.domain.repositories import ProfileRepository, SecurityEventRepository
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

STAFF_ROLES = (UserRole.MODERATOR, UserRole.ADMIN)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SecurityEventRecorder:
    """Writes security events; a failed write never aborts the calling operation."""

    repository: SecurityEventRepository
    clock: Callable[[], datetime] = _now

    async def record(self, event_type: SecurityEventType | str, user_id: str, /, **details: Any) -> None:
        value = event_type.value if isinstance(event_type, SecurityEventType) else str(event_type)
        created_at = self.clock()
        payload = {**details, "timestamp": created_at.isoformat()}
        obs_metrics.record_security_event(value)
        logger.warning("security event", extra={"event_type": value, "subject_id": user_id})
        try:
            await self.repository.record(
                SecurityEvent(event_type=value, user_id=user_id, details=payload, created_at=created_at)
            )
        except Exception:  # noqa: BLE001
            logger.exception("failed to record security event", extra={"event_type": value})


@dataclass
class StaffAlerter:
    """Fans a notification out to every moderator and admin."""

    profiles: ProfileRepository
    dispatcher: NotificationDispatcher

    async def staff_ids(self, *, roles: Iterable[UserRole] = STAFF_ROLES, exclude: str | None = None) -> list[str]:
        ids = await self.profiles.list_staff_ids(roles)
        # a user holding both roles must only be alerted once
        return [user_id for user_id in dict.fromkeys(ids) if user_id != exclude]

    async def alert(
        self,
        content: NotificationContent,
        *,
        data: Mapping[str, Any],
        roles: Iterable[UserRole] = STAFF_ROLES,
        exclude: str | None = None,
        kind: str = "staff_alert",
    ) -> int:
        """Best-effort delivery; returns the number of notifications stored."""

        try:
            recipients = await self.staff_ids(roles=roles, exclude=exclude)
            for recipient in recipients:
                await self.dispatcher.send(recipient, content, data=data)
        except Exception:  # noqa: BLE001
            obs_metrics.MOD_NOTIFICATION_FAILURES_TOTAL.labels(kind=kind).inc()
            logger.exception("staff alert failed", extra={"alert_kind": kind})
            return 0
        return len(recipients)
