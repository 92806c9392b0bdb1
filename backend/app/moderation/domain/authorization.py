"""Role checks for moderation operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.moderation.domain.errors import UnauthorizedError
from app.moderation.domain.models import UserRole

MODERATOR_REQUIRED = "Only moderators and admins can perform this action"
ADMIN_REQUIRED = "Only admins can perform this action"


@dataclass(slots=True, frozen=True)
class ActorContext:
    """Identity and role of the caller, passed explicitly into every operation."""

    user_id: str
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN

    @property
    def is_moderator(self) -> bool:
        return self.role in (UserRole.MODERATOR, UserRole.ADMIN)


@dataclass(slots=True, frozen=True)
class ReversalDecision:
    allowed: bool
    reason: Optional[str] = None


def can_reverse_action(actor_role: UserRole, target_role: UserRole) -> ReversalDecision:
    """Decide whether ``actor_role`` may reverse an action taken against ``target_role``.

    | actor     | target          | allowed |
    |-----------|-----------------|---------|
    | user      | any             | no      |
    | moderator | user, moderator | yes     |
    | moderator | admin           | no      |
    | admin     | any             | yes     |
    """

    if actor_role is UserRole.ADMIN:
        return ReversalDecision(allowed=True)
    if actor_role is UserRole.MODERATOR:
        if target_role is UserRole.ADMIN:
            return ReversalDecision(
                allowed=False,
                reason="Moderators cannot reverse actions on admin accounts",
            )
        return ReversalDecision(allowed=True)
    return ReversalDecision(
        allowed=False,
        reason="Only moderators and admins can reverse moderation actions",
    )


def require_moderator(actor: ActorContext, message: str = MODERATOR_REQUIRED) -> None:
    if not actor.is_moderator:
        raise UnauthorizedError(message, details={"user_id": actor.user_id, "role": actor.role.value})


def require_admin(actor: ActorContext, message: str = ADMIN_REQUIRED) -> None:
    if not actor.is_admin:
        raise UnauthorizedError(message, details={"user_id": actor.user_id, "role": actor.role.value})


def ensure_reversal_allowed(actor: ActorContext, target_role: UserRole, *, target_user_id: str) -> None:
    decision = can_reverse_action(actor.role, target_role)
    if not decision.allowed:
        raise UnauthorizedError(
            decision.reason or ADMIN_REQUIRED,
            details={"target_user_id": target_user_id, "target_role": target_role.value},
        )
