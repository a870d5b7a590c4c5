# giftcard/services/conditions.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard.core.config import settings
from giftcard.core.timeutils import as_utc
from giftcard.models.order import ORDER_STATUS_COMPLETED, Order
from giftcard.models.plan import Plan
from giftcard.models.user import User
from giftcard.schemas.gift_cards import TemplateConditions
from giftcard.services.errors import ConfigurationError

SECONDS_PER_DAY = 86400


@dataclass
class EligibilityResult:
    can_redeem: bool
    reason: str | None = None
    reason_code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {"can_redeem": self.can_redeem, "reason": self.reason, "reason_code": self.reason_code}


@dataclass(frozen=True)
class UserSnapshot:
    """The user fields the condition rules look at."""

    user_id: int
    created_at: datetime
    plan_id: int | None
    plan_name: str | None
    invite_user_id: int | None
    has_paid_order: bool = False


def parse_conditions(raw: dict | None, *, template_id: int | None = None) -> TemplateConditions:
    try:
        return TemplateConditions.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigurationError(
            f"Gift card template {template_id} has invalid conditions",
            details={"template_id": template_id, "errors": e.errors(include_url=False)},
        ) from e


async def build_user_snapshot(db: AsyncSession, user: User, conditions: TemplateConditions) -> UserSnapshot:
    has_paid_order = False
    if conditions.paid_user_only:
        res = await db.execute(
            select(
                exists().where(
                    Order.user_id == user.id,
                    Order.status == ORDER_STATUS_COMPLETED,
                )
            )
        )
        has_paid_order = bool(res.scalar())

    plan_name = None
    if user.plan_id is not None:
        plan = await db.get(Plan, int(user.plan_id))
        plan_name = plan.name if plan else None

    return UserSnapshot(
        user_id=int(user.id),
        created_at=as_utc(user.created_at),
        plan_id=user.plan_id,
        plan_name=plan_name,
        invite_user_id=user.invite_user_id,
        has_paid_order=has_paid_order,
    )


def account_age_days(created_at: datetime, now: datetime) -> int:
    return int((now - created_at).total_seconds() // SECONDS_PER_DAY)


def evaluate_conditions(conditions: TemplateConditions, snapshot: UserSnapshot, now: datetime) -> EligibilityResult:
    """
    Check the template's eligibility rules in order; the first failing rule wins.

    Pure: no queries, no mutation. Everything it needs is on the snapshot.
    """
    if conditions.new_user_only:
        max_days = conditions.new_user_max_days
        if max_days is None:
            max_days = settings.NEW_USER_DEFAULT_MAX_DAYS
        user_days = account_age_days(snapshot.created_at, now)
        # a user exactly max_days old is still eligible
        if user_days > max_days:
            return EligibilityResult(
                can_redeem=False,
                reason=(
                    f"This gift card is limited to users registered within {max_days} days; "
                    f"your account was registered {user_days} days ago"
                ),
                reason_code="new_user_only",
                details={"max_days": max_days, "user_days": user_days},
            )

    if conditions.paid_user_only and not snapshot.has_paid_order:
        return EligibilityResult(
            can_redeem=False,
            reason="This gift card is limited to paying users; purchase a plan first",
            reason_code="paid_user_only",
        )

    if conditions.allowed_plans:
        if snapshot.plan_id is None:
            return EligibilityResult(
                can_redeem=False,
                reason="This gift card is limited to specific plans and you have no plan",
                reason_code="no_plan",
            )
        if int(snapshot.plan_id) not in {int(p) for p in conditions.allowed_plans}:
            plan_name = snapshot.plan_name or "current plan"
            return EligibilityResult(
                can_redeem=False,
                reason=f"This gift card is limited to specific plans; your \"{plan_name}\" is not one of them",
                reason_code="plan_not_allowed",
                details={"plan_id": snapshot.plan_id},
            )

    if conditions.require_invite and snapshot.invite_user_id is None:
        return EligibilityResult(
            can_redeem=False,
            reason="This gift card is only for users who registered through an invite link",
            reason_code="require_invite",
        )

    return EligibilityResult(can_redeem=True)
