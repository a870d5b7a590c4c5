# giftcard/services/usage_limits.py
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard.core.timeutils import as_utc
from giftcard.models.gift_card import GiftCardUsage
from giftcard.schemas.gift_cards import TemplateLimits
from giftcard.services.conditions import EligibilityResult
from giftcard.services.errors import ConfigurationError


@dataclass(frozen=True)
class UsageHistory:
    used_count: int = 0
    last_used_at: datetime | None = None


def parse_limits(raw: dict | None, *, template_id: int | None = None) -> TemplateLimits:
    try:
        return TemplateLimits.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigurationError(
            f"Gift card template {template_id} has invalid limits",
            details={"template_id": template_id, "errors": e.errors(include_url=False)},
        ) from e


async def load_usage_history(
    db: AsyncSession,
    *,
    template_id: int,
    user_id: int,
    limits: TemplateLimits,
) -> UsageHistory:
    """
    One count query, plus one "latest" query only when a cooldown is
    configured and the user has redeemed before. No limits, no queries.
    """
    if limits.max_use_per_user is None and limits.cooldown_hours is None:
        return UsageHistory()

    res = await db.execute(
        select(func.count(GiftCardUsage.id)).where(
            GiftCardUsage.template_id == template_id,
            GiftCardUsage.user_id == user_id,
        )
    )
    used_count = int(res.scalar_one() or 0)

    last_used_at = None
    if used_count > 0 and limits.cooldown_hours is not None:
        res2 = await db.execute(
            select(GiftCardUsage.created_at)
            .where(
                GiftCardUsage.template_id == template_id,
                GiftCardUsage.user_id == user_id,
            )
            .order_by(GiftCardUsage.created_at.desc(), GiftCardUsage.id.desc())
            .limit(1)
        )
        last_used_at = as_utc(res2.scalar_one_or_none())

    return UsageHistory(used_count=used_count, last_used_at=last_used_at)


def split_remaining(remaining: timedelta) -> tuple[int, int]:
    """Whole hours plus residual minutes, minutes rounded up."""
    seconds = max(0, math.ceil(remaining.total_seconds()))
    hours, rest = divmod(seconds, 3600)
    minutes = math.ceil(rest / 60)
    if minutes == 60:
        hours, minutes = hours + 1, 0
    return hours, minutes


def evaluate_usage_limits(limits: TemplateLimits, history: UsageHistory, now: datetime) -> EligibilityResult:
    if limits.max_use_per_user is not None and history.used_count >= limits.max_use_per_user:
        return EligibilityResult(
            can_redeem=False,
            reason=(
                "You have reached the usage limit for this gift card "
                f"(used {history.used_count}/{limits.max_use_per_user})"
            ),
            reason_code="max_use_reached",
            details={
                "used_count": history.used_count,
                "limit": limits.max_use_per_user,
                "remaining": max(0, limits.max_use_per_user - history.used_count),
            },
        )

    if limits.cooldown_hours is not None and history.last_used_at is not None:
        available_at = history.last_used_at + timedelta(hours=limits.cooldown_hours)
        if now < available_at:
            hours, minutes = split_remaining(available_at - now)
            return EligibilityResult(
                can_redeem=False,
                reason=f"This gift card has a cooldown; try again in {hours} hours {minutes} minutes",
                reason_code="cooldown_active",
                details={
                    "used_count": history.used_count,
                    "remaining_hours": hours,
                    "remaining_minutes": minutes,
                    "available_at": available_at.isoformat(),
                },
            )

    return EligibilityResult(can_redeem=True, details={"used_count": history.used_count})
