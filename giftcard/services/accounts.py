# giftcard/services/accounts.py
"""
Account mutation primitives used by the redemption engine.

Callers hold the row lock (lock_user) before mutating; nothing here commits.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard.core.timeutils import as_utc
from giftcard.models.ledger import BalanceLedger
from giftcard.models.plan import Plan
from giftcard.models.traffic_reset_log import SOURCE_GIFT_CARD, TrafficResetLog
from giftcard.models.user import User


ENTRY_GIFT_CARD_REWARD = "gift_card_reward"
ENTRY_GIFT_CARD_INVITE_REWARD = "gift_card_invite_reward"


async def lock_user(db: AsyncSession, user_id: int) -> User | None:
    """SELECT ... FOR UPDATE, refreshing any copy already in the session."""
    res = await db.execute(
        select(User)
        .where(User.id == int(user_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def get_plan(db: AsyncSession, plan_id: int | None) -> Plan | None:
    if plan_id is None:
        return None
    return await db.get(Plan, int(plan_id))


async def add_balance(
    db: AsyncSession,
    user: User,
    amount_cents: int,
    *,
    entry_kind: str,
    note: str | None = None,
    meta: dict | None = None,
) -> bool:
    """
    Credit a locked user's balance and append the ledger row.
    Returns False when the credit cannot be applied.
    """
    if user is None or amount_cents <= 0:
        return False

    user.balance = int(user.balance or 0) + int(amount_cents)
    db.add(
        BalanceLedger(
            user_id=int(user.id),
            entry_kind=entry_kind,
            amount_cents=int(amount_cents),
            note=note,
            meta=meta or {},
        )
    )
    await db.flush()
    return True


def has_unlimited_plan(user: User) -> bool:
    """A plan with expired_at NULL never expires."""
    return user.plan_id is not None and user.expired_at is None


def extend_subscription(user: User, days: int, *, now: datetime) -> None:
    """
    Push expired_at forward by `days`, counting from now when already expired.
    An unlimited plan stays unlimited.
    """
    if days <= 0 or has_unlimited_plan(user):
        return
    expired_at = as_utc(user.expired_at)
    base = expired_at if expired_at is not None and expired_at > now else now
    user.expired_at = base + timedelta(days=int(days))


def assign_plan(user: User, plan: Plan, validity_days: int, *, now: datetime) -> None:
    user.plan_id = int(plan.id)
    user.transfer_enable = int(plan.transfer_enable or 0)
    user.device_limit = plan.device_limit
    # no validity means the plan does not expire
    user.expired_at = now + timedelta(days=int(validity_days)) if validity_days > 0 else None


def reset_traffic(
    db: AsyncSession,
    user: User,
    *,
    now: datetime,
    trigger_source: str = SOURCE_GIFT_CARD,
    reset_type: str = SOURCE_GIFT_CARD,
    meta: dict | None = None,
) -> TrafficResetLog:
    old_upload = int(user.u or 0)
    old_download = int(user.d or 0)

    user.u = 0
    user.d = 0
    user.last_reset_at = now
    user.reset_count = int(user.reset_count or 0) + 1

    entry = TrafficResetLog(
        user_id=int(user.id),
        reset_type=reset_type,
        trigger_source=trigger_source,
        old_upload=old_upload,
        old_download=old_download,
        old_total=old_upload + old_download,
        new_upload=0,
        new_download=0,
        new_total=0,
        meta=meta or {},
        created_at=now,
    )
    db.add(entry)
    return entry
