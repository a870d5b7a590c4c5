# giftcard/services/gift_cards.py
from __future__ import annotations

import random
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Callable

from loguru import logger
from sqlalchemy import case, select, update
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard.core.timeutils import utc_now
from giftcard.models.gift_card import (
    CODE_STATUS_AVAILABLE,
    CODE_STATUS_DISABLED,
    CODE_STATUS_USED,
    TYPE_MYSTERY,
    TYPE_PLAN,
    GiftCardCode,
    GiftCardTemplate,
    GiftCardUsage,
)
from giftcard.models.traffic_reset_log import SOURCE_GIFT_CARD
from giftcard.models.user import User
from giftcard.services.accounts import (
    ENTRY_GIFT_CARD_INVITE_REWARD,
    ENTRY_GIFT_CARD_REWARD,
    add_balance,
    assign_plan,
    extend_subscription,
    get_plan,
    has_unlimited_plan,
    lock_user,
    reset_traffic,
)
from giftcard.services.conditions import (
    EligibilityResult,
    build_user_snapshot,
    evaluate_conditions,
    parse_conditions,
)
from giftcard.services.errors import (
    ApplicationError,
    ConfigurationError,
    ConflictError,
    GiftCardError,
    GiftCardNotFound,
    IneligibleError,
    RetryableError,
)
from giftcard.services.plan_operations import OP_EXTEND, resolve_plan_operation
from giftcard.services.rewards import (
    ExpiryExtension,
    PlanGrant,
    RewardPayload,
    calculate_rewards,
    format_rewards,
)
from giftcard.services.usage_limits import evaluate_usage_limits, load_usage_history, parse_limits

# serialization failure, deadlock, lock not available
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


def invite_share(amount: int, rate: Decimal) -> int:
    """floor(amount * rate), computed in Decimal."""
    return int((Decimal(int(amount)) * rate).to_integral_value(rounding=ROUND_FLOOR))


def _is_retryable(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in RETRYABLE_SQLSTATES


class GiftCardService:
    """
    Redemption of one gift card code by one user.

    The check/preview methods are read-only and advisory. redeem() re-reads
    the code and user under row locks and re-validates before mutating, then
    commits or rolls back as a single unit.
    """

    def __init__(
        self,
        db: AsyncSession,
        code: GiftCardCode,
        template: GiftCardTemplate,
        user: User | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.code = code
        self.template = template
        self.user = user
        self._rng = rng
        self._clock = clock
        # a read-only check on this instance found the user eligible
        self._checked_eligible = False

    @classmethod
    async def load(
        cls,
        db: AsyncSession,
        code: str,
        user: User | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "GiftCardService":
        clean_code = (code or "").strip()
        res = await db.execute(select(GiftCardCode).where(GiftCardCode.code == clean_code))
        gift_code = res.scalar_one_or_none()
        if gift_code is None:
            raise GiftCardNotFound("Gift card code does not exist")

        template = gift_code.template or await db.get(GiftCardTemplate, gift_code.template_id)
        if template is None:
            raise GiftCardNotFound("Gift card code does not exist")

        return cls(db, gift_code, template, user, rng=rng, clock=clock)

    def set_user(self, user: User) -> "GiftCardService":
        self.user = user
        self._checked_eligible = False
        return self

    # -------------------------
    # Validation (read-only)
    # -------------------------
    def validate_is_active(self) -> "GiftCardService":
        """Template enabled and code redeemable, ignoring the user."""
        if not self.template.is_available():
            raise IneligibleError("This gift card type has been disabled", reason_code="template_disabled")

        now = self._clock()
        status = self.code.effective_status(now)
        if status != CODE_STATUS_AVAILABLE:
            raise IneligibleError(
                f"Gift card code unavailable: {self.code.status_name(now)}",
                reason_code=f"code_{status}",
            )
        return self

    async def validate(self) -> "GiftCardService":
        self.validate_is_active()

        eligibility = await self._evaluate(self._clock())
        if not eligibility.can_redeem:
            raise IneligibleError(
                eligibility.reason or "Not eligible",
                reason_code=eligibility.reason_code,
                details=eligibility.details,
            )
        self._checked_eligible = True
        return self

    async def check_user_eligibility(self) -> dict:
        result = await self._evaluate(self._clock())
        self._checked_eligible = result.can_redeem
        return result.as_dict()

    async def _evaluate(self, now: datetime) -> EligibilityResult:
        if self.user is None:
            return EligibilityResult(can_redeem=False, reason="User not provided", reason_code="user_not_set")

        conditions = parse_conditions(self.template.conditions, template_id=self.template.id)
        snapshot = await build_user_snapshot(self.db, self.user, conditions)
        result = evaluate_conditions(conditions, snapshot, now)
        if not result.can_redeem:
            return result

        limits = parse_limits(self.template.limits, template_id=self.template.id)
        history = await load_usage_history(
            self.db,
            template_id=int(self.template.id),
            user_id=int(self.user.id),
            limits=limits,
        )
        return evaluate_usage_limits(limits, history, now)

    # -------------------------
    # Redemption
    # -------------------------
    async def redeem(self, options: dict[str, Any] | None = None) -> dict:
        if self.user is None:
            raise IneligibleError("User not provided", reason_code="user_not_set")

        now = self._clock()
        code_str = self.code.code
        template_id = self.template.id
        user_id = int(self.user.id)

        try:
            result = await self._redeem_locked(dict(options or {}), now)
            await self.db.commit()

        except ConfigurationError as e:
            await self.db.rollback()
            logger.error(
                "Gift card template misconfigured",
                template_id=template_id,
                code=code_str,
                user_id=user_id,
                reason=e.message,
                details=e.details,
            )
            raise
        except ApplicationError:
            await self.db.rollback()
            logger.error("Gift card reward application failed", template_id=template_id, code=code_str, user_id=user_id)
            raise
        except GiftCardError as e:
            await self.db.rollback()
            logger.info(
                "Gift card redemption refused",
                code=code_str,
                user_id=user_id,
                reason_code=e.reason_code,
            )
            raise
        except DBAPIError as e:
            await self.db.rollback()
            if _is_retryable(e):
                logger.warning("Gift card redemption hit a lock or timeout", code=code_str, user_id=user_id)
                raise RetryableError("Gift card service is busy, please retry") from e
            logger.exception("Gift card redemption failed", code=code_str, user_id=user_id)
            raise ApplicationError("Gift card redemption failed") from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception("Gift card redemption failed", code=code_str, user_id=user_id)
            raise ApplicationError("Gift card redemption failed") from e
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Gift card redeemed",
            code=code_str,
            template_id=template_id,
            user_id=user_id,
            multiplier=result["multiplier"],
        )
        return result

    async def _lock_code(self, code_id: int) -> GiftCardCode | None:
        res = await self.db.execute(
            select(GiftCardCode)
            .where(GiftCardCode.id == code_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def _redeem_locked(self, options: dict[str, Any], now: datetime) -> dict:
        db = self.db

        # 1) locked, fresh reads: code first, then user
        code = await self._lock_code(int(self.code.id))
        if code is None:
            raise GiftCardNotFound("Gift card code does not exist")
        user = await lock_user(db, int(self.user.id))
        if user is None:
            raise ApplicationError("User not found")
        self.code, self.user = code, user

        # 2) availability against the locked row
        if not self.template.is_available():
            raise IneligibleError("This gift card type has been disabled", reason_code="template_disabled")
        status = code.effective_status(now)
        if status == CODE_STATUS_USED:
            raise ConflictError("Gift card code has already been used")
        if status != CODE_STATUS_AVAILABLE:
            raise IneligibleError(
                f"Gift card code unavailable: {code.status_name(now)}",
                reason_code=f"code_{status}",
            )

        # 3) eligibility against the locked user
        eligibility = await self._evaluate(now)
        if not eligibility.can_redeem and self._checked_eligible:
            raise ConflictError(
                f"Your account changed since the gift card was checked: {eligibility.reason or 'not eligible'}",
                reason_code="eligibility_changed",
                details={"reason_code": eligibility.reason_code, **eligibility.details},
            )
        if not eligibility.can_redeem:
            raise IneligibleError(
                eligibility.reason or "Not eligible",
                reason_code=eligibility.reason_code,
                details=eligibility.details,
            )

        # 4) draw once
        outcome = calculate_rewards(self.template, now, self._rng)
        payload = outcome.payload
        if self.template.type == TYPE_MYSTERY and code.actual_rewards is None:
            code.actual_rewards = payload.to_dict()

        # 5) redeemer
        operation_info = await self._give_rewards(user, payload, now)

        # 6) referrer
        invite_rewards = None
        if user.invite_user_id is not None and payload.invite_reward_rate is not None:
            invite_rewards = await self._give_invite_rewards(user, payload)

        # 7) consume the code; the WHERE clause is the last guard against double use
        res = await db.execute(
            update(GiftCardCode)
            .where(
                GiftCardCode.id == code.id,
                GiftCardCode.usage_count < GiftCardCode.max_usage,
                GiftCardCode.status != CODE_STATUS_DISABLED,
            )
            .values(
                usage_count=GiftCardCode.usage_count + 1,
                status=case(
                    (GiftCardCode.usage_count + 1 >= GiftCardCode.max_usage, CODE_STATUS_USED),
                    else_=GiftCardCode.status,
                ),
                user_id=user.id,
                used_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Gift card code has already been used")
        await db.refresh(code)

        rewards = payload.to_dict()
        db.add(
            GiftCardUsage(
                code_id=code.id,
                template_id=self.template.id,
                user_id=user.id,
                invite_user_id=user.invite_user_id,
                rewards_given=rewards,
                invite_rewards=invite_rewards,
                multiplier_applied=outcome.multiplier,
                ip_address=options.pop("ip_address", None),
                user_agent=options.pop("user_agent", None),
                notes=options.pop("notes", None),
                meta=options,
                created_at=now,
            )
        )
        await db.flush()

        return {
            "rewards": rewards,
            "invite_rewards": invite_rewards,
            "code": code.code,
            "template_name": self.template.name,
            "multiplier": outcome.multiplier,
            "operation_info": operation_info or None,
        }

    async def _give_rewards(self, user: User, payload: RewardPayload, now: datetime) -> dict:
        db = self.db
        had_plan = user.plan_id is not None
        traffic_reset_done = False
        operation_info: dict = {}

        # plan or expiry first, so additive quota lands on top of an assigned plan
        if isinstance(payload.term, PlanGrant):
            plan = await get_plan(db, payload.term.plan_id)
            if plan is None:
                raise ConfigurationError(
                    "The plan configured on this gift card does not exist, please contact support",
                    details={"template_id": self.template.id, "plan_id": payload.term.plan_id},
                )

            current_plan = await get_plan(db, user.plan_id)
            op = resolve_plan_operation(
                payload.term,
                new_plan=plan,
                current_plan_id=user.plan_id,
                current_plan=current_plan,
                current_plan_unlimited=has_unlimited_plan(user),
            )
            if op.kind == OP_EXTEND:
                extend_subscription(user, op.validity_days, now=now)
            else:
                if op.traffic_reset:
                    self._reset_traffic(user, now)
                    traffic_reset_done = True
                assign_plan(user, plan, op.validity_days, now=now)
            operation_info = op.applied()

        elif isinstance(payload.term, ExpiryExtension):
            extend_subscription(user, payload.term.days, now=now)

        if payload.balance > 0:
            credited = await add_balance(
                db,
                user,
                payload.balance,
                entry_kind=ENTRY_GIFT_CARD_REWARD,
                meta={"gift_card_code": self.code.code, "template_id": self.template.id},
            )
            if not credited:
                raise ApplicationError("Failed to credit gift card balance")

        if payload.transfer_enable > 0:
            user.transfer_enable = int(user.transfer_enable or 0) + payload.transfer_enable

        if payload.device_limit > 0:
            user.device_limit = int(user.device_limit or 0) + payload.device_limit

        # only users who held a plan before redeeming have traffic worth resetting
        if payload.reset_package and had_plan and not traffic_reset_done:
            self._reset_traffic(user, now)

        await db.flush()
        return operation_info

    def _reset_traffic(self, user: User, now: datetime) -> None:
        reset_traffic(
            self.db,
            user,
            now=now,
            trigger_source=SOURCE_GIFT_CARD,
            meta={"gift_card_code": self.code.code, "template_name": self.template.name},
        )

    async def _give_invite_rewards(self, user: User, payload: RewardPayload) -> dict | None:
        referrer_id = int(user.invite_user_id)
        if referrer_id == int(user.id):
            return None

        referrer = await lock_user(self.db, referrer_id)
        if referrer is None:
            logger.warning("Referrer not found, skipping invite reward", user_id=user.id, invite_user_id=referrer_id)
            return None
        if referrer.banned:
            logger.info("Referrer is banned, skipping invite reward", user_id=user.id, invite_user_id=referrer_id)
            return None

        rate = payload.invite_reward_rate
        granted: dict[str, int] = {}

        if payload.balance > 0:
            share = invite_share(payload.balance, rate)
            if share > 0:
                credited = await add_balance(
                    self.db,
                    referrer,
                    share,
                    entry_kind=ENTRY_GIFT_CARD_INVITE_REWARD,
                    meta={"gift_card_code": self.code.code, "from_user_id": int(user.id)},
                )
                if credited:
                    granted["balance"] = share

        if payload.transfer_enable > 0:
            share = invite_share(payload.transfer_enable, rate)
            if share > 0:
                referrer.transfer_enable = int(referrer.transfer_enable or 0) + share
                granted["transfer_enable"] = share

        if granted:
            logger.info("Referrer received gift card invite reward", invite_user_id=referrer_id, **granted)
        return granted or None

    # -------------------------
    # Previews (read-only)
    # -------------------------
    async def preview_rewards(self) -> dict:
        """
        What redeeming would grant. The pinned mystery draw is settled only
        once the code is used up, since every redemption before that draws
        again; until then mystery cards show a throwaway draw flagged
        hypothetical.
        """
        if self.user is None:
            raise IneligibleError("User not provided", reason_code="user_not_set")

        hypothetical = False
        if self.code.actual_rewards and self.code.effective_status(self._clock()) == CODE_STATUS_USED:
            payload = RewardPayload.from_dict(self.code.actual_rewards, template_id=self.template.id)
        else:
            outcome = calculate_rewards(self.template, self._clock(), random.Random())
            payload = outcome.payload
            hypothetical = outcome.drawn

        plan_name = None
        if isinstance(payload.term, PlanGrant):
            plan = await get_plan(self.db, payload.term.plan_id)
            plan_name = plan.name if plan else None

        return {
            "raw": payload.to_dict(),
            "formatted": format_rewards(payload, plan_name=plan_name),
            "hypothetical": hypothetical,
        }

    async def predict_plan_operation(self) -> dict | None:
        if self.user is None:
            return None

        static = {k: v for k, v in (self.template.rewards or {}).items() if k != "random_rewards"}
        payload = RewardPayload.from_dict(static, template_id=self.template.id)
        if not isinstance(payload.term, PlanGrant):
            return None

        plan = await get_plan(self.db, payload.term.plan_id)
        if plan is None:
            return None
        current_plan = await get_plan(self.db, self.user.plan_id)

        op = resolve_plan_operation(
            payload.term,
            new_plan=plan,
            current_plan_id=self.user.plan_id,
            current_plan=current_plan,
            current_plan_unlimited=has_unlimited_plan(self.user),
        )
        return op.preview()

    async def get_code_info(self) -> dict:
        """Public-safe summary of the code and its template."""
        now = self._clock()
        info = {
            "code": self.code.code,
            "template": {
                "name": self.template.name,
                "description": self.template.description,
                "type": self.template.type,
                "type_name": self.template.type_name,
                "icon": self.template.icon,
                "background_image": self.template.background_image,
                "theme_color": self.template.theme_color,
            },
            "status": self.code.effective_status(now),
            "status_name": self.code.status_name(now),
            "expires_at": self.code.expires_at,
            "usage_count": int(self.code.usage_count or 0),
            "max_usage": int(self.code.max_usage or 1),
        }

        if self.template.type == TYPE_PLAN:
            plan_id = (self.template.rewards or {}).get("plan_id")
            plan = await get_plan(self.db, plan_id) if plan_id is not None else None
            if plan is not None:
                info["plan_info"] = {
                    "id": int(plan.id),
                    "name": plan.name,
                    "transfer_enable": int(plan.transfer_enable or 0),
                    "device_limit": plan.device_limit,
                }
        return info


async def list_user_usages(
    db: AsyncSession,
    *,
    user_id: int,
    limit: int,
    offset: int,
) -> list[GiftCardUsage]:
    stmt = (
        select(GiftCardUsage)
        .where(GiftCardUsage.user_id == int(user_id))
        .order_by(GiftCardUsage.created_at.desc(), GiftCardUsage.id.desc())
        .limit(int(limit))
        .offset(int(offset))
    )
    res = await db.execute(stmt)
    return list(res.scalars().all())
