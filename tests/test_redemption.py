import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from loguru import logger
from sqlalchemy import func, select

from conftest import GB, NOW, FixedRandom, create_code, create_plan, create_template, create_user
from giftcard.core.timeutils import as_utc
from giftcard.models.gift_card import (
    CODE_STATUS_AVAILABLE,
    CODE_STATUS_DISABLED,
    CODE_STATUS_USED,
    TYPE_MYSTERY,
    TYPE_PLAN,
    GiftCardCode,
    GiftCardUsage,
)
from giftcard.models.ledger import BalanceLedger
from giftcard.models.traffic_reset_log import SOURCE_GIFT_CARD, TrafficResetLog
from giftcard.models.user import User
from giftcard.services.errors import (
    ConfigurationError,
    ConflictError,
    GiftCardError,
    GiftCardNotFound,
    IneligibleError,
)
from giftcard.services.gift_cards import GiftCardService, invite_share, list_user_usages

MYSTERY_REWARDS = {
    "random_rewards": [
        {"balance": 100, "weight": 1},
        {"balance": 500, "weight": 3},
    ]
}


def _festival(bonus) -> dict:
    return {
        "start_time": (NOW - timedelta(days=1)).isoformat(),
        "end_time": (NOW + timedelta(days=1)).isoformat(),
        "festival_bonus": bonus,
    }


async def _redeem(session, code_str, user, clock, **kwargs):
    options = kwargs.pop("options", None)
    service = await GiftCardService.load(session, code_str, user, clock=clock, **kwargs)
    return await service.redeem(options)


async def _count(session, model, **filters) -> int:
    stmt = select(func.count()).select_from(model)
    for name, value in filters.items():
        stmt = stmt.where(getattr(model, name) == value)
    res = await session.execute(stmt)
    return int(res.scalar_one())


async def _fresh(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


# -------------------------
# basic flow
# -------------------------
@pytest.mark.asyncio
async def test_redeem_credits_balance_and_records_usage(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, rewards={"balance": 100, "device_limit": 1})
        code = await create_code(session, template)
        await session.commit()

        result = await _redeem(
            session,
            code.code,
            user,
            clock,
            options={"ip_address": "10.0.0.1", "user_agent": "pytest", "notes": "hi", "campaign": "spring"},
        )

        assert result["code"] == code.code
        assert result["template_name"] == "Welcome card"
        assert result["rewards"] == {"balance": 100, "device_limit": 1}
        assert result["invite_rewards"] is None
        assert result["multiplier"] == 1.0
        assert result["operation_info"] is None

    fresh_user = await _fresh(session_factory, User, user.id)
    assert fresh_user.balance == 100
    assert fresh_user.device_limit == 1

    fresh_code = await _fresh(session_factory, GiftCardCode, code.id)
    assert fresh_code.usage_count == 1
    assert fresh_code.status == CODE_STATUS_USED
    assert fresh_code.user_id == user.id
    assert as_utc(fresh_code.used_at) == NOW

    async with session_factory() as session:
        usages = await list_user_usages(session, user_id=user.id, limit=10, offset=0)
        assert len(usages) == 1
        usage = usages[0]
        assert usage.rewards_given == {"balance": 100, "device_limit": 1}
        assert usage.ip_address == "10.0.0.1"
        assert usage.user_agent == "pytest"
        assert usage.notes == "hi"
        assert usage.meta == {"campaign": "spring"}

        ledger = (await session.execute(select(BalanceLedger))).scalars().all()
        assert [(row.entry_kind, row.amount_cents) for row in ledger] == [("gift_card_reward", 100)]


@pytest.mark.asyncio
async def test_unknown_code_is_not_found(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(GiftCardNotFound):
            await GiftCardService.load(session, "NOPE")


@pytest.mark.asyncio
async def test_redeem_without_user_is_refused(session_factory, clock) -> None:
    async with session_factory() as session:
        template = await create_template(session)
        code = await create_code(session, template)
        await session.commit()

        service = await GiftCardService.load(session, code.code, clock=clock)
        with pytest.raises(IneligibleError) as exc:
            await service.redeem()
        assert exc.value.reason_code == "user_not_set"


@pytest.mark.asyncio
async def test_second_redeem_of_single_use_code_conflicts(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session)
        code = await create_code(session, template)
        await session.commit()
        user_id, code_str = user.id, code.code

        await _redeem(session, code_str, user, clock)

    async with session_factory() as session:
        user = await session.get(User, user_id)
        with pytest.raises(ConflictError):
            await _redeem(session, code_str, user, clock)

    fresh_user = await _fresh(session_factory, User, user_id)
    assert fresh_user.balance == 100
    async with session_factory() as session:
        assert await _count(session, GiftCardUsage) == 1


@pytest.mark.asyncio
async def test_multi_use_code_flips_to_used_on_last_use(session_factory, clock) -> None:
    async with session_factory() as session:
        first = await create_user(session)
        second = await create_user(session)
        template = await create_template(session)
        code = await create_code(session, template, max_usage=2)
        await session.commit()
        code_id, code_str = code.id, code.code

        await _redeem(session, code_str, first, clock)
        mid = await _fresh(session_factory, GiftCardCode, code_id)
        assert (mid.usage_count, mid.status) == (1, CODE_STATUS_AVAILABLE)

        await _redeem(session, code_str, second, clock)

    done = await _fresh(session_factory, GiftCardCode, code_id)
    assert (done.usage_count, done.status) == (2, CODE_STATUS_USED)
    assert done.user_id == second.id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code_fields", "template_fields", "reason_code"),
    [
        ({"status": CODE_STATUS_DISABLED}, {}, "code_disabled"),
        ({"expires_at": NOW - timedelta(minutes=1)}, {}, "code_expired"),
        ({}, {"status": False}, "template_disabled"),
    ],
)
async def test_unavailable_codes_are_refused(session_factory, clock, code_fields, template_fields, reason_code) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, **template_fields)
        code = await create_code(session, template, **code_fields)
        await session.commit()
        user_id, code_id = user.id, code.id

        with pytest.raises(IneligibleError) as exc:
            await _redeem(session, code.code, user, clock)
        assert exc.value.reason_code == reason_code

    assert (await _fresh(session_factory, User, user_id)).balance == 0
    assert (await _fresh(session_factory, GiftCardCode, code_id)).usage_count == 0


@pytest.mark.asyncio
async def test_ineligible_user_is_refused_without_mutation(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session, created_at=NOW - timedelta(days=30))
        template = await create_template(session, conditions={"new_user_only": True, "new_user_max_days": 7})
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        with pytest.raises(IneligibleError) as exc:
            await _redeem(session, code.code, user, clock)
        assert exc.value.reason_code == "new_user_only"
        assert exc.value.details == {"max_days": 7, "user_days": 30}

    assert (await _fresh(session_factory, User, user_id)).balance == 0
    async with session_factory() as session:
        assert await _count(session, GiftCardUsage) == 0


# -------------------------
# usage limits
# -------------------------
@pytest.mark.asyncio
async def test_max_use_per_user_across_codes(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, limits={"max_use_per_user": 1})
        first = await create_code(session, template)
        second = await create_code(session, template)
        await session.commit()

        await _redeem(session, first.code, user, clock)

        with pytest.raises(IneligibleError) as exc:
            await _redeem(session, second.code, user, clock)
        assert exc.value.reason_code == "max_use_reached"


@pytest.mark.asyncio
async def test_cooldown_between_redemptions(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, limits={"cooldown_hours": 24})
        first = await create_code(session, template)
        second = await create_code(session, template)
        third = await create_code(session, template)
        await session.commit()
        user_id, second_code, third_code = user.id, second.code, third.code

        await _redeem(session, first.code, user, clock)

        with pytest.raises(IneligibleError) as exc:
            await _redeem(session, second_code, user, lambda: NOW + timedelta(hours=1))
        assert exc.value.reason_code == "cooldown_active"
        assert exc.value.details["remaining_hours"] == 23
        assert exc.value.details["remaining_minutes"] == 0

        # the refusal rolled back and expired the session's objects
        user = await session.get(User, user_id)
        await _redeem(session, third_code, user, lambda: NOW + timedelta(hours=24))


# -------------------------
# plans
# -------------------------
@pytest.mark.asyncio
async def test_same_plan_extends_without_traffic_reset(session_factory, clock) -> None:
    async with session_factory() as session:
        plan = await create_plan(session)
        user = await create_user(
            session,
            plan_id=plan.id,
            expired_at=NOW + timedelta(days=10),
            transfer_enable=100 * GB,
            u=5 * GB,
            d=7 * GB,
        )
        template = await create_template(
            session,
            type=TYPE_PLAN,
            rewards={"plan_id": plan.id, "plan_validity_days": 30},
        )
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        result = await _redeem(session, code.code, user, clock)
        assert result["operation_info"]["plan_action"] == "extend"
        assert result["operation_info"]["extended_days"] == 30

        assert await _count(session, TrafficResetLog) == 0

    fresh = await _fresh(session_factory, User, user_id)
    assert as_utc(fresh.expired_at) == NOW + timedelta(days=40)
    assert (fresh.u, fresh.d) == (5 * GB, 7 * GB)
    assert fresh.plan_id == plan.id


@pytest.mark.asyncio
async def test_different_plan_replaces_and_resets_once(session_factory, clock) -> None:
    async with session_factory() as session:
        basic = await create_plan(session, name="Basic")
        premium = await create_plan(session, name="Premium", transfer_enable=200 * GB, device_limit=5)
        user = await create_user(
            session,
            plan_id=basic.id,
            expired_at=NOW + timedelta(days=10),
            u=5 * GB,
            d=7 * GB,
        )
        template = await create_template(
            session,
            type=TYPE_PLAN,
            rewards={"plan_id": premium.id, "plan_validity_days": 30, "reset_package": True},
        )
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        result = await _redeem(session, code.code, user, clock)
        info = result["operation_info"]
        assert info["plan_action"] == "replace"
        assert info["old_plan_name"] == "Basic"
        assert info["new_plan_name"] == "Premium"
        assert info["traffic_reset"] is True

        logs = (await session.execute(select(TrafficResetLog))).scalars().all()
        assert len(logs) == 1
        assert logs[0].trigger_source == SOURCE_GIFT_CARD
        assert logs[0].old_total == 12 * GB

    fresh = await _fresh(session_factory, User, user_id)
    assert fresh.plan_id == premium.id
    assert fresh.transfer_enable == 200 * GB
    assert fresh.device_limit == 5
    assert (fresh.u, fresh.d) == (0, 0)
    assert fresh.reset_count == 1
    assert as_utc(fresh.expired_at) == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_plan_assigned_to_user_without_plan(session_factory, clock) -> None:
    async with session_factory() as session:
        plan = await create_plan(session, name="Starter", transfer_enable=50 * GB)
        user = await create_user(session)
        template = await create_template(
            session,
            type=TYPE_PLAN,
            rewards={"plan_id": plan.id, "plan_validity_days": 30, "transfer_enable": 10 * GB, "reset_package": True},
        )
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        result = await _redeem(session, code.code, user, clock)
        assert result["operation_info"]["plan_action"] == "assign"
        # nothing to reset for a user who had no plan
        assert await _count(session, TrafficResetLog) == 0

    fresh = await _fresh(session_factory, User, user_id)
    assert fresh.plan_id == plan.id
    # extra quota lands on top of the assigned plan
    assert fresh.transfer_enable == 60 * GB


@pytest.mark.asyncio
async def test_reset_package_for_user_with_plan(session_factory, clock) -> None:
    async with session_factory() as session:
        plan = await create_plan(session)
        user = await create_user(session, plan_id=plan.id, u=GB, d=GB)
        template = await create_template(session, rewards={"reset_package": True})
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        await _redeem(session, code.code, user, clock)
        assert await _count(session, TrafficResetLog, user_id=user_id) == 1

    fresh = await _fresh(session_factory, User, user_id)
    assert (fresh.u, fresh.d) == (0, 0)


@pytest.mark.asyncio
async def test_expire_days_extend_from_now_when_expired(session_factory, clock) -> None:
    async with session_factory() as session:
        plan = await create_plan(session)
        user = await create_user(session, plan_id=plan.id, expired_at=NOW - timedelta(days=3))
        template = await create_template(session, rewards={"expire_days": 7})
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        await _redeem(session, code.code, user, clock)

    fresh = await _fresh(session_factory, User, user_id)
    assert as_utc(fresh.expired_at) == NOW + timedelta(days=7)


@pytest.mark.asyncio
async def test_missing_plan_is_configuration_error_without_mutation(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(
            session,
            type=TYPE_PLAN,
            rewards={"plan_id": 999, "plan_validity_days": 30, "balance": 100},
        )
        code = await create_code(session, template)
        await session.commit()
        user_id, code_id = user.id, code.id

        with pytest.raises(ConfigurationError) as exc:
            await _redeem(session, code.code, user, clock)
        assert exc.value.details["plan_id"] == 999

    fresh = await _fresh(session_factory, User, user_id)
    assert fresh.balance == 0
    assert fresh.plan_id is None
    assert (await _fresh(session_factory, GiftCardCode, code_id)).usage_count == 0
    async with session_factory() as session:
        assert await _count(session, GiftCardUsage) == 0
        assert await _count(session, BalanceLedger) == 0


# -------------------------
# invite rewards
# -------------------------
def test_invite_share_floors() -> None:
    assert invite_share(1000, Decimal("0.2")) == 200
    assert invite_share(999, Decimal("0.1")) == 99
    assert invite_share(3, Decimal("0.1")) == 0


@pytest.mark.asyncio
async def test_referrer_receives_share(session_factory, clock) -> None:
    async with session_factory() as session:
        referrer = await create_user(session)
        user = await create_user(session, invite_user_id=referrer.id)
        template = await create_template(
            session,
            rewards={"balance": 1000, "transfer_enable": 10 * GB, "device_limit": 2, "invite_reward_rate": 0.2},
        )
        code = await create_code(session, template)
        await session.commit()
        referrer_id, user_id = referrer.id, user.id

        result = await _redeem(session, code.code, user, clock)
        assert result["invite_rewards"] == {"balance": 200, "transfer_enable": 2 * GB}

        usage = (await session.execute(select(GiftCardUsage))).scalar_one()
        assert usage.invite_user_id == referrer_id
        assert usage.invite_rewards == {"balance": 200, "transfer_enable": 2 * GB}

    fresh_referrer = await _fresh(session_factory, User, referrer_id)
    assert fresh_referrer.balance == 200
    assert fresh_referrer.transfer_enable == 2 * GB
    # device limits are never shared
    assert fresh_referrer.device_limit is None
    assert (await _fresh(session_factory, User, user_id)).balance == 1000

    async with session_factory() as session:
        assert await _count(session, BalanceLedger, entry_kind="gift_card_invite_reward") == 1


@pytest.mark.asyncio
async def test_banned_referrer_gets_nothing(session_factory, clock) -> None:
    async with session_factory() as session:
        referrer = await create_user(session, banned=True)
        user = await create_user(session, invite_user_id=referrer.id)
        template = await create_template(session, rewards={"balance": 1000, "invite_reward_rate": 0.2})
        code = await create_code(session, template)
        await session.commit()
        referrer_id, user_id = referrer.id, user.id

        result = await _redeem(session, code.code, user, clock)
        assert result["invite_rewards"] is None

    assert (await _fresh(session_factory, User, referrer_id)).balance == 0
    assert (await _fresh(session_factory, User, user_id)).balance == 1000


@pytest.mark.asyncio
async def test_no_invite_rate_means_no_share(session_factory, clock) -> None:
    async with session_factory() as session:
        referrer = await create_user(session)
        user = await create_user(session, invite_user_id=referrer.id)
        template = await create_template(session, rewards={"balance": 1000})
        code = await create_code(session, template)
        await session.commit()
        referrer_id = referrer.id

        result = await _redeem(session, code.code, user, clock)
        assert result["invite_rewards"] is None

    assert (await _fresh(session_factory, User, referrer_id)).balance == 0


# -------------------------
# multiplier and mystery
# -------------------------
@pytest.mark.asyncio
async def test_multiplier_outside_festival(session_factory) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, rewards={"balance": 100}, special_config=_festival(1.5))
        code = await create_code(session, template)
        await session.commit()

        result = await _redeem(session, code.code, user, lambda: NOW + timedelta(days=5))
        assert result["rewards"]["balance"] == 100
        usage = (await session.execute(select(GiftCardUsage))).scalar_one()
        assert usage.multiplier_applied == 1.0


@pytest.mark.asyncio
async def test_festival_bonus_is_applied_and_recorded(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, rewards={"balance": 100}, special_config=_festival(1.5))
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        result = await _redeem(session, code.code, user, clock)
        assert result["multiplier"] == 1.5
        assert result["rewards"] == {"balance": 150}

        usage = (await session.execute(select(GiftCardUsage))).scalar_one()
        assert usage.multiplier_applied == 1.5

    assert (await _fresh(session_factory, User, user_id)).balance == 150


@pytest.mark.asyncio
async def test_mystery_draw_is_pinned_once(session_factory, clock) -> None:
    async with session_factory() as session:
        first = await create_user(session)
        second = await create_user(session)
        template = await create_template(session, type=TYPE_MYSTERY, rewards=MYSTERY_REWARDS)
        code = await create_code(session, template, max_usage=2)
        await session.commit()
        code_id, first_id, second_id = code.id, first.id, second.id

        result = await _redeem(session, code.code, first, clock, rng=FixedRandom(2))
        assert result["rewards"] == {"balance": 500}

        await _redeem(session, code.code, second, clock, rng=FixedRandom(1))

    fresh_code = await _fresh(session_factory, GiftCardCode, code_id)
    assert fresh_code.actual_rewards == {"balance": 500}
    assert (await _fresh(session_factory, User, first_id)).balance == 500
    assert (await _fresh(session_factory, User, second_id)).balance == 100


@pytest.mark.asyncio
async def test_misconfigured_mystery_leaves_everything_untouched(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(
            session,
            type=TYPE_MYSTERY,
            rewards={"random_rewards": [{"balance": 100, "weight": 0}]},
        )
        code = await create_code(session, template)
        await session.commit()
        user_id, code_id = user.id, code.id

        with pytest.raises(ConfigurationError):
            await _redeem(session, code.code, user, clock, rng=FixedRandom(1))

    assert (await _fresh(session_factory, User, user_id)).balance == 0
    fresh_code = await _fresh(session_factory, GiftCardCode, code_id)
    assert fresh_code.usage_count == 0
    assert fresh_code.actual_rewards is None


# -------------------------
# concurrency
# -------------------------
@pytest.mark.asyncio
async def test_stale_session_loses_to_committed_redemption(file_session_factory, clock) -> None:
    async with file_session_factory() as setup:
        user = await create_user(setup)
        other = await create_user(setup)
        template = await create_template(setup)
        code = await create_code(setup, template)
        await setup.commit()
        code_str, user_id, other_id = code.code, user.id, other.id

    async with file_session_factory() as s1, file_session_factory() as s2:
        svc1 = await GiftCardService.load(s1, code_str, await s1.get(User, user_id), clock=clock)
        svc2 = await GiftCardService.load(s2, code_str, await s2.get(User, other_id), clock=clock)

        # both see an available code
        assert (await svc1.check_user_eligibility())["can_redeem"]
        assert (await svc2.check_user_eligibility())["can_redeem"]

        await svc1.redeem()
        with pytest.raises(ConflictError):
            await svc2.redeem()

    assert (await _fresh(file_session_factory, User, user_id)).balance == 100
    assert (await _fresh(file_session_factory, User, other_id)).balance == 0


@pytest.mark.asyncio
async def test_concurrent_redemptions_credit_exactly_once(file_session_factory, clock) -> None:
    async with file_session_factory() as setup:
        users = [await create_user(setup) for _ in range(2)]
        template = await create_template(setup)
        code = await create_code(setup, template)
        await setup.commit()
        code_str = code.code
        user_ids = [u.id for u in users]

    async def attempt(user_id):
        async with file_session_factory() as session:
            user = await session.get(User, user_id)
            try:
                return await _redeem(session, code_str, user, clock)
            except GiftCardError as e:
                return e

    outcomes = await asyncio.gather(*(attempt(uid) for uid in user_ids))

    successes = [o for o in outcomes if isinstance(o, dict)]
    failures = [o for o in outcomes if isinstance(o, GiftCardError)]
    assert len(successes) == 1
    assert len(failures) == 1

    async with file_session_factory() as session:
        assert await _count(session, GiftCardUsage) == 1
        total = (await session.execute(select(func.sum(User.balance)))).scalar_one()
        assert total == 100
        fresh_code = await session.get(GiftCardCode, code.id)
        assert fresh_code.usage_count == 1


# -------------------------
# read-only previews
# -------------------------
@pytest.mark.asyncio
async def test_preview_of_unpinned_mystery_is_hypothetical(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, type=TYPE_MYSTERY, rewards=MYSTERY_REWARDS)
        code = await create_code(session, template)
        await session.commit()

        service = await GiftCardService.load(session, code.code, user, clock=clock)
        preview = await service.preview_rewards()

        assert preview["hypothetical"] is True
        assert preview["raw"]["balance"] in (100, 500)
        assert service.code.actual_rewards is None
        assert await _count(session, GiftCardUsage) == 0


@pytest.mark.asyncio
async def test_preview_shows_pinned_reward_of_used_up_code(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, type=TYPE_MYSTERY, rewards=MYSTERY_REWARDS)
        code = await create_code(
            session,
            template,
            max_usage=1,
            usage_count=1,
            status=CODE_STATUS_USED,
            actual_rewards={"balance": 500},
        )
        await session.commit()

        service = await GiftCardService.load(session, code.code, user, clock=clock)
        preview = await service.preview_rewards()

        assert preview["hypothetical"] is False
        assert preview["raw"] == {"balance": 500}
        assert preview["formatted"]["balance"]["raw"] == 500


@pytest.mark.asyncio
async def test_preview_of_partly_used_mystery_code_stays_hypothetical(session_factory, clock) -> None:
    async with session_factory() as session:
        first = await create_user(session)
        second = await create_user(session)
        template = await create_template(session, type=TYPE_MYSTERY, rewards=MYSTERY_REWARDS)
        code = await create_code(session, template, max_usage=2)
        await session.commit()
        code_str = code.code

        await _redeem(session, code_str, first, clock, rng=FixedRandom(2))

        service = await GiftCardService.load(session, code_str, second, clock=clock, rng=FixedRandom(1))
        assert service.code.actual_rewards == {"balance": 500}

        # the next redemption draws again, so the pin is not what the second user gets
        preview = await service.preview_rewards()
        assert preview["hypothetical"] is True

        result = await service.redeem()
        assert result["rewards"] == {"balance": 100}


@pytest.mark.asyncio
async def test_predict_plan_operation_and_code_info(session_factory, clock) -> None:
    async with session_factory() as session:
        basic = await create_plan(session, name="Basic")
        premium = await create_plan(session, name="Premium")
        user = await create_user(session, plan_id=basic.id)
        template = await create_template(
            session,
            type=TYPE_PLAN,
            rewards={"plan_id": premium.id, "plan_validity_days": 30},
        )
        code = await create_code(session, template)
        await session.commit()

        service = await GiftCardService.load(session, code.code, user, clock=clock)

        prediction = await service.predict_plan_operation()
        assert prediction["operation_type"] == "replace"
        assert prediction["traffic_reset"] is True
        assert prediction["warning"]

        info = await service.get_code_info()
        assert info["status"] == CODE_STATUS_AVAILABLE
        assert info["template"]["type_name"] == "Plan gift card"
        assert info["plan_info"]["name"] == "Premium"

        preview = await service.preview_rewards()
        assert preview["formatted"]["plan"]["name"] == "Premium"

    # nothing changed
    fresh = await _fresh(session_factory, User, user.id)
    assert fresh.plan_id == basic.id


@pytest.mark.asyncio
async def test_validate_raises_for_ineligible_user(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, conditions={"require_invite": True})
        code = await create_code(session, template)
        await session.commit()

        service = await GiftCardService.load(session, code.code, clock=clock)
        service.set_user(user).validate_is_active()
        with pytest.raises(IneligibleError) as exc:
            await service.validate()
        assert exc.value.reason_code == "require_invite"


@pytest.mark.asyncio
async def test_same_plan_on_unlimited_plan_reports_no_extension(session_factory, clock) -> None:
    async with session_factory() as session:
        plan = await create_plan(session)
        user = await create_user(session, plan_id=plan.id, expired_at=None)
        template = await create_template(
            session,
            type=TYPE_PLAN,
            rewards={"plan_id": plan.id, "plan_validity_days": 30},
        )
        code = await create_code(session, template)
        await session.commit()
        user_id = user.id

        service = await GiftCardService.load(session, code.code, user, clock=clock)
        prediction = await service.predict_plan_operation()
        assert prediction["operation_type"] == "extend"
        assert prediction["validity_days"] == 0
        assert "never expires" in prediction["message"]

        result = await service.redeem()
        assert result["operation_info"] is None

    fresh = await _fresh(session_factory, User, user_id)
    assert fresh.expired_at is None
    assert fresh.plan_id == plan.id


@pytest.mark.asyncio
async def test_eligibility_lost_after_check_is_a_conflict(session_factory, clock) -> None:
    async with session_factory() as session:
        user = await create_user(session)
        template = await create_template(session, limits={"max_use_per_user": 1})
        first = await create_code(session, template)
        second = await create_code(session, template)
        await session.commit()
        user_id, first_code = user.id, first.code

        service = await GiftCardService.load(session, second.code, user, clock=clock)
        assert (await service.check_user_eligibility())["can_redeem"] is True

        # the user spends their one use on another code in the meantime
        await _redeem(session, first_code, user, clock)

        with pytest.raises(ConflictError) as exc:
            await service.redeem()
        assert exc.value.reason_code == "eligibility_changed"
        assert exc.value.details["reason_code"] == "max_use_reached"

    assert (await _fresh(session_factory, User, user_id)).balance == 100


@pytest.mark.asyncio
async def test_configuration_error_is_logged_once(session_factory, clock) -> None:
    errors = []
    handler_id = logger.add(errors.append, level="ERROR")
    try:
        async with session_factory() as session:
            user = await create_user(session)
            template = await create_template(
                session,
                type=TYPE_MYSTERY,
                rewards={"random_rewards": [{"balance": 100, "weight": 1}, {"balance": 5}]},
            )
            code = await create_code(session, template)
            await session.commit()
            template_id = template.id

            with pytest.raises(ConfigurationError):
                await _redeem(session, code.code, user, clock, rng=FixedRandom(1))
    finally:
        logger.remove(handler_id)

    assert len(errors) == 1
    extra = errors[0].record["extra"]
    assert extra["template_id"] == template_id
    assert extra["details"]["reward_index"] == 1
