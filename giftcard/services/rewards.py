# giftcard/services/rewards.py
from __future__ import annotations

import random
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from pydantic import ValidationError

from giftcard.core.config import settings
from giftcard.core.timeutils import as_utc
from giftcard.models.gift_card import TYPE_MYSTERY, GiftCardTemplate
from giftcard.schemas.gift_cards import FestivalConfig
from giftcard.services.errors import ConfigurationError

_system_rng = secrets.SystemRandom()

# Keys the payload understands; anything else is carried through untouched.
KNOWN_KEYS = {
    "balance",
    "transfer_enable",
    "device_limit",
    "expire_days",
    "reset_package",
    "plan_id",
    "plan_validity_days",
    "invite_reward_rate",
    "random_rewards",
    "weight",
}

GB = 1024 * 1024 * 1024
MB = 1024 * 1024


@dataclass(frozen=True)
class PlanGrant:
    plan_id: int
    validity_days: int = 0


@dataclass(frozen=True)
class ExpiryExtension:
    days: int


# A reward either grants a plan, extends the current expiry, or neither.
RewardTerm = Union[PlanGrant, ExpiryExtension, None]


def _to_int(value: Any, key: str, template_id: int | None) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError) as e:
        raise ConfigurationError(
            f"Gift card template {template_id} has a non-numeric reward field: {key}",
            details={"template_id": template_id, "field": key, "value": value},
        ) from e


def _to_rate(value: Any, template_id: int | None) -> Decimal | None:
    if value is None:
        return None
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigurationError(
            f"Gift card template {template_id} has an invalid invite_reward_rate",
            details={"template_id": template_id, "value": value},
        ) from e
    if not rate.is_finite() or rate < 0:
        raise ConfigurationError(
            f"Gift card template {template_id} has an invalid invite_reward_rate",
            details={"template_id": template_id, "value": value},
        )
    return rate


@dataclass
class RewardPayload:
    balance: int = 0
    transfer_enable: int = 0
    device_limit: int = 0
    reset_package: bool = False
    invite_reward_rate: Decimal | None = None
    term: RewardTerm = None
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, template_id: int | None = None) -> "RewardPayload":
        term: RewardTerm = None
        if raw.get("plan_id") is not None:
            term = PlanGrant(
                plan_id=_to_int(raw["plan_id"], "plan_id", template_id),
                validity_days=_to_int(raw.get("plan_validity_days"), "plan_validity_days", template_id),
            )
        else:
            expire_days = _to_int(raw.get("expire_days"), "expire_days", template_id)
            if expire_days > 0:
                term = ExpiryExtension(days=expire_days)

        return cls(
            balance=_to_int(raw.get("balance"), "balance", template_id),
            transfer_enable=_to_int(raw.get("transfer_enable"), "transfer_enable", template_id),
            device_limit=_to_int(raw.get("device_limit"), "device_limit", template_id),
            reset_package=bool(raw.get("reset_package")),
            invite_reward_rate=_to_rate(raw.get("invite_reward_rate"), template_id),
            term=term,
            extras={k: v for k, v in raw.items() if k not in KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extras)
        if self.balance:
            out["balance"] = self.balance
        if self.transfer_enable:
            out["transfer_enable"] = self.transfer_enable
        if self.device_limit:
            out["device_limit"] = self.device_limit
        if self.reset_package:
            out["reset_package"] = True
        if self.invite_reward_rate is not None:
            out["invite_reward_rate"] = float(self.invite_reward_rate)
        if isinstance(self.term, PlanGrant):
            out["plan_id"] = self.term.plan_id
            out["plan_validity_days"] = self.term.validity_days
        elif isinstance(self.term, ExpiryExtension):
            out["expire_days"] = self.term.days
        return out

    def scaled(self, multiplier: Decimal) -> "RewardPayload":
        """Multiply the amount fields, truncating toward zero. Ids and rates are untouched."""

        def mul(v: int) -> int:
            return int(Decimal(v) * multiplier)

        term = self.term
        if isinstance(term, PlanGrant):
            term = replace(term, validity_days=mul(term.validity_days))
        elif isinstance(term, ExpiryExtension):
            term = ExpiryExtension(days=mul(term.days))

        return replace(
            self,
            balance=mul(self.balance),
            transfer_enable=mul(self.transfer_enable),
            device_limit=mul(self.device_limit),
            term=term,
        )


@dataclass
class RewardOutcome:
    payload: RewardPayload
    multiplier: float = 1.0
    drawn: bool = False


def _parse_weight(entry: Any, index: int, template_id: int | None) -> Decimal:
    weight = entry.get("weight") if isinstance(entry, dict) else None
    try:
        w = Decimal(str(weight)) if weight is not None and not isinstance(weight, bool) else None
    except (InvalidOperation, ValueError):
        w = None
    if w is None or not w.is_finite() or w <= 0:
        raise ConfigurationError(
            f"Mystery gift card misconfigured: reward #{index + 1} has no valid weight",
            details={"template_id": template_id, "reward_index": index},
        )
    return w


def draw_mystery_reward(
    candidates: Any,
    rng: random.Random,
    *,
    template_id: int | None = None,
) -> dict[str, Any]:
    """
    Weighted pick over an ordered candidate list.

    Draws r in [1, total] (integer weights) or (0, total] otherwise and takes the
    first entry whose cumulative weight reaches r. The chosen entry is returned
    without its weight.
    """
    if not isinstance(candidates, list) or not candidates:
        raise ConfigurationError(
            "Mystery gift card misconfigured: random_rewards must be a non-empty list",
            details={"template_id": template_id},
        )

    weights = [_parse_weight(entry, i, template_id) for i, entry in enumerate(candidates)]
    total = sum(weights, Decimal(0))
    if total <= 0:
        raise ConfigurationError(
            "Mystery gift card misconfigured: total weight must be positive",
            details={"template_id": template_id},
        )

    if all(w == w.to_integral_value() for w in weights):
        draw = Decimal(rng.randint(1, int(total)))
    else:
        draw = total - Decimal(str(rng.random())) * total

    cumulative = Decimal(0)
    chosen = candidates[-1]
    for entry, w in zip(candidates, weights):
        cumulative += w
        if cumulative >= draw:
            chosen = entry
            break

    selected = dict(chosen)
    selected.pop("weight", None)
    return selected


def festival_multiplier(special_config: dict | None, now: datetime, *, template_id: int | None = None) -> Decimal:
    if not special_config:
        return Decimal(1)
    try:
        festival = FestivalConfig.model_validate(special_config)
    except ValidationError as e:
        raise ConfigurationError(
            f"Gift card template {template_id} has an invalid special_config",
            details={"template_id": template_id, "errors": e.errors(include_url=False)},
        ) from e

    if festival.festival_bonus is None or festival.start_time is None or festival.end_time is None:
        return Decimal(1)

    bonus = Decimal(str(festival.festival_bonus))
    if not bonus.is_finite() or bonus <= 0:
        raise ConfigurationError(
            f"Gift card template {template_id} has a non-positive festival_bonus",
            details={"template_id": template_id, "festival_bonus": festival.festival_bonus},
        )

    if as_utc(festival.start_time) <= now <= as_utc(festival.end_time):
        return bonus
    return Decimal(1)


def calculate_rewards(
    template: GiftCardTemplate,
    now: datetime,
    rng: random.Random | None = None,
) -> RewardOutcome:
    """
    Turn a template's reward config into the concrete reward for one redemption.

    Consumes randomness for mystery templates, so call it once per redemption
    and persist the result rather than recomputing it.
    """
    base = dict(template.rewards or {})
    drawn = False

    if template.type == TYPE_MYSTERY and "random_rewards" in base:
        selected = draw_mystery_reward(base.pop("random_rewards"), rng or _system_rng, template_id=template.id)
        base.update(selected)
        drawn = True

    payload = RewardPayload.from_dict(base, template_id=template.id)

    multiplier = festival_multiplier(template.special_config, now, template_id=template.id)
    if multiplier != 1:
        payload = payload.scaled(multiplier)

    return RewardOutcome(payload=payload, multiplier=float(multiplier), drawn=drawn)


def format_rewards(payload: RewardPayload, *, plan_name: str | None = None) -> dict[str, Any]:
    formatted: dict[str, Any] = {}

    if payload.balance > 0:
        formatted["balance"] = {
            "raw": payload.balance,
            "formatted": f"{payload.balance / 100:,.2f} {settings.CURRENCY}",
            "description": "Balance",
        }

    if payload.transfer_enable > 0:
        gb = round(payload.transfer_enable / GB, 2)
        formatted["transfer_enable"] = {
            "raw": payload.transfer_enable,
            "formatted": f"{gb:,.2f} GB" if gb >= 1 else f"{payload.transfer_enable / MB:,.2f} MB",
            "description": "Traffic",
        }

    if payload.device_limit > 0:
        formatted["device_limit"] = {
            "raw": payload.device_limit,
            "formatted": f"{payload.device_limit} devices",
            "description": "Device limit",
        }

    if isinstance(payload.term, ExpiryExtension):
        formatted["expire_days"] = {
            "raw": payload.term.days,
            "formatted": f"{payload.term.days} days",
            "description": "Subscription extension",
        }

    if payload.reset_package:
        formatted["reset_package"] = {
            "raw": True,
            "formatted": "yes",
            "description": "Traffic reset",
        }

    if isinstance(payload.term, PlanGrant):
        formatted["plan"] = {
            "id": payload.term.plan_id,
            "name": plan_name or "Unknown plan",
            "description": "Plan",
            "validity_days": payload.term.validity_days,
        }

    return formatted
