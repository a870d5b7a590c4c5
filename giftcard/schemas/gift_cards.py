# giftcard/schemas/gift_cards.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# -------------------------
# Template payloads (JSON columns)
# -------------------------
class TemplateConditions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    new_user_only: bool = False
    new_user_max_days: int | None = Field(default=None, ge=0)
    paid_user_only: bool = False
    allowed_plans: list[int] = Field(default_factory=list)
    require_invite: bool = False


class TemplateLimits(BaseModel):
    model_config = ConfigDict(extra="ignore")

    max_use_per_user: int | None = Field(default=None, ge=0)
    cooldown_hours: float | None = Field(default=None, ge=0)


class FestivalConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # unix timestamps or ISO strings
    start_time: datetime | None = None
    end_time: datetime | None = None
    festival_bonus: float | None = None


# -------------------------
# API
# -------------------------
class GiftCardCodeIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class GiftCardRedeemIn(GiftCardCodeIn):
    notes: str | None = Field(default=None, max_length=255)


class GiftCardTemplateInfo(BaseModel):
    name: str
    description: str | None
    type: str
    type_name: str
    icon: str | None
    background_image: str | None
    theme_color: str | None


class GiftCardCodeInfoOut(BaseModel):
    code: str
    template: GiftCardTemplateInfo
    status: str
    status_name: str
    expires_at: datetime | None
    usage_count: int
    max_usage: int
    plan_info: dict[str, Any] | None = None


class PlanOperationOut(BaseModel):
    operation_type: str
    current_plan_id: int | None
    current_plan_name: str
    new_plan_id: int
    new_plan_name: str
    validity_days: int
    traffic_reset: bool
    warning: str | None
    message: str


class RewardPreviewOut(BaseModel):
    raw: dict[str, Any]
    formatted: dict[str, Any]
    hypothetical: bool


class GiftCardCheckOut(BaseModel):
    code_info: GiftCardCodeInfoOut
    can_redeem: bool
    reason: str | None = None
    reason_code: str | None = None
    reward_preview: RewardPreviewOut | None = None
    plan_operation: PlanOperationOut | None = None


class GiftCardRedeemOut(BaseModel):
    code: str
    template_name: str
    rewards: dict[str, Any]
    invite_rewards: dict[str, Any] | None
    multiplier: float
    operation_info: dict[str, Any] | None


class GiftCardUsageOut(BaseModel):
    id: int
    code_id: int
    template_id: int
    rewards_given: dict[str, Any]
    invite_rewards: dict[str, Any] | None
    multiplier_applied: float
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
