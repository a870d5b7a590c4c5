# giftcard/models/gift_card.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from giftcard.core.db import Base, JSONDict
from giftcard.core.timeutils import as_utc


TYPE_GENERAL = "general"
TYPE_PLAN = "plan"
TYPE_MYSTERY = "mystery"

TYPE_NAMES = {
    TYPE_GENERAL: "General gift card",
    TYPE_PLAN: "Plan gift card",
    TYPE_MYSTERY: "Mystery gift card",
}

CODE_STATUS_AVAILABLE = "available"
CODE_STATUS_USED = "used"
CODE_STATUS_DISABLED = "disabled"
CODE_STATUS_EXPIRED = "expired"

CODE_STATUS_NAMES = {
    CODE_STATUS_AVAILABLE: "available",
    CODE_STATUS_USED: "already used",
    CODE_STATUS_DISABLED: "disabled",
    CODE_STATUS_EXPIRED: "expired",
}


class GiftCardTemplate(Base):
    __tablename__ = "gift_card_templates"
    __table_args__ = (
        CheckConstraint(
            "type IN ('general','plan','mystery')",
            name="gift_card_templates_type_check",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)

    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(Text, nullable=False, default=TYPE_GENERAL)
    status = Column(Boolean, nullable=False, server_default="true", default=True)

    conditions = Column(JSONDict, nullable=True)
    rewards = Column(JSONDict, nullable=False, default=dict)
    limits = Column(JSONDict, nullable=True)
    special_config = Column(JSONDict, nullable=True)

    icon = Column(Text, nullable=True)
    background_image = Column(Text, nullable=True)
    theme_color = Column(Text, nullable=False, server_default="#1890ff", default="#1890ff")
    sort = Column(Integer, nullable=False, server_default="0", default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def type_name(self) -> str:
        return TYPE_NAMES.get(self.type, "Unknown type")

    def is_available(self) -> bool:
        return bool(self.status)


class GiftCardCode(Base):
    __tablename__ = "gift_card_codes"
    __table_args__ = (
        CheckConstraint(
            "status IN ('available','used','disabled','expired')",
            name="gift_card_codes_status_check",
        ),
        CheckConstraint("max_usage >= 1", name="gift_card_codes_max_usage_check"),
        CheckConstraint("usage_count >= 0", name="gift_card_codes_usage_count_check"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)

    template_id = Column(Integer, ForeignKey("gift_card_templates.id"), nullable=False)
    code = Column(Text, nullable=False, unique=True)

    status = Column(Text, nullable=False, default=CODE_STATUS_AVAILABLE)
    usage_count = Column(Integer, nullable=False, server_default="0", default=0)
    max_usage = Column(Integer, nullable=False, server_default="1", default=1)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # drawn mystery reward, written once at the first successful redemption
    actual_rewards = Column(JSONDict, nullable=True)

    # latest redeemer
    user_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("users.id"), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    template = relationship("GiftCardTemplate", lazy="selectin")

    def effective_status(self, now: datetime) -> str:
        if self.status == CODE_STATUS_DISABLED:
            return CODE_STATUS_DISABLED
        if int(self.usage_count or 0) >= int(self.max_usage or 1):
            return CODE_STATUS_USED
        expires_at = as_utc(self.expires_at)
        if expires_at is not None and expires_at <= now:
            return CODE_STATUS_EXPIRED
        if self.status == CODE_STATUS_EXPIRED:
            return CODE_STATUS_EXPIRED
        return CODE_STATUS_AVAILABLE

    def status_name(self, now: datetime) -> str:
        return CODE_STATUS_NAMES[self.effective_status(now)]


class GiftCardUsage(Base):
    """Append-only redemption record. Rows are never updated or deleted."""

    __tablename__ = "gift_card_usages"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)

    code_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("gift_card_codes.id"), nullable=False)
    template_id = Column(Integer, ForeignKey("gift_card_templates.id"), nullable=False)
    user_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("users.id"), nullable=False)
    invite_user_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("users.id"), nullable=True)

    rewards_given = Column(JSONDict, nullable=False, default=dict)
    invite_rewards = Column(JSONDict, nullable=True)
    multiplier_applied = Column(Float, nullable=False, server_default="1.0", default=1.0)

    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # free-form redemption options
    meta = Column("metadata", JSONDict, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


Index("ix_gift_card_usages_template_user", GiftCardUsage.template_id, GiftCardUsage.user_id, GiftCardUsage.created_at)
Index("ix_gift_card_codes_template", GiftCardCode.template_id)
