# giftcard/models/plan.py
from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Column, DateTime, Integer, Text, func

from giftcard.core.db import Base


class Plan(Base):
    __tablename__ = "plans"
    __table_args__ = (
        CheckConstraint("transfer_enable >= 0", name="plans_transfer_enable_check"),
    )

    id = Column(Integer, primary_key=True, index=True)

    name = Column(Text, nullable=False)

    # quota granted when the plan is assigned, bytes
    transfer_enable = Column(BigInteger, nullable=False, server_default="0", default=0)
    device_limit = Column(Integer, nullable=True)

    is_active = Column(Boolean, nullable=False, server_default="true", default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
