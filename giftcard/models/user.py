from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from giftcard.core.db import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # account balance in cents
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0", default=0)

    # traffic quota and usage counters, bytes
    transfer_enable: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0", default=0)
    u: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0", default=0)
    d: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0", default=0)

    device_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    plan_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("plans.id"), nullable=True)
    # NULL with a plan means the plan never expires
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # referrer
    invite_user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), ForeignKey("users.id"), nullable=True
    )

    last_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reset_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)

    banned: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
