from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from giftcard.core.db import Base, JSONDict


SOURCE_AUTO = "auto"
SOURCE_MANUAL = "manual"
SOURCE_ORDER = "order"
SOURCE_GIFT_CARD = "gift_card"


class TrafficResetLog(Base):
    __tablename__ = "traffic_reset_logs"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    reset_type: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_source: Mapped[str] = mapped_column(Text, nullable=False)

    old_upload: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    old_download: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    old_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    new_upload: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    new_download: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    new_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    meta: Mapped[dict] = mapped_column("metadata", JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


Index("ix_traffic_reset_logs_user_created", TrafficResetLog.user_id, TrafficResetLog.created_at.desc())
