from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from giftcard.core.db import Base, JSONDict


class BalanceLedger(Base):
    __tablename__ = "balance_ledger"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    entry_kind: Mapped[str] = mapped_column(Text, nullable=False)  # e.g. gift_card_reward
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # "metadata" is reserved on declarative classes; attribute "meta", column "metadata"
    meta: Mapped[dict] = mapped_column("metadata", JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


Index("ix_balance_ledger_user_created", BalanceLedger.user_id, BalanceLedger.created_at.desc())
Index("ix_balance_ledger_entry_kind", BalanceLedger.entry_kind)
