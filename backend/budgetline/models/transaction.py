"""Transaction model."""

import datetime
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budgetline.models.base import Base, UUIDPrimaryKeyMixin, TimestampMixin


class Transaction(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "transactions"

    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    category_id: Mapped[str | None] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    categorisation_source: Mapped[str] = mapped_column(
        String(20), default="manual"
    )  # manual, rule_exact, rule_pattern, similar, ai, none

    category = relationship("Category")

    __table_args__ = (
        Index("idx_transactions_date", "date", postgresql_ops={"date": "DESC"}),
        Index("idx_transactions_category_id", "category_id"),
    )
