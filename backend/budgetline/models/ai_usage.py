"""Daily AI usage counters."""

import datetime

from sqlalchemy import Date, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from budgetline.models.base import Base, UUIDPrimaryKeyMixin


class AIUsageTracking(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "ai_usage_tracking"

    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    usage_type: Mapped[str] = mapped_column(String(50), nullable=False)  # categorisation
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("date", "usage_type", name="uq_ai_usage_tracking_date_type"),
    )
