"""Category correction model.

One row per user override of an automatic categorisation. Unprocessed rows
feed the pattern analysis; once promoted into a rule they are stamped with
the rule id and excluded from further aggregation.
"""

from sqlalchemy import Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budgetline.models.base import Base, UUIDPrimaryKeyMixin, TimestampMixin


class CategoryCorrection(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "category_corrections"

    description: Mapped[str] = mapped_column(String(500), nullable=False)
    original_category_id: Mapped[str | None] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    corrected_category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    import_session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_rule_id: Mapped[str | None] = mapped_column(
        ForeignKey("category_mappings.id", ondelete="SET NULL"), nullable=True
    )

    corrected_category = relationship("Category", foreign_keys=[corrected_category_id])
    original_category = relationship("Category", foreign_keys=[original_category_id])
