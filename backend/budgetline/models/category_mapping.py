"""Category mapping (rule) model."""

from sqlalchemy import Boolean, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budgetline.models.base import Base, UUIDPrimaryKeyMixin, TimestampMixin


class CategoryMapping(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A rule that maps descriptions matching a pattern to a category.

    Exact and contains patterns compare case-insensitively after trimming;
    regex patterns are compiled with the case-insensitive flag.
    System rules cannot be deleted.
    """

    __tablename__ = "category_mappings"

    pattern: Mapped[str] = mapped_column(String(500), nullable=False)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    match_type: Mapped[str] = mapped_column(
        String(20), default="exact", index=True
    )  # exact, contains, regex
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    category = relationship("Category")
