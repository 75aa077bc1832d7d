"""SQLAlchemy models."""

from budgetline.models.ai_usage import AIUsageTracking
from budgetline.models.base import Base
from budgetline.models.category import Category
from budgetline.models.category_correction import CategoryCorrection
from budgetline.models.category_mapping import CategoryMapping
from budgetline.models.transaction import Transaction

__all__ = [
    "Base",
    "Category",
    "CategoryMapping",
    "Transaction",
    "CategoryCorrection",
    "AIUsageTracking",
]
