"""Shared API dependencies."""

from budgetline.core.database import get_db

__all__ = ["get_db"]
