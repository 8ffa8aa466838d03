"""SQLAlchemy models."""

from spendsense.models.base import Base
from spendsense.models.category import Category, Subcategory
from spendsense.models.global_pattern import GlobalPattern
from spendsense.models.labeled_example import LabeledExample
from spendsense.models.transaction import Transaction
from spendsense.models.user import User
from spendsense.models.user_rule import UserRule

__all__ = [
    "Base",
    "User",
    "Category",
    "Subcategory",
    "Transaction",
    "UserRule",
    "LabeledExample",
    "GlobalPattern",
]
