"""Base model with common fields for all entities."""
from datetime import datetime

from sqlalchemy import Column, DateTime

from usage_billing.database import Base as DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.utcnow()


class Base(DeclarativeBase):
    """Base model class with common fields."""

    __abstract__ = True

    created_at = Column(DateTime, default=utcnow, nullable=False)
