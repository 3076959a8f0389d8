"""
Base database model with common fields and functionality.
"""

import uuid
from typing import Any, Dict

from sqlalchemy import Column, DateTime, String, Enum as SQLEnum
from sqlalchemy.orm import declarative_base, declarative_mixin

from ..utils.clock import utcnow


Base = declarative_base()


def new_id() -> str:
    """Generate a string UUID primary key."""
    return str(uuid.uuid4())


def enum_type(enum_cls) -> SQLEnum:
    """Portable enum column type storing the member values."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members]
    )


@declarative_mixin
class TimestampMixin:
    """Mixin to add created_at and updated_at timestamps."""

    created_at = Column(
        DateTime,
        default=utcnow,
        nullable=False,
        doc="When the record was created"
    )
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        doc="When the record was last updated"
    )


@declarative_mixin
class UUIDMixin:
    """Mixin to add UUID primary key."""

    id = Column(
        String(36),
        primary_key=True,
        default=new_id,
        nullable=False,
        doc="Unique identifier"
    )


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """Base model class with common functionality."""

    __abstract__ = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert model instance to dictionary."""
        return {
            column.key: getattr(self, column.key)
            for column in self.__table__.columns
        }

    def __repr__(self) -> str:
        """String representation of the model."""
        class_name = self.__class__.__name__
        return f"<{class_name}(id={self.id})>"
