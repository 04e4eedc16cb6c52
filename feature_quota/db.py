"""
SQLAlchemy schema for the durable usage store.

One row per (user_id, feature_id). Only the store's conditional increment
and window reset statements write to it.
"""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import declarative_base

# Single source of truth for all quota tables
Base = declarative_base()


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class FeatureUsage(Base, TimestampMixin):
    """
    Per-user, per-feature consumption within the current window.

    The usage_count attribute maps to the "count" column.
    """

    __tablename__ = "feature_usage"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(String(255), nullable=False, comment="Account identifier")
    feature_id = Column(String(100), nullable=False, comment="Catalog feature key")

    usage_count = Column(
        "count",
        Integer,
        nullable=False,
        default=0,
        comment="Uses consumed in the current window"
    )
    window_start = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the current counting window began (UTC)"
    )
    reset_period = Column(
        String(16),
        nullable=False,
        comment="Cadence copied from the feature policy at creation"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "feature_id", name="uq_feature_usage_user_feature"),
        Index("ix_feature_usage_reset_period", "reset_period"),
    )

    def __repr__(self) -> str:
        return (
            f"<FeatureUsage(user_id={self.user_id}, feature_id={self.feature_id}, "
            f"count={self.usage_count}, window_start={self.window_start})>"
        )
