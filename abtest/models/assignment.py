"""Assignment and conversion models."""
from sqlalchemy import Column, String, Float, DateTime, ForeignKey, UniqueConstraint, Index
from datetime import datetime, timezone
import uuid

from abtest.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentDB(Base):
    """Permanent (experiment, user) -> variant binding. First write wins."""

    __tablename__ = "experiment_assignments"
    __table_args__ = (
        UniqueConstraint("experiment_id", "user_id", name="uq_assignment_experiment_user"),
        Index("ix_assignment_experiment_variant", "experiment_id", "variant_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(String(36), ForeignKey("experiment_variants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=False)
    assigned_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<Assignment {self.experiment_id}:{self.user_id} -> {self.variant_id}>"


class ConversionDB(Base):
    """Conversion event. Several per user are allowed; results count unique users."""

    __tablename__ = "experiment_conversions"
    __table_args__ = (
        Index("ix_conversion_experiment_variant", "experiment_id", "variant_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(String(36), ForeignKey("experiment_variants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    value = Column(Float)
    metadata_ = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<Conversion {self.event_type} user={self.user_id}>"
