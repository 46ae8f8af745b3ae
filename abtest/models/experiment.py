"""Experiment and variant models."""
from sqlalchemy import Column, String, Text, Float, Boolean, Integer, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from abtest.database import Base, JSONType
from abtest.schemas.experiment import ExperimentStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentDB(Base):
    """A/B experiment configuration and lifecycle state."""

    __tablename__ = "experiments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    description = Column(Text)
    status = Column(
        SQLEnum(ExperimentStatus, name="experiment_status"),
        default=ExperimentStatus.DRAFT,
        nullable=False,
        index=True
    )
    audience = Column(JSONType)  # {"user_ids": [...], "percentage": 20}
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))
    created_by = Column(String(100), default="system", nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    variants = relationship(
        "VariantDB",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="VariantDB.position",
        lazy="selectin"
    )

    def __repr__(self):
        return f"<Experiment {self.id} status={self.status.value}>"


class VariantDB(Base):
    """One arm of an experiment. Variants keep their defined order via position."""

    __tablename__ = "experiment_variants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    experiment_id = Column(
        String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    allocation = Column(Float, nullable=False)
    is_control = Column(Boolean, default=False, nullable=False)
    config = Column(JSONType, default=dict)

    # Relationships
    experiment = relationship("ExperimentDB", back_populates="variants")

    def __repr__(self):
        return f"<Variant {self.name} allocation={self.allocation} control={self.is_control}>"
