"""Experiment, variant and audience schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
import enum


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle status."""
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


TERMINAL_STATUSES = frozenset({ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED})


class AudienceFilter(BaseModel):
    """
    Targeting rule for an experiment.

    Both conditions, when configured, must pass for a user to be eligible.
    An empty ``user_ids`` list places no restriction on the audience.
    """

    user_ids: Optional[List[str]] = Field(None, description="Explicit allow-list of user ids")
    percentage: Optional[float] = Field(None, ge=0, le=100, description="Share of the population admitted")


class Variant(BaseModel):
    """One arm of an experiment, including the control."""

    id: str
    experiment_id: str
    name: str
    description: Optional[str] = None
    allocation: float = Field(..., ge=0, le=100)
    is_control: bool = False
    config: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True


class Experiment(BaseModel):
    """An A/B experiment with its ordered variants."""

    id: str
    name: str
    description: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: List[Variant] = Field(default_factory=list)
    audience: Optional[AudienceFilter] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: str = "system"
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def control(self) -> Optional[Variant]:
        return next((v for v in self.variants if v.is_control), None)

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        return next((v for v in self.variants if v.id == variant_id), None)


class VariantSpec(BaseModel):
    """Variant definition supplied when creating an experiment."""

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    allocation: float = Field(..., ge=0, le=100, description="Percentage of eligible traffic")
    is_control: bool = False
    config: Dict[str, Any] = Field(default_factory=dict, description="Opaque variant payload")


class CreateExperimentRequest(BaseModel):
    """Request to create an experiment in DRAFT status."""

    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    variants: List[VariantSpec] = Field(..., min_length=1)
    audience: Optional[AudienceFilter] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: str = "system"

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Checkout button colour",
                "description": "Green vs blue checkout button",
                "variants": [
                    {"name": "blue", "allocation": 50, "is_control": True},
                    {"name": "green", "allocation": 50, "config": {"color": "#2e7d32"}}
                ],
                "audience": {"percentage": 20},
                "created_by": "admin"
            }
        }


class UpdateExperimentRequest(BaseModel):
    """Partial update; only fields that are explicitly set are applied."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    audience: Optional[AudienceFilter] = None
    end_date: Optional[datetime] = None


class ExperimentPage(BaseModel):
    """One page of experiments, newest first."""

    experiments: List[Experiment]
    total: int
    page: int
    page_size: int
