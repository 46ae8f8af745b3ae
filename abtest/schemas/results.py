"""Significance and results schemas."""
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from abtest.schemas.experiment import ExperimentStatus


class ConfidenceInterval(BaseModel):
    """Interval on the treatment minus control rate difference."""

    lower: float
    upper: float


class SignificanceResult(BaseModel):
    """Outcome of a two-proportion Z-test."""

    is_significant: bool
    p_value: float
    z_score: float = 0.0
    confidence_level: float
    control_rate: float
    treatment_rate: float
    relative_improvement: float
    confidence_interval: ConfidenceInterval
    sample_size_recommendation: Optional[int] = None


class VariantResults(BaseModel):
    """Aggregated counts for one variant, compared against the control."""

    variant_id: str
    variant_name: str
    is_control: bool
    allocation: float
    participants: int
    conversions: int
    conversion_rate: float
    improvement: Optional[float] = None
    confidence_interval: Optional[ConfidenceInterval] = None
    p_value: Optional[float] = None
    is_significant: Optional[bool] = None
    sample_size_recommendation: Optional[int] = None


class ExperimentResults(BaseModel):
    """Per-variant results plus the overall winner."""

    experiment_id: str
    experiment_name: str
    status: ExperimentStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    variants: List[VariantResults]
    winner: Optional[str] = None
    is_significant: bool = False
    confidence_level: float = 0.95
