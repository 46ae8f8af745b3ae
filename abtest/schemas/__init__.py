"""Pydantic schemas for domain records and request/response validation."""
from abtest.schemas.experiment import (
    AudienceFilter,
    CreateExperimentRequest,
    Experiment,
    ExperimentPage,
    ExperimentStatus,
    TERMINAL_STATUSES,
    UpdateExperimentRequest,
    Variant,
    VariantSpec,
)
from abtest.schemas.assignment import Assignment, AssignRequest, Conversion, ConversionRequest
from abtest.schemas.results import (
    ConfidenceInterval,
    ExperimentResults,
    SignificanceResult,
    VariantResults,
)

__all__ = [
    "AudienceFilter",
    "CreateExperimentRequest",
    "Experiment",
    "ExperimentPage",
    "ExperimentStatus",
    "TERMINAL_STATUSES",
    "UpdateExperimentRequest",
    "Variant",
    "VariantSpec",
    "Assignment",
    "AssignRequest",
    "Conversion",
    "ConversionRequest",
    "ConfidenceInterval",
    "ExperimentResults",
    "SignificanceResult",
    "VariantResults",
]
