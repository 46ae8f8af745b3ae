"""Assignment and conversion schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime


class Assignment(BaseModel):
    """Permanent binding of a user to a variant within an experiment."""

    id: str
    experiment_id: str
    variant_id: str
    user_id: str
    assigned_at: datetime

    class Config:
        from_attributes = True


class Conversion(BaseModel):
    """Outcome event attributed to a user's assigned variant."""

    id: str
    experiment_id: str
    variant_id: str
    user_id: str
    event_type: str
    value: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class AssignRequest(BaseModel):
    """Request a variant for a user."""

    user_id: str = Field(..., min_length=1)


class ConversionRequest(BaseModel):
    """Record a conversion event for a user."""

    user_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1, max_length=100)
    value: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user_123",
                "event_type": "purchase",
                "value": 49.9,
                "metadata": {"sku": "A-100"}
            }
        }
