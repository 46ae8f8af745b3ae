"""Experiment endpoints.

Thin binding over ExperimentService. Typed errors raised by the
service are turned into responses by the handlers in
``abtest.middleware.errors``.
"""
from fastapi import APIRouter, Depends, Query, Request, Response
from typing import Optional

from abtest.schemas.assignment import AssignRequest, ConversionRequest
from abtest.schemas.experiment import (
    CreateExperimentRequest,
    Experiment,
    ExperimentPage,
    ExperimentStatus,
    UpdateExperimentRequest,
)
from abtest.schemas.results import ExperimentResults
from abtest.services.experiments import ExperimentService

router = APIRouter(prefix="/experiments")


def get_experiment_service(request: Request) -> ExperimentService:
    """Dependency returning the service built in the application lifespan."""
    return request.app.state.experiment_service


@router.post("", response_model=Experiment, status_code=201)
def create_experiment(
    body: CreateExperimentRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Create an experiment in DRAFT status."""
    return service.create_experiment(body)


@router.get("", response_model=ExperimentPage)
def list_experiments(
    status: Optional[ExperimentStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
    service: ExperimentService = Depends(get_experiment_service)
):
    """List experiments newest first, optionally filtered by status."""
    return service.list_experiments(status=status, page=page, page_size=page_size)


@router.get("/{experiment_id}", response_model=Experiment)
def get_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Get experiment details."""
    return service.get_experiment(experiment_id)


@router.patch("/{experiment_id}", response_model=Experiment)
def update_experiment(
    experiment_id: str,
    body: UpdateExperimentRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Update name, description, audience or end date."""
    return service.update_experiment(experiment_id, body)


@router.delete("/{experiment_id}", status_code=204)
def delete_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Delete a non-running experiment with its assignments and conversions."""
    service.delete_experiment(experiment_id)
    return Response(status_code=204)


@router.post("/{experiment_id}/start", response_model=Experiment)
def start_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Start (or resume) an experiment."""
    return service.start_experiment(experiment_id)


@router.post("/{experiment_id}/pause", response_model=Experiment)
def pause_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Pause a running experiment."""
    return service.pause_experiment(experiment_id)


@router.post("/{experiment_id}/end", response_model=Experiment)
def end_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Complete an experiment."""
    return service.end_experiment(experiment_id)


@router.post("/{experiment_id}/assignments")
def assign_variant(
    experiment_id: str,
    body: AssignRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """
    Get (or create) the user's variant.

    Returns ``{"variant": null}`` when the experiment is not running or
    the user is outside its audience.
    """
    variant = service.assign_variant(experiment_id, body.user_id)
    return {"variant": variant.model_dump(mode="json") if variant else None}


@router.get("/{experiment_id}/assignments/{user_id}")
def get_user_variant(
    experiment_id: str,
    user_id: str,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Get the user's recorded variant without assigning one."""
    variant = service.get_user_variant(experiment_id, user_id)
    return {"variant": variant.model_dump(mode="json") if variant else None}


@router.post("/{experiment_id}/conversions")
def record_conversion(
    experiment_id: str,
    body: ConversionRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Record a conversion; ``attributed`` is false when the user has no assignment."""
    attributed = service.record_conversion(
        experiment_id,
        body.user_id,
        body.event_type,
        value=body.value,
        metadata=body.metadata
    )
    return {"attributed": attributed}


@router.get("/{experiment_id}/results", response_model=ExperimentResults)
def get_results(
    experiment_id: str,
    confidence_level: Optional[float] = Query(None, gt=0, lt=1),
    service: ExperimentService = Depends(get_experiment_service)
):
    """Per-variant results, significance and overall winner."""
    return service.get_results(experiment_id, confidence_level=confidence_level)
