"""
Experiment management router.
"""
from typing import List

from fastapi import APIRouter, Depends, Query, status

from feedrank.api.dependencies import get_experiment_manager
from feedrank.models.schemas import (
    Experiment,
    ExperimentCreate,
    ExperimentResults,
    ExperimentStatus,
    ExperimentStatusUpdate,
    VariantAssignment,
)
from feedrank.services.experiments import ExperimentManager
from feedrank.services.feed import validate_viewer_id

router = APIRouter(prefix="/v1/experiments", tags=["experiments"])


@router.post(
    "",
    response_model=Experiment,
    status_code=status.HTTP_201_CREATED,
    summary="Create Experiment",
    responses={
        422: {"description": "Invalid configuration or duplicate experiment id"},
    },
)
async def create_experiment(
    body: ExperimentCreate,
    experiments: ExperimentManager = Depends(get_experiment_manager),
) -> Experiment:
    """Register an experiment; it starts running unless `start` is false."""
    experiment = experiments.create_experiment(
        name=body.name,
        variants=body.variants,
        sample_size=body.sample_size,
        confidence_level=body.confidence_level,
        description=body.description,
        experiment_id=body.experiment_id,
    )
    if body.start:
        experiment = experiments.transition(experiment.id, ExperimentStatus.RUNNING)
    return experiment


@router.get("", response_model=List[Experiment], summary="List Experiments")
async def list_experiments(
    experiments: ExperimentManager = Depends(get_experiment_manager),
) -> List[Experiment]:
    return experiments.list_experiments()


@router.get("/{experiment_id}", response_model=Experiment, summary="Get Experiment")
async def get_experiment(
    experiment_id: str,
    experiments: ExperimentManager = Depends(get_experiment_manager),
) -> Experiment:
    return experiments.get_experiment(experiment_id)


@router.post(
    "/{experiment_id}/status",
    response_model=Experiment,
    summary="Change Experiment Status",
    responses={409: {"description": "Transition not allowed"}},
)
async def update_status(
    experiment_id: str,
    body: ExperimentStatusUpdate,
    experiments: ExperimentManager = Depends(get_experiment_manager),
) -> Experiment:
    return experiments.transition(experiment_id, body.status)


@router.get(
    "/{experiment_id}/assignment",
    response_model=VariantAssignment,
    summary="Get Variant Assignment",
)
async def get_assignment(
    experiment_id: str,
    viewer_id: str = Query(..., description="Viewer identifier"),
    experiments: ExperimentManager = Depends(get_experiment_manager),
) -> VariantAssignment:
    """Deterministic variant for a viewer. Does not enroll."""
    validate_viewer_id(viewer_id)
    variant_id = experiments.assign_variant(viewer_id, experiment_id)
    return VariantAssignment(experiment_id=experiment_id, viewer_id=viewer_id, variant_id=variant_id)


@router.get("/{experiment_id}/results", response_model=ExperimentResults, summary="Get Experiment Results")
async def get_results(
    experiment_id: str,
    experiments: ExperimentManager = Depends(get_experiment_manager),
) -> ExperimentResults:
    return experiments.get_results(experiment_id)
