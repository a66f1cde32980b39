"""
Experiment management endpoints (admin).

Handles CRUD operations for experiments and their variants.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Optional
import logging

from behavior_engine.auth import TokenData, require_admin, verify_token
from behavior_engine.models import Experiment, ExperimentVariant, ExperimentStatus
from behavior_engine.schemas import (
    ExperimentCreate,
    ExperimentUpdate,
    ExperimentResponse,
    ExperimentListResponse,
)
from behavior_engine.service import get_db

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/experiments",
    tags=["experiments"],
    dependencies=[Depends(verify_token)]
)

VALID_TRANSITIONS = {
    ExperimentStatus.DRAFT: [ExperimentStatus.ACTIVE],
    ExperimentStatus.ACTIVE: [ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED],
    ExperimentStatus.PAUSED: [ExperimentStatus.ACTIVE, ExperimentStatus.COMPLETED],
    ExperimentStatus.COMPLETED: [],
}


def get_experiment_or_404(db: Session, experiment_id: int) -> Experiment:
    experiment = db.get(Experiment, experiment_id)
    if not experiment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Experiment {experiment_id} not found"
        )
    return experiment


@router.post("", response_model=ExperimentResponse, status_code=status.HTTP_201_CREATED)
async def create_experiment(
    experiment_data: ExperimentCreate,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(require_admin)
):
    """
    Create a new experiment with variants. Experiments start in draft.

    Requirements:
    - At least one variant
    - Variant traffic percentages sum to at most 100%; the remainder goes to the control
    - Variant slugs are unique within the experiment, experiment slugs are globally unique
    """
    experiment = Experiment(
        slug=experiment_data.slug,
        name=experiment_data.name,
        description=experiment_data.description,
        type=experiment_data.type,
        target_entity=experiment_data.target_entity,
        traffic_allocation=experiment_data.traffic_allocation,
        start_date=experiment_data.start_date,
        end_date=experiment_data.end_date,
        created_by=experiment_data.created_by or current_user.user_id,
        config=experiment_data.config,
        status=ExperimentStatus.DRAFT
    )
    experiment.variants = [
        ExperimentVariant(
            slug=v.slug,
            name=v.name,
            description=v.description,
            traffic_percentage=v.traffic_percentage,
            configuration=v.configuration,
            is_control=v.is_control
        )
        for v in experiment_data.variants
    ]

    try:
        db.add(experiment)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"An experiment with slug '{experiment_data.slug}' already exists"
        )
    db.refresh(experiment)

    logger.info(f"Experiment {experiment.slug} created by {experiment.created_by}")
    return experiment


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status_filter: Optional[ExperimentStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """
    List experiments, newest first.

    Query Parameters:
    - status: Filter by experiment status
    - limit: Maximum number of results (default 100)
    - offset: Pagination offset
    """
    query = db.query(Experiment)

    if status_filter:
        query = query.filter(Experiment.status == status_filter)

    total = query.count()
    experiments = query.order_by(Experiment.created_at.desc(), Experiment.id.desc()).offset(offset).limit(limit).all()

    return ExperimentListResponse(
        experiments=[ExperimentResponse.model_validate(e) for e in experiments],
        total=total
    )


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(
    experiment_id: int,
    db: Session = Depends(get_db)
):
    """Get a specific experiment by ID."""
    return get_experiment_or_404(db, experiment_id)


@router.patch("/{experiment_id}", response_model=ExperimentResponse)
async def update_experiment(
    experiment_id: int,
    update_data: ExperimentUpdate,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(require_admin)
):
    """
    Update an experiment.

    Status transitions:
    - draft -> active (starts handing out assignments)
    - active -> paused (stops new assignments; existing ones are still returned)
    - paused -> active (resumes)
    - active/paused -> completed (terminal)
    """
    experiment = get_experiment_or_404(db, experiment_id)

    if update_data.status and update_data.status != experiment.status:
        if update_data.status not in VALID_TRANSITIONS.get(experiment.status, []):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status transition from {experiment.status.value} to {update_data.status.value}"
            )
        logger.info(
            f"Experiment {experiment.slug}: {experiment.status.value} -> {update_data.status.value} "
            f"by {current_user.user_id}"
        )
        experiment.status = update_data.status

    if update_data.name is not None:
        experiment.name = update_data.name
    if update_data.description is not None:
        experiment.description = update_data.description
    if update_data.traffic_allocation is not None:
        experiment.traffic_allocation = update_data.traffic_allocation
    if update_data.end_date is not None:
        experiment.end_date = update_data.end_date

    db.commit()
    db.refresh(experiment)

    return experiment
