"""
Variant management endpoints (admin).

Variants can be added to an experiment after it was created and switched on or
off. Only active variants take part in new assignments; existing assignments
keep their variant.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import List
import logging

from behavior_engine.auth import TokenData, require_admin, verify_token
from behavior_engine.models import Experiment, ExperimentVariant
from behavior_engine.routers.experiments import get_experiment_or_404
from behavior_engine.schemas import ExperimentVariantCreate, VariantResponse, VariantUpdate
from behavior_engine.service import get_db

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["variants"],
    dependencies=[Depends(verify_token)]
)


def check_active_traffic(experiment: Experiment, variant: ExperimentVariant):
    """Active variants of an experiment may not take more than 100% of its traffic."""
    total = sum(
        v.traffic_percentage for v in experiment.variants
        if v.is_active and v is not variant
    )
    if variant.is_active:
        total += variant.traffic_percentage
    if total > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Active variant traffic would be {total}%, at most 100% is allowed"
        )


@router.post("/experiment-variants", response_model=VariantResponse, status_code=status.HTTP_201_CREATED)
async def create_variant(
    variant_data: ExperimentVariantCreate,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(require_admin)
):
    """
    Add a variant to an existing experiment.

    The variant slug must be unique within the experiment and the active
    variants' traffic must stay at or below 100%.
    """
    experiment = get_experiment_or_404(db, variant_data.experiment_id)
    variant = ExperimentVariant(
        experiment_id=experiment.id,
        slug=variant_data.slug,
        name=variant_data.name,
        description=variant_data.description,
        traffic_percentage=variant_data.traffic_percentage,
        configuration=variant_data.configuration,
        is_control=variant_data.is_control,
        is_active=variant_data.is_active
    )
    check_active_traffic(experiment, variant)

    try:
        db.add(variant)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Experiment {experiment.id} already has a variant '{variant_data.slug}'"
        )
    db.refresh(variant)

    logger.info(f"Variant {variant.slug} added to experiment {experiment.slug} by {current_user.user_id}")
    return variant


@router.get("/experiments/{experiment_id}/variants", response_model=List[VariantResponse])
async def list_variants(
    experiment_id: int,
    db: Session = Depends(get_db)
):
    """All variants of an experiment, active or not, in creation order."""
    experiment = get_experiment_or_404(db, experiment_id)
    return sorted(experiment.variants, key=lambda v: v.id)


@router.patch("/experiment-variants/{variant_id}", response_model=VariantResponse)
async def update_variant(
    variant_id: int,
    update_data: VariantUpdate,
    db: Session = Depends(get_db),
    current_user: TokenData = Depends(require_admin)
):
    """
    Update a variant.

    Setting isActive=false takes the variant out of new assignments. An
    experiment whose variants are all inactive answers assignment requests
    with 409 NoVariantsAvailable.
    """
    variant = db.get(ExperimentVariant, variant_id)
    if not variant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Variant {variant_id} not found"
        )

    for name, value in update_data.model_dump(exclude_unset=True).items():
        if value is None and name != "description":
            continue
        setattr(variant, name, value)
    check_active_traffic(variant.experiment, variant)

    db.commit()
    db.refresh(variant)

    logger.info(
        f"Variant {variant.slug} of experiment {variant.experiment_id} updated by {current_user.user_id} "
        f"(active={variant.is_active})"
    )
    return variant
