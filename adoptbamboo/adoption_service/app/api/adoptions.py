"""HTTP routes for a user's adoptions and their plants."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..dependencies import Identity, get_growth_service, get_identity, get_repository
from ..growth import growth_rate
from ..models import Adoption
from ..repository import AdoptionRepository
from ..schemas import (
    AdoptionDetailResponse,
    AdoptionSummaryResponse,
    GrowthRegenerateRequest,
    GrowthRegenerateResponse,
)
from ..services import GrowthService, as_utc, days_since, features_from_json, from_cents

router = APIRouter(prefix="/adoptions", tags=["adoptions"])


def serialize_adoption(adoption: Adoption) -> dict[str, object]:
    return {
        "id": adoption.id,
        "packageId": adoption.package_id,
        "packageName": adoption.package_name,
        "packagePeriod": adoption.package_period,
        "packagePrice": from_cents(adoption.package_price_cents),
        "packageFeatures": features_from_json(adoption.package_features_json),
        "locationId": adoption.location_id,
        "locationName": adoption.location_name,
        "adoptionPrice": from_cents(adoption.adoption_price_cents),
        "adoptionDate": as_utc(adoption.adoption_date),
        "paymentReferenceNo": adoption.payment_reference_no,
        "bambooPlantId": adoption.bamboo_plant_id,
        "isActive": adoption.is_active,
        "certificateIssued": adoption.certificate_issued,
    }


def _serialize_snapshot(snapshot) -> dict[str, object]:
    return {
        "height": snapshot.height,
        "diameter": snapshot.diameter,
        "co2Absorbed": snapshot.co2_absorbed,
        "daysSincePlanting": snapshot.days_since_planting,
        "stage": snapshot.stage,
    }


async def _owned_adoption(repository: AdoptionRepository, adoption_id: int, identity: Identity) -> Adoption:
    adoption = await repository.get_adoption(adoption_id)
    if adoption is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Adoption not found")
    owner = await repository.get_user(adoption.user_id)
    if owner is None or owner.clerk_id != identity.subject:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Adoption not found")
    return adoption


@router.get("", response_model=list[AdoptionSummaryResponse])
async def list_my_adoptions(
    identity: Identity = Depends(get_identity),
    repository: AdoptionRepository = Depends(get_repository),
) -> list[AdoptionSummaryResponse]:
    adoptions = await repository.list_adoptions_for_subject(identity.subject)
    return [AdoptionSummaryResponse.model_validate(serialize_adoption(adoption)) for adoption in adoptions]


@router.get("/{adoption_id}", response_model=AdoptionDetailResponse)
async def get_adoption(
    adoption_id: int,
    identity: Identity = Depends(get_identity),
    repository: AdoptionRepository = Depends(get_repository),
    growth_service: GrowthService = Depends(get_growth_service),
) -> AdoptionDetailResponse:
    adoption = await _owned_adoption(repository, adoption_id, identity)
    payload = serialize_adoption(adoption)

    plant = adoption.plant
    if plant is not None:
        await growth_service.ensure_timeline(plant)
        days = days_since(plant.planted_date)
        height_rate, co2_rate = growth_rate(days)
        records = await repository.list_growth_records(plant.id)
        environment = await repository.latest_environmental_reading(plant.id)
        payload.update(
            {
                "plant": plant,
                "growth": _serialize_snapshot(growth_service.live_growth(plant)),
                "growthRate": {"heightPerDay": height_rate, "co2PerDay": co2_rate},
                "growthRecords": list(reversed(records)),
                "environment": environment,
            }
        )
    return AdoptionDetailResponse.model_validate(payload)


@router.post("/{adoption_id}/growth", response_model=GrowthRegenerateResponse)
async def regenerate_growth(
    adoption_id: int,
    payload: GrowthRegenerateRequest,
    identity: Identity = Depends(get_identity),
    repository: AdoptionRepository = Depends(get_repository),
    growth_service: GrowthService = Depends(get_growth_service),
) -> GrowthRegenerateResponse:
    adoption = await _owned_adoption(repository, adoption_id, identity)
    plant = adoption.plant
    if plant is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Adoption has no plant yet")
    generated = await growth_service.ensure_timeline(plant, force=payload.force)
    return GrowthRegenerateResponse.model_validate(
        {
            "adoptionId": adoption.id,
            "generated": generated,
            "growth": _serialize_snapshot(growth_service.live_growth(plant)),
        }
    )
