"""Public package and location catalogue."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..dependencies import get_repository
from ..models import Location, Package
from ..repository import AdoptionRepository
from ..schemas import LocationResponse, PackageResponse
from ..services import features_from_json, from_cents

router = APIRouter(tags=["catalog"])


def serialize_package(package: Package) -> dict[str, object]:
    return {
        "id": package.id,
        "name": package.name,
        "description": package.description,
        "price": from_cents(package.price_cents),
        "period": package.period,
        "features": features_from_json(package.features_json),
        "isActive": package.is_active,
        "sortOrder": package.sort_order,
    }


def serialize_location(location: Location) -> dict[str, object]:
    available = None
    if location.capacity is not None:
        available = max(0, location.capacity - location.current_count)
    return {
        "id": location.id,
        "name": location.name,
        "address": location.address,
        "latitude": location.latitude,
        "longitude": location.longitude,
        "description": location.description,
        "capacity": location.capacity,
        "currentCount": location.current_count,
        "available": available,
        "soilType": location.soil_type,
        "areaCondition": location.area_condition,
        "features": features_from_json(location.features_json),
        "isActive": location.is_active,
    }


@router.get("/packages", response_model=list[PackageResponse])
async def list_packages(repository: AdoptionRepository = Depends(get_repository)) -> list[PackageResponse]:
    packages = await repository.list_packages(active_only=True)
    return [PackageResponse.model_validate(serialize_package(package)) for package in packages]


@router.get("/locations", response_model=list[LocationResponse])
async def list_locations(repository: AdoptionRepository = Depends(get_repository)) -> list[LocationResponse]:
    locations = await repository.list_locations(active_only=True)
    return [LocationResponse.model_validate(serialize_location(location)) for location in locations]
