"""Admin routes for the catalogue, users, adoptions and reconciliation sweeps."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..dependencies import Identity, get_reconciliation_service, get_repository, require_admin
from ..reconciliation import ReconciliationService
from ..repository import AdoptionRepository
from ..schemas import (
    AdminAdoptionListResponse,
    AdminAdoptionResponse,
    AdminAdoptionUpdate,
    AdminUserResponse,
    AdminUserUpdate,
    LocationCreate,
    LocationResponse,
    LocationUpdate,
    MissingAdoptionsResponse,
    PackageCreate,
    PackageResponse,
    PackageUpdate,
    SyncMissingResponse,
)
from ..services import features_to_json, from_cents, to_cents
from .adoptions import serialize_adoption
from .catalog import serialize_location, serialize_package

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

_PACKAGE_NULLABLE = frozenset({"description", "features_json"})
_LOCATION_NULLABLE = frozenset(
    {"address", "latitude", "longitude", "description", "capacity", "soil_type", "area_condition", "features_json"}
)


def _clean_changes(changes: dict[str, object], nullable: frozenset[str]) -> dict[str, object]:
    # An explicit null only clears columns that accept one.
    return {key: value for key, value in changes.items() if value is not None or key in nullable}


def _serialize_admin_adoption(adoption, user) -> dict[str, object]:
    payload = serialize_adoption(adoption)
    full_name = " ".join(part for part in (user.first_name, user.last_name) if part)
    payload.update(
        {
            "userId": user.id,
            "userEmail": user.email,
            "userName": full_name or None,
        }
    )
    return payload


# Packages ---------------------------------------------------------------------------------
@router.get("/packages", response_model=list[PackageResponse])
async def admin_list_packages(
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> list[PackageResponse]:
    packages = await repository.list_packages(active_only=False)
    return [PackageResponse.model_validate(serialize_package(package)) for package in packages]


@router.post("/packages", response_model=PackageResponse, status_code=status.HTTP_201_CREATED)
async def admin_create_package(
    payload: PackageCreate,
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> PackageResponse:
    package = await repository.create_package(
        name=payload.name,
        description=payload.description,
        price_cents=to_cents(payload.price),
        period=payload.period,
        features_json=features_to_json(payload.features),
        is_active=payload.is_active,
        sort_order=payload.sort_order,
    )
    return PackageResponse.model_validate(serialize_package(package))


@router.patch("/packages/{package_id}", response_model=PackageResponse)
async def admin_update_package(
    package_id: int,
    payload: PackageUpdate,
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> PackageResponse:
    package = await repository.get_package(package_id)
    if package is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Package not found")

    changes = payload.model_dump(exclude_unset=True)
    if "price" in changes:
        price = changes.pop("price")
        changes["price_cents"] = to_cents(price) if price is not None else None
    if "features" in changes:
        changes["features_json"] = features_to_json(changes.pop("features"))
    updated = await repository.update_fields(package, **_clean_changes(changes, _PACKAGE_NULLABLE))
    return PackageResponse.model_validate(serialize_package(updated))


# Locations --------------------------------------------------------------------------------
@router.get("/locations", response_model=list[LocationResponse])
async def admin_list_locations(
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> list[LocationResponse]:
    locations = await repository.list_locations(active_only=False)
    return [LocationResponse.model_validate(serialize_location(location)) for location in locations]


@router.post("/locations", response_model=LocationResponse, status_code=status.HTTP_201_CREATED)
async def admin_create_location(
    payload: LocationCreate,
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> LocationResponse:
    location = await repository.create_location(
        name=payload.name,
        address=payload.address,
        latitude=payload.latitude,
        longitude=payload.longitude,
        description=payload.description,
        capacity=payload.capacity,
        soil_type=payload.soil_type,
        area_condition=payload.area_condition,
        features_json=features_to_json(payload.features),
        is_active=payload.is_active,
    )
    return LocationResponse.model_validate(serialize_location(location))


@router.patch("/locations/{location_id}", response_model=LocationResponse)
async def admin_update_location(
    location_id: int,
    payload: LocationUpdate,
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> LocationResponse:
    location = await repository.get_location(location_id)
    if location is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")

    changes = payload.model_dump(exclude_unset=True)
    if "features" in changes:
        changes["features_json"] = features_to_json(changes.pop("features"))
    updated = await repository.update_fields(location, **_clean_changes(changes, _LOCATION_NULLABLE))
    return LocationResponse.model_validate(serialize_location(updated))


# Users ------------------------------------------------------------------------------------
def _serialize_user(user, total_adoptions: int, spent_cents: int, active_adoptions: int) -> dict[str, object]:
    return {
        "id": user.id,
        "subject": user.clerk_id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "createdAt": user.created_at,
        "totalAdoptions": total_adoptions,
        "totalSpent": from_cents(spent_cents),
        "activeAdoptions": active_adoptions,
    }


@router.get("/users", response_model=list[AdminUserResponse])
async def admin_list_users(
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> list[AdminUserResponse]:
    rows = await repository.list_users_with_stats()
    return [AdminUserResponse.model_validate(_serialize_user(*row)) for row in rows]


@router.patch("/users/{user_id}", response_model=AdminUserResponse)
async def admin_update_user(
    user_id: int,
    payload: AdminUserUpdate,
    admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> AdminUserResponse:
    user = await repository.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    changes = payload.model_dump(exclude_unset=True)
    if "email" in changes and changes["email"] is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="email cannot be cleared")
    await repository.update_fields(user, **changes)
    logger.info("User %s updated by %s: %s", user_id, admin.email or admin.subject, sorted(changes))
    rows = await repository.list_users_with_stats(user_id=user_id)
    return AdminUserResponse.model_validate(_serialize_user(*rows[0]))


# Adoptions --------------------------------------------------------------------------------
@router.get("/adoptions",response_model=AdminAdoptionListResponse)
async def admin_list_adoptions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    is_active: bool | None = Query(default=None, alias="isActive"),
    location_id: int | None = Query(default=None, alias="locationId"),
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> AdminAdoptionListResponse:
    rows, total = await repository.list_adoptions(
        is_active=is_active,
        location_id=location_id,
        limit=limit,
        offset=offset,
    )
    items = [AdminAdoptionResponse.model_validate(_serialize_admin_adoption(adoption, user)) for adoption, user in rows]
    return AdminAdoptionListResponse(items=items, total=total)


@router.get("/adoptions/missing", response_model=MissingAdoptionsResponse)
async def admin_missing_adoptions(
    _admin: Identity = Depends(require_admin),
    reconciler: ReconciliationService = Depends(get_reconciliation_service),
) -> MissingAdoptionsResponse:
    summary = await reconciler.count_missing()
    return MissingAdoptionsResponse.model_validate(
        {
            "successPayments": summary.success_payments,
            "adoptionsWithPayment": summary.adoptions_with_payment,
            "missing": summary.missing,
            "references": summary.missing_references,
        }
    )


@router.post("/adoptions/sync-missing", response_model=SyncMissingResponse)
async def admin_sync_missing(
    admin: Identity = Depends(require_admin),
    reconciler: ReconciliationService = Depends(get_reconciliation_service),
) -> SyncMissingResponse:
    logger.info("Adoption sweep requested by %s", admin.email or admin.subject)
    report = await reconciler.sync_missing()
    return SyncMissingResponse.model_validate(
        {"processed": report.processed, "created": report.created, "errors": report.errors}
    )


@router.patch("/adoptions/{adoption_id}", response_model=AdminAdoptionResponse)
async def admin_update_adoption(
    adoption_id: int,
    payload: AdminAdoptionUpdate,
    _admin: Identity = Depends(require_admin),
    repository: AdoptionRepository = Depends(get_repository),
) -> AdminAdoptionResponse:
    adoption = await repository.get_adoption(adoption_id)
    if adoption is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Adoption not found")

    changes = {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}
    updated = await repository.update_fields(adoption, **changes)
    user = await repository.get_user(updated.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Adoption owner not found")
    return AdminAdoptionResponse.model_validate(_serialize_admin_adoption(updated, user))
