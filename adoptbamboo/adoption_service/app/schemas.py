"""Pydantic schemas for the adoption service."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PackagePeriod = Literal["monthly", "quarterly", "yearly"]
AdoptionStatus = Literal["created", "existing", "not_ready", "pending"]


def _strip_reference(value: str | int | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


# Catalogue --------------------------------------------------------------------------------
class PackageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    price: Decimal = Field(gt=Decimal("0"), max_digits=10, decimal_places=2)
    period: PackagePeriod
    features: list[str] = Field(default_factory=list)
    is_active: bool = Field(default=True, alias="isActive")
    sort_order: int = Field(default=0, alias="sortOrder")

    model_config = ConfigDict(populate_by_name=True)


class PackageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    price: Decimal | None = Field(default=None, gt=Decimal("0"), max_digits=10, decimal_places=2)
    period: PackagePeriod | None = None
    features: list[str] | None = None
    is_active: bool | None = Field(default=None, alias="isActive")
    sort_order: int | None = Field(default=None, alias="sortOrder")

    model_config = ConfigDict(populate_by_name=True)


class PackageResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    price: Decimal
    period: str
    features: list[str]
    is_active: bool = Field(alias="isActive")
    sort_order: int = Field(alias="sortOrder")

    model_config = ConfigDict(populate_by_name=True)


class LocationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    address: str | None = None
    latitude: str | None = Field(default=None, max_length=32)
    longitude: str | None = Field(default=None, max_length=32)
    description: str | None = None
    capacity: int | None = Field(default=None, ge=0)
    soil_type: str | None = Field(default=None, alias="soilType", max_length=128)
    area_condition: str | None = Field(default=None, alias="areaCondition", max_length=128)
    features: list[str] = Field(default_factory=list)
    is_active: bool = Field(default=True, alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class LocationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    address: str | None = None
    latitude: str | None = Field(default=None, max_length=32)
    longitude: str | None = Field(default=None, max_length=32)
    description: str | None = None
    capacity: int | None = Field(default=None, ge=0)
    soil_type: str | None = Field(default=None, alias="soilType", max_length=128)
    area_condition: str | None = Field(default=None, alias="areaCondition", max_length=128)
    features: list[str] | None = None
    is_active: bool | None = Field(default=None, alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class LocationResponse(BaseModel):
    id: int
    name: str
    address: str | None = None
    latitude: str | None = None
    longitude: str | None = None
    description: str | None = None
    capacity: int | None = None
    current_count: int = Field(alias="currentCount")
    available: int | None = None
    soil_type: str | None = Field(default=None, alias="soilType")
    area_condition: str | None = Field(default=None, alias="areaCondition")
    features: list[str]
    is_active: bool = Field(alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


# Payments ---------------------------------------------------------------------------------
class PaymentCreate(BaseModel):
    package_type: str = Field(alias="packageType", min_length=1, max_length=64)
    location: str | None = Field(default=None, max_length=200)
    amount: Decimal | None = Field(default=None, gt=Decimal("0"), max_digits=10, decimal_places=2)
    customer_name: str = Field(alias="customerName", min_length=1, max_length=255)
    customer_email: str = Field(alias="customerEmail", min_length=1, max_length=255)
    customer_phone: str | None = Field(default=None, alias="customerPhone", max_length=32)
    description: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("package_type", "location", mode="before")
    @classmethod
    def _coerce_reference(cls, value: str | int | None) -> str | None:
        return _strip_reference(value)

    @field_validator("customer_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "customer name must be non-empty"
            raise ValueError(msg)
        return cleaned

    @field_validator("customer_phone")
    @classmethod
    def _normalise_phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        digits = "".join(ch for ch in value if ch.isdigit())
        return digits or None


class PaymentCreatedResponse(BaseModel):
    reference_no: str = Field(alias="referenceNo")
    bill_code: str = Field(alias="billCode")
    payment_url: str = Field(alias="paymentUrl")
    status: str
    amount: Decimal

    model_config = ConfigDict(populate_by_name=True)


class PaymentResponse(BaseModel):
    reference_no: str = Field(alias="referenceNo")
    bill_code: str | None = Field(default=None, alias="billCode")
    status: str
    amount: Decimal
    paid_amount: Decimal | None = Field(default=None, alias="paidAmount")
    transaction_id: str | None = Field(default=None, alias="transactionId")
    paid_date: datetime | None = Field(default=None, alias="paidDate")
    package_type: str | None = Field(default=None, alias="packageType")
    location_name: str | None = Field(default=None, alias="locationName")
    adoption_id: int | None = Field(default=None, alias="adoptionId")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class PaymentPollRequest(BaseModel):
    reference_no: str = Field(alias="referenceNo", min_length=1, max_length=64)

    model_config = ConfigDict(populate_by_name=True)


class SuccessVisitRequest(BaseModel):
    reference_no: str | None = Field(default=None, alias="referenceNo", max_length=64)
    bill_code: str | None = Field(default=None, alias="billCode", max_length=64)
    status_id: str | None = Field(default=None, alias="statusId", max_length=8)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("reference_no", "bill_code", "status_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: str | int | None) -> str | None:
        return _strip_reference(value)

    @model_validator(mode="after")
    def _require_identifier(self) -> SuccessVisitRequest:
        if self.reference_no is None and self.bill_code is None:
            msg = "referenceNo or billCode is required"
            raise ValueError(msg)
        return self


class TriggerResponse(BaseModel):
    reference_no: str = Field(alias="referenceNo")
    payment_status: str = Field(alias="paymentStatus")
    adoption_status: AdoptionStatus = Field(alias="adoptionStatus")
    adoption_id: int | None = Field(default=None, alias="adoptionId")

    model_config = ConfigDict(populate_by_name=True)


# Growth -----------------------------------------------------------------------------------
class GrowthSnapshotResponse(BaseModel):
    height: float
    diameter: float
    co2_absorbed: float = Field(alias="co2Absorbed")
    days_since_planting: int = Field(alias="daysSincePlanting")
    stage: str

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class GrowthRateResponse(BaseModel):
    height_per_day: float = Field(alias="heightPerDay")
    co2_per_day: float = Field(alias="co2PerDay")

    model_config = ConfigDict(populate_by_name=True)


class GrowthQueryResponse(BaseModel):
    growth: GrowthSnapshotResponse
    rate: GrowthRateResponse
    projection: GrowthSnapshotResponse | None = None


class TimelineEntryResponse(BaseModel):
    days_since_planting: int = Field(alias="daysSincePlanting")
    height: float
    diameter: float
    co2_absorbed: float = Field(alias="co2Absorbed")
    stage: str
    notes: str

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class GrowthRecordResponse(BaseModel):
    id: int
    height: float
    diameter: float | None = None
    notes: str | None = None
    photo_url: str | None = Field(default=None, alias="photoUrl")
    recorded_date: datetime = Field(alias="recordedDate")
    recorded_by: str | None = Field(default=None, alias="recordedBy")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class EnvironmentalReadingResponse(BaseModel):
    soil_moisture: float | None = Field(default=None, alias="soilMoisture")
    soil_ph: float | None = Field(default=None, alias="soilPh")
    temperature: float | None = None
    humidity: float | None = None
    sunlight_hours: float | None = Field(default=None, alias="sunlightHours")
    rainfall: float | None = None
    recorded_date: datetime = Field(alias="recordedDate")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class PlantResponse(BaseModel):
    id: int
    plant_code: str = Field(alias="plantCode")
    species: str
    location: str | None = None
    planted_date: datetime = Field(alias="plantedDate")
    current_height: float | None = Field(default=None, alias="currentHeight")
    co2_absorbed: float = Field(alias="co2Absorbed")
    status: str

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class GrowthRegenerateRequest(BaseModel):
    force: bool = False


# Adoptions --------------------------------------------------------------------------------
class AdoptionSummaryResponse(BaseModel):
    id: int
    package_id: int | None = Field(default=None, alias="packageId")
    package_name: str | None = Field(default=None, alias="packageName")
    package_period: str | None = Field(default=None, alias="packagePeriod")
    package_price: Decimal | None = Field(default=None, alias="packagePrice")
    package_features: list[str] = Field(default_factory=list, alias="packageFeatures")
    location_id: int | None = Field(default=None, alias="locationId")
    location_name: str | None = Field(default=None, alias="locationName")
    adoption_price: Decimal | None = Field(default=None, alias="adoptionPrice")
    adoption_date: datetime = Field(alias="adoptionDate")
    payment_reference_no: str | None = Field(default=None, alias="paymentReferenceNo")
    bamboo_plant_id: int | None = Field(default=None, alias="bambooPlantId")
    is_active: bool = Field(alias="isActive")
    certificate_issued: bool = Field(alias="certificateIssued")

    model_config = ConfigDict(populate_by_name=True)


class AdoptionDetailResponse(AdoptionSummaryResponse):
    plant: PlantResponse | None = None
    growth: GrowthSnapshotResponse | None = None
    growth_rate: GrowthRateResponse | None = Field(default=None, alias="growthRate")
    growth_records: list[GrowthRecordResponse] = Field(default_factory=list, alias="growthRecords")
    environment: EnvironmentalReadingResponse | None = None


class GrowthRegenerateResponse(BaseModel):
    adoption_id: int = Field(alias="adoptionId")
    generated: int
    growth: GrowthSnapshotResponse

    model_config = ConfigDict(populate_by_name=True)


class AdminAdoptionResponse(AdoptionSummaryResponse):
    user_id: int = Field(alias="userId")
    user_email: str = Field(alias="userEmail")
    user_name: str | None = Field(default=None, alias="userName")


class AdminAdoptionListResponse(BaseModel):
    items: list[AdminAdoptionResponse]
    total: int


class AdminAdoptionUpdate(BaseModel):
    is_active: bool | None = Field(default=None, alias="isActive")
    certificate_issued: bool | None = Field(default=None, alias="certificateIssued")

    model_config = ConfigDict(populate_by_name=True)


class AdminUserResponse(BaseModel):
    id: int
    subject: str
    email: str
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    created_at: datetime = Field(alias="createdAt")
    total_adoptions: int = Field(alias="totalAdoptions")
    total_spent: Decimal = Field(alias="totalSpent")
    active_adoptions: int = Field(alias="activeAdoptions")

    model_config = ConfigDict(populate_by_name=True)


class AdminUserUpdate(BaseModel):
    first_name: str | None = Field(default=None, max_length=128, alias="firstName")
    last_name: str | None = Field(default=None, max_length=128, alias="lastName")
    email: str | None = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    model_config = ConfigDict(populate_by_name=True)


class MissingAdoptionsResponse(BaseModel):
    success_payments: int = Field(alias="successPayments")
    adoptions_with_payment: int = Field(alias="adoptionsWithPayment")
    missing: int
    references: list[str]

    model_config = ConfigDict(populate_by_name=True)


class SweepErrorResponse(BaseModel):
    reference_no: str = Field(alias="referenceNo")
    error: str

    model_config = ConfigDict(populate_by_name=True)


class SyncMissingResponse(BaseModel):
    processed: int
    created: int
    errors: list[SweepErrorResponse]
