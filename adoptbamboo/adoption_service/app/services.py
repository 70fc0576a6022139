"""Service layer for payments and plant growth."""

from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Protocol

from .gateway import BillCreated, BillRequest, GatewayError, GatewayPaymentStatus
from .growth import GrowthSnapshot, growth_at, timeline
from .metrics import (
    ADOPTION_LOCATION_FULL_TOTAL,
    GROWTH_BACKFILL_RECORDS_TOTAL,
    PAYMENT_STATUS_CONFLICTS_TOTAL,
    PAYMENT_STATUS_TRANSITIONS_TOTAL,
)
from .models import Adoption, BambooPlant, GrowthRecord, Payment
from .reconciliation import PaymentNotFound, ReconciliationService, StorageError
from .repository import AdoptionRepository
from .resolver import ReferenceResolver

logger = logging.getLogger(__name__)

DEFAULT_PHONE = "60123456789"
AUTO_GENERATED_BY = "System (Auto-generated)"
PAYMENT_STATUSES = ("pending", "success", "failed", "cancelled")
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"success", "failed", "cancelled"}),
    "success": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


class InvalidPaymentTransition(Exception):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move payment from {current} to {requested}")
        self.current = current
        self.requested = requested


class InvalidPaymentRequest(ValueError):
    """Raised when a payment cannot be priced or addressed."""


class LocationFull(Exception):
    def __init__(self, location_name: str) -> None:
        super().__init__(f"Location {location_name} is at capacity")
        self.location_name = location_name


class BillGateway(Protocol):
    async def create_bill(self, request: BillRequest) -> BillCreated: ...


class StatusSource(Protocol):
    async def get_status(self, bill_code: str, *, fresh: bool = False) -> GatewayPaymentStatus: ...


def to_cents(amount: Decimal) -> int:
    return int((amount * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(amount_cents: int | None) -> Decimal | None:
    if amount_cents is None:
        return None
    return (Decimal(amount_cents) / Decimal("100")).quantize(Decimal("0.01"))


def features_from_json(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return []


def features_to_json(features: list[str] | None) -> str | None:
    if features is None:
        return None
    return json.dumps([feature.strip() for feature in features if feature.strip()])


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_since(start: datetime, now: datetime | None = None) -> int:
    current = as_utc(now or datetime.now(timezone.utc))
    elapsed = current - as_utc(start)
    return max(0, elapsed // timedelta(days=1))


def generate_reference_no(*, now_ms: int | None = None, rng: random.Random | None = None) -> str:
    millis = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = (rng or random).randint(0, 999)
    return f"BAMBOO{millis}{suffix:03d}"


def transition_payment(payment: Payment, new_status: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(payment.status, frozenset())
    if new_status not in allowed:
        raise InvalidPaymentTransition(payment.status, new_status)
    payment.status = new_status


@dataclass(slots=True)
class TriggerOutcome:
    payment: Payment
    adoption_status: str
    adoption: Adoption | None = None


class PaymentService:
    """Payment creation plus the shared flow behind every settlement trigger."""

    def __init__(
        self,
        repository: AdoptionRepository,
        *,
        gateway: BillGateway | None = None,
        status_source: StatusSource | None = None,
        reconciler: ReconciliationService | None = None,
        public_base_url: str = "http://localhost:3000",
        default_phone: str = DEFAULT_PHONE,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.status_source = status_source
        self.reconciler = reconciler or ReconciliationService(repository)
        self.resolver = ReferenceResolver(repository.session)
        self.public_base_url = public_base_url.rstrip("/")
        self.default_phone = default_phone

    async def create_payment(
        self,
        *,
        subject: str,
        package_type: str,
        location_ref: str | None,
        amount: Decimal | None,
        customer_name: str,
        customer_email: str,
        customer_phone: str | None,
        description: str | None,
    ) -> tuple[Payment, BillCreated]:
        if self.gateway is None:
            raise GatewayError("Payment gateway is not configured")

        package = await self.resolver.resolve_package(package_type)
        location = await self.resolver.resolve_location(location_ref)
        if location is not None and location.capacity is not None and location.current_count >= location.capacity:
            ADOPTION_LOCATION_FULL_TOTAL.inc()
            raise LocationFull(location.name)

        if amount is not None:
            amount_cents = to_cents(amount)
        elif package is not None:
            amount_cents = package.price_cents
        else:
            raise InvalidPaymentRequest("Amount is required when the package is unknown")

        package_label = package.name if package is not None else package_type
        location_name = location.name if location is not None else location_ref
        reference_no = generate_reference_no()
        payment_description = description or (
            f"Bamboo adoption - {package_label}" + (f" at {location_name}" if location_name else "")
        )
        phone = customer_phone or self.default_phone

        payment = await self.repository.create_payment(
            reference_no=reference_no,
            user_id=subject,
            amount_cents=amount_cents,
            description=payment_description,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=phone,
            package_type=package_type,
            location_ref=location_ref,
            location_name=location_name,
            status="pending",
            gateway="toyyibpay",
        )

        bill = await self.gateway.create_bill(
            BillRequest(
                name=f"Bamboo {package_label}",
                description=payment_description,
                amount_cents=amount_cents,
                reference_no=reference_no,
                payer_name=customer_name,
                payer_email=customer_email,
                payer_phone=phone,
                return_url=f"{self.public_base_url}/payment/success?referenceNo={reference_no}",
                callback_url=f"{self.public_base_url}/payments/callback",
            )
        )
        payment.bill_code = bill.bill_code
        await self.repository.save(payment)
        logger.info("Created payment %s with bill %s for %s", reference_no, bill.bill_code, subject)
        return payment, bill

    async def get_payment(self, reference_no: str) -> Payment:
        payment = await self.repository.get_payment_by_reference(reference_no)
        if payment is None:
            raise PaymentNotFound(reference_no)
        return payment

    async def get_payment_by_bill_code(self, bill_code: str) -> Payment:
        payment = await self.repository.get_payment_by_bill_code(bill_code)
        if payment is None:
            raise PaymentNotFound(bill_code)
        return payment

    def apply_gateway_status(self, payment: Payment, status: GatewayPaymentStatus) -> bool:
        """Apply a gateway report; returns True when the stored status changed."""

        if status.status == "pending" or status.status == payment.status:
            return False
        try:
            transition_payment(payment, status.status)
        except InvalidPaymentTransition as exc:
            PAYMENT_STATUS_CONFLICTS_TOTAL.labels(current=exc.current, reported=exc.requested).inc()
            logger.warning(
                "Ignoring gateway report %s for payment %s already %s",
                exc.requested,
                payment.reference_no,
                exc.current,
            )
            return False

        if status.transaction_id:
            payment.transaction_id = status.transaction_id
        if status.status == "success":
            payment.paid_amount_cents = status.paid_amount_cents
            payment.paid_date = status.paid_date or datetime.now(timezone.utc)
        PAYMENT_STATUS_TRANSITIONS_TOTAL.labels(status=status.status).inc()
        logger.info("Payment %s moved to %s", payment.reference_no, payment.status)
        return True

    async def cancel_payment(self, payment: Payment) -> Payment:
        transition_payment(payment, "cancelled")
        PAYMENT_STATUS_TRANSITIONS_TOTAL.labels(status="cancelled").inc()
        await self.repository.save(payment)
        return payment

    async def settle(self, payment: Payment, *, trigger: str, fresh: bool = True) -> TriggerOutcome:
        """Verify a pending payment with the gateway, then reconcile it.

        Unknown gateway outcomes and retryable storage failures are reported as
        ``pending`` so callers can retry later.
        """

        if payment.status == "pending" and payment.bill_code and self.status_source is not None:
            try:
                status = await self.status_source.get_status(payment.bill_code, fresh=fresh)
            except GatewayError as exc:
                logger.warning("Gateway status for %s unavailable (%s): %s", payment.reference_no, trigger, exc)
                return TriggerOutcome(payment=payment, adoption_status="pending")
            if self.apply_gateway_status(payment, status):
                await self.repository.save(payment)

        try:
            result = await self.reconciler.ensure_adoption_for_payment(payment.reference_no, trigger=trigger)
        except StorageError as exc:
            logger.warning("Adoption for %s deferred (%s): %s", payment.reference_no, trigger, exc)
            return TriggerOutcome(payment=payment, adoption_status="pending")
        return TriggerOutcome(payment=result.payment, adoption_status=result.outcome, adoption=result.adoption)


class GrowthService:
    """Backfills weekly growth records for a plant from the growth model."""

    def __init__(self, repository: AdoptionRepository, *, rng: random.Random | None = None) -> None:
        self.repository = repository
        self.rng = rng

    async def ensure_timeline(
        self,
        plant: BambooPlant,
        *,
        force: bool = False,
        now: datetime | None = None,
    ) -> int:
        """Generate the plant's timeline once and return the number of records written.

        Only records written by the generator count; the initial planting
        record and any manual measurements are kept. ``force`` regenerates the
        timeline from scratch.
        """

        days = days_since(plant.planted_date, now)
        if not force:
            generated = await self.repository.count_growth_records(plant.id, recorded_by=AUTO_GENERATED_BY)
            if generated or days <= 0:
                return 0

        planted = as_utc(plant.planted_date)
        records = [
            GrowthRecord(
                height=entry.height,
                diameter=entry.diameter,
                notes=entry.notes,
                recorded_date=planted + timedelta(days=entry.days_since_planting),
                recorded_by=AUTO_GENERATED_BY,
            )
            for entry in timeline(days, rng=self.rng)
        ]
        await self.repository.replace_growth_records(
            plant,
            records,
            clear_recorded_by=AUTO_GENERATED_BY if force else None,
        )

        current = growth_at(days)
        await self.repository.update_fields(
            plant,
            current_height=current.height,
            co2_absorbed=current.co2_absorbed,
            status="mature" if current.stage == "full-grown" else "growing",
        )
        GROWTH_BACKFILL_RECORDS_TOTAL.inc(len(records))
        logger.info("Generated %s growth records for plant %s (day %s)", len(records), plant.plant_code, days)
        return len(records)

    @staticmethod
    def live_growth(plant: BambooPlant, now: datetime | None = None) -> GrowthSnapshot:
        return growth_at(days_since(plant.planted_date, now))
