"""Turn confirmed payments into adoptions exactly once."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from adoptbamboo.common import get_tracer

from .growth import growth_at
from .metrics import (
    ADOPTION_RECONCILIATION_ERRORS_TOTAL,
    ADOPTION_RECONCILIATION_TOTAL,
    normalise_trigger,
)
from .models import Adoption, GrowthRecord, Location, Package, Payment, User
from .repository import AdoptionRepository
from .resolver import ReferenceResolver

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

AdoptionOutcome = Literal["created", "existing", "not_ready"]

INITIAL_GROWTH_NOTE = "Initial planting - healthy seedling"
INITIAL_RECORDED_BY = "System"
DEFAULT_ENVIRONMENT: dict[str, float] = {
    "soil_moisture": 65.0,
    "soil_ph": 6.5,
    "temperature": 28.0,
    "humidity": 75.0,
    "sunlight_hours": 6.0,
    "rainfall": 0.0,
}


class PaymentNotFound(LookupError):
    """Raised when no payment exists for a reference number."""


class StorageError(Exception):
    """Raised when the adoption unit of work failed and may be retried."""


class EventPublisher(Protocol):
    async def adoption_created(self, adoption: Adoption, payment: Payment, *, trigger: str) -> None: ...


@dataclass(slots=True)
class AdoptionResult:
    outcome: AdoptionOutcome
    payment: Payment
    adoption: Adoption | None = None

    @property
    def created(self) -> bool:
        return self.outcome == "created"


@dataclass(slots=True)
class SweepReport:
    processed: int = 0
    created: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class MissingSummary:
    success_payments: int
    adoptions_with_payment: int
    missing_references: list[str]

    @property
    def missing(self) -> int:
        return len(self.missing_references)


def split_customer_name(full_name: str | None) -> tuple[str | None, str | None]:
    parts = (full_name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationService:
    """Materialises one adoption per successful payment.

    ``ensure_adoption_for_payment`` is safe to call any number of times, from
    any trigger, concurrently: the unique payment reference on adoptions makes
    the losing writer fall back to the winner's row.
    """

    def __init__(
        self,
        repository: AdoptionRepository,
        resolver: ReferenceResolver | None = None,
        event_publisher: EventPublisher | None = None,
        *,
        default_species: str = "Bambusa vulgaris",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.resolver = resolver or ReferenceResolver(repository.session)
        self.event_publisher = event_publisher
        self.default_species = default_species
        self.clock = clock

    async def ensure_adoption_for_payment(self, reference_no: str, *, trigger: str = "manual") -> AdoptionResult:
        trigger_label = normalise_trigger(trigger)
        with tracer.start_as_current_span("adoption.reconcile") as span:
            span.set_attribute("payment.reference_no", reference_no)
            span.set_attribute("adoption.trigger", trigger_label)
            try:
                result = await self._reconcile(reference_no, trigger_label)
            except StorageError:
                ADOPTION_RECONCILIATION_ERRORS_TOTAL.labels(trigger=trigger_label, reason="storage").inc()
                raise
            except PaymentNotFound:
                ADOPTION_RECONCILIATION_ERRORS_TOTAL.labels(trigger=trigger_label, reason="not_found").inc()
                raise
            span.set_attribute("adoption.outcome", result.outcome)

        ADOPTION_RECONCILIATION_TOTAL.labels(trigger=trigger_label, outcome=result.outcome).inc()
        if result.created and self.event_publisher is not None:
            assert result.adoption is not None
            await self.event_publisher.adoption_created(result.adoption, result.payment, trigger=trigger_label)
        return result

    async def _reconcile(self, reference_no: str, trigger: str) -> AdoptionResult:
        payment = await self.repository.get_payment_by_reference(reference_no)
        if payment is None:
            raise PaymentNotFound(reference_no)
        if payment.status != "success":
            return AdoptionResult(outcome="not_ready", payment=payment)

        existing = await self.repository.get_adoption_by_reference(reference_no)
        if existing is not None:
            return AdoptionResult(outcome="existing", payment=payment, adoption=existing)

        session = self.repository.session
        try:
            async with session.begin_nested():
                adoption = await self._materialise(payment)
        except IntegrityError as exc:
            winner = await self.repository.get_adoption_by_reference(reference_no)
            if winner is None:
                logger.error("Adoption insert for %s failed without a competing row: %s", reference_no, exc)
                raise StorageError(f"Could not create adoption for {reference_no}") from exc
            logger.info(
                "Adoption for %s was created concurrently (trigger=%s); using adoption %s",
                reference_no,
                trigger,
                winner.id,
            )
            return AdoptionResult(outcome="existing", payment=payment, adoption=winner)
        except SQLAlchemyError as exc:
            logger.error("Adoption unit of work for %s failed: %s", reference_no, exc)
            raise StorageError(f"Could not create adoption for {reference_no}") from exc

        logger.info(
            "Created adoption %s for payment %s (trigger=%s, package=%s, location=%s)",
            adoption.id,
            reference_no,
            trigger,
            adoption.package_id,
            adoption.location_id,
        )
        return AdoptionResult(outcome="created", payment=payment, adoption=adoption)

    async def _materialise(self, payment: Payment) -> Adoption:
        user = await self._ensure_user(payment)
        package = await self.resolver.resolve_package(payment.package_type)
        location = await self.resolver.resolve_location(payment.location_ref)
        now = self.clock()

        adoption = await self.repository.create_adoption(**self._adoption_fields(payment, user, package, location, now))

        if location is not None:
            count = await self.repository.increment_location_count(location)
            logger.debug("Location %s now holds %s plants", location.id, count)

        snapshot = growth_at(0)
        plant = await self.repository.create_plant(
            plant_code=f"BAMBOO-{adoption.id}-{now:%Y%m%d%H%M}",
            location=adoption.location_name,
            species=self.default_species,
            planted_date=now,
            height=snapshot.height,
            co2_absorbed=snapshot.co2_absorbed,
            initial_record=GrowthRecord(
                height=snapshot.height,
                diameter=snapshot.diameter,
                notes=INITIAL_GROWTH_NOTE,
                recorded_date=now,
                recorded_by=INITIAL_RECORDED_BY,
            ),
        )
        await self.repository.add_environmental_reading(plant, recorded_date=now, **DEFAULT_ENVIRONMENT)
        adoption.plant = plant
        await self.repository.session.flush()
        return adoption

    async def _ensure_user(self, payment: Payment) -> User:
        user = await self.repository.get_user_by_subject(payment.user_id)
        if user is not None:
            return user

        first_name, last_name = split_customer_name(payment.customer_name)
        try:
            async with self.repository.session.begin_nested():
                return await self.repository.create_user(
                    subject=payment.user_id,
                    email=payment.customer_email,
                    first_name=first_name,
                    last_name=last_name,
                )
        except IntegrityError:
            user = await self.repository.get_user_by_subject(payment.user_id)
            if user is None:
                raise
            return user

    @staticmethod
    def _adoption_fields(
        payment: Payment,
        user: User,
        package: Package | None,
        location: Location | None,
        now: datetime,
    ) -> dict[str, object]:
        return {
            "user_id": user.id,
            "package_id": package.id if package is not None else None,
            "package_name": package.name if package is not None else None,
            "package_price_cents": package.price_cents if package is not None else None,
            "package_period": package.period if package is not None else None,
            "package_features_json": package.features_json if package is not None else None,
            "location_id": location.id if location is not None else None,
            "location_name": location.name if location is not None else payment.location_name,
            "payment_reference_no": payment.reference_no,
            "adoption_date": now,
            "adoption_price_cents": payment.amount_cents,
            "is_active": True,
        }

    async def sync_missing(self) -> SweepReport:
        """Reconcile every successful payment that has no adoption yet."""

        report = SweepReport()
        references = await self.repository.list_success_references_without_adoption()
        for reference_no in references:
            report.processed += 1
            try:
                result = await self.ensure_adoption_for_payment(reference_no, trigger="sweep")
            except (StorageError, PaymentNotFound) as exc:
                report.errors.append({"referenceNo": reference_no, "error": str(exc) or type(exc).__name__})
                continue
            if result.created:
                report.created += 1
        logger.info(
            "Adoption sweep processed %s payments, created %s, errors %s",
            report.processed,
            report.created,
            len(report.errors),
        )
        return report

    async def count_missing(self) -> MissingSummary:
        return MissingSummary(
            success_payments=await self.repository.count_success_payments(),
            adoptions_with_payment=await self.repository.count_adoptions_with_payment(),
            missing_references=await self.repository.list_success_references_without_adoption(),
        )
