import random
import re
import warnings
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import SAWarning
from sqlalchemy.ext.asyncio import AsyncSession

from adoptbamboo.adoption_service.app.gateway import (
    BillCreated,
    BillRequest,
    GatewayPaymentStatus,
    GatewayTransientError,
    GatewayValidationError,
    validate_bill_request,
)
from adoptbamboo.adoption_service.app.models import Base, GrowthRecord, Location, Package, Payment
from adoptbamboo.adoption_service.app.repository import AdoptionRepository
from adoptbamboo.adoption_service.app.services import (
    AUTO_GENERATED_BY,
    DEFAULT_PHONE,
    GrowthService,
    InvalidPaymentRequest,
    InvalidPaymentTransition,
    LocationFull,
    PaymentService,
    days_since,
    from_cents,
    generate_reference_no,
    to_cents,
    transition_payment,
)
from adoptbamboo.common import create_engine, dispose_engines, get_session_factory


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


class _RecordingGateway:
    def __init__(self) -> None:
        self.requests: list[BillRequest] = []

    async def create_bill(self, request: BillRequest) -> BillCreated:
        validate_bill_request(request)
        self.requests.append(request)
        return BillCreated(bill_code=f"bill{len(self.requests)}", payment_url=f"https://pay.test/bill{len(self.requests)}")


class _ScriptedStatusSource:
    def __init__(self, *results: GatewayPaymentStatus | Exception) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, bool]] = []

    async def get_status(self, bill_code: str, *, fresh: bool = False) -> GatewayPaymentStatus:
        self.calls.append((bill_code, fresh))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _paid(bill_code: str = "bill1") -> GatewayPaymentStatus:
    return GatewayPaymentStatus(
        bill_code=bill_code,
        status="success",
        paid_amount_cents=15000,
        transaction_id="TP2401150001",
        paid_date=datetime(2024, 1, 15, 2, 30, tzinfo=timezone.utc),
    )


@asynccontextmanager
async def _session(tmp_path) -> AsyncIterator[AsyncSession]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'payment_service.db'}"
    engine = create_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = get_session_factory(database_url)
    try:
        async with session_factory() as session:
            session.add_all(
                [
                    Package(name="Quarterly Grove", price_cents=15000, period="quarterly"),
                    Location(name="Kebun Bambu Selatan", capacity=2, current_count=0),
                    Location(name="Taman Penuh", capacity=1, current_count=1),
                ]
            )
            await session.flush()
            yield session
    finally:
        await dispose_engines()


async def _create(service: PaymentService, **overrides: Any) -> tuple[Payment, BillCreated]:
    fields: dict[str, Any] = {
        "subject": "user_2abc",
        "package_type": "quarterly",
        "location_ref": "Kebun Bambu Selatan",
        "amount": None,
        "customer_name": "Aisyah Ahmad",
        "customer_email": "aisyah@example.com",
        "customer_phone": "60198765432",
        "description": None,
    }
    fields.update(overrides)
    return await service.create_payment(**fields)


def test_money_helpers_round_half_up() -> None:
    assert to_cents(Decimal("150.00")) == 15000
    assert to_cents(Decimal("0.005")) == 1
    assert to_cents(Decimal("19.994")) == 1999
    assert from_cents(15000) == Decimal("150.00")
    assert from_cents(None) is None


def test_reference_numbers_follow_bamboo_format() -> None:
    reference_no = generate_reference_no(now_ms=1709280000000, rng=random.Random(3))

    assert re.fullmatch(r"BAMBOO1709280000000\d{3}", reference_no)
    assert re.fullmatch(r"BAMBOO\d{16}", generate_reference_no())


def test_days_since_counts_whole_days() -> None:
    planted = datetime(2024, 1, 1, 12, 0)
    assert days_since(planted, datetime(2024, 1, 24, 11, 59, tzinfo=timezone.utc)) == 22
    assert days_since(planted, datetime(2024, 1, 24, 12, 0, tzinfo=timezone.utc)) == 23
    assert days_since(planted, datetime(2023, 12, 1, tzinfo=timezone.utc)) == 0


@pytest.mark.parametrize(
    ("current", "requested", "allowed"),
    [
        ("pending", "success", True),
        ("pending", "failed", True),
        ("pending", "cancelled", True),
        ("success", "failed", False),
        ("success", "pending", False),
        ("failed", "success", False),
        ("cancelled", "success", False),
    ],
)
def test_transition_payment(current: str, requested: str, allowed: bool) -> None:
    payment = SimpleNamespace(status=current)

    if allowed:
        transition_payment(payment, requested)  # type: ignore[arg-type]
        assert payment.status == requested
    else:
        with pytest.raises(InvalidPaymentTransition):
            transition_payment(payment, requested)  # type: ignore[arg-type]
        assert payment.status == current


@pytest.mark.asyncio
async def test_create_payment_defaults_amount_and_builds_bill(tmp_path) -> None:
    async with _session(tmp_path) as session:
        gateway = _RecordingGateway()
        service = PaymentService(
            AdoptionRepository(session),
            gateway=gateway,
            public_base_url="https://adoptbamboo.test/",
        )

        payment, bill = await _create(service, customer_phone=None)

        assert payment.status == "pending"
        assert payment.amount_cents == 15000
        assert payment.bill_code == bill.bill_code == "bill1"
        assert payment.customer_phone == DEFAULT_PHONE
        assert payment.location_name == "Kebun Bambu Selatan"
        assert payment.description == "Bamboo adoption - Quarterly Grove at Kebun Bambu Selatan"

        request = gateway.requests[0]
        assert request.reference_no == payment.reference_no
        assert request.amount_cents == 15000
        assert request.return_url == f"https://adoptbamboo.test/payment/success?referenceNo={payment.reference_no}"
        assert request.callback_url == "https://adoptbamboo.test/payments/callback"


@pytest.mark.asyncio
async def test_create_payment_rejections(tmp_path) -> None:
    async with _session(tmp_path) as session:
        service = PaymentService(AdoptionRepository(session), gateway=_RecordingGateway())
        full = _MetricTracker("adoption_location_full_total")

        with pytest.raises(LocationFull):
            await _create(service, location_ref="Taman Penuh")
        assert full.delta() == 1

        with pytest.raises(InvalidPaymentRequest):
            await _create(service, package_type="weekly")

        with pytest.raises(GatewayValidationError):
            await _create(service, customer_phone="0123456789")

        payment, _ = await _create(service, package_type="weekly", amount=Decimal("42.50"))
        assert payment.amount_cents == 4250
        assert payment.package_type == "weekly"


@pytest.mark.asyncio
async def test_settle_applies_gateway_success_and_creates_adoption(tmp_path) -> None:
    async with _session(tmp_path) as session:
        status_source = _ScriptedStatusSource(_paid())
        service = PaymentService(
            AdoptionRepository(session),
            gateway=_RecordingGateway(),
            status_source=status_source,
        )
        payment, _ = await _create(service)
        transitions = _MetricTracker("adoption_payment_status_transitions_total", {"status": "success"})

        outcome = await service.settle(payment, trigger="callback", fresh=True)

        assert status_source.calls == [("bill1", True)]
        assert outcome.adoption_status == "created"
        assert outcome.payment.status == "success"
        assert outcome.payment.paid_amount_cents == 15000
        assert outcome.payment.transaction_id == "TP2401150001"
        assert outcome.adoption is not None
        assert transitions.delta() == 1

        again = await service.settle(payment, trigger="poll", fresh=False)
        assert again.adoption_status == "existing"
        assert again.adoption.id == outcome.adoption.id
        assert len(status_source.calls) == 1


@pytest.mark.asyncio
async def test_settle_reports_pending_when_gateway_unavailable(tmp_path) -> None:
    async with _session(tmp_path) as session:
        service = PaymentService(
            AdoptionRepository(session),
            gateway=_RecordingGateway(),
            status_source=_ScriptedStatusSource(GatewayTransientError("timed out"), _paid()),
        )
        payment, _ = await _create(service)

        deferred = await service.settle(payment, trigger="poll")
        assert deferred.adoption_status == "pending"
        assert deferred.payment.status == "pending"
        assert deferred.adoption is None

        settled = await service.settle(payment, trigger="poll")
        assert settled.adoption_status == "created"


@pytest.mark.asyncio
async def test_terminal_status_is_not_overwritten(tmp_path) -> None:
    async with _session(tmp_path) as session:
        failed = GatewayPaymentStatus(bill_code="bill1", status="failed")
        service = PaymentService(
            AdoptionRepository(session),
            gateway=_RecordingGateway(),
            status_source=_ScriptedStatusSource(failed),
        )
        payment, _ = await _create(service)
        conflicts = _MetricTracker(
            "adoption_payment_status_conflicts_total", {"current": "failed", "reported": "success"}
        )

        outcome = await service.settle(payment, trigger="callback")
        assert outcome.payment.status == "failed"
        assert outcome.adoption_status == "not_ready"

        assert service.apply_gateway_status(payment, _paid()) is False
        assert payment.status == "failed"
        assert payment.paid_amount_cents is None
        assert conflicts.delta() == 1


@pytest.mark.asyncio
async def test_cancel_only_from_pending(tmp_path) -> None:
    async with _session(tmp_path) as session:
        service = PaymentService(AdoptionRepository(session), gateway=_RecordingGateway())
        payment, _ = await _create(service)

        cancelled = await service.cancel_payment(payment)
        assert cancelled.status == "cancelled"

        with pytest.raises(InvalidPaymentTransition):
            await service.cancel_payment(payment)


@pytest.mark.asyncio
async def test_growth_backfill_runs_once_and_keeps_manual_records(tmp_path) -> None:
    async with _session(tmp_path) as session:
        repository = AdoptionRepository(session)
        planted = datetime(2024, 1, 1, tzinfo=timezone.utc)
        plant = await repository.create_plant(
            plant_code="BAMBOO-1-202401010000",
            location="Kebun Bambu Selatan",
            species="Bambusa vulgaris",
            planted_date=planted,
            height=0.1,
            co2_absorbed=0.11,
            initial_record=GrowthRecord(height=0.1, diameter=2.08, recorded_date=planted, recorded_by="System"),
        )
        session.add(
            GrowthRecord(
                bamboo_plant_id=plant.id,
                height=3.0,
                recorded_date=planted + timedelta(days=9),
                recorded_by="Field team",
            )
        )
        await session.flush()
        service = GrowthService(repository, rng=random.Random(11))
        now = planted + timedelta(days=23, hours=5)
        backfilled = _MetricTracker("adoption_growth_backfill_records_total")

        assert await service.ensure_timeline(plant, now=now) == 4
        assert await service.ensure_timeline(plant, now=now) == 0
        assert backfilled.delta() == 4

        generated = await repository.count_growth_records(plant.id, recorded_by=AUTO_GENERATED_BY)
        assert generated == 4
        assert await repository.count_growth_records(plant.id) == 6
        assert plant.current_height == pytest.approx(7.0)
        assert plant.status == "growing"

        assert await service.ensure_timeline(plant, force=True, now=now) == 4
        assert await repository.count_growth_records(plant.id) == 6

        records = await repository.list_growth_records(plant.id)
        auto_days = [
            (record.recorded_date.replace(tzinfo=timezone.utc) - planted).days
            for record in records
            if record.recorded_by == AUTO_GENERATED_BY
        ]
        assert auto_days == [7, 14, 21, 23]


@pytest.mark.asyncio
async def test_growth_backfill_skips_plants_planted_today(tmp_path) -> None:
    async with _session(tmp_path) as session:
        repository = AdoptionRepository(session)
        now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        plant = await repository.create_plant(
            plant_code="BAMBOO-2-202403010800",
            location=None,
            species="Bambusa vulgaris",
            planted_date=now - timedelta(hours=1),
            height=0.1,
            co2_absorbed=0.11,
            initial_record=GrowthRecord(height=0.1, diameter=2.08, recorded_date=now, recorded_by="System"),
        )

        assert await GrowthService(repository).ensure_timeline(plant, now=now) == 0
        assert await repository.count_growth_records(plant.id, recorded_by=AUTO_GENERATED_BY) == 0
        assert await repository.count_growth_records(plant.id) == 1


@pytest.mark.asyncio
async def test_forced_regeneration_evicts_replaced_records(tmp_path) -> None:
    async with _session(tmp_path) as session:
        repository = AdoptionRepository(session)
        planted = datetime(2024, 1, 1, tzinfo=timezone.utc)
        plant = await repository.create_plant(
            plant_code="BAMBOO-3-202401010000",
            location="Kebun Bambu Selatan",
            species="Bambusa vulgaris",
            planted_date=planted,
            height=0.1,
            co2_absorbed=0.11,
            initial_record=GrowthRecord(height=0.1, diameter=2.08, recorded_date=planted, recorded_by="System"),
        )
        service = GrowthService(repository, rng=random.Random(3))
        now = planted + timedelta(days=23, hours=5)
        assert await service.ensure_timeline(plant, now=now) == 4
        replaced = [
            record
            for record in await repository.list_growth_records(plant.id)
            if record.recorded_by == AUTO_GENERATED_BY
        ]

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            assert await service.ensure_timeline(plant, force=True, now=now) == 4
            records = await repository.list_growth_records(plant.id)

        assert all(record not in session for record in replaced)
        assert len(records) == 5
        assert sum(record.recorded_by == AUTO_GENERATED_BY for record in records) == 4
