import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adoptbamboo.adoption_service.app.events import ADOPTION_CREATED_TOPIC, AdoptionEventPublisher
from adoptbamboo.adoption_service.app.models import (
    Adoption,
    BambooPlant,
    Base,
    EnvironmentalReading,
    GrowthRecord,
    Location,
    Package,
    Payment,
    User,
)
from adoptbamboo.adoption_service.app.reconciliation import (
    INITIAL_GROWTH_NOTE,
    PaymentNotFound,
    ReconciliationService,
    StorageError,
    split_customer_name,
)
from adoptbamboo.adoption_service.app.repository import AdoptionRepository
from adoptbamboo.common import create_engine, dispose_engines, get_session_factory, lifespan_session
from adoptbamboo.common.kafka import KafkaConsumerStub, KafkaProducerStub

FIXED_NOW = datetime(2024, 3, 1, 8, 15, tzinfo=timezone.utc)


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


@asynccontextmanager
async def _database(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'reconciliation.db'}"
    engine = create_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield get_session_factory(database_url)
    finally:
        await dispose_engines()


async def _seed_catalog(session_factory: async_sessionmaker[AsyncSession]) -> tuple[int, int]:
    async with lifespan_session(session_factory) as session:
        package = Package(
            name="Quarterly Grove",
            price_cents=15000,
            period="quarterly",
            features_json='["Digital certificate", "Quarterly photo update"]',
            sort_order=2,
        )
        location = Location(name="Kebun Bambu Selatan", capacity=50, current_count=0)
        session.add_all([package, location])
        await session.flush()
        return package.id, location.id


async def _seed_payment(session_factory: async_sessionmaker[AsyncSession], **overrides: Any) -> str:
    fields: dict[str, Any] = {
        "reference_no": "BAMBOO1709280000000001",
        "user_id": "user_2abc",
        "amount_cents": 15000,
        "customer_name": "Aisyah Binti Ahmad",
        "customer_email": "aisyah@example.com",
        "customer_phone": "60123456789",
        "package_type": "quarterly",
        "location_ref": "Kebun Bambu Selatan",
        "location_name": "Kebun Bambu Selatan",
        "status": "success",
        "bill_code": "x7k2p9",
    }
    fields.update(overrides)
    async with lifespan_session(session_factory) as session:
        session.add(Payment(**fields))
    return fields["reference_no"]


async def _reconcile(session_factory, reference_no: str, **kwargs: Any):
    async with lifespan_session(session_factory) as session:
        service = ReconciliationService(AdoptionRepository(session), clock=lambda: FIXED_NOW, **kwargs)
        return await service.ensure_adoption_for_payment(reference_no, trigger="poll")


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _location_count(session_factory, location_id: int) -> int:
    async with session_factory() as session:
        location = await session.get(Location, location_id)
        assert location is not None
        return location.current_count


def test_split_customer_name() -> None:
    assert split_customer_name("Aisyah Binti Ahmad") == ("Aisyah", "Binti Ahmad")
    assert split_customer_name("Aisyah") == ("Aisyah", None)
    assert split_customer_name("   ") == (None, None)
    assert split_customer_name(None) == (None, None)


@pytest.mark.asyncio
async def test_successful_payment_materialises_full_adoption(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        package_id, location_id = await _seed_catalog(session_factory)
        reference_no = await _seed_payment(session_factory)
        created = _MetricTracker("adoption_reconciliation_total", {"trigger": "poll", "outcome": "created"})

        result = await _reconcile(session_factory, reference_no)

        assert result.outcome == "created"
        assert result.adoption is not None
        assert created.delta() == 1

        async with session_factory() as session:
            user = (await session.execute(select(User))).scalar_one()
            assert user.clerk_id == "user_2abc"
            assert user.email == "aisyah@example.com"
            assert (user.first_name, user.last_name) == ("Aisyah", "Binti Ahmad")

            adoption = (await session.execute(select(Adoption))).scalar_one()
            assert adoption.user_id == user.id
            assert adoption.package_id == package_id
            assert adoption.package_name == "Quarterly Grove"
            assert adoption.package_price_cents == 15000
            assert adoption.package_period == "quarterly"
            assert adoption.location_id == location_id
            assert adoption.location_name == "Kebun Bambu Selatan"
            assert adoption.adoption_price_cents == 15000
            assert adoption.payment_reference_no == reference_no
            assert adoption.is_active is True

            plant = await session.get(BambooPlant, adoption.bamboo_plant_id)
            assert plant is not None
            assert plant.plant_code == f"BAMBOO-{adoption.id}-202403010815"
            assert plant.location == "Kebun Bambu Selatan"
            assert plant.current_height == pytest.approx(0.1)
            assert plant.status == "growing"

            record = (await session.execute(select(GrowthRecord))).scalar_one()
            assert record.bamboo_plant_id == plant.id
            assert record.height == pytest.approx(0.1)
            assert record.diameter == pytest.approx(2.08)
            assert record.notes == INITIAL_GROWTH_NOTE
            assert record.recorded_by == "System"

            reading = (await session.execute(select(EnvironmentalReading))).scalar_one()
            assert reading.bamboo_plant_id == plant.id
            assert reading.soil_ph == pytest.approx(6.5)
            assert reading.temperature == pytest.approx(28.0)

        assert await _location_count(session_factory, location_id) == 1


@pytest.mark.asyncio
async def test_repeated_triggers_create_exactly_one_adoption(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        _, location_id = await _seed_catalog(session_factory)
        reference_no = await _seed_payment(session_factory)

        outcomes = [await _reconcile(session_factory, reference_no) for _ in range(5)]

        assert [result.outcome for result in outcomes] == ["created", "existing", "existing", "existing", "existing"]
        assert len({result.adoption.id for result in outcomes}) == 1
        assert await _count(session_factory, Adoption) == 1
        assert await _count(session_factory, User) == 1
        assert await _count(session_factory, BambooPlant) == 1
        assert await _location_count(session_factory, location_id) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["pending", "failed", "cancelled"])
async def test_unsettled_payment_is_not_ready(tmp_path, status: str) -> None:
    async with _database(tmp_path) as session_factory:
        await _seed_catalog(session_factory)
        reference_no = await _seed_payment(session_factory, status=status)

        result = await _reconcile(session_factory, reference_no)

        assert result.outcome == "not_ready"
        assert result.adoption is None
        assert await _count(session_factory, Adoption) == 0
        assert await _count(session_factory, User) == 0


@pytest.mark.asyncio
async def test_unknown_reference_raises_not_found(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        errors = _MetricTracker("adoption_reconciliation_errors_total", {"trigger": "poll", "reason": "not_found"})

        with pytest.raises(PaymentNotFound):
            await _reconcile(session_factory, "BAMBOO-missing")

        assert errors.delta() == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("package_type", "location_ref", "location_name"),
    [
        ("monthly", "Unknown Grove", "Unknown Grove"),
        ("99", "42", None),
        ("", None, None),
    ],
)
async def test_unresolved_references_still_create_adoption(
    tmp_path, package_type: str, location_ref: str | None, location_name: str | None
) -> None:
    async with _database(tmp_path) as session_factory:
        _, location_id = await _seed_catalog(session_factory)
        reference_no = await _seed_payment(
            session_factory,
            package_type=package_type,
            location_ref=location_ref,
            location_name=location_name,
        )

        result = await _reconcile(session_factory, reference_no)

        assert result.outcome == "created"
        assert result.adoption.package_id is None
        assert result.adoption.package_name is None
        assert result.adoption.location_id is None
        assert result.adoption.location_name == location_name
        assert result.adoption.bamboo_plant_id is not None
        assert await _location_count(session_factory, location_id) == 0


@pytest.mark.asyncio
async def test_numeric_references_resolve_by_id(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        package_id, location_id = await _seed_catalog(session_factory)
        reference_no = await _seed_payment(
            session_factory,
            package_type=str(package_id),
            location_ref=str(location_id),
            location_name=None,
        )

        result = await _reconcile(session_factory, reference_no)

        assert result.adoption.package_id == package_id
        assert result.adoption.location_id == location_id
        assert result.adoption.location_name == "Kebun Bambu Selatan"


@pytest.mark.asyncio
async def test_location_count_grows_by_one_per_adoption(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        _, location_id = await _seed_catalog(session_factory)
        references = [
            await _seed_payment(session_factory, reference_no=f"BAMBOO170928000000000{index}", bill_code=f"bill{index}")
            for index in range(3)
        ]

        for reference_no in references:
            await _reconcile(session_factory, reference_no)
            await _reconcile(session_factory, reference_no)

        assert await _location_count(session_factory, location_id) == 3
        assert await _count(session_factory, Adoption) == 3
        assert await _count(session_factory, User) == 1


@pytest.mark.asyncio
async def test_losing_writer_returns_winning_adoption(tmp_path, monkeypatch) -> None:
    async with _database(tmp_path) as session_factory:
        _, location_id = await _seed_catalog(session_factory)
        reference_no = await _seed_payment(session_factory)
        winner = await _reconcile(session_factory, reference_no)

        async with lifespan_session(session_factory) as session:
            repository = AdoptionRepository(session)
            original_lookup = repository.get_adoption_by_reference
            calls = 0

            async def _stale_lookup(reference: str) -> Adoption | None:
                nonlocal calls
                calls += 1
                if calls == 1:
                    return None
                return await original_lookup(reference)

            monkeypatch.setattr(repository, "get_adoption_by_reference", _stale_lookup)
            service = ReconciliationService(repository, clock=lambda: FIXED_NOW)
            loser = await service.ensure_adoption_for_payment(reference_no, trigger="callback")

        assert loser.outcome == "existing"
        assert loser.adoption.id == winner.adoption.id
        assert await _count(session_factory, Adoption) == 1
        assert await _count(session_factory, BambooPlant) == 1
        assert await _location_count(session_factory, location_id) == 1


@pytest.mark.asyncio
async def test_concurrent_user_creation_reuses_existing_user(tmp_path, monkeypatch) -> None:
    async with _database(tmp_path) as session_factory:
        await _seed_catalog(session_factory)
        first = await _seed_payment(session_factory)
        second = await _seed_payment(session_factory, reference_no="BAMBOO1709280000000002", bill_code="y8m3q1")
        await _reconcile(session_factory, first)

        async with lifespan_session(session_factory) as session:
            repository = AdoptionRepository(session)
            original_lookup = repository.get_user_by_subject
            calls = 0

            async def _stale_lookup(subject: str) -> User | None:
                nonlocal calls
                calls += 1
                if calls == 1:
                    return None
                return await original_lookup(subject)

            monkeypatch.setattr(repository, "get_user_by_subject", _stale_lookup)
            service = ReconciliationService(repository, clock=lambda: FIXED_NOW)
            result = await service.ensure_adoption_for_payment(second, trigger="sweep")

        assert result.outcome == "created"
        assert await _count(session_factory, User) == 1
        assert await _count(session_factory, Adoption) == 2


@pytest.mark.asyncio
async def test_simultaneous_triggers_for_one_reference_share_one_adoption(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        _, location_id = await _seed_catalog(session_factory)
        reference_no = await _seed_payment(session_factory)

        results = await asyncio.gather(*(_reconcile(session_factory, reference_no) for _ in range(5)))

        outcomes = sorted(result.outcome for result in results)
        assert outcomes == ["created", "existing", "existing", "existing", "existing"]
        assert len({result.adoption.id for result in results}) == 1
        assert await _count(session_factory, Adoption) == 1
        assert await _count(session_factory, BambooPlant) == 1
        assert await _location_count(session_factory, location_id) == 1


@pytest.mark.asyncio
async def test_simultaneous_adoptions_at_one_location_each_count_once(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        _, location_id = await _seed_catalog(session_factory)
        references = [
            await _seed_payment(session_factory, reference_no=f"BAMBOO170928000000001{index}", bill_code=f"race{index}")
            for index in range(5)
        ]

        results = await asyncio.gather(*(_reconcile(session_factory, reference_no) for reference_no in references))

        assert [result.outcome for result in results] == ["created"] * 5
        assert await _count(session_factory, Adoption) == 5
        assert await _count(session_factory, User) == 1
        assert await _location_count(session_factory, location_id) == 5


@pytest.mark.asyncio
async def test_storage_failure_rolls_back_partial_adoption(tmp_path, monkeypatch) -> None:
    async with _database(tmp_path) as session_factory:
        _, location_id = await _seed_catalog(session_factory)
        reference_no = await _seed_payment(session_factory)
        errors = _MetricTracker("adoption_reconciliation_errors_total", {"trigger": "poll", "reason": "storage"})

        async with lifespan_session(session_factory) as session:
            repository = AdoptionRepository(session)

            async def _failing_create_plant(**_: Any) -> BambooPlant:
                raise OperationalError("INSERT INTO bamboo_plants", {}, Exception("disk I/O error"))

            monkeypatch.setattr(repository, "create_plant", _failing_create_plant)
            service = ReconciliationService(repository, clock=lambda: FIXED_NOW)
            with pytest.raises(StorageError):
                await service.ensure_adoption_for_payment(reference_no, trigger="poll")

        assert errors.delta() == 1
        assert await _count(session_factory, Adoption) == 0
        assert await _location_count(session_factory, location_id) == 0

        retried = await _reconcile(session_factory, reference_no)
        assert retried.outcome == "created"
        assert await _location_count(session_factory, location_id) == 1


@pytest.mark.asyncio
async def test_sync_missing_reconciles_only_orphaned_success_payments(tmp_path) -> None:
    async with _database(tmp_path) as session_factory:
        await _seed_catalog(session_factory)
        adopted = await _seed_payment(session_factory)
        await _reconcile(session_factory, adopted)
        await _seed_payment(session_factory, reference_no="BAMBOO1709280000000002", bill_code="b2")
        await _seed_payment(session_factory, reference_no="BAMBOO1709280000000003", bill_code="b3")
        await _seed_payment(session_factory, reference_no="BAMBOO1709280000000004", bill_code="b4", status="pending")

        async with lifespan_session(session_factory) as session:
            service = ReconciliationService(AdoptionRepository(session))
            before = await service.count_missing()
            report = await service.sync_missing()

        assert before.success_payments == 3
        assert before.adoptions_with_payment == 1
        assert before.missing_references == ["BAMBOO1709280000000002", "BAMBOO1709280000000003"]
        assert before.missing == 2
        assert report.processed == 2
        assert report.created == 2
        assert report.errors == []

        async with session_factory() as session:
            after = await ReconciliationService(AdoptionRepository(session)).count_missing()
        assert after.missing == 0
        assert after.adoptions_with_payment == 3


@pytest.mark.asyncio
async def test_created_adoption_publishes_event_once(tmp_path) -> None:
    received: list[dict[str, Any]] = []

    async def _collect(topic: str, message: dict[str, Any]) -> None:
        assert topic == ADOPTION_CREATED_TOPIC
        received.append(message)

    consumer = KafkaConsumerStub([ADOPTION_CREATED_TOPIC], _collect)
    producer = KafkaProducerStub()
    await consumer.start()
    await producer.connect()
    try:
        async with _database(tmp_path) as session_factory:
            await _seed_catalog(session_factory)
            reference_no = await _seed_payment(session_factory)
            publisher = AdoptionEventPublisher(producer)

            first = await _reconcile(session_factory, reference_no, event_publisher=publisher)
            await _reconcile(session_factory, reference_no, event_publisher=publisher)
    finally:
        await consumer.stop()
        await producer.close()

    assert len(received) == 1
    message = received[0]
    assert message["eventType"] == ADOPTION_CREATED_TOPIC
    assert message["key"] == reference_no
    assert message["trigger"] == "poll"
    assert message["adoption"]["id"] == first.adoption.id
    assert message["adoption"]["locationName"] == "Kebun Bambu Selatan"
    assert message["payment"]["referenceNo"] == reference_no
    assert message["payment"]["amountCents"] == 15000
