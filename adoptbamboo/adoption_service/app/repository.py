"""Database helpers for the adoption service."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Adoption,
    BambooPlant,
    EnvironmentalReading,
    GrowthRecord,
    Location,
    Package,
    Payment,
    User,
)


class AdoptionRepository:
    """Persistence utilities for payments, adoptions and their plants."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Payments -----------------------------------------------------------------------------
    async def create_payment(self, **fields: Any) -> Payment:
        payment = Payment(**fields)
        self.session.add(payment)
        await self.session.flush()
        await self.session.refresh(payment, attribute_names=["status", "created_at", "updated_at"])
        return payment

    async def get_payment_by_reference(self, reference_no: str) -> Payment | None:
        result = await self.session.execute(select(Payment).where(Payment.reference_no == reference_no))
        return result.scalar_one_or_none()

    async def get_payment_by_bill_code(self, bill_code: str) -> Payment | None:
        result = await self.session.execute(
            select(Payment).where(Payment.bill_code == bill_code).order_by(Payment.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def save(self, instance: Any) -> None:
        await self.session.flush()
        await self.session.refresh(instance)

    async def list_success_references_without_adoption(self) -> list[str]:
        stmt = (
            select(Payment.reference_no)
            .outerjoin(Adoption, Adoption.payment_reference_no == Payment.reference_no)
            .where(Payment.status == "success", Adoption.id.is_(None))
            .order_by(Payment.created_at, Payment.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def count_success_payments(self) -> int:
        result = await self.session.execute(
            select(func.count(Payment.id)).where(Payment.status == "success")
        )
        return result.scalar_one()

    async def count_adoptions_with_payment(self) -> int:
        result = await self.session.execute(
            select(func.count(Adoption.id)).where(Adoption.payment_reference_no.is_not(None))
        )
        return result.scalar_one()

    # Users --------------------------------------------------------------------------------
    async def get_user_by_subject(self, subject: str) -> User | None:
        result = await self.session.execute(select(User).where(User.clerk_id == subject))
        return result.scalar_one_or_none()

    async def create_user(
        self,
        *,
        subject: str,
        email: str,
        first_name: str | None,
        last_name: str | None,
    ) -> User:
        user = User(clerk_id=subject, email=email, first_name=first_name, last_name=last_name)
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user, attribute_names=["created_at", "updated_at"])
        return user

    # Catalogue ----------------------------------------------------------------------------
    async def list_packages(self, *, active_only: bool) -> list[Package]:
        stmt: Select[tuple[Package]] = select(Package).order_by(Package.sort_order, Package.id)
        if active_only:
            stmt = stmt.where(Package.is_active.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def get_package(self, package_id: int) -> Package | None:
        return await self.session.get(Package, package_id)

    async def create_package(self, **fields: Any) -> Package:
        package = Package(**fields)
        self.session.add(package)
        await self.session.flush()
        await self.session.refresh(package)
        return package

    async def list_locations(self, *, active_only: bool) -> list[Location]:
        stmt: Select[tuple[Location]] = select(Location).order_by(Location.name, Location.id)
        if active_only:
            stmt = stmt.where(Location.is_active.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def get_location(self, location_id: int) -> Location | None:
        return await self.session.get(Location, location_id)

    async def create_location(self, **fields: Any) -> Location:
        location = Location(**fields)
        self.session.add(location)
        await self.session.flush()
        await self.session.refresh(location)
        return location

    async def update_fields(self, instance: Any, **fields: Any) -> Any:
        for key, value in fields.items():
            setattr(instance, key, value)
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def increment_location_count(self, location: Location) -> int:
        """Atomically add one occupant and return the stored count."""

        await self.session.execute(
            update(Location)
            .where(Location.id == location.id)
            .values(current_count=Location.current_count + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(location, attribute_names=["current_count"])
        return location.current_count

    # Adoptions ----------------------------------------------------------------------------
    async def get_adoption(self, adoption_id: int) -> Adoption | None:
        return await self.session.get(Adoption, adoption_id)

    async def get_adoption_by_reference(self, reference_no: str) -> Adoption | None:
        result = await self.session.execute(
            select(Adoption).where(Adoption.payment_reference_no == reference_no)
        )
        return result.scalar_one_or_none()

    async def create_adoption(self, **fields: Any) -> Adoption:
        adoption = Adoption(**fields)
        self.session.add(adoption)
        await self.session.flush()
        await self.session.refresh(adoption, attribute_names=["adoption_date", "created_at"])
        return adoption

    async def list_adoptions_for_subject(self, subject: str) -> list[Adoption]:
        result = await self.session.execute(
            select(Adoption)
            .join(User, User.id == Adoption.user_id)
            .where(User.clerk_id == subject)
            .order_by(Adoption.adoption_date.desc(), Adoption.id.desc())
        )
        return list(result.scalars())

    async def list_adoptions(
        self,
        *,
        is_active: bool | None,
        location_id: int | None,
        limit: int,
        offset: int,
    ) -> tuple[list[tuple[Adoption, User]], int]:
        filters = []
        if is_active is not None:
            filters.append(Adoption.is_active.is_(is_active))
        if location_id is not None:
            filters.append(Adoption.location_id == location_id)

        base = (
            select(Adoption, User)
            .join(User, User.id == Adoption.user_id)
            .order_by(Adoption.adoption_date.desc(), Adoption.id.desc())
        )
        count: Select[tuple[int]] = select(func.count(Adoption.id))
        if filters:
            combined = and_(*filters)
            base = base.where(combined)
            count = count.where(combined)

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(base.offset(offset).limit(limit))
        return [(adoption, user) for adoption, user in result.all()], total

    async def get_user(self, user_id: int) -> User | None:
        return await self.session.get(User, user_id)

    async def list_users_with_stats(self, *, user_id: int | None = None) -> list[tuple[User, int, int, int]]:
        """Return each user with total adoptions, total spent in cents and active adoptions."""

        stmt = (
            select(
                User,
                func.count(Adoption.id),
                func.coalesce(func.sum(Adoption.adoption_price_cents), 0),
                func.count(case((Adoption.is_active.is_(True), 1))),
            )
            .outerjoin(Adoption, Adoption.user_id == User.id)
            .group_by(User.id)
            .order_by(User.created_at, User.id)
        )
        if user_id is not None:
            stmt = stmt.where(User.id == user_id)
        result = await self.session.execute(stmt)
        return [(user, total, spent, active) for user, total, spent, active in result.all()]

    # Plants -------------------------------------------------------------------------------
    async def create_plant(
        self,
        *,
        plant_code: str,
        location: str | None,
        species: str,
        planted_date: datetime,
        initial_record: GrowthRecord,
        height: float,
        co2_absorbed: float,
    ) -> BambooPlant:
        plant = BambooPlant(
            plant_code=plant_code,
            location=location,
            species=species,
            planted_date=planted_date,
            current_height=height,
            co2_absorbed=co2_absorbed,
            status="growing",
            growth_records=[initial_record],
        )
        self.session.add(plant)
        await self.session.flush()
        await self.session.refresh(plant, attribute_names=["created_at", "updated_at"])
        return plant

    async def add_environmental_reading(self, plant: BambooPlant, **values: float) -> EnvironmentalReading:
        reading = EnvironmentalReading(bamboo_plant_id=plant.id, **values)
        self.session.add(reading)
        await self.session.flush()
        await self.session.refresh(reading, attribute_names=["recorded_date"])
        return reading

    async def latest_environmental_reading(self, plant_id: int) -> EnvironmentalReading | None:
        result = await self.session.execute(
            select(EnvironmentalReading)
            .where(EnvironmentalReading.bamboo_plant_id == plant_id)
            .order_by(EnvironmentalReading.recorded_date.desc(), EnvironmentalReading.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_growth_records(self, plant_id: int, *, recorded_by: str | None = None) -> int:
        stmt = select(func.count(GrowthRecord.id)).where(GrowthRecord.bamboo_plant_id == plant_id)
        if recorded_by is not None:
            stmt = stmt.where(GrowthRecord.recorded_by == recorded_by)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def list_growth_records(self, plant_id: int) -> list[GrowthRecord]:
        result = await self.session.execute(
            select(GrowthRecord)
            .where(GrowthRecord.bamboo_plant_id == plant_id)
            .order_by(GrowthRecord.recorded_date, GrowthRecord.id)
        )
        return list(result.scalars())

    async def replace_growth_records(
        self,
        plant: BambooPlant,
        records: list[GrowthRecord],
        *,
        clear_recorded_by: str | None,
    ) -> list[GrowthRecord]:
        if clear_recorded_by is not None:
            await self.session.execute(
                delete(GrowthRecord)
                .where(
                    GrowthRecord.bamboo_plant_id == plant.id,
                    GrowthRecord.recorded_by == clear_recorded_by,
                )
                .execution_options(synchronize_session="fetch")
            )
        for record in records:
            record.bamboo_plant_id = plant.id
            self.session.add(record)
        await self.session.flush()
        await self.session.refresh(plant, attribute_names=["growth_records"])
        return await self.list_growth_records(plant.id)
