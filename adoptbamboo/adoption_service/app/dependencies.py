"""Dependency helpers for the adoption service."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adoptbamboo.common import ServiceSettings, lifespan_session

from .reconciliation import ReconciliationService
from .repository import AdoptionRepository
from .services import GrowthService, PaymentService


@dataclass(frozen=True, slots=True)
class Identity:
    subject: str
    email: str | None = None
    name: str | None = None


class AdminAuthorizer(Protocol):
    def is_admin(self, identity: Identity) -> bool: ...


class EmailAllowListAuthorizer:
    """Grants admin access to identities whose email is on the allow-list."""

    def __init__(self, emails: Iterable[str]) -> None:
        self._emails = {email.strip().lower() for email in emails if email.strip()}

    def is_admin(self, identity: Identity) -> bool:
        return bool(identity.email) and identity.email.strip().lower() in self._emails


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an AsyncSession for the current request lifecycle."""

    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> AdoptionRepository:
    return AdoptionRepository(session)


def get_gateway(request: Request) -> Any:
    return getattr(request.app.state, "gateway", None)


def get_status_source(request: Request) -> Any:
    return getattr(request.app.state, "status_cache", None)


def get_event_publisher(request: Request) -> Any:
    return getattr(request.app.state, "event_publisher", None)


def get_identity(
    subject: str | None = Header(default=None, alias="X-Identity-Subject"),
    email: str | None = Header(default=None, alias="X-Identity-Email"),
    name: str | None = Header(default=None, alias="X-Identity-Name"),
) -> Identity:
    if not subject or not subject.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return Identity(subject=subject.strip(), email=email, name=name)


def require_admin(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
    authorizer: AdminAuthorizer | None = getattr(request.app.state, "admin_authorizer", None)
    if authorizer is None or not authorizer.is_admin(identity):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity


def get_reconciliation_service(
    request: Request,
    repository: AdoptionRepository = Depends(get_repository),
    event_publisher: Any = Depends(get_event_publisher),
) -> ReconciliationService:
    settings: ServiceSettings = request.app.state.settings
    return ReconciliationService(
        repository,
        event_publisher=event_publisher,
        default_species=settings.default_plant_species,
    )


def get_payment_service(
    request: Request,
    repository: AdoptionRepository = Depends(get_repository),
    gateway: Any = Depends(get_gateway),
    status_source: Any = Depends(get_status_source),
    reconciler: ReconciliationService = Depends(get_reconciliation_service),
) -> PaymentService:
    settings: ServiceSettings = request.app.state.settings
    return PaymentService(
        repository,
        gateway=gateway,
        status_source=status_source,
        reconciler=reconciler,
        public_base_url=settings.public_base_url,
    )


def get_growth_service(repository: AdoptionRepository = Depends(get_repository)) -> GrowthService:
    return GrowthService(repository)
