"""Resolve loosely-typed package and location references recorded on payments."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Location, Package

logger = logging.getLogger(__name__)

_INTEGER_LITERAL = re.compile(r"^\d+$")


@dataclass(frozen=True, slots=True)
class ByName:
    value: str


@dataclass(frozen=True, slots=True)
class ById:
    value: int


Candidate = Union[ByName, ById]


def parse_reference(raw: str | int | None) -> list[Candidate]:
    """Expand a raw reference into lookup candidates, name first."""

    if raw is None:
        return []
    text = str(raw).strip()
    if not text:
        return []
    candidates: list[Candidate] = [ByName(text)]
    if _INTEGER_LITERAL.match(text):
        candidates.append(ById(int(text)))
    return candidates


class ReferenceResolver:
    """Looks up packages by period or id and locations by name or id.

    A miss returns ``None``; callers decide whether that matters.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve_package(self, raw: str | int | None) -> Package | None:
        for candidate in parse_reference(raw):
            if isinstance(candidate, ByName):
                result = await self.session.execute(
                    select(Package)
                    .where(Package.period == candidate.value)
                    .order_by(Package.is_active.desc(), Package.sort_order, Package.id)
                    .limit(1)
                )
                package = result.scalar_one_or_none()
            else:
                package = await self.session.get(Package, candidate.value)
            if package is not None:
                return package
        if raw not in (None, ""):
            logger.info("Package reference %r did not match any package", raw)
        return None

    async def resolve_location(self, raw: str | int | None) -> Location | None:
        for candidate in parse_reference(raw):
            if isinstance(candidate, ByName):
                result = await self.session.execute(
                    select(Location).where(Location.name == candidate.value).order_by(Location.id).limit(1)
                )
                location = result.scalar_one_or_none()
            else:
                location = await self.session.get(Location, candidate.value)
            if location is not None:
                return location
        if raw not in (None, ""):
            logger.info("Location reference %r did not match any location", raw)
        return None
