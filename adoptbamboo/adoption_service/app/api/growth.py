"""Read-only access to the growth model."""

from __future__ import annotations

from fastapi import APIRouter, Query

from ..growth import growth_at, growth_rate, projected_growth, timeline
from ..schemas import GrowthQueryResponse, TimelineEntryResponse

router = APIRouter(prefix="/growth", tags=["growth"])


@router.get("", response_model=GrowthQueryResponse)
async def get_growth(
    days: int = Query(ge=0, le=3650),
    project_days: int | None = Query(default=None, alias="projectDays", ge=1, le=3650),
) -> GrowthQueryResponse:
    height_rate, co2_rate = growth_rate(days)
    return GrowthQueryResponse.model_validate(
        {
            "growth": growth_at(days),
            "rate": {"heightPerDay": height_rate, "co2PerDay": co2_rate},
            "projection": projected_growth(days, project_days) if project_days is not None else None,
        }
    )


@router.get("/timeline", response_model=list[TimelineEntryResponse])
async def get_timeline(days: int = Query(ge=0, le=3650)) -> list[TimelineEntryResponse]:
    return [TimelineEntryResponse.model_validate(entry) for entry in timeline(days)]
