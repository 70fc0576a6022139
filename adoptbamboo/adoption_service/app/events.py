"""Event publishing helpers for the adoption service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from adoptbamboo.common.kafka import KafkaProducerStub

from .models import Adoption, Payment

ADOPTION_CREATED_TOPIC = "adoption.created.v1"


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat()


class AdoptionEventPublisher:
    """Publishes adoption lifecycle events."""

    def __init__(self, producer: KafkaProducerStub | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, payload: dict[str, Any], *, key: str | None = None) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        await self._producer.send(topic, envelope, key=key)

    async def adoption_created(self, adoption: Adoption, payment: Payment, *, trigger: str) -> None:
        await self._emit(
            ADOPTION_CREATED_TOPIC,
            {
                "adoption": {
                    "id": adoption.id,
                    "userId": adoption.user_id,
                    "packageId": adoption.package_id,
                    "locationId": adoption.location_id,
                    "bambooPlantId": adoption.bamboo_plant_id,
                    "locationName": adoption.location_name,
                    "adoptionDate": _iso(adoption.adoption_date),
                },
                "payment": {
                    "referenceNo": payment.reference_no,
                    "billCode": payment.bill_code,
                    "amountCents": payment.amount_cents,
                    "subject": payment.user_id,
                },
                "trigger": trigger,
            },
            key=payment.reference_no,
        )
