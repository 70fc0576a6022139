"""ToyyibPay payment gateway client and status cache."""

from __future__ import annotations

import json
import logging
import re
from contextlib import suppress
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from time import perf_counter
from typing import Any, Literal

import httpx
from redis.asyncio import Redis

from adoptbamboo.common import get_tracer

from .metrics import (
    GATEWAY_LATENCY_SECONDS,
    GATEWAY_REQUESTS_TOTAL,
    GATEWAY_STATUS_CACHE_EVENTS_TOTAL,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

GatewayStatusValue = Literal["pending", "success", "failed"]

PHONE_PATTERN = re.compile(r"^60\d{8,10}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
BILL_NAME_LIMIT = 30
BILL_DESCRIPTION_LIMIT = 100
DEFAULT_EXPIRY_DAYS = 3
# Gateway timestamps are Malaysian local time.
_GATEWAY_TZ = timezone(timedelta(hours=8))
_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%d-%m-%Y %H:%M:%S", "%Y-%m-%d")


class GatewayError(Exception):
    """Raised when the gateway explicitly rejects a request."""


class GatewayValidationError(GatewayError):
    """Raised when a bill request fails validation before it is sent."""


class GatewayTransientError(GatewayError):
    """Raised when the gateway outcome is unknown and the call may be retried."""


@dataclass(slots=True)
class BillRequest:
    name: str
    description: str
    amount_cents: int
    reference_no: str
    payer_name: str
    payer_email: str
    payer_phone: str
    return_url: str = ""
    callback_url: str = ""
    content_email: str | None = None
    expiry_days: int = DEFAULT_EXPIRY_DAYS


@dataclass(frozen=True, slots=True)
class BillCreated:
    bill_code: str
    payment_url: str


@dataclass(frozen=True, slots=True)
class GatewayPaymentStatus:
    bill_code: str
    status: GatewayStatusValue
    paid_amount_cents: int | None = None
    transaction_id: str | None = None
    paid_date: datetime | None = None
    reference_no: str | None = None


def validate_bill_request(request: BillRequest) -> None:
    """Reject bill requests the gateway would refuse."""

    if not request.payer_phone or not request.payer_phone.strip():
        raise GatewayValidationError("billPhone parameter is required")
    if not request.payer_name or not request.payer_name.strip():
        raise GatewayValidationError("billTo parameter is required")
    if not request.payer_email or not request.payer_email.strip():
        raise GatewayValidationError("billEmail parameter is required")
    if not PHONE_PATTERN.match(request.payer_phone):
        raise GatewayValidationError("Phone number must be in Malaysian format (60xxxxxxxxx)")
    if not EMAIL_PATTERN.match(request.payer_email):
        raise GatewayValidationError("Invalid email format")
    if request.amount_cents <= 0:
        raise GatewayValidationError("Amount must be greater than 0")


def _ringgit_to_cents(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def _parse_gateway_date(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(value.strip(), fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=_GATEWAY_TZ).astimezone(timezone.utc)
    return None


def _map_status(raw: Any) -> GatewayStatusValue:
    code = str(raw or "").strip()
    if code == "1":
        return "success"
    if code == "3":
        return "failed"
    return "pending"


class ToyyibPayGateway:
    """Thin client over the ToyyibPay bill API.

    The client never touches storage. Explicit rejections surface as
    :class:`GatewayError`; timeouts, transport failures, non-2xx responses and
    unreadable bodies surface as :class:`GatewayTransientError`.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        secret_key: str,
        category_code: str,
        base_url: str,
    ) -> None:
        self._client = client
        self._secret_key = secret_key
        self._category_code = category_code
        self._base_url = base_url.rstrip("/")

    def payment_url(self, bill_code: str) -> str:
        return f"{self._base_url}/{bill_code}"

    async def create_bill(self, request: BillRequest) -> BillCreated:
        validate_bill_request(request)

        fields: dict[str, Any] = {
            "userSecretKey": self._secret_key,
            "categoryCode": self._category_code,
            "billName": (request.name or "Payment")[:BILL_NAME_LIMIT],
            "billDescription": (request.description or "Payment")[:BILL_DESCRIPTION_LIMIT],
            "billPriceSetting": 1,
            "billPayorInfo": 1,
            "billAmount": request.amount_cents,
            "billReturnUrl": request.return_url,
            "billCallbackUrl": request.callback_url,
            "billExternalReferenceNo": request.reference_no,
            "billTo": request.payer_name,
            "billEmail": request.payer_email,
            "billPhone": request.payer_phone,
            "billSplitPayment": 0,
            "billPaymentChannel": 0,
            "billContentEmail": request.content_email or f"Thank you for your payment. Reference: {request.reference_no}",
            "billChargeToCustomer": 1,
            "billDisplayMerchant": 1,
            "billExpiryDays": request.expiry_days or DEFAULT_EXPIRY_DAYS,
        }
        form = {key: str(value) for key, value in fields.items() if value not in ("", None)}

        with tracer.start_as_current_span("toyyibpay.create_bill") as span:
            span.set_attribute("payment.reference_no", request.reference_no)
            text = await self._post("create_bill", f"{self._base_url}/index.php/api/createBill", form)
            created = self._parse_created(text)
            span.set_attribute("payment.bill_code", created.bill_code)

        GATEWAY_REQUESTS_TOTAL.labels(operation="create_bill", outcome="success").inc()
        logger.info("Created gateway bill %s for %s", created.bill_code, request.reference_no)
        return created

    async def get_status(self, bill_code: str) -> GatewayPaymentStatus:
        with tracer.start_as_current_span("toyyibpay.get_status") as span:
            span.set_attribute("payment.bill_code", bill_code)
            text = await self._post(
                "get_status", f"{self._base_url}/api/getBillTransactions", {"billCode": bill_code}
            )
            try:
                payload = json.loads(text.strip() or "[]")
            except json.JSONDecodeError as exc:
                GATEWAY_REQUESTS_TOTAL.labels(operation="get_status", outcome="transient").inc()
                raise GatewayTransientError("Unreadable bill status response") from exc

            status = self._parse_status(bill_code, payload)
            span.set_attribute("payment.gateway_status", status.status)

        GATEWAY_REQUESTS_TOTAL.labels(operation="get_status", outcome="success").inc()
        return status

    async def _post(self, operation: str, url: str, form: dict[str, str]) -> str:
        start = perf_counter()
        try:
            response = await self._client.post(url, data=form, headers={"Accept": "application/json"})
        except httpx.TimeoutException as exc:
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, outcome="timeout").inc()
            logger.warning("Gateway %s timed out", operation)
            raise GatewayTransientError(f"Gateway {operation} timed out") from exc
        except httpx.HTTPError as exc:
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, outcome="transient").inc()
            logger.warning("Gateway %s transport failure: %s", operation, exc)
            raise GatewayTransientError(f"Gateway {operation} failed: {exc}") from exc
        finally:
            GATEWAY_LATENCY_SECONDS.labels(operation=operation).observe(perf_counter() - start)

        if response.status_code >= 400:
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, outcome="transient").inc()
            logger.warning("Gateway %s returned HTTP %s", operation, response.status_code)
            raise GatewayTransientError(f"Gateway {operation} returned HTTP {response.status_code}")
        return response.text

    def _parse_created(self, text: str) -> BillCreated:
        cleaned = re.sub(r"[\t\n\r]", "", text).strip()
        if cleaned == "[FALSE]":
            GATEWAY_REQUESTS_TOTAL.labels(operation="create_bill", outcome="rejected").inc()
            raise GatewayError("Invalid request parameters or authentication failed")
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            GATEWAY_REQUESTS_TOTAL.labels(operation="create_bill", outcome="transient").inc()
            raise GatewayTransientError("Unreadable createBill response") from exc

        if isinstance(payload, list):
            first = payload[0] if payload else None
            bill_code = first.get("BillCode") if isinstance(first, dict) else None
            if not bill_code:
                GATEWAY_REQUESTS_TOTAL.labels(operation="create_bill", outcome="rejected").inc()
                raise GatewayError("Bill code not found in response")
            return BillCreated(
                bill_code=str(bill_code),
                payment_url=first.get("PaymentURL") or self.payment_url(str(bill_code)),
            )

        GATEWAY_REQUESTS_TOTAL.labels(operation="create_bill", outcome="rejected").inc()
        if isinstance(payload, dict) and payload.get("status") in ("error", False):
            raise GatewayError(str(payload.get("msg") or payload.get("message") or "Failed to create bill"))
        raise GatewayError(f"Unexpected createBill response: {cleaned[:200]}")

    @staticmethod
    def _parse_status(bill_code: str, payload: Any) -> GatewayPaymentStatus:
        if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
            return GatewayPaymentStatus(bill_code=bill_code, status="pending")
        entry = payload[0]
        return GatewayPaymentStatus(
            bill_code=bill_code,
            status=_map_status(entry.get("billpaymentStatus")),
            paid_amount_cents=_ringgit_to_cents(entry.get("billpaymentAmount")),
            transaction_id=entry.get("billpaymentInvoiceNo") or None,
            paid_date=_parse_gateway_date(entry.get("billpaymentDate")),
            reference_no=entry.get("billExternalReferenceNo") or None,
        )


class GatewayStatusCache:
    """Caches bill status lookups in Redis for a short TTL.

    Redis failures fall back to the gateway so a cache outage never blocks a
    status check.
    """

    def __init__(self, gateway: ToyyibPayGateway, redis: Redis | None, *, ttl_seconds: int) -> None:
        self._gateway = gateway
        self._redis = redis
        self._ttl = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._redis is not None and self._ttl > 0

    async def get_status(self, bill_code: str, *, fresh: bool = False) -> GatewayPaymentStatus:
        key = self._cache_key(bill_code)
        if self.enabled and not fresh:
            cached = await self._read(key)
            if cached is not None:
                return cached

        status = await self._gateway.get_status(bill_code)
        if self.enabled:
            await self._write(key, status)
        return status

    async def invalidate(self, bill_code: str) -> None:
        if not self.enabled:
            return
        assert self._redis is not None
        try:
            await self._redis.delete(self._cache_key(bill_code))
        except Exception:
            GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            return
        GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="invalidate").inc()

    async def _read(self, key: str) -> GatewayPaymentStatus | None:
        assert self._redis is not None
        try:
            raw = await self._redis.get(key)
        except Exception:
            GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="miss").inc()
            return None
        if not raw:
            GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="miss").inc()
            return None
        try:
            data = json.loads(raw)
            paid_date = data.get("paid_date")
            status = GatewayPaymentStatus(
                bill_code=data["bill_code"],
                status=data["status"],
                paid_amount_cents=data.get("paid_amount_cents"),
                transaction_id=data.get("transaction_id"),
                paid_date=datetime.fromisoformat(paid_date) if paid_date else None,
                reference_no=data.get("reference_no"),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            with suppress(Exception):
                await self._redis.delete(key)
            GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="miss").inc()
            return None
        GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="hit").inc()
        return status

    async def _write(self, key: str, status: GatewayPaymentStatus) -> None:
        assert self._redis is not None
        payload = asdict(status)
        if status.paid_date is not None:
            payload["paid_date"] = status.paid_date.isoformat()
        try:
            await self._redis.set(key, json.dumps(payload), ex=self._ttl)
        except Exception:
            GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            return
        GATEWAY_STATUS_CACHE_EVENTS_TOTAL.labels(event="write").inc()

    @staticmethod
    def _cache_key(bill_code: str) -> str:
        return f"adoption:gateway-status:{bill_code}"
