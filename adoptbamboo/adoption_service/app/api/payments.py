"""HTTP routes for payments and the triggers that settle them."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Form, HTTPException, status

from ..dependencies import Identity, get_identity, get_payment_service
from ..gateway import GatewayError, GatewayTransientError, GatewayValidationError
from ..models import Payment
from ..reconciliation import PaymentNotFound
from ..schemas import (
    PaymentCreate,
    PaymentCreatedResponse,
    PaymentPollRequest,
    PaymentResponse,
    SuccessVisitRequest,
    TriggerResponse,
)
from ..services import (
    InvalidPaymentRequest,
    InvalidPaymentTransition,
    LocationFull,
    PaymentService,
    TriggerOutcome,
    as_utc,
    from_cents,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _serialize_payment(payment: Payment, adoption_id: int | None) -> dict[str, object]:
    return {
        "referenceNo": payment.reference_no,
        "billCode": payment.bill_code,
        "status": payment.status,
        "amount": from_cents(payment.amount_cents),
        "paidAmount": from_cents(payment.paid_amount_cents),
        "transactionId": payment.transaction_id,
        "paidDate": as_utc(payment.paid_date) if payment.paid_date else None,
        "packageType": payment.package_type,
        "locationName": payment.location_name,
        "adoptionId": adoption_id,
        "createdAt": payment.created_at,
        "updatedAt": payment.updated_at,
    }


def _serialize_outcome(outcome: TriggerOutcome) -> TriggerResponse:
    return TriggerResponse.model_validate(
        {
            "referenceNo": outcome.payment.reference_no,
            "paymentStatus": outcome.payment.status,
            "adoptionStatus": outcome.adoption_status,
            "adoptionId": outcome.adoption.id if outcome.adoption is not None else None,
        }
    )


async def _owned_payment(service: PaymentService, reference_no: str, identity: Identity) -> Payment:
    try:
        payment = await service.get_payment(reference_no)
    except PaymentNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found") from None
    if payment.user_id != identity.subject:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return payment


async def _find_payment(service: PaymentService, reference_no: str | None, bill_code: str | None) -> Payment:
    """Look a payment up by reference, falling back to the gateway bill code."""

    if not reference_no and not bill_code:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="A reference number or bill code is required",
        )
    if reference_no:
        try:
            return await service.get_payment(reference_no)
        except PaymentNotFound:
            if not bill_code:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found") from None
            logger.warning("Unknown reference %s, looking up bill %s instead", reference_no, bill_code)
    try:
        return await service.get_payment_by_bill_code(bill_code)
    except PaymentNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found") from None


@router.post("", response_model=PaymentCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: PaymentCreate,
    identity: Identity = Depends(get_identity),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentCreatedResponse:
    try:
        payment, bill = await service.create_payment(
            subject=identity.subject,
            package_type=payload.package_type,
            location_ref=payload.location,
            amount=payload.amount,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            customer_phone=payload.customer_phone,
            description=payload.description,
        )
    except LocationFull as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InvalidPaymentRequest as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except GatewayValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except GatewayTransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment gateway unavailable, please retry",
        ) from exc
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return PaymentCreatedResponse.model_validate(
        {
            "referenceNo": payment.reference_no,
            "billCode": bill.bill_code,
            "paymentUrl": bill.payment_url,
            "status": payment.status,
            "amount": from_cents(payment.amount_cents),
        }
    )


@router.post("/callback", response_model=TriggerResponse)
async def payment_callback(
    billcode: str | None = Form(default=None),
    status_id: str | None = Form(default=None),
    order_id: str | None = Form(default=None),
    transaction_id: str | None = Form(default=None),
    amount: str | None = Form(default=None),
    service: PaymentService = Depends(get_payment_service),
) -> TriggerResponse:
    logger.info(
        "Gateway callback bill=%s order=%s status=%s transaction=%s amount=%s",
        billcode,
        order_id,
        status_id,
        transaction_id,
        amount,
    )
    payment = await _find_payment(service, order_id, billcode)
    outcome = await service.settle(payment, trigger="callback", fresh=True)
    return _serialize_outcome(outcome)


@router.post("/poll", response_model=TriggerResponse)
async def poll_payment(
    payload: PaymentPollRequest,
    identity: Identity = Depends(get_identity),
    service: PaymentService = Depends(get_payment_service),
) -> TriggerResponse:
    payment = await _owned_payment(service, payload.reference_no, identity)
    outcome = await service.settle(payment, trigger="poll", fresh=False)
    return _serialize_outcome(outcome)


@router.post("/success-visit", response_model=TriggerResponse)
async def success_visit(
    payload: SuccessVisitRequest,
    service: PaymentService = Depends(get_payment_service),
) -> TriggerResponse:
    payment = await _find_payment(service, payload.reference_no, payload.bill_code)
    if payload.status_id is not None:
        logger.info("Success page for %s reported status %s", payment.reference_no, payload.status_id)
    outcome = await service.settle(payment, trigger="success_visit", fresh=True)
    return _serialize_outcome(outcome)


@router.get("/{reference_no}", response_model=PaymentResponse)
async def get_payment(
    reference_no: str,
    identity: Identity = Depends(get_identity),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    payment = await _owned_payment(service, reference_no, identity)
    adoption = await service.repository.get_adoption_by_reference(payment.reference_no)
    return PaymentResponse.model_validate(_serialize_payment(payment, adoption.id if adoption else None))


@router.post("/{reference_no}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    reference_no: str,
    identity: Identity = Depends(get_identity),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    payment = await _owned_payment(service, reference_no, identity)
    try:
        cancelled = await service.cancel_payment(payment)
    except InvalidPaymentTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return PaymentResponse.model_validate(_serialize_payment(cancelled, None))
