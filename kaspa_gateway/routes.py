from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from kaspa_gateway.amounts import to_kas
from kaspa_gateway.auth import verify_token
from kaspa_gateway.errors import (
    AllocationRace,
    DerivationFailure,
    IndexMismatch,
    InvalidAddressFormat,
    InvalidKeyFormat,
    InvalidTransition,
    OrderNotFound,
    RateUnavailable,
)
from kaspa_gateway.service import PaymentService

router = APIRouter()


class PaymentRequest(BaseModel):
    order_id: str
    fiat_total: Decimal = Field(gt=0)


class AddressRequest(BaseModel):
    address: str
    index: Optional[int] = Field(default=None, ge=0)


class ConfirmRequest(BaseModel):
    tx_id: Optional[str] = None


def get_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def _payment_view(record):
    return {
        "order_id": record.order_id,
        "status": record.status.value,
        "payment_address": record.payment_address,
        "derivation_index": record.derivation_index,
        "pending_address": record.payment_address is None,
        "expected_amount": str(to_kas(record.expected_amount)),
        "rate": str(record.rate),
        "meta": record.to_order_meta(),
    }


@router.post("/payments")
async def initiate_payment_api(
    request: PaymentRequest,
    auth=Depends(verify_token),
    service: PaymentService = Depends(get_service)
):
    try:
        record = await service.initiate_payment(request.order_id, request.fiat_total)
    except RateUnavailable:
        raise HTTPException(
            status_code=503,
            detail="Unable to fetch current exchange rate. Please try again or choose another payment method."
        )
    except (InvalidKeyFormat, DerivationFailure, AllocationRace):
        raise HTTPException(status_code=503, detail="Unable to generate a payment address. Please contact support.")

    return _payment_view(record)


@router.get("/payments/{order_id}")
def get_payment_api(order_id: str, auth=Depends(verify_token), service: PaymentService = Depends(get_service)):
    try:
        record = service.get_payment(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    return _payment_view(record)


@router.post("/payments/{order_id}/address")
def save_address_api(
    order_id: str,
    request: AddressRequest,
    auth=Depends(verify_token),
    service: PaymentService = Depends(get_service)
):
    try:
        record = service.save_derived_address(order_id, request.address, request.index)
    except InvalidAddressFormat:
        raise HTTPException(status_code=400, detail="Invalid address format")
    except IndexMismatch:
        raise HTTPException(status_code=400, detail="Address was not derived at the reserved index")
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    return _payment_view(record)


@router.post("/payments/{order_id}/check")
async def check_payment_api(order_id: str, service: PaymentService = Depends(get_service)):
    try:
        response = await service.check_payment_now(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")

    body = {"status": response.status.value, "message": response.message}
    if response.tx_id is not None:
        body["txid"] = response.tx_id
    if response.amount is not None:
        body["amount"] = str(response.amount)
    if response.address is not None:
        body["address"] = response.address
    return body


@router.post("/payments/{order_id}/confirm")
def manual_confirm_api(
    order_id: str,
    request: ConfirmRequest,
    actor=Depends(verify_token),
    service: PaymentService = Depends(get_service)
):
    try:
        record = service.manually_confirm(order_id, actor, request.tx_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _payment_view(record)


@router.get("/rate")
async def rate_api(service: PaymentService = Depends(get_service)):
    try:
        rate = await service.get_current_rate()
    except RateUnavailable:
        raise HTTPException(status_code=503, detail="Exchange rate unavailable")
    return {"rate": str(rate), "currency": service.settings.rate_currency}


@router.get("/admin/balance")
async def consolidated_balance_api(auth=Depends(verify_token), service: PaymentService = Depends(get_service)):
    balance = await service.consolidated_balance()
    return {
        "total_balance": str(balance["total_balance"]),
        "total_fiat_value": str(balance["total_fiat_value"]) if balance["total_fiat_value"] is not None else None,
        "rate": str(balance["rate"]) if balance["rate"] is not None else None,
        "address_count": balance["address_count"],
        "addresses_checked": balance["addresses_checked"],
    }


@router.get("/admin/stats")
def stats_api(auth=Depends(verify_token), service: PaymentService = Depends(get_service)):
    stats = service.payment_stats()
    stats["total_revenue_kas"] = str(stats["total_revenue_kas"])
    return stats
