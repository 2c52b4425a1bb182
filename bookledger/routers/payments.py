import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from bookledger.database import get_db
from bookledger.errors import CallbackSignatureError, GatewayRejected, PaymentNotFound
from bookledger.gateways.base import BaseGateway
from bookledger.gateways.paytr import paytr_gateway
from bookledger.schemas.requests import InitiatePaymentRequest
from bookledger.schemas.responses import InitiatePaymentResponse, PaymentResponse
from bookledger.services import payments

logger = logging.getLogger(__name__)

router = APIRouter()


def get_gateway() -> BaseGateway:
    return paytr_gateway


@router.post("/initiate", response_model=InitiatePaymentResponse)
async def initiate_payment(
    body: InitiatePaymentRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: BaseGateway = Depends(get_gateway),
):
    """
    Create a pending payment and request a PayTR iFrame token for it.

    - A gateway refusal marks the payment failed
    - A gateway timeout leaves it pending for a later status probe
    """
    customer_ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not customer_ip:
        customer_ip = request.client.host if request.client else "127.0.0.1"

    try:
        started = await payments.start_charge(
            db,
            gateway,
            tenant_id=body.tenant_id,
            amount=body.amount,
            basket=[item.model_dump() for item in body.basket],
            customer_context=body.customer.model_dump(),
            customer_ip=customer_ip,
            currency=body.currency,
            appointment_id=body.appointment_id,
            prefix=body.order_prefix,
        )
    except GatewayRejected as e:
        raise HTTPException(status_code=502, detail=f"Payment could not be started: {e.reason}")

    return InitiatePaymentResponse(
        payment_id=started.payment.id,
        merchant_oid=started.payment.merchant_oid,
        token=started.token,
        payment_url=started.payment_url,
    )


@router.post("/callback", response_class=PlainTextResponse)
def payment_callback(
    merchant_oid: str = Form(...),
    status: str = Form(...),
    total_amount: str = Form(""),
    signature: str = Form("", alias="hash"),
    failed_reason_code: Optional[str] = Form(None),
    failed_reason_msg: Optional[str] = Form(None),
    payment_type: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    gateway: BaseGateway = Depends(get_gateway),
):
    """
    Server-to-server notification from PayTR.

    PayTR keeps retrying until it gets a plain "OK", so unknown and already
    settled payments are acknowledged too.
    """
    payload = {
        "merchant_oid": merchant_oid,
        "status": status,
        "total_amount": total_amount,
        "hash": signature,
        "failed_reason_code": failed_reason_code,
        "failed_reason_msg": failed_reason_msg,
        "payment_type": payment_type,
    }
    try:
        payments.handle_callback(db, gateway, payload)
    except CallbackSignatureError:
        return PlainTextResponse("HASH_FAIL", status_code=400)
    return PlainTextResponse("OK")


@router.get("/callback", response_model=PaymentResponse)
def payment_redirect(merchant_oid: str, status: Optional[str] = None, db: Session = Depends(get_db)):
    """
    Browser redirect after the iFrame closes. Read-only: the redirect is not
    signed, so only the stored state is reported.
    """
    try:
        payment = payments.get_payment(db, merchant_oid)
    except PaymentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    if status and payment.status == "pending":
        logger.info(f"Redirect for {merchant_oid} reports '{status}' before the server callback arrived")
    return payment


@router.get("/{merchant_oid}", response_model=PaymentResponse)
def get_payment(merchant_oid: str, db: Session = Depends(get_db)):
    try:
        return payments.get_payment(db, merchant_oid)
    except PaymentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{merchant_oid}/probe", response_model=PaymentResponse)
async def probe_payment(
    merchant_oid: str,
    db: Session = Depends(get_db),
    gateway: BaseGateway = Depends(get_gateway),
):
    """Ask PayTR for the state of a pending payment whose callback never arrived."""
    try:
        return await payments.probe_status(db, gateway, merchant_oid)
    except PaymentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
