"""
Payment record store and charge orchestration.

A Payment is the durable intent of a charge; the ledger Transaction it may
lead to is the durable effect. The gateway cannot take part in a local
database transaction, so the two are written in separate steps:

1. create Payment (pending)
2. ask the gateway for a token
3. callback or status probe moves the Payment to paid/failed
4. a paid Payment tied to (or booking) an appointment goes through the ledger writer

Status changes are single conditional UPDATEs guarded on status='pending';
that statement is where concurrent callbacks for the same merchant_oid
serialize.
"""
import json
import logging
import secrets
import string
import time
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from bookledger import config, models
from bookledger.errors import (
    AlreadyTerminal,
    CallbackSignatureError,
    GatewayRejected,
    PaymentNotFound,
)
from bookledger.gateways.base import BaseGateway
from bookledger.gateways.paytr import to_minor_units
from bookledger.services import ledger

logger = logging.getLogger(__name__)

PENDING = "pending"
PAID = "paid"
FAILED = "failed"
TERMINAL_STATUSES = (PAID, FAILED)

LEDGER_FAILURE_PREFIX = "Transaction creation failed"
APPOINTMENT_FAILURE_PREFIX = "Appointment creation failed"

# Basket keys that describe a booking still to be created on settlement
BOOKING_FIELDS = ("serviceName", "date", "time")

# Gateway status vocabulary -> payment status
GATEWAY_STATES = {
    "success": PAID,
    "failed": FAILED,
}

_OID_ALPHABET = string.ascii_uppercase + string.digits


def generate_merchant_oid(prefix: str = "PAY") -> str:
    """Alphanumeric only: prefix + epoch millis + 9 random characters."""
    suffix = "".join(secrets.choice(_OID_ALPHABET) for _ in range(9))
    return f"{prefix}{int(time.time() * 1000)}{suffix}"


class ChargeStart:
    def __init__(self, payment: models.Payment, token: str, payment_url: Optional[str]):
        self.payment = payment
        self.token = token
        self.payment_url = payment_url


def create_payment(
    db: Session,
    tenant_id: str,
    amount,
    basket: Any,
    customer_context: Optional[Dict[str, Any]] = None,
    currency: str = config.PAYTR_DEFAULT_CURRENCY,
    prefix: str = "PAY",
    appointment_id: Optional[str] = None,
    user_ip: Optional[str] = None,
) -> models.Payment:
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ValueError("Payment amount must be greater than zero")

    customer_context = customer_context or {}
    payment = models.Payment(
        tenant_id=tenant_id,
        customer_id=customer_context.get("customer_id"),
        customer_name=customer_context.get("name"),
        customer_email=customer_context.get("email"),
        customer_phone=customer_context.get("phone"),
        appointment_id=appointment_id,
        merchant_oid=generate_merchant_oid(prefix),
        amount=amount,
        payment_amount=to_minor_units(amount),
        currency=currency,
        status=PENDING,
        raw_basket=json.dumps(basket, default=str) if basket is not None else None,
        user_ip=user_ip,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    logger.info(f"📝 Payment {payment.id} created: merchant_oid={payment.merchant_oid} amount={amount}")
    return payment


def get_payment(db: Session, merchant_oid: str) -> models.Payment:
    payment = db.query(models.Payment).filter(models.Payment.merchant_oid == merchant_oid).first()
    if payment is None:
        raise PaymentNotFound(f"Payment {merchant_oid} not found")
    return payment


def _transition(db: Session, merchant_oid: str, values: Dict[str, Any]) -> models.Payment:
    updated = db.query(models.Payment).filter(
        models.Payment.merchant_oid == merchant_oid,
        models.Payment.status == PENDING,
    ).update(values, synchronize_session=False)
    db.commit()

    payment = get_payment(db, merchant_oid)
    db.refresh(payment)
    if not updated:
        raise AlreadyTerminal(payment)
    return payment


def _settle(db: Session, merchant_oid: str, gateway_token: Optional[str] = None) -> Tuple[models.Payment, bool]:
    """Returns (payment, changed); changed is False when the payment was already terminal."""
    values: Dict[str, Any] = {"status": PAID, "settled_at": models.utcnow()}
    if gateway_token:
        # Only fill the token when none was stored at initiation
        current = get_payment(db, merchant_oid)
        if not current.gateway_token:
            values["gateway_token"] = gateway_token
    try:
        payment = _transition(db, merchant_oid, values)
    except AlreadyTerminal as e:
        if e.payment.status == FAILED:
            logger.warning(f"⚠️ Settlement for {merchant_oid} ignored: payment already failed")
        else:
            logger.info(f"Duplicate settlement for {merchant_oid} ignored")
        return e.payment, False

    logger.info(f"✅ Payment {merchant_oid} marked as paid")
    return payment, True


def mark_settled(db: Session, merchant_oid: str, gateway_token: Optional[str] = None) -> models.Payment:
    return _settle(db, merchant_oid, gateway_token)[0]


def mark_failed(db: Session, merchant_oid: str, reason: str) -> models.Payment:
    try:
        payment = _transition(db, merchant_oid, {"status": FAILED, "failure_reason": reason})
    except AlreadyTerminal as e:
        if e.payment.status == PAID:
            logger.warning(f"⚠️ Failure for {merchant_oid} ignored: payment already paid")
        else:
            logger.info(f"Duplicate failure for {merchant_oid} ignored")
        return e.payment

    logger.info(f"❌ Payment {merchant_oid} marked as failed: {reason}")
    return payment


def _load_basket(payment: models.Payment) -> Dict[str, Any]:
    if not payment.raw_basket:
        return {}
    try:
        basket = json.loads(payment.raw_basket)
    except ValueError:
        return {}
    return basket if isinstance(basket, dict) else {}


def _note_failure(db: Session, merchant_oid: str, note: str) -> None:
    db.query(models.Payment).filter(models.Payment.merchant_oid == merchant_oid).update(
        {"failure_reason": note}, synchronize_session=False
    )
    db.commit()


def _book_from_basket(
    db: Session, payment: models.Payment, basket: Dict[str, Any], payment_type: str
) -> Optional[models.Appointment]:
    """
    Create the confirmed, paid appointment a booking basket describes.
    A taken slot (same staff, date and time, not cancelled) is noted on the
    payment and nothing is booked.
    """
    merchant_oid = payment.merchant_oid
    try:
        day = date.fromisoformat(str(basket["date"]))
    except ValueError:
        _note_failure(db, merchant_oid, f"{APPOINTMENT_FAILURE_PREFIX}: invalid date {basket['date']!r}")
        return None

    tenant_id = basket.get("tenantId") or payment.tenant_id
    staff_name = basket.get("staffName")
    conflict = db.query(models.Appointment).filter(
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.staff_name == staff_name,
        models.Appointment.date == day,
        models.Appointment.time == basket["time"],
        models.Appointment.status != "cancelled",
    ).first()
    if conflict is not None:
        logger.error(f"❌ Time slot conflict for paid payment {merchant_oid}: {day} {basket['time']} ({conflict.id})")
        _note_failure(
            db, merchant_oid, f"{APPOINTMENT_FAILURE_PREFIX}: time slot {day} {basket['time']} is already booked"
        )
        return None

    appointment = models.Appointment(
        tenant_id=tenant_id,
        customer_id=basket.get("customerId") or payment.customer_id,
        customer_name=basket.get("customerName") or payment.customer_name or "",
        customer_phone=basket.get("customerPhone") or payment.customer_phone,
        service_name=basket["serviceName"],
        staff_name=staff_name,
        date=day,
        time=basket["time"],
        price=payment.amount,
        status="confirmed",
        payment_type=payment_type,
        payment_status="paid",
        payment_id=payment.id,
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    logger.info(f"📅 Appointment {appointment.id} booked from payment {merchant_oid}")
    return appointment


def apply_settlement(
    db: Session, payment: models.Payment, payment_type: str = "card"
) -> Optional[models.Transaction]:
    """
    Link a freshly paid payment to its appointment and write the ledger entry.

    The appointment is the payment's appointment_id, else the basket's
    appointmentId, else one booked from the basket's booking fields.
    """
    merchant_oid = payment.merchant_oid
    basket = _load_basket(payment)
    appointment_id = payment.appointment_id or basket.get("appointmentId") or basket.get("appointment_id")

    if appointment_id:
        appointment = db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()
        if appointment is None:
            logger.error(f"⚠️ Payment {merchant_oid} references missing appointment {appointment_id}")
            return None
        appointment.payment_status = "paid"
        appointment.payment_type = payment_type
        appointment.payment_id = payment.id
    elif all(basket.get(field) for field in BOOKING_FIELDS):
        appointment = _book_from_basket(db, payment, basket, payment_type)
        if appointment is None:
            return None
    else:
        return None

    payment.appointment_id = appointment.id
    db.commit()

    try:
        return ledger.ensure_transaction_for_appointment(db, appointment)
    except Exception as e:
        # Payment stays paid; the reconciler backfills the missing entry
        logger.exception(f"❌ Ledger write failed for payment {merchant_oid}")
        db.rollback()
        _note_failure(db, merchant_oid, f"{LEDGER_FAILURE_PREFIX}: {e}")
        return None


def callback_urls(merchant_oid: str) -> tuple:
    base = f"{config.PUBLIC_BASE_URL}/api/v1/payments/callback"
    return (
        f"{base}?status=success&merchant_oid={merchant_oid}",
        f"{base}?status=failed&merchant_oid={merchant_oid}",
    )


async def start_charge(
    db: Session,
    gateway: BaseGateway,
    tenant_id: str,
    amount,
    basket: List[Dict[str, Any]],
    customer_context: Dict[str, Any],
    customer_ip: str,
    currency: str = config.PAYTR_DEFAULT_CURRENCY,
    appointment_id: Optional[str] = None,
    prefix: str = "PAY",
    basket_context: Optional[Dict[str, Any]] = None,
) -> ChargeStart:
    """
    Create the pending Payment and request a gateway token.

    Raises:
        GatewayRejected: the payment is marked failed unless the error is retryable
            (timeouts and transport errors leave it pending)
    """
    raw_basket: Dict[str, Any] = {"items": basket}
    if basket_context:
        raw_basket.update(basket_context)
    if appointment_id:
        raw_basket["appointmentId"] = appointment_id

    payment = create_payment(
        db,
        tenant_id=tenant_id,
        amount=amount,
        basket=raw_basket,
        customer_context=customer_context,
        currency=currency,
        prefix=prefix,
        appointment_id=appointment_id,
        user_ip=customer_ip,
    )
    success_url, fail_url = callback_urls(payment.merchant_oid)
    email = customer_context.get("email") or f"{customer_context.get('phone') or payment.id}@customer.invalid"

    try:
        token = await gateway.initiate_charge(
            merchant_oid=payment.merchant_oid,
            amount=payment.amount,
            currency=currency,
            basket=basket,
            success_url=success_url,
            fail_url=fail_url,
            customer_ip=customer_ip,
            customer_email=email,
            user_name=customer_context.get("name"),
            user_phone=customer_context.get("phone"),
        )
    except GatewayRejected as e:
        if e.retryable:
            logger.warning(f"⏳ Payment {payment.merchant_oid} left pending: {e.reason}")
        else:
            mark_failed(db, payment.merchant_oid, e.reason)
        raise

    db.query(models.Payment).filter(
        models.Payment.id == payment.id,
        models.Payment.gateway_token.is_(None),
    ).update({"gateway_token": token}, synchronize_session=False)
    db.commit()
    db.refresh(payment)
    return ChargeStart(payment, token, gateway.payment_url(token))


def handle_callback(db: Session, gateway: BaseGateway, payload: Dict[str, Any]) -> Optional[models.Payment]:
    """
    Apply a server-to-server gateway callback.

    Raises:
        CallbackSignatureError: hash mismatch; nothing is written
    """
    merchant_oid = payload.get("merchant_oid") or ""
    if not gateway.verify_callback(payload, payload.get("hash") or ""):
        logger.error(f"❌ Callback hash validation failed for merchant_oid={merchant_oid}")
        raise CallbackSignatureError(f"Invalid callback signature for {merchant_oid}")

    try:
        payment = get_payment(db, merchant_oid)
    except PaymentNotFound:
        logger.error(f"❌ Callback for unknown payment {merchant_oid}")
        return None

    total_amount = payload.get("total_amount")
    if total_amount not in (None, "") and str(total_amount) != str(payment.payment_amount):
        logger.warning(
            f"⚠️ Callback amount for {merchant_oid} is {total_amount}, stored {payment.payment_amount}"
        )

    if payload.get("status") == "success":
        payment, changed = _settle(db, merchant_oid)
        if changed:
            apply_settlement(db, payment, payload.get("payment_type") or "card")
            db.refresh(payment)
        return payment

    reason = payload.get("failed_reason_msg") or f"Code: {payload.get('failed_reason_code')}"
    return mark_failed(db, merchant_oid, reason)


async def probe_status(db: Session, gateway: BaseGateway, merchant_oid: str) -> models.Payment:
    """
    Ask the gateway for the state of a pending payment and persist a terminal answer.
    Anything else (unknown answer, timeout) leaves the payment pending.
    """
    payment = get_payment(db, merchant_oid)
    if payment.status in TERMINAL_STATUSES:
        return payment

    try:
        raw = await gateway.query_status(merchant_oid)
    except GatewayRejected as e:
        logger.warning(f"⏳ Status probe for {merchant_oid} failed, payment stays pending: {e.reason}")
        return payment

    new_status = GATEWAY_STATES.get(raw.get("status"))
    if new_status == PAID:
        # A callback may have made the payment terminal while the query was in flight
        payment, changed = _settle(db, merchant_oid)
        if changed:
            apply_settlement(db, payment, raw.get("payment_type") or "card")
            db.refresh(payment)
    elif new_status == FAILED:
        reason = raw.get("err_msg") or raw.get("reason") or "Reported failed by gateway"
        payment = mark_failed(db, merchant_oid, reason)
    return payment
