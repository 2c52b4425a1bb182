"""
PayTR iFrame API client.

Signing is done by pure functions so it can be exercised without network
access; the class only adds configuration and the outbound HTTP calls.
"""
import base64
import hashlib
import hmac
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from bookledger import config
from bookledger.errors import GatewayRejected, GatewayTimeout
from bookledger.gateways.base import BaseGateway

logger = logging.getLogger(__name__)


def to_minor_units(amount) -> int:
    """34.56 -> 3456"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def encode_basket(basket: List[Dict[str, Any]]) -> str:
    """Base64 of [[name, minor_unit_price, quantity], ...] as PayTR expects."""
    rows = [
        [item["name"], str(to_minor_units(item["price"])), str(item.get("quantity", 1))]
        for item in basket
    ]
    return base64.b64encode(json.dumps(rows, ensure_ascii=False).encode("utf-8")).decode("utf-8")


def _hmac_b64(key: str, message: str) -> str:
    digest = hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def make_charge_token(
    merchant_id: str,
    user_ip: str,
    merchant_oid: str,
    email: str,
    payment_amount: int,
    user_basket: str,
    no_installment: int,
    max_installment: int,
    currency: str,
    test_mode: str,
    merchant_salt: str,
    merchant_key: str,
) -> str:
    # Field order is fixed by the gateway
    hash_str = (
        f"{merchant_id}{user_ip}{merchant_oid}{email}{payment_amount}{user_basket}"
        f"{no_installment}{max_installment}{currency}{test_mode}"
    )
    return _hmac_b64(merchant_key, hash_str + merchant_salt)


def make_callback_hash(
    merchant_oid: str, status: str, total_amount: str, merchant_salt: str, merchant_key: str
) -> str:
    return _hmac_b64(merchant_key, f"{merchant_oid}{merchant_salt}{status}{total_amount}")


def make_status_token(merchant_id: str, merchant_oid: str, merchant_salt: str, merchant_key: str) -> str:
    return _hmac_b64(merchant_key, f"{merchant_id}{merchant_oid}{merchant_salt}")


def _mask(secret: str) -> str:
    return "***" + secret[-4:] if secret else "<unset>"


class PayTRGateway(BaseGateway):
    """
    PayTR client.
    Token endpoint: form POST, JSON reply {status, token?, reason?}
    Callback: form POST signed with merchant_oid + salt + status + total_amount
    """

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        merchant_key: Optional[str] = None,
        merchant_salt: Optional[str] = None,
        test_mode: Optional[str] = None,
        api_url: Optional[str] = None,
        status_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.merchant_id = merchant_id if merchant_id is not None else config.PAYTR_MERCHANT_ID
        self.merchant_key = merchant_key if merchant_key is not None else config.PAYTR_MERCHANT_KEY
        self.merchant_salt = merchant_salt if merchant_salt is not None else config.PAYTR_MERCHANT_SALT
        self.test_mode = test_mode if test_mode is not None else config.PAYTR_TEST_MODE
        self.api_url = api_url or config.PAYTR_API_URL
        self.status_url = status_url or config.PAYTR_STATUS_URL
        self.timeout = timeout if timeout is not None else config.PAYTR_TIMEOUT_SECONDS

        if not (self.merchant_id and self.merchant_key and self.merchant_salt):
            logger.warning("PayTR credentials not set; charges will be rejected until configured")

    @property
    def gateway_name(self) -> str:
        return "paytr"

    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.merchant_key and self.merchant_salt)

    def payment_url(self, token: str) -> str:
        return f"{config.PAYTR_IFRAME_URL}{token}"

    def describe(self) -> Dict[str, Any]:
        return {
            "merchant_id": self.merchant_id,
            "merchant_key": _mask(self.merchant_key),
            "merchant_salt": _mask(self.merchant_salt),
            "test_mode": self.test_mode,
            "api_url": self.api_url,
        }

    def build_charge_form(
        self,
        merchant_oid: str,
        amount: Decimal,
        currency: str,
        basket: List[Dict[str, Any]],
        success_url: str,
        fail_url: str,
        customer_ip: str,
        customer_email: str,
        user_name: Optional[str] = None,
        user_phone: Optional[str] = None,
        user_address: Optional[str] = None,
        no_installment: int = 0,
        max_installment: int = 0,
    ) -> Dict[str, str]:
        payment_amount = to_minor_units(amount)
        user_basket = encode_basket(basket)
        token = make_charge_token(
            merchant_id=self.merchant_id,
            user_ip=customer_ip,
            merchant_oid=merchant_oid,
            email=customer_email,
            payment_amount=payment_amount,
            user_basket=user_basket,
            no_installment=no_installment,
            max_installment=max_installment,
            currency=currency,
            test_mode=self.test_mode,
            merchant_salt=self.merchant_salt,
            merchant_key=self.merchant_key,
        )
        return {
            "merchant_id": self.merchant_id,
            "user_ip": customer_ip,
            "merchant_oid": merchant_oid,
            "email": customer_email,
            "payment_amount": str(payment_amount),
            "paytr_token": token,
            "user_basket": user_basket,
            "debug_on": self.test_mode,
            "no_installment": str(no_installment),
            "max_installment": str(max_installment),
            "user_name": user_name or customer_email.split("@")[0],
            "user_address": user_address or "-",
            "user_phone": user_phone or "",
            "merchant_ok_url": success_url,
            "merchant_fail_url": fail_url,
            "timeout_limit": "30",
            "currency": currency,
            "test_mode": self.test_mode,
            "lang": "tr",
        }

    async def _post(self, url: str, form: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as http_client:
                response = await http_client.post(url, data=form)
        except httpx.TimeoutException as e:
            logger.error(f"PayTR request timed out after {self.timeout}s: {e}")
            raise GatewayTimeout()
        except httpx.HTTPError as e:
            logger.error(f"PayTR request failed: {e}")
            raise GatewayRejected(f"Gateway unreachable: {e}", retryable=True)

        try:
            return response.json()
        except ValueError:
            logger.error(f"PayTR returned a non-JSON body ({response.status_code}): {response.text[:200]}")
            raise GatewayRejected(f"Invalid response from gateway: {response.text[:200]}")

    async def initiate_charge(
        self,
        merchant_oid: str,
        amount: Decimal,
        currency: str,
        basket: List[Dict[str, Any]],
        success_url: str,
        fail_url: str,
        customer_ip: str,
        customer_email: str,
        user_name: Optional[str] = None,
        user_phone: Optional[str] = None,
        user_address: Optional[str] = None,
    ) -> str:
        if not self.is_configured():
            raise GatewayRejected("PayTR credentials are not configured")

        form = self.build_charge_form(
            merchant_oid=merchant_oid,
            amount=amount,
            currency=currency,
            basket=basket,
            success_url=success_url,
            fail_url=fail_url,
            customer_ip=customer_ip,
            customer_email=customer_email,
            user_name=user_name,
            user_phone=user_phone,
            user_address=user_address,
        )
        logger.info(
            f"💳 Requesting PayTR token: merchant_oid={merchant_oid} amount={form['payment_amount']} {currency}"
        )

        result = await self._post(self.api_url, form)
        if result.get("status") == "success" and result.get("token"):
            logger.info(f"✅ PayTR token received for {merchant_oid}")
            return result["token"]

        reason = result.get("reason") or "Unknown gateway error"
        logger.error(f"❌ PayTR rejected {merchant_oid}: {reason}")
        raise GatewayRejected(reason)

    def verify_callback(self, payload: Dict[str, Any], provided_signature: str) -> bool:
        expected = make_callback_hash(
            merchant_oid=str(payload.get("merchant_oid", "")),
            status=str(payload.get("status", "")),
            total_amount=str(payload.get("total_amount", "")),
            merchant_salt=self.merchant_salt,
            merchant_key=self.merchant_key,
        )
        if not provided_signature or not hmac.compare_digest(expected, provided_signature):
            logger.warning(f"🚫 PayTR callback hash mismatch for merchant_oid={payload.get('merchant_oid')}")
            return False
        return True

    async def query_status(self, merchant_oid: str) -> Dict[str, Any]:
        if not self.is_configured():
            raise GatewayRejected("PayTR credentials are not configured")

        form = {
            "merchant_id": self.merchant_id,
            "merchant_oid": merchant_oid,
            "paytr_token": make_status_token(
                self.merchant_id, merchant_oid, self.merchant_salt, self.merchant_key
            ),
        }
        result = await self._post(self.status_url, form)
        logger.info(f"🔍 PayTR status for {merchant_oid}: {result.get('status')}")
        return result


paytr_gateway = PayTRGateway()
