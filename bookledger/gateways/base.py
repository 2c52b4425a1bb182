from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional


class BaseGateway(ABC):
    """Abstract base for payment gateway clients."""

    @abstractmethod
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
        """
        Ask the gateway for a charge token for a caller-generated merchant_oid.
        Returns the token, raises GatewayRejected.
        """
        pass

    @abstractmethod
    def verify_callback(self, payload: Dict[str, Any], provided_signature: str) -> bool:
        pass

    @abstractmethod
    async def query_status(self, merchant_oid: str) -> Dict[str, Any]:
        """
        Ask the gateway for the current state of a charge.
        Returns the gateway's raw response dict.
        """
        pass

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        pass

    def payment_url(self, token: str) -> Optional[str]:
        return None
