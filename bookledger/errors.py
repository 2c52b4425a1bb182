"""
Error taxonomy for the payment and ledger pipeline.

Routers translate these into HTTP responses; AlreadyTerminal and unique
constraint races never leave the service layer.
"""


class GatewayRejected(RuntimeError):
    """The payment processor refused, or could not be reached to start, a charge."""

    def __init__(self, reason: str, retryable: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.retryable = retryable


class GatewayTimeout(GatewayRejected):
    def __init__(self, reason: str = "Gateway request timed out"):
        super().__init__(reason, retryable=True)


class CallbackSignatureError(Exception):
    """Raised when a gateway callback hash does not match"""


class AlreadyTerminal(Exception):
    """A paid/failed payment was asked to transition again. Benign on duplicate delivery."""

    def __init__(self, payment):
        super().__init__(f"Payment {payment.merchant_oid} is already {payment.status}")
        self.payment = payment


class PaymentNotFound(LookupError):
    pass


class AppointmentNotFound(LookupError):
    pass


class InvalidStatusTransition(ValueError):
    pass


class ReconcileItemError(Exception):
    """Wraps the failure of a single appointment inside a backfill run."""

    def __init__(self, appointment_id: str, cause: Exception):
        super().__init__(f"{appointment_id}: {cause}")
        self.appointment_id = appointment_id
        self.cause = cause
