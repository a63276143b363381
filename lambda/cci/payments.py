"""
Payment collaborator contract.

The engine only needs charge(); the gateway behind it is external. The
simulated gateway is the default until a real one is wired in.
"""

import uuid
from typing import Protocol

from pydantic import BaseModel

from cci.models import PaymentMethod


class PaymentResult(BaseModel):
    success: bool
    transaction_id: str | None = None
    error_message: str | None = None


class PaymentGateway(Protocol):
    def charge(
        self,
        amount: float,
        currency: str,
        method: PaymentMethod,
        idempotency_key: str,
    ) -> PaymentResult: ...


class SimulatedPaymentGateway:
    """
    Accepts every charge unless constructed with fail=True.

    The transaction id is derived from the idempotency key, so repeating a
    key returns the same result without keeping any state.
    """

    def __init__(self, fail: bool = False, error_message: str = "Payment gateway error"):
        self.fail = fail
        self.error_message = error_message

    def charge(
        self,
        amount: float,
        currency: str,
        method: PaymentMethod,
        idempotency_key: str,
    ) -> PaymentResult:
        if self.fail:
            return PaymentResult(success=False, error_message=self.error_message)
        txn = uuid.uuid5(uuid.NAMESPACE_OID, idempotency_key)
        return PaymentResult(success=True, transaction_id=f"txn_{txn.hex[:16]}")


_default_gateway: PaymentGateway | None = None


def get_default_gateway() -> PaymentGateway:
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = SimulatedPaymentGateway()
    return _default_gateway
