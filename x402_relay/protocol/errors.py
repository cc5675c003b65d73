# x402_relay/protocol/errors.py
"""
Typed errors raised by the x402 protocol engine.

Every error carries a machine-readable ``code`` and optional ``details`` so
that HTTP layers can translate it into a response without string matching.
"""
from typing import Any, Dict, Optional


class X402Error(Exception):
    """Base class for all x402 protocol errors."""

    def __init__(self, message: str, code: str = "X402_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class InvalidPaymentError(X402Error):
    """Payment payload or requirement failed schema validation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INVALID_PAYMENT", details)


class PaymentRequiredError(X402Error):
    """A 402 challenge could not be answered (e.g. no signer configured)."""

    def __init__(self, message: str, requirement: Any = None):
        super().__init__(message, "PAYMENT_REQUIRED")
        self.requirement = requirement


class PaymentVerificationError(X402Error):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PAYMENT_VERIFICATION_FAILED", details)


class UnsupportedNetworkError(X402Error):
    def __init__(self, network: str):
        super().__init__(f"Unsupported network: {network}", "UNSUPPORTED_NETWORK", {"network": network})
        self.network = network


class UnsupportedSchemeError(X402Error):
    def __init__(self, scheme: str):
        super().__init__(f"Unsupported payment scheme: {scheme}", "UNSUPPORTED_SCHEME", {"scheme": scheme})
        self.scheme = scheme


class PaymentExpiredError(X402Error):
    def __init__(self, deadline: int):
        super().__init__("Payment deadline has passed", "PAYMENT_EXPIRED", {"deadline": deadline})
        self.deadline = deadline


class FacilitatorError(X402Error):
    """The facilitator could not be reached or rejected the request."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "FACILITATOR_ERROR", details)
        self.status_code = status_code
