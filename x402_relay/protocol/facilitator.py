# x402_relay/protocol/facilitator.py
"""
HTTP client for a facilitator's settlement surface.
"""
import logging
from typing import Any, Dict, Optional

import requests

from x402_relay.protocol.errors import FacilitatorError
from x402_relay.protocol.types import PaymentPayload, PaymentResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10


class FacilitatorClient:
    """Talks to a facilitator over HTTP with a shared requests session."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=json_body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Facilitator request to {url} failed: {e}")
            raise FacilitatorError(f"Facilitator unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if not response.ok:
            message = body.get("message") or body.get("error") or body.get("detail") or response.reason or "Facilitator error"
            if isinstance(message, dict):
                message = message.get("error", str(message))
            logger.warning(f"Facilitator {method} {path} returned {response.status_code}: {message}")
            raise FacilitatorError(str(message), status_code=response.status_code, details=body)

        return body

    def settle(self, payload: PaymentPayload) -> PaymentResponse:
        """
        Forward a payload for on-chain execution.

        Returns:
            PaymentResponse from the facilitator

        Raises:
            FacilitatorError: If the facilitator is unreachable or rejects the payload
        """
        body = self._request("POST", "/x402/settle", payload.to_wire())
        try:
            return PaymentResponse.model_validate(body)
        except ValueError as e:
            raise FacilitatorError("Malformed settlement response from facilitator", details=body) from e

    def verify(self, from_: str, amount: str, token: str = "USDC", network: str = "eip155:8453") -> Dict[str, Any]:
        return self._request("POST", "/verify", {"from": from_, "amount": amount, "token": token, "network": network})

    def supported(self) -> Dict[str, Any]:
        return self._request("GET", "/supported")
