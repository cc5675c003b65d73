# x402_relay/protocol/client.py
"""
HTTP client that pays for x402-protected resources.

On a 402 response the client reads the PaymentRequirement (X-PAYMENT-REQUIRED
header first, JSON body as fallback), signs the first accept option it
supports and retries with the signed payload in the X-PAYMENT header.
"""
import logging
from typing import Any, Callable, Dict, Optional, Sequence

import requests
from eth_account import Account

from x402_relay.core.config import settings
from x402_relay.protocol.encoding import decode_payment_requirement, encode_payment_payload
from x402_relay.protocol.errors import (
    InvalidPaymentError,
    PaymentRequiredError,
    UnsupportedNetworkError,
    UnsupportedSchemeError,
)
from x402_relay.protocol.signing import sign_erc3009_payment, sign_permit2_payment
from x402_relay.protocol.types import (
    DEFAULT_DEADLINE_SECONDS,
    SCHEME_ERC3009,
    SCHEME_PERMIT2,
    X_PAYMENT_HEADER,
    X_PAYMENT_REQUIRED_HEADER,
    AcceptOption,
    PaymentPayload,
    PaymentRequirement,
    parse_payment_requirement,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MAX_RETRIES = 1


class X402Client:
    """
    requests-based client with automatic 402 handling.

    Example:
        client = X402Client(private_key="0x...")
        response = client.get("https://api.example.com/premium")
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        supported_networks: Sequence[str] = ("eip155:8453",),
        supported_schemes: Sequence[str] = (SCHEME_PERMIT2, SCHEME_ERC3009),
        default_deadline: int = DEFAULT_DEADLINE_SECONDS,
        auto_retry: bool = True,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        on_payment_required: Optional[Callable[[PaymentRequirement], None]] = None,
        on_payment_signed: Optional[Callable[[PaymentPayload], None]] = None,
    ):
        """
        Initialize the client.

        Args:
            private_key: Payer key; without one, 402 responses raise PaymentRequiredError
            supported_networks: CAIP-2 networks this client will pay on
            supported_schemes: Schemes this client can sign, in preference order
            default_deadline: Requested authorization validity in seconds
            auto_retry: Whether to pay and retry on 402
            max_retries: Maximum paid retries per call
            timeout: Timeout for each underlying HTTP call, in seconds
            session: requests session to use (a new one by default)
            on_payment_required: Called with the parsed requirement
            on_payment_signed: Called with the signed payload before retrying
        """
        self.account = Account.from_key(private_key) if private_key else None
        self.supported_networks = tuple(supported_networks)
        self.supported_schemes = tuple(supported_schemes)
        self.default_deadline = default_deadline
        self.auto_retry = auto_retry
        self.max_retries = max_retries
        self.timeout = timeout
        self.session = session or requests.Session()
        self.on_payment_required = on_payment_required
        self.on_payment_signed = on_payment_signed

    @property
    def signer_address(self) -> Optional[str]:
        return self.account.address if self.account else None

    @property
    def can_sign(self) -> bool:
        return self.account is not None

    def fetch(self, url: str, method: str = "GET", headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> requests.Response:
        """
        Perform a request, paying and retrying on 402.

        Returns:
            The final response (a 402 when retries are exhausted or disabled)

        Raises:
            PaymentRequiredError: On 402 without a configured signer
            UnsupportedNetworkError: If no accept option uses a supported network
            UnsupportedSchemeError: If no accept option uses a supported scheme
            InvalidPaymentError: If the 402 carries no readable requirement
            PaymentExpiredError: If the challenge expired before it could be signed
        """
        request_headers = dict(headers or {})
        response = self.session.request(method, url, headers=request_headers, timeout=self.timeout, **kwargs)

        attempts = 0
        while response.status_code == 402 and self.auto_retry and attempts < self.max_retries:
            requirement = self.parse_payment_requirement(response)
            if self.on_payment_required:
                self.on_payment_required(requirement)

            payload = self.sign_payment(requirement)
            if self.on_payment_signed:
                self.on_payment_signed(payload)

            request_headers = {**request_headers, X_PAYMENT_HEADER: encode_payment_payload(payload)}
            attempts += 1
            logger.info(f"x402: Retrying {method} {url} with {payload.scheme} payment (attempt {attempts})")
            response = self.session.request(method, url, headers=request_headers, timeout=self.timeout, **kwargs)

        return response

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.fetch(url, "GET", **kwargs)

    def post(self, url: str, json: Any = None, **kwargs: Any) -> requests.Response:
        return self.fetch(url, "POST", json=json, **kwargs)

    def put(self, url: str, json: Any = None, **kwargs: Any) -> requests.Response:
        return self.fetch(url, "PUT", json=json, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> requests.Response:
        return self.fetch(url, "DELETE", **kwargs)

    def parse_payment_requirement(self, response: requests.Response) -> PaymentRequirement:
        """
        Read the requirement from a 402 response: header first, then body.

        The body may be ``{"error": ..., "requirement": {...}}`` or the bare requirement.

        Raises:
            InvalidPaymentError: If neither source holds a valid requirement
        """
        header_value = response.headers.get(X_PAYMENT_REQUIRED_HEADER)
        if header_value:
            try:
                return decode_payment_requirement(header_value)
            except InvalidPaymentError as e:
                logger.warning(f"x402: Unreadable {X_PAYMENT_REQUIRED_HEADER} header, trying body: {e}")

        try:
            body = response.json()
        except ValueError as e:
            raise InvalidPaymentError("402 response carries no payment requirement") from e

        if isinstance(body, dict) and isinstance(body.get("requirement"), dict):
            body = body["requirement"]
        return parse_payment_requirement(body)

    def select_option(self, requirement: PaymentRequirement) -> AcceptOption:
        """
        Pick the first accept option this client can pay.

        Raises:
            UnsupportedNetworkError: If no option is on a supported network
            UnsupportedSchemeError: If options exist on supported networks but none with a supported scheme
        """
        on_network = [option for option in requirement.accepts if option.network in self.supported_networks]
        if not on_network:
            raise UnsupportedNetworkError(requirement.accepts[0].network)
        for option in on_network:
            if option.scheme in self.supported_schemes:
                return option
        raise UnsupportedSchemeError(on_network[0].scheme)

    def sign_payment(self, requirement: PaymentRequirement) -> PaymentPayload:
        """
        Sign a payload for the first supported accept option.

        Raises:
            PaymentRequiredError: If no signer is configured
        """
        if self.account is None:
            raise PaymentRequiredError("Payment required but no signer is configured", requirement)

        option = self.select_option(requirement)
        if option.scheme == SCHEME_PERMIT2:
            return sign_permit2_payment(self.account, option, self.default_deadline)
        return sign_erc3009_payment(self.account, option, self.default_deadline)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "X402Client":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def create_x402_client_from_env(**kwargs: Any) -> X402Client:
    """Build a client from X402_* settings. Keyword arguments override them."""
    if not settings.X402_PRIVATE_KEY:
        logger.warning("X402_PRIVATE_KEY not set - client cannot pay for 402 responses")

    options: Dict[str, Any] = {
        "private_key": settings.X402_PRIVATE_KEY,
        "supported_networks": (settings.X402_NETWORK,),
        "default_deadline": settings.X402_DEADLINE_SECONDS,
        "max_retries": settings.X402_CLIENT_MAX_RETRIES,
        "timeout": settings.X402_CLIENT_TIMEOUT_SECONDS,
    }
    options.update(kwargs)
    return X402Client(**options)
