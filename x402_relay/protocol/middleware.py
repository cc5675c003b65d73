# x402_relay/protocol/middleware.py
"""
FastAPI middleware that gates routes behind x402 payments.

For every request that is not excluded, this middleware:
1. Returns 402 Payment Required with a fresh PaymentRequirement when the
   X-PAYMENT header is missing
2. Parses and validates the X-PAYMENT payload (400 on malformed input)
3. Checks network, deadline, recipient, token and amount against the gate's price
4. Claims the payload nonce in the replay registry (402 on re-use)
5. Settles through the facilitator when one is configured, adding the
   X-PAYMENT-RESPONSE header to the downstream response
6. Attaches ``{payment, verified, signer}`` to ``request.state.x402``
"""
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from x402_relay.protocol import audit
from x402_relay.protocol.encoding import (
    decode_payment_payload,
    encode_payment_requirement,
    encode_payment_response,
)
from x402_relay.protocol.errors import FacilitatorError, InvalidPaymentError, PaymentVerificationError
from x402_relay.protocol.facilitator import FacilitatorClient
from x402_relay.protocol.networks import get_erc3009_token
from x402_relay.protocol.nonces import NonceStore, get_nonce_registry
from x402_relay.protocol.signing import recover_payload_signer
from x402_relay.protocol.types import (
    DEFAULT_DEADLINE_SECONDS,
    DEFAULT_FEE_BPS,
    SCHEME_PERMIT2,
    X_PAYMENT_HEADER,
    X_PAYMENT_REQUIRED_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    ERC3009Payload,
    PaymentPayload,
    PaymentRequirement,
    PaymentResponse,
    Permit2Payload,
    create_payment_requirement,
    payload_amount,
    payload_deadline,
    payload_recipient,
    replay_key,
)

logger = logging.getLogger(__name__)

VerifyHook = Callable[[PaymentPayload, Request], Union[bool, Awaitable[bool]]]
# on_error(error, request, default_response) may return a replacement, or None to keep the default
ErrorHook = Callable[[Exception, Request, Response], Union[Optional[Response], Awaitable[Optional[Response]]]]


@dataclass
class PaymentGateConfig:
    """Price and policy for the routes behind one middleware instance."""
    recipient: str
    amount: str
    token: str
    settlement: str
    treasury: str
    fee_bps: int = DEFAULT_FEE_BPS
    network_id: str = "eip155:8453"
    deadline_seconds: int = DEFAULT_DEADLINE_SECONDS
    accepted_schemes: Sequence[str] = (SCHEME_PERMIT2,)
    facilitator_url: Optional[str] = None
    description: Optional[str] = None
    exclude_routes: Sequence[str] = ()
    verify_payment: Optional[VerifyHook] = None
    verify_signatures: bool = True
    on_error: Optional[ErrorHook] = None


def is_excluded_route(path: str, exclude_routes: Sequence[str]) -> bool:
    """Check if the request path is excluded from payment (exact or sub-path match)."""
    normalized = path.rstrip("/") or "/"
    for route in exclude_routes:
        excluded = route.rstrip("/") or "/"
        if normalized == excluded or (excluded != "/" and normalized.startswith(excluded + "/")):
            return True
    return False


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def create_402_response(requirement: PaymentRequirement, error_message: str = "Payment Required") -> JSONResponse:
    """
    Create an HTTP 402 response carrying the requirement as header and body.

    Args:
        requirement: The payment requirement to include
        error_message: Error message for the response

    Returns:
        JSONResponse with 402 status
    """
    return JSONResponse(
        status_code=402,
        content={"error": error_message, "requirement": requirement.to_wire()},
        headers={X_PAYMENT_REQUIRED_HEADER: encode_payment_requirement(requirement)},
    )


def payment_error_response(status_code: int, error: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    content: Dict[str, Any] = {"error": error, "message": message}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def payment_token(payload: PaymentPayload) -> Optional[str]:
    """Token address a payload moves; authorization transfers use the network's registry token."""
    if isinstance(payload, Permit2Payload):
        return payload.permit.permitted[0].token
    if isinstance(payload, ERC3009Payload):
        token = get_erc3009_token(payload.network)
        return token.address if token is not None else None
    return None


def get_payment_from_request(request: Request) -> Optional[Dict[str, Any]]:
    """The verified payment attached by X402Middleware, if any."""
    return getattr(request.state, "x402", None)


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment verification middleware for FastAPI.

    Requests to excluded routes pass through unchanged. Everything else
    must carry a valid, unused payment for at least the configured amount.
    """

    def __init__(
        self,
        app,
        config: PaymentGateConfig,
        nonce_store: Optional[NonceStore] = None,
        facilitator_client: Optional[FacilitatorClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(app)
        self.config = config
        self._nonce_store = nonce_store
        self._facilitator_client = facilitator_client
        self._clock = clock

        if not config.verify_signatures and not config.facilitator_url and facilitator_client is None:
            logger.warning("x402: Signature verification disabled and no facilitator configured")

    @property
    def nonce_store(self) -> NonceStore:
        """Process-wide registry unless one was injected."""
        if self._nonce_store is None:
            self._nonce_store = get_nonce_registry()
        return self._nonce_store

    @property
    def facilitator_client(self) -> Optional[FacilitatorClient]:
        """Lazy initialization of facilitator client (None when not configured)."""
        if self._facilitator_client is None and self.config.facilitator_url:
            self._facilitator_client = FacilitatorClient(base_url=self.config.facilitator_url)
        return self._facilitator_client

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """
        Gate the request behind payment verification.

        Errors raised while verifying are reported as 500 (or handed to the
        ``on_error`` hook); errors from the downstream route are not touched.
        """
        if is_excluded_route(request.url.path, self.config.exclude_routes):
            return await call_next(request)

        try:
            outcome = await self._verify(request)
        except Exception as e:
            return await self._handle_error(e, request)

        if isinstance(outcome, Response):
            return outcome

        payment_response = outcome
        response = await call_next(request)
        if payment_response is not None:
            response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(payment_response)
        return response

    async def _verify(self, request: Request) -> Union[Response, Optional[PaymentResponse]]:
        """
        Run the verification state machine.

        Returns:
            A rejection Response, or the settlement result (None when no
            facilitator is configured) for a verified payment
        """
        config = self.config
        client_ip = get_client_ip(request)
        payment_header = request.headers.get(X_PAYMENT_HEADER)

        # 1. No payment: issue a challenge
        if not payment_header:
            requirement = create_payment_requirement(
                recipient=config.recipient,
                amount=config.amount,
                token=config.token,
                settlement=config.settlement,
                treasury=config.treasury,
                network=config.network_id,
                fee_bps=config.fee_bps,
                deadline_seconds=config.deadline_seconds,
                schemes=config.accepted_schemes,
                description=config.description,
                resource=request.url.path,
            )
            logger.info(f"x402: No X-PAYMENT header, returning 402 for {request.method} {request.url.path}")
            audit.log_payment_required_sent(
                client_ip, config.amount, config.token, config.network_id, config.recipient, request.url.path
            )
            return create_402_response(requirement)

        # 2. Parse
        try:
            payload = decode_payment_payload(payment_header)
        except InvalidPaymentError as e:
            return self._reject(client_ip, 400, "Invalid Payment", e.message, details=e.details)

        amount = payload_amount(payload)
        audit.log_payment_received(client_ip, payload.payer, payload.scheme, amount, payload.network)

        if payload.scheme not in config.accepted_schemes:
            return self._reject(
                client_ip, 400, "Invalid Payment", f"Scheme {payload.scheme} is not accepted", payload.payer
            )

        # 3. Network
        if payload.network != config.network_id:
            return self._reject(
                client_ip, 400, "Network Mismatch",
                f"Expected {config.network_id}, received {payload.network}", payload.payer
            )

        # 4. Deadline
        if payload_deadline(payload) <= self._clock():
            return self._reject(client_ip, 400, "Payment Expired", "Payment deadline has passed", payload.payer)

        if payload_recipient(payload).lower() != config.recipient.lower():
            return self._reject(
                client_ip, 400, "Invalid Payment", "Payment recipient does not match", payload.payer
            )
        token = payment_token(payload)
        if token is None or token.lower() != config.token.lower():
            return self._reject(
                client_ip, 400, "Invalid Payment", f"Expected token {config.token}, received {token}", payload.payer
            )

        # 5. Amount
        required = int(config.amount)
        if amount < required:
            return self._reject(
                client_ip, 402, "Insufficient Payment", f"Expected {required}, received {amount}", payload.payer
            )

        signer = payload.payer
        if config.verify_signatures:
            try:
                signer = recover_payload_signer(payload)
            except PaymentVerificationError as e:
                return self._reject(client_ip, 400, "Invalid Signature", e.message, payload.payer)
            if signer.lower() != payload.payer.lower():
                return self._reject(
                    client_ip, 400, "Invalid Signature", "Signature does not match payer", payload.payer
                )

        if config.verify_payment is not None:
            accepted = config.verify_payment(payload, request)
            if inspect.isawaitable(accepted):
                accepted = await accepted
            if not accepted:
                return self._reject(client_ip, 402, "Payment Rejected", "Custom verification failed", payload.payer)

        # 6. Replay
        if not self.nonce_store.claim(replay_key(payload)):
            return self._reject(
                client_ip, 402, "Replay Detected", "This payment nonce has already been used", payload.payer
            )

        # 7. Settlement
        payment_response = None
        facilitator = self.facilitator_client
        if facilitator is not None:
            try:
                payment_response = await run_in_threadpool(facilitator.settle, payload)
            except FacilitatorError as e:
                return self._reject(client_ip, 402, "Settlement Failed", e.message, payload.payer)
            if not payment_response.success:
                return self._reject(
                    client_ip, 402, "Settlement Failed",
                    payment_response.error or "Facilitator reported failure", payload.payer
                )
            logger.info(f"x402: Payment settled: {payment_response.txHash}")

        # 8. Attach
        request.state.x402 = {
            "payment": payload,
            "verified": True,
            "signer": signer,
        }
        logger.info(f"x402: Payment verified for payer {signer}")
        audit.log_payment_verified(
            client_ip, signer, settled=payment_response is not None,
            tx_hash=payment_response.txHash if payment_response else None
        )
        return payment_response

    def _reject(
        self,
        client_ip: str,
        status_code: int,
        error: str,
        message: str,
        payer: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        logger.warning(f"x402: {error} from {client_ip}: {message}")
        audit.log_payment_rejected(client_ip, error, status_code, payer)
        return payment_error_response(status_code, error, message, details)

    async def _handle_error(self, error: Exception, request: Request) -> Response:
        logger.error(f"x402: Middleware error: {error}", exc_info=True)
        audit.log_error(get_client_ip(request), type(error).__name__, str(error), {"path": request.url.path})
        response = JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "message": "Payment processing failed"},
        )
        if self.config.on_error is None:
            return response

        result = self.config.on_error(error, request, response)
        if inspect.isawaitable(result):
            result = await result
        return result if isinstance(result, Response) else response
