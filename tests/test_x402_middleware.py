# tests/test_x402_middleware.py
"""
Unit tests for x402 middleware.
"""
import time
from unittest.mock import MagicMock

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from starlette.responses import JSONResponse

from x402_relay.protocol.encoding import (
    decode_payment_requirement,
    decode_payment_response,
    encode_payment_payload,
)
from x402_relay.protocol.errors import FacilitatorError
from x402_relay.protocol.middleware import (
    PaymentGateConfig,
    X402Middleware,
    get_client_ip,
    get_payment_from_request,
    is_excluded_route,
)
from x402_relay.protocol.nonces import NonceRegistry
from x402_relay.protocol.types import (
    X_PAYMENT_HEADER,
    X_PAYMENT_REQUIRED_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    PaymentResponse,
)

from helpers import (
    BASE_USDC,
    PAYER_ADDRESS,
    RECIPIENT,
    SETTLEMENT_CONTRACT,
    TREASURY_ADDRESS,
    signed_erc3009,
    signed_permit2,
)


OTHER_TOKEN = "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2"


def make_config(**overrides):
    values = dict(
        recipient=RECIPIENT,
        amount="1000000",
        token=BASE_USDC,
        settlement=SETTLEMENT_CONTRACT,
        treasury=TREASURY_ADDRESS,
        exclude_routes=("/health",),
    )
    values.update(overrides)
    return PaymentGateConfig(**values)


def make_client(config=None, nonce_store=None, facilitator_client=None):
    app = FastAPI()
    app.add_middleware(
        X402Middleware,
        config=config or make_config(),
        nonce_store=nonce_store if nonce_store is not None else NonceRegistry(),
        facilitator_client=facilitator_client,
    )

    @app.get("/premium")
    async def premium(request: Request):
        payment = get_payment_from_request(request)
        return {"paid": True, "signer": payment["signer"], "verified": payment["verified"]}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("downstream failure")

    return TestClient(app, raise_server_exceptions=False)


def header_for(payload):
    return {X_PAYMENT_HEADER: encode_payment_payload(payload)}


class TestIsExcludedRoute:
    """Test route exclusion matching."""

    def test_exact_match(self):
        """Exact paths are excluded."""
        assert is_excluded_route("/health", ["/health"]) is True

    def test_sub_path(self):
        """Sub-paths of an excluded route are excluded."""
        assert is_excluded_route("/docs/oauth2", ["/docs"]) is True

    def test_prefix_is_not_sub_path(self):
        """/healthz is not a sub-path of /health."""
        assert is_excluded_route("/healthz", ["/health"]) is False

    def test_trailing_slash(self):
        """Trailing slashes are ignored."""
        assert is_excluded_route("/health/", ["/health"]) is True


class TestGetClientIP:
    """Test client IP extraction."""

    def test_forwarded_for_header(self):
        """Extract IP from X-Forwarded-For header."""
        request = MagicMock(spec=Request)
        request.headers = {"X-Forwarded-For": "203.0.113.50, 70.41.3.18"}
        request.client = None

        assert get_client_ip(request) == "203.0.113.50"

    def test_real_ip_header(self):
        """Extract IP from X-Real-IP header."""
        request = MagicMock(spec=Request)
        request.headers = {"X-Real-IP": "203.0.113.51"}
        request.client = None

        assert get_client_ip(request) == "203.0.113.51"

    def test_unknown(self):
        """Missing headers and client yield 'unknown'."""
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = None

        assert get_client_ip(request) == "unknown"


class TestChallenge:
    """Test 402 challenges for unpaid requests."""

    def test_missing_payment_returns_402(self):
        """Requests without X-PAYMENT get a 402 with the requirement."""
        response = make_client().get("/premium")

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Payment Required"
        assert body["requirement"]["accepts"][0]["amount"] == "1000000"

    def test_requirement_header(self):
        """The requirement is also sent base64-encoded in X-PAYMENT-REQUIRED."""
        response = make_client().get("/premium")

        requirement = decode_payment_requirement(response.headers[X_PAYMENT_REQUIRED_HEADER])
        option = requirement.accepts[0]
        assert option.recipient == RECIPIENT
        assert option.feeBps == 50
        assert option.maxDeadline > int(time.time())
        assert requirement.resource == "/premium"

    def test_excluded_route_passes(self):
        """Excluded routes are served without payment."""
        response = make_client().get("/health")
        assert response.status_code == 200


class TestVerification:
    """Test the verification state machine."""

    def test_valid_payment_passes(self):
        """A valid payment reaches the route with verified payment state."""
        response = make_client().get("/premium", headers=header_for(signed_permit2()))

        assert response.status_code == 200
        assert response.json() == {"paid": True, "signer": PAYER_ADDRESS, "verified": True}
        assert X_PAYMENT_RESPONSE_HEADER not in response.headers

    def test_erc3009_accepted_when_configured(self):
        """erc3009 payloads pass when the scheme is accepted."""
        client = make_client(make_config(accepted_schemes=("permit2", "erc3009")))
        response = client.get("/premium", headers=header_for(signed_erc3009()))
        assert response.status_code == 200

    def test_scheme_not_accepted(self):
        """Payloads in a scheme the gate does not accept are rejected."""
        response = make_client().get("/premium", headers=header_for(signed_erc3009()))
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid Payment"

    def test_malformed_header(self):
        """Undecodable headers yield 400 Invalid Payment."""
        response = make_client().get("/premium", headers={X_PAYMENT_HEADER: "%%%"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid Payment"

    def test_network_mismatch(self):
        """Payloads for another network are rejected."""
        response = make_client().get("/premium", headers=header_for(signed_permit2(network="eip155:1")))
        assert response.status_code == 400
        assert response.json()["error"] == "Network Mismatch"

    def test_expired_payment(self):
        """A deadline 60 seconds in the past yields 400 Payment Expired."""
        payload = signed_permit2()
        expired = payload.model_copy(update={
            "permit": payload.permit.model_copy(update={"deadline": int(time.time()) - 60})
        })
        response = make_client().get("/premium", headers=header_for(expired))
        assert response.status_code == 400
        assert response.json()["error"] == "Payment Expired"

    def test_wrong_recipient(self):
        """Payments to another recipient are rejected."""
        response = make_client().get("/premium", headers=header_for(signed_permit2(recipient=PAYER_ADDRESS)))
        assert response.status_code == 400

    def test_wrong_token(self):
        """Permits for a token other than the configured one are rejected."""
        payload = signed_permit2(token=OTHER_TOKEN)
        response = make_client().get("/premium", headers=header_for(payload))
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid Payment"

    def test_erc3009_token_must_match_config(self):
        """Authorizations move the network's USDC, so a gate priced in another token rejects them."""
        config = make_config(token=OTHER_TOKEN, accepted_schemes=("permit2", "erc3009"))
        response = make_client(config).get("/premium", headers=header_for(signed_erc3009()))
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid Payment"

    def test_token_compared_case_insensitively(self):
        """Checksummed and lowercase token addresses are equivalent."""
        client = make_client(make_config(token=BASE_USDC.lower()))
        assert client.get("/premium", headers=header_for(signed_permit2())).status_code == 200

    def test_insufficient_amount(self):
        """Underpaying yields 402 Insufficient Payment."""
        response = make_client().get("/premium", headers=header_for(signed_permit2("500000")))
        assert response.status_code == 402
        assert response.json()["error"] == "Insufficient Payment"

    def test_overpayment_accepted(self):
        """Paying more than the price is accepted."""
        response = make_client().get("/premium", headers=header_for(signed_permit2("2000000")))
        assert response.status_code == 200

    def test_replay_detected(self):
        """Re-submitting the same payload yields 402 Replay Detected."""
        client = make_client()
        headers = header_for(signed_permit2())

        assert client.get("/premium", headers=headers).status_code == 200
        response = client.get("/premium", headers=headers)
        assert response.status_code == 402
        assert response.json()["error"] == "Replay Detected"

    def test_rejected_payment_does_not_burn_nonce(self):
        """Payments rejected before the replay check leave the nonce unclaimed."""
        registry = NonceRegistry()
        payload = signed_permit2()
        client = make_client(make_config(amount="2000000"), nonce_store=registry)

        assert client.get("/premium", headers=header_for(payload)).status_code == 402
        assert len(registry) == 0

    def test_custom_verifier_rejects(self):
        """A failing verify_payment hook yields 402 Payment Rejected."""
        client = make_client(make_config(verify_payment=lambda payload, request: False))
        response = client.get("/premium", headers=header_for(signed_permit2()))
        assert response.status_code == 402
        assert response.json()["error"] == "Payment Rejected"

    def test_async_custom_verifier(self):
        """Async verify_payment hooks are awaited."""
        async def verifier(payload, request):
            return payload.payer == PAYER_ADDRESS

        client = make_client(make_config(verify_payment=verifier))
        assert client.get("/premium", headers=header_for(signed_permit2())).status_code == 200


class TestSignatureVerification:
    """Test signer recovery."""

    def test_valid_signature(self):
        """A correctly signed payload passes with recovered signer."""
        client = make_client(make_config(verify_signatures=True))
        response = client.get("/premium", headers=header_for(signed_permit2()))
        assert response.status_code == 200
        assert response.json()["signer"] == PAYER_ADDRESS

    def test_forged_signature_rejected_by_default(self):
        """A zeroed signature is rejected without any extra configuration."""
        payload = signed_permit2().model_copy(update={"signature": "0x" + "00" * 65})
        response = make_client().get("/premium", headers=header_for(payload))
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid Signature"

    def test_signature_checked_before_settlement(self):
        """Forged payloads never reach the facilitator."""
        facilitator = MagicMock()
        payload = signed_permit2().model_copy(update={"signature": "0x" + "00" * 65})

        response = make_client(facilitator_client=facilitator).get("/premium", headers=header_for(payload))

        assert response.status_code == 400
        facilitator.settle.assert_not_called()

    def test_verification_can_be_disabled(self):
        """With verify_signatures=False the claimed payer is trusted as-is."""
        payload = signed_permit2().model_copy(update={"signature": "0x" + "00" * 65})
        client = make_client(make_config(verify_signatures=False))
        response = client.get("/premium", headers=header_for(payload))
        assert response.status_code == 200
        assert response.json()["signer"] == PAYER_ADDRESS

    def test_payer_mismatch(self):
        """A payload claiming another payer is rejected."""
        payload = signed_permit2().model_copy(update={"payer": RECIPIENT})
        client = make_client(make_config(verify_signatures=True))
        response = client.get("/premium", headers=header_for(payload))
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid Signature"


class TestSettlement:
    """Test inline settlement through a facilitator."""

    def test_settlement_header_added(self):
        """A successful settlement adds X-PAYMENT-RESPONSE."""
        facilitator = MagicMock()
        facilitator.settle.return_value = PaymentResponse(success=True, txHash="0xabc", network="eip155:8453")

        response = make_client(facilitator_client=facilitator).get("/premium", headers=header_for(signed_permit2()))

        assert response.status_code == 200
        settled = decode_payment_response(response.headers[X_PAYMENT_RESPONSE_HEADER])
        assert settled.success is True
        assert settled.txHash == "0xabc"
        facilitator.settle.assert_called_once()

    def test_facilitator_error(self):
        """Facilitator failures yield 402 Settlement Failed."""
        facilitator = MagicMock()
        facilitator.settle.side_effect = FacilitatorError("Transaction reverted", status_code=502)

        response = make_client(facilitator_client=facilitator).get("/premium", headers=header_for(signed_permit2()))

        assert response.status_code == 402
        assert response.json()["error"] == "Settlement Failed"

    def test_unsuccessful_settlement(self):
        """success=false from the facilitator yields 402 Settlement Failed."""
        facilitator = MagicMock()
        facilitator.settle.return_value = PaymentResponse(success=False, error="no funds")

        response = make_client(facilitator_client=facilitator).get("/premium", headers=header_for(signed_permit2()))

        assert response.status_code == 402
        assert response.json()["message"] == "no funds"


class TestErrorHandling:
    """Test internal error handling."""

    def test_internal_error_returns_500(self):
        """Unexpected verification errors yield 500."""
        store = MagicMock()
        store.claim.side_effect = RuntimeError("store down")

        response = make_client(nonce_store=store).get("/premium", headers=header_for(signed_permit2()))

        assert response.status_code == 500
        assert response.json()["error"] == "Internal Server Error"

    def test_on_error_hook(self):
        """on_error receives the error, request and default response and may replace the response."""
        store = MagicMock()
        store.claim.side_effect = RuntimeError("store down")
        seen = {}

        def on_error(error, request, response):
            seen.update(error=error, path=request.url.path, status=response.status_code)
            return JSONResponse(status_code=503, content={"error": str(error)})

        response = make_client(make_config(on_error=on_error), nonce_store=store).get(
            "/premium", headers=header_for(signed_permit2())
        )

        assert response.status_code == 503
        assert response.json() == {"error": "store down"}
        assert isinstance(seen["error"], RuntimeError)
        assert seen["path"] == "/premium"
        assert seen["status"] == 500

    def test_on_error_hook_returning_none_keeps_default(self):
        """A hook that only observes leaves the default 500 in place."""
        store = MagicMock()
        store.claim.side_effect = RuntimeError("store down")
        errors = []

        async def on_error(error, request, response):
            errors.append(error)

        response = make_client(make_config(on_error=on_error), nonce_store=store).get(
            "/premium", headers=header_for(signed_permit2())
        )

        assert response.status_code == 500
        assert response.json()["error"] == "Internal Server Error"
        assert len(errors) == 1

    def test_downstream_errors_untouched(self):
        """Route exceptions are not reported as payment failures."""
        response = make_client().get("/boom", headers=header_for(signed_permit2()))
        assert response.status_code == 500
        assert "Payment processing failed" not in response.text


class TestAuditTrail:
    """Test that payment decisions are audited."""

    def test_challenge_and_verification_audited(self, audit_log_path):
        """402 challenges and verified payments are written to the audit log."""
        client = make_client()
        client.get("/premium")
        client.get("/premium", headers=header_for(signed_permit2()))

        content = audit_log_path.read_text()
        assert "payment_required_sent" in content
        assert "payment_verified" in content

    def test_rejection_audited(self, audit_log_path):
        """Rejections are written to the audit log."""
        make_client().get("/premium", headers=header_for(signed_permit2("500000")))
        assert "payment_rejected" in audit_log_path.read_text()
