# tests/test_x402_encoding.py
"""
Unit tests for x402 header encoding.
"""
import base64
import json

import pytest
from x402.encoding import safe_base64_decode, safe_base64_encode

from x402_relay.protocol.encoding import (
    decode_header,
    decode_payment_payload,
    decode_payment_requirement,
    decode_payment_response,
    encode_payment_payload,
    encode_payment_requirement,
    encode_payment_response,
)
from x402_relay.protocol.errors import InvalidPaymentError
from x402_relay.protocol.types import PaymentResponse

from helpers import make_requirement, signed_erc3009, signed_permit2


class TestDecodeHeader:
    """Test generic header decoding."""

    def test_base64_json(self):
        """Base64-encoded JSON objects decode to dicts."""
        value = base64.b64encode(json.dumps({"a": 1}).encode()).decode()
        assert decode_header(value) == {"a": 1}

    def test_raw_json_accepted(self):
        """Unencoded JSON objects are accepted."""
        assert decode_header('{"a": 1}') == {"a": 1}

    def test_sdk_encoded_header(self):
        """Headers produced by the x402 SDK helper decode."""
        assert decode_header(safe_base64_encode('{"scheme": "permit2"}')) == {"scheme": "permit2"}

    def test_requirement_header_readable_by_sdk(self):
        """Encoded requirements are plain base64 JSON for the SDK decoder."""
        header = encode_payment_requirement(make_requirement())
        assert json.loads(safe_base64_decode(header))["accepts"][0]["scheme"] == "permit2"

    @pytest.mark.parametrize("value", ["%%%", "not base64!!", "bm90IGpzb24="])
    def test_invalid_base64(self, value):
        """Garbage and non-JSON content raise InvalidPaymentError."""
        with pytest.raises(InvalidPaymentError):
            decode_header(value)

    def test_non_object_rejected(self):
        """JSON arrays are rejected."""
        value = base64.b64encode(b"[1, 2]").decode()
        with pytest.raises(InvalidPaymentError):
            decode_header(value)


class TestMessageEncoding:
    """Test encoding of the three x402 messages."""

    def test_requirement_round_trip(self):
        """A requirement decodes back to an equal model."""
        requirement = make_requirement()
        assert decode_payment_requirement(encode_payment_requirement(requirement)) == requirement

    def test_permit2_payload_round_trip(self):
        """A signed permit2 payload decodes back to an equal model."""
        payload = signed_permit2()
        assert decode_payment_payload(encode_payment_payload(payload)) == payload

    def test_erc3009_payload_uses_wire_names(self):
        """Encoded erc3009 payloads use the 'from' key, not 'from_'."""
        payload = signed_erc3009()
        decoded = json.loads(base64.b64decode(encode_payment_payload(payload)))
        assert "from" in decoded["authorization"]
        assert "from_" not in decoded["authorization"]

    def test_response_omits_unset_fields(self):
        """None-valued response fields are not encoded."""
        header = encode_payment_response(PaymentResponse(success=True, txHash="0xabc"))
        decoded = json.loads(base64.b64decode(header))
        assert decoded == {"success": True, "txHash": "0xabc"}
        assert decode_payment_response(header).txHash == "0xabc"

    def test_invalid_payload_header(self):
        """Headers that decode but fail schema validation raise InvalidPaymentError."""
        header = base64.b64encode(json.dumps({"scheme": "permit2"}).encode()).decode()
        with pytest.raises(InvalidPaymentError):
            decode_payment_payload(header)
