# x402_relay/protocol/encoding.py
"""
Header encoding for x402 messages.

Requirements, payloads and responses travel in HTTP headers as base64-encoded
JSON. Decoders also accept a bare JSON object, since some proxies and test
tools pass the JSON through unencoded.
"""
import binascii
import json
import logging
from typing import Any, Dict

from x402.encoding import safe_base64_decode, safe_base64_encode

from x402_relay.protocol.errors import InvalidPaymentError
from x402_relay.protocol.types import (
    PaymentPayload,
    PaymentRequirement,
    PaymentResponse,
    WireModel,
    parse_payment_payload,
    parse_payment_requirement,
)

logger = logging.getLogger(__name__)


def encode_header(model: WireModel) -> str:
    """Serialize a wire model to a base64 header value."""
    return safe_base64_encode(json.dumps(model.to_wire(), separators=(",", ":")))


def decode_header(header_value: str) -> Dict[str, Any]:
    """
    Decode a header value into a JSON object.

    Raises:
        InvalidPaymentError: If the value is neither base64 JSON nor raw JSON,
            or does not hold a JSON object
    """
    value = header_value.strip()
    try:
        if value.startswith("{"):
            decoded = json.loads(value)
        else:
            decoded = json.loads(safe_base64_decode(value))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Failed to decode x402 header: {e}")
        raise InvalidPaymentError("Header is not valid base64-encoded JSON") from e

    if not isinstance(decoded, dict):
        raise InvalidPaymentError("Header must contain a JSON object")
    return decoded


def encode_payment_requirement(requirement: PaymentRequirement) -> str:
    return encode_header(requirement)


def decode_payment_requirement(header_value: str) -> PaymentRequirement:
    return parse_payment_requirement(decode_header(header_value))


def encode_payment_payload(payload: PaymentPayload) -> str:
    return encode_header(payload)


def decode_payment_payload(header_value: str) -> PaymentPayload:
    return parse_payment_payload(decode_header(header_value))


def encode_payment_response(response: PaymentResponse) -> str:
    return encode_header(response)


def decode_payment_response(header_value: str) -> PaymentResponse:
    try:
        return PaymentResponse.model_validate(decode_header(header_value))
    except ValueError as e:
        raise InvalidPaymentError("Invalid payment response header") from e
