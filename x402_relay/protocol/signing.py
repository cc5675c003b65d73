# x402_relay/protocol/signing.py
"""
EIP-712 signing and signer recovery for both payment schemes.
"""
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_bytes, to_checksum_address
from typing_extensions import assert_never

from x402_relay.protocol.errors import PaymentExpiredError, PaymentVerificationError, X402Error
from x402_relay.protocol.networks import get_erc3009_token, get_token_by_address
from x402_relay.protocol.types import (
    DEFAULT_DEADLINE_SECONDS,
    ERC3009_TYPES,
    PERMIT2_BATCH_WITNESS_TYPES,
    AcceptOption,
    ERC3009Payload,
    PaymentPayload,
    Permit2Payload,
    calculate_fee_split,
    erc3009_domain,
    extract_chain_id,
    generate_bytes32_nonce,
    generate_permit2_nonce,
    permit2_domain,
)

logger = logging.getLogger(__name__)

TypedData = Tuple[Dict[str, Any], Dict[str, List[Dict[str, str]]], Dict[str, Any]]


def _hex_signature(signature: bytes) -> str:
    signature_hex = signature.hex()
    if not signature_hex.startswith("0x"):
        signature_hex = f"0x{signature_hex}"
    return signature_hex


def permit2_typed_data(
    network: str,
    permitted: List[Dict[str, Any]],
    spender: str,
    nonce: str,
    deadline: int,
    recipient: str,
    fee_bps: int,
) -> TypedData:
    """Domain, types and message for a batch-witness permit."""
    message = {
        "permitted": [
            {"token": to_checksum_address(entry["token"]), "amount": int(entry["amount"])}
            for entry in permitted
        ],
        "spender": to_checksum_address(spender),
        "nonce": int(nonce),
        "deadline": deadline,
        "witness": {
            "recipient": to_checksum_address(recipient),
            "feeBps": fee_bps,
        },
    }
    return permit2_domain(extract_chain_id(network)), PERMIT2_BATCH_WITNESS_TYPES, message


def erc3009_typed_data(
    network: str,
    token_address: str,
    token_name: str,
    token_version: str,
    authorization: Dict[str, Any],
) -> TypedData:
    """Domain, types and message for a transfer-with-authorization."""
    domain = erc3009_domain(
        to_checksum_address(token_address), token_name, extract_chain_id(network), token_version
    )
    message = {
        "from": to_checksum_address(authorization["from"]),
        "to": to_checksum_address(authorization["to"]),
        "value": int(authorization["value"]),
        "validAfter": int(authorization["validAfter"]),
        "validBefore": int(authorization["validBefore"]),
        "nonce": to_bytes(hexstr=authorization["nonce"]),
    }
    return domain, ERC3009_TYPES, message


def _signing_deadline(option: AcceptOption, deadline_seconds: int) -> int:
    now = int(time.time())
    if option.maxDeadline <= now:
        raise PaymentExpiredError(option.maxDeadline)
    return min(option.maxDeadline, now + deadline_seconds)


def sign_permit2_payment(
    account: Any,
    option: AcceptOption,
    deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
) -> Permit2Payload:
    """
    Sign a batch-witness permit for an accept option.

    The gross amount is split into ``net`` (to the recipient) and ``fee``
    (to the treasury) with ``fee = amount * feeBps // 10000``.

    Args:
        account: eth_account LocalAccount of the payer
        option: The accept option chosen from the server's requirement
        deadline_seconds: Requested validity, capped at the option's maxDeadline

    Returns:
        A signed Permit2Payload

    Raises:
        PaymentExpiredError: If the option's maxDeadline has already passed
    """
    split = calculate_fee_split(int(option.amount), option.feeBps)
    permitted = [
        {"token": option.token, "amount": str(split.net)},
        {"token": option.token, "amount": str(split.fee)},
    ]
    nonce = generate_permit2_nonce()
    deadline = _signing_deadline(option, deadline_seconds)

    domain, types, message = permit2_typed_data(
        option.network, permitted, option.settlement, nonce, deadline, option.recipient, option.feeBps
    )
    signed = account.sign_typed_data(domain_data=domain, message_types=types, message_data=message)

    logger.debug(f"Signed permit2 payment: net={split.net} fee={split.fee} deadline={deadline}")
    return Permit2Payload(
        network=option.network,
        permit={"permitted": permitted, "nonce": nonce, "deadline": deadline},
        witness={"recipient": option.recipient, "feeBps": option.feeBps},
        spender=option.settlement,
        payer=account.address,
        signature=_hex_signature(signed.signature),
    )


def sign_erc3009_payment(
    account: Any,
    option: AcceptOption,
    deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
    token_name: Optional[str] = None,
    token_version: Optional[str] = None,
) -> ERC3009Payload:
    """
    Sign a transfer-with-authorization of the gross amount to the settlement contract.

    The settlement contract splits the transferred value into recipient and
    treasury parts, so the authorization carries the gross amount.

    Raises:
        X402Error: If the token's EIP-712 name is unknown
        PaymentExpiredError: If the option's maxDeadline has already passed
    """
    token = get_token_by_address(option.network, option.token)
    name = token_name or (token.name if token else None)
    if name is None:
        raise X402Error(
            f"Unknown EIP-712 domain name for token {option.token}",
            "UNKNOWN_TOKEN",
            {"token": option.token, "network": option.network},
        )
    version = token_version or (token.eip712_version if token else "2")

    authorization = {
        "from": account.address,
        "to": to_checksum_address(option.settlement),
        "value": option.amount,
        "validAfter": 0,
        "validBefore": _signing_deadline(option, deadline_seconds),
        "nonce": generate_bytes32_nonce(),
    }
    domain, types, message = erc3009_typed_data(option.network, option.token, name, version, authorization)
    signed = account.sign_typed_data(domain_data=domain, message_types=types, message_data=message)

    return ERC3009Payload(
        network=option.network,
        authorization=authorization,
        recipient=option.recipient,
        payer=account.address,
        signature=_hex_signature(signed.signature),
    )


def payload_typed_data(payload: PaymentPayload) -> TypedData:
    """Rebuild the typed data a payload's signature must cover."""
    if isinstance(payload, Permit2Payload):
        return permit2_typed_data(
            payload.network,
            [entry.model_dump() for entry in payload.permit.permitted],
            payload.spender,
            payload.permit.nonce,
            payload.permit.deadline,
            payload.witness.recipient,
            payload.witness.feeBps,
        )
    if isinstance(payload, ERC3009Payload):
        token = get_erc3009_token(payload.network)
        if token is None:
            raise PaymentVerificationError(
                f"No authorization-transfer token on network {payload.network}",
                {"network": payload.network},
            )
        return erc3009_typed_data(
            payload.network,
            token.address,
            token.name,
            token.eip712_version,
            payload.authorization.model_dump(by_alias=True),
        )
    assert_never(payload)


def recover_payload_signer(payload: PaymentPayload) -> str:
    """
    Recover the address that signed a payload.

    Raises:
        PaymentVerificationError: If the signature cannot be recovered
    """
    domain, types, message = payload_typed_data(payload)
    try:
        signable = encode_typed_data(domain_data=domain, message_types=types, message_data=message)
        return Account.recover_message(signable, signature=to_bytes(hexstr=payload.signature))
    except Exception as e:
        logger.warning(f"Signature recovery failed: {e}")
        raise PaymentVerificationError("Signature could not be recovered") from e


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """
    Split a 65-byte packed signature into (v, r, s).

    Raises:
        ValueError: If the signature is not 65 bytes
    """
    raw = to_bytes(hexstr=signature)
    if len(raw) != 65:
        raise ValueError(f"Expected a 65-byte signature, got {len(raw)} bytes")
    r, s, v = raw[:32], raw[32:64], raw[64]
    if v < 27:
        v += 27
    return v, r, s
