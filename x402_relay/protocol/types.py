# x402_relay/protocol/types.py
"""
Wire types for the x402 payment protocol.

A server answers an unpaid request with a ``PaymentRequirement`` (its price
list), the client answers with a signed ``PaymentPayload`` and, when the
payment is settled inline, the server returns a ``PaymentResponse``.

``PaymentPayload`` is a closed union over two schemes, discriminated by the
``scheme`` tag:

- ``permit2``: a batch-witness permit over exactly two transfers of one token
  (net amount to the recipient, fee amount to the treasury), bound to a
  ``{recipient, feeBps}`` witness.
- ``erc3009``: a single transfer-with-authorization addressed to the
  settlement contract, which performs the recipient/treasury split itself.

Scheme-specific fields are only read through the ``payload_*`` accessors
below, which dispatch exhaustively over the union.
"""
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from typing_extensions import Annotated, assert_never

from x402_relay.protocol.errors import InvalidPaymentError, X402Error

X402_VERSION = "2.0.0"

# HTTP headers
X_PAYMENT_REQUIRED_HEADER = "X-PAYMENT-REQUIRED"
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

DEFAULT_FEE_BPS = 50
MAX_FEE_BPS = 1000
BPS_DENOMINATOR = 10_000
DEFAULT_DEADLINE_SECONDS = 300

SCHEME_PERMIT2 = "permit2"
SCHEME_ERC3009 = "erc3009"
SUPPORTED_SCHEMES = (SCHEME_PERMIT2, SCHEME_ERC3009)

# Canonical Permit2 deployment (same address on every EVM chain)
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

# Field formats
Address = Annotated[str, Field(pattern=r"^0x[a-fA-F0-9]{40}$")]
NetworkId = Annotated[str, Field(pattern=r"^eip155:\d+$")]
UintString = Annotated[str, Field(pattern=r"^\d+$")]
Bytes32Hex = Annotated[str, Field(pattern=r"^0x[a-fA-F0-9]{64}$")]
HexSignature = Annotated[str, Field(pattern=r"^0x[a-fA-F0-9]+$")]
FeeBps = Annotated[int, Field(strict=True, ge=0, le=MAX_FEE_BPS)]
PositiveInt = Annotated[int, Field(strict=True, gt=0)]
NonNegativeInt = Annotated[int, Field(strict=True, ge=0)]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with wire (camelCase) names, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Requirement ---

class AcceptOption(WireModel):
    """One way the server is willing to be paid."""
    scheme: Literal["permit2", "erc3009"]
    network: NetworkId
    token: Address
    amount: UintString = Field(..., description="Gross amount in the token's smallest unit.")
    recipient: Address
    settlement: Address = Field(..., description="Settlement contract that executes the transfer.")
    treasury: Address = Field(..., description="Account that receives the protocol fee.")
    feeBps: FeeBps = DEFAULT_FEE_BPS
    maxDeadline: PositiveInt = Field(..., description="Latest acceptable deadline, Unix seconds.")


class PaymentRequirement(WireModel):
    x402Version: str = X402_VERSION
    accepts: List[AcceptOption] = Field(..., min_length=1)
    description: Optional[str] = None
    resource: Optional[str] = None


# --- Batch-witness (permit2) payload ---

class TokenPermission(WireModel):
    token: Address
    amount: UintString


class Permit2Permit(WireModel):
    permitted: List[TokenPermission] = Field(..., min_length=2, max_length=2)
    nonce: UintString
    deadline: PositiveInt

    @model_validator(mode="after")
    def _same_token(self) -> "Permit2Permit":
        net, fee = self.permitted
        if net.token.lower() != fee.token.lower():
            raise ValueError("permitted entries must transfer the same token")
        return self


class SettlementWitness(WireModel):
    recipient: Address
    feeBps: FeeBps


class Permit2Payload(WireModel):
    scheme: Literal["permit2"] = SCHEME_PERMIT2
    network: NetworkId
    permit: Permit2Permit
    witness: SettlementWitness
    spender: Address
    payer: Address
    signature: HexSignature


# --- Authorization-transfer (erc3009) payload ---

class ERC3009Authorization(WireModel):
    from_: Address = Field(..., alias="from")
    to: Address
    value: UintString
    validAfter: NonNegativeInt
    validBefore: PositiveInt
    nonce: Bytes32Hex


class ERC3009Payload(WireModel):
    scheme: Literal["erc3009"] = SCHEME_ERC3009
    network: NetworkId
    authorization: ERC3009Authorization
    recipient: Address
    payer: Address
    signature: HexSignature


PaymentPayload = Annotated[Union[Permit2Payload, ERC3009Payload], Field(discriminator="scheme")]
PAYMENT_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(PaymentPayload)


class PaymentResponse(WireModel):
    success: bool
    txHash: Optional[str] = None
    network: Optional[str] = None
    settlementId: Optional[str] = None
    error: Optional[str] = None


# --- Parsing ---

def _validation_details(exc: ValidationError) -> Dict[str, Any]:
    return {
        "errors": [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
    }


def parse_payment_requirement(data: Any) -> PaymentRequirement:
    """
    Validate a decoded requirement.

    Raises:
        InvalidPaymentError: If any field fails its format constraint
    """
    try:
        return PaymentRequirement.model_validate(data)
    except ValidationError as e:
        raise InvalidPaymentError("Invalid payment requirement", _validation_details(e)) from e


def parse_payment_payload(data: Any) -> PaymentPayload:
    """
    Validate a decoded payload into one of the scheme models.

    Unknown scheme tags, missing fields, malformed hex or numeric strings and
    out-of-range fee rates are all rejected here, before any business logic.

    Raises:
        InvalidPaymentError: If the payload does not match either scheme
    """
    try:
        return PAYMENT_PAYLOAD_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise InvalidPaymentError("Invalid payment payload", _validation_details(e)) from e


# --- Scheme accessors ---

def payload_nonce(payload: PaymentPayload) -> str:
    """Scheme-specific nonce: decimal string (permit2) or bytes32 hex (erc3009)."""
    if isinstance(payload, Permit2Payload):
        return payload.permit.nonce
    if isinstance(payload, ERC3009Payload):
        return payload.authorization.nonce
    assert_never(payload)


def payload_deadline(payload: PaymentPayload) -> int:
    """Unix time after which the authorization is no longer valid."""
    if isinstance(payload, Permit2Payload):
        return payload.permit.deadline
    if isinstance(payload, ERC3009Payload):
        return payload.authorization.validBefore
    assert_never(payload)


def payload_amount(payload: PaymentPayload) -> int:
    """Gross amount authorized, in the token's smallest unit."""
    if isinstance(payload, Permit2Payload):
        return sum(int(entry.amount) for entry in payload.permit.permitted)
    if isinstance(payload, ERC3009Payload):
        return int(payload.authorization.value)
    assert_never(payload)


def payload_recipient(payload: PaymentPayload) -> str:
    if isinstance(payload, Permit2Payload):
        return payload.witness.recipient
    if isinstance(payload, ERC3009Payload):
        return payload.recipient
    assert_never(payload)


def replay_key(payload: PaymentPayload) -> str:
    """Key under which a payload's nonce is claimed in the replay cache."""
    return f"{payload.scheme}:{payload_nonce(payload)}"


# --- Helpers ---

def extract_chain_id(caip_id: str) -> int:
    """
    Extract the numeric chain id from a CAIP-2 id such as ``eip155:8453``.

    Raises:
        X402Error: If the id is not an eip155 network id
    """
    namespace, _, reference = caip_id.partition(":")
    if namespace != "eip155" or not reference.isdigit():
        raise X402Error(f"Invalid CAIP-2 network id: {caip_id}", "INVALID_CAIP_ID", {"network": caip_id})
    return int(reference)


def create_caip_id(chain_id: int) -> str:
    return f"eip155:{chain_id}"


def generate_bytes32_nonce() -> str:
    """Random 32-byte nonce as 0x-prefixed hex (authorization-transfer scheme)."""
    return "0x" + secrets.token_hex(32)


def generate_permit2_nonce() -> str:
    """Random uint256 nonce as a decimal string (batch-witness scheme)."""
    return str(secrets.randbits(256))


def calculate_deadline(seconds: int = DEFAULT_DEADLINE_SECONDS) -> int:
    return int(time.time()) + seconds


@dataclass(frozen=True)
class FeeSplit:
    gross: int
    fee: int
    net: int


def calculate_fee_split(gross: int, fee_bps: int = DEFAULT_FEE_BPS) -> FeeSplit:
    """
    Split a gross amount into fee and net parts.

    The fee is rounded down so ``net + fee == gross`` always holds.
    """
    if gross < 0:
        raise ValueError("gross amount must be non-negative")
    if not 0 <= fee_bps <= MAX_FEE_BPS:
        raise ValueError(f"fee_bps must be between 0 and {MAX_FEE_BPS}")
    fee = gross * fee_bps // BPS_DENOMINATOR
    return FeeSplit(gross=gross, fee=fee, net=gross - fee)


def create_payment_requirement(
    recipient: str,
    amount: str,
    token: str,
    settlement: str,
    treasury: str,
    network: str = "eip155:8453",
    fee_bps: int = DEFAULT_FEE_BPS,
    deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
    schemes: Sequence[str] = (SCHEME_PERMIT2,),
    description: Optional[str] = None,
    resource: Optional[str] = None,
) -> PaymentRequirement:
    """
    Build a requirement with one accept option per scheme and a fresh deadline.

    Args:
        recipient: Address that receives the net amount
        amount: Gross price in the token's smallest unit
        token: Token contract address
        settlement: Settlement contract address
        treasury: Fee-collecting address
        network: CAIP-2 network id
        fee_bps: Protocol fee in basis points
        deadline_seconds: How long the challenge stays payable
        schemes: Accepted schemes, in order of preference
        description: Human-readable description of the resource
        resource: Resource path being paid for

    Returns:
        A validated PaymentRequirement

    Raises:
        ValueError: If the deadline would not lie in the future
        InvalidPaymentError: If any field has an invalid format
    """
    if deadline_seconds <= 0:
        raise ValueError("deadline_seconds must be positive")

    max_deadline = calculate_deadline(deadline_seconds)
    accepts = [
        {
            "scheme": scheme,
            "network": network,
            "token": token,
            "amount": amount,
            "recipient": recipient,
            "settlement": settlement,
            "treasury": treasury,
            "feeBps": fee_bps,
            "maxDeadline": max_deadline,
        }
        for scheme in schemes
    ]
    return parse_payment_requirement({
        "x402Version": X402_VERSION,
        "accepts": accepts,
        "description": description,
        "resource": resource,
    })


# --- EIP-712 definitions ---

def permit2_domain(chain_id: int) -> Dict[str, Any]:
    return {
        "name": "Permit2",
        "chainId": chain_id,
        "verifyingContract": PERMIT2_ADDRESS,
    }


PERMIT2_BATCH_WITNESS_TYPES: Dict[str, List[Dict[str, str]]] = {
    "PermitBatchWitnessTransferFrom": [
        {"name": "permitted", "type": "TokenPermissions[]"},
        {"name": "spender", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
        {"name": "witness", "type": "SettlementWitness"},
    ],
    "TokenPermissions": [
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint256"},
    ],
    "SettlementWitness": [
        {"name": "recipient", "type": "address"},
        {"name": "feeBps", "type": "uint256"},
    ],
}


def erc3009_domain(token: str, name: str, chain_id: int, version: str = "2") -> Dict[str, Any]:
    return {
        "name": name,
        "version": version,
        "chainId": chain_id,
        "verifyingContract": token,
    }


ERC3009_TYPES: Dict[str, List[Dict[str, str]]] = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}
