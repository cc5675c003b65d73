# x402_relay/api/models/facilitator.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SettleRequest(BaseModel):
    """
    Request model for a handle/address settlement.
    """
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from", min_length=1, description="Payer handle or address")
    to: str = Field(..., min_length=1, description="Recipient handle or address")
    amount: str = Field(..., min_length=1, description="Gross amount as a decimal string, e.g. \"100.00\"")
    token: str = Field(default="USDC", description="Token symbol")
    network: str = Field(default="eip155:8453", description="CAIP-2 network id")


class VerifyRequest(BaseModel):
    """
    Request model for a payer pre-check.
    """
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from", min_length=1, description="Payer handle or address")
    amount: str = Field(..., min_length=1)
    token: str = "USDC"
    network: str = "eip155:8453"


class SettleResponse(BaseModel):
    """
    Response model for a confirmed settlement.
    """
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    settlement_id: str
    status: str
    tx_hash: Optional[str] = None
    from_: str = Field(..., alias="from")
    from_address: str
    from_handle: Optional[str] = None
    to: str
    to_address: str
    to_handle: Optional[str] = None
    amount: str
    fee: str
    gas: str
    net: str
    token: str
    network: str
    explorer_url: Optional[str] = None


class VerifyResponse(BaseModel):
    valid: bool
    signer: Optional[str] = None
    registered: Optional[bool] = None
    balanceSufficient: Optional[bool] = None
    error: Optional[str] = None


class HistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str = Field(..., description="payment_sent or payment_received")
    status: str
    amount: str
    token: str
    fee: str
    gas: str
    from_: str = Field(..., alias="from")
    to: str
    tx_hash: Optional[str] = None
    network: str
    timestamp: int


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int


class HistoryResponse(BaseModel):
    """
    Response model for settlement history. Exactly one of handle/address is set.
    """
    handle: Optional[str] = None
    address: Optional[str] = None
    transactions: List[HistoryEntry]
    pagination: Pagination


class SupportedNetwork(BaseModel):
    id: str
    name: str
    tokens: List[str]
    schemes: List[str]


class SupportedResponse(BaseModel):
    networks: List[SupportedNetwork]
    schemes: List[str]
    mode: str
    fee_rate: str
    fee_bps: int
    fee_description: str
    gas_estimate: str
    treasury_address: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: str
    mode: str


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Machine-readable error code")
    message: str
    details: Optional[Dict[str, Any]] = None
