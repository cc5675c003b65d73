# x402_relay/api/endpoints/facilitator.py
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
import logging

from x402_relay.api.dependencies import get_settlement_service
from x402_relay.api.models.facilitator import (
    ErrorResponse,
    HealthResponse,
    HistoryResponse,
    SettleRequest,
    SettleResponse,
    SupportedResponse,
    VerifyRequest,
    VerifyResponse,
)
from x402_relay.core.config import settings
from x402_relay.core.version import VERSION
from x402_relay.protocol.errors import InvalidPaymentError
from x402_relay.protocol.middleware import payment_error_response
from x402_relay.protocol.networks import is_network_supported
from x402_relay.protocol.types import parse_payment_payload
from x402_relay.services.settlement import ON_CHAIN_ERROR_CODES, SettlementError, SettlementService

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def settlement_error_status(error: SettlementError) -> int:
    """HTTP status for a settlement error code."""
    if error.code == "NOT_FOUND":
        return 404
    if error.code in ON_CHAIN_ERROR_CODES:
        return 502
    return 400


def settlement_error_response(error: SettlementError) -> JSONResponse:
    details = {key: value for key, value in (("settlement_id", error.settlement_id), ("tx_hash", error.tx_hash)) if value}
    return payment_error_response(settlement_error_status(error), error.code, error.message, details or None)


def internal_error_response(message: str) -> JSONResponse:
    return payment_error_response(500, "INTERNAL_ERROR", message)


@router.get("/health", response_model=HealthResponse, summary="Health Check")
async def health(service: SettlementService = Depends(get_settlement_service)) -> HealthResponse:
    """ Liveness check. """
    return HealthResponse(
        status="healthy",
        service=settings.SERVICE_NAME,
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        mode=service.mode,
    )


@router.get("/supported", response_model=SupportedResponse)
async def supported(service: SettlementService = Depends(get_settlement_service)) -> Dict[str, Any]:
    """
    List supported networks, tokens, schemes and the fee schedule.
    """
    return service.supported()


@router.post("/x402/settle", responses=ERROR_RESPONSES)
async def settle_x402_payment(
    request: Request,
    service: SettlementService = Depends(get_settlement_service),
):
    """
    Settle a signed x402 payment payload on-chain.

    Returns:
        PaymentResponse with the transaction hash

    Raises:
        400: INVALID_REQUEST for a malformed payload, UNSUPPORTED_NETWORK for
             an unknown network, or a settlement validation error
        404: NOT_FOUND
        502: On-chain failure (revert, timeout, broadcast error)
    """
    try:
        body = await request.json()
    except ValueError:
        return payment_error_response(400, "INVALID_REQUEST", "Request body must be JSON")

    try:
        payload = parse_payment_payload(body)
    except InvalidPaymentError as e:
        return payment_error_response(400, "INVALID_REQUEST", e.message, e.details)

    if not is_network_supported(payload.network):
        return payment_error_response(
            400, "UNSUPPORTED_NETWORK", f'Network "{payload.network}" is not supported'
        )

    try:
        result = await run_in_threadpool(service.settle_payment, payload)
    except SettlementError as e:
        logger.warning(f"x402 settlement rejected [{e.code}]: {e.message}")
        return settlement_error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error settling x402 payment: {e}", exc_info=True)
        return internal_error_response("Settlement failed")

    logger.info(f"x402 payment settled: {result.txHash} ({payload.scheme} from {payload.payer})")
    return result.to_wire()


@router.post("/settle", response_model=SettleResponse, responses=ERROR_RESPONSES)
def settle(
    settle_request: SettleRequest,
    service: SettlementService = Depends(get_settlement_service),
):
    """
    Pay a handle or address, deducting the settlement fee and gas estimate.

    Args:
        settle_request: Payer, payee, gross amount, token and network

    Returns:
        SettleResponse for the confirmed settlement
    """
    try:
        result = service.settle(
            settle_request.from_,
            settle_request.to,
            settle_request.amount,
            token=settle_request.token,
            network=settle_request.network,
        )
    except SettlementError as e:
        logger.warning(f"Settlement rejected [{e.code}]: {e.message}")
        return settlement_error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error during settlement: {e}", exc_info=True)
        return internal_error_response("Settlement failed")

    return result.to_dict()


@router.post("/verify", response_model=VerifyResponse, response_model_exclude_none=True, responses=ERROR_RESPONSES)
def verify(
    verify_request: VerifyRequest,
    service: SettlementService = Depends(get_settlement_service),
):
    """
    Check that a payer is known and can cover the amount plus fee.
    """
    try:
        return service.verify_payment(
            verify_request.from_,
            verify_request.amount,
            token=verify_request.token,
            network=verify_request.network,
        )
    except SettlementError as e:
        return settlement_error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error during verification: {e}", exc_info=True)
        return internal_error_response("Verification failed")


@router.get("/history/{identifier}", response_model=HistoryResponse, response_model_exclude_none=True, responses=ERROR_RESPONSES)
def history(
    identifier: str,
    limit: int = Query(default=20, ge=1, le=100, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Number of entries to skip"),
    service: SettlementService = Depends(get_settlement_service),
):
    """
    Settlement history for a handle or raw address, newest first.
    """
    try:
        return service.get_history(identifier, limit=limit, offset=offset)
    except SettlementError as e:
        return settlement_error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error reading history for {identifier}: {e}", exc_info=True)
        return internal_error_response("History lookup failed")
