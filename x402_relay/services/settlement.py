# x402_relay/services/settlement.py
"""
Settlement of verified x402 payments.

Two implementations share one interface and are chosen once at startup:

- LiveSettlementService: broadcasts real transactions through per-network
  chain clients signed by the treasury key.
- SimulatedSettlementService: for development; produces a synthetic
  transaction hash and confirms immediately. Never used unless selected.

Every attempt creates a ledger record in ``pending`` and always leaves it
terminal (``confirmed`` or ``failed``) when the call returns.

The payer has already delivered the gross amount to the treasury through the
verified authorization, so live ``settle`` only transfers the net amount out:
the fee is retained by not sending it.
"""
import abc
import logging
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, Mapping, Optional

from eth_account import Account
from eth_utils import is_address, to_bytes, to_checksum_address
from typing_extensions import assert_never

from x402_relay.protocol import audit
from x402_relay.protocol.networks import (
    get_erc3009_token,
    get_supported_network_ids,
    get_token_by_address,
    get_token_for_network,
    get_tx_url,
    format_token_amount,
    parse_token_amount,
    SUPPORTED_NETWORKS,
)
from x402_relay.protocol.signing import split_signature
from x402_relay.protocol.types import (
    BPS_DENOMINATOR,
    ERC3009Payload,
    PaymentPayload,
    PaymentResponse,
    Permit2Payload,
    SUPPORTED_SCHEMES,
    payload_amount,
    payload_deadline,
    payload_recipient,
)
from x402_relay.services.chain_clients import ChainClients, ReceiptTimeoutError, build_chain_clients
from x402_relay.services.contracts import ERC20_ABI, SETTLEMENT_ABI
from x402_relay.services.identity import IdentityDirectory, InMemoryIdentityDirectory, normalize_handle
from x402_relay.services.ledger import InMemoryLedger, Transaction, TransactionLedger, TransactionStatus

logger = logging.getLogger(__name__)

DEFAULT_FEE_RATE = Decimal("0.005")
DEFAULT_FEE_BPS = 50
DEFAULT_GAS_ESTIMATE = Decimal("0.02")
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120

# Error codes that describe on-chain execution problems (as opposed to bad input)
ON_CHAIN_ERROR_CODES = {"TX_REVERTED", "TX_UNCONFIRMED", "SETTLEMENT_FAILED"}


class SettlementError(Exception):
    """A settlement could not be completed. ``code`` is machine-readable."""

    def __init__(
        self,
        message: str,
        code: str,
        settlement_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.settlement_id = settlement_id
        self.tx_hash = tx_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "settlement_id": self.settlement_id,
            "tx_hash": self.tx_hash,
        }


# --- Fee math ---

def format_amount(value: Decimal) -> str:
    """Two decimals for amounts of at least 0.01, six for smaller ones."""
    exponent = Decimal("0.01") if abs(value) >= Decimal("0.01") else Decimal("0.000001")
    return format(value.quantize(exponent, rounding=ROUND_HALF_UP), "f")


def parse_amount(amount: str) -> Decimal:
    """
    Parse a human decimal amount.

    Raises:
        SettlementError: INVALID_AMOUNT if not a positive finite decimal
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise SettlementError(f"Invalid amount: {amount!r}", "INVALID_AMOUNT") from e
    if not value.is_finite() or value <= 0:
        raise SettlementError(f"Invalid amount: {amount!r}", "INVALID_AMOUNT")
    return value


@dataclass(frozen=True)
class FeeQuote:
    amount: str
    fee: str
    gas: str
    net: str
    # unrounded net; transfers truncate this to token units
    net_value: Decimal = field(compare=False, repr=False)


def quote_settlement(
    amount: str,
    fee_rate: Decimal = DEFAULT_FEE_RATE,
    gas_estimate: Decimal = DEFAULT_GAS_ESTIMATE,
) -> FeeQuote:
    """
    Compute fee and net for a settlement.

    ``fee = amount * fee_rate`` and ``net = amount - fee - gas``, e.g.
    "100.00" at 0.5% with 0.02 gas gives fee "0.50" and net "99.48".

    Raises:
        SettlementError: INVALID_AMOUNT or AMOUNT_TOO_SMALL (net <= 0)
    """
    value = parse_amount(amount)
    fee = format_amount(value * fee_rate)
    net_value = value - Decimal(fee) - gas_estimate
    if net_value <= 0:
        raise SettlementError(
            f"Amount too small: {amount} does not cover fee {fee} and gas {gas_estimate}",
            "AMOUNT_TOO_SMALL",
        )
    return FeeQuote(
        amount=str(amount),
        fee=fee,
        gas=format_amount(gas_estimate),
        net=format_amount(net_value),
        net_value=net_value,
    )


@dataclass(frozen=True)
class SettlementResult:
    settlement_id: str
    status: TransactionStatus
    tx_hash: Optional[str]
    from_identifier: str
    from_address: str
    to_identifier: str
    to_address: str
    amount: str
    fee: str
    gas: str
    net: str
    token: str
    network: str
    explorer_url: Optional[str] = None
    from_handle: Optional[str] = None
    to_handle: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == TransactionStatus.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "settlement_id": self.settlement_id,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "from": self.from_identifier,
            "from_address": self.from_address,
            "from_handle": self.from_handle,
            "to": self.to_identifier,
            "to_address": self.to_address,
            "to_handle": self.to_handle,
            "amount": self.amount,
            "fee": self.fee,
            "gas": self.gas,
            "net": self.net,
            "token": self.token,
            "network": self.network,
            "explorer_url": self.explorer_url,
        }


# --- Service interface ---

class SettlementService(abc.ABC):
    """
    Common settlement orchestration.

    Subclasses implement the execution steps; this class owns identity
    resolution, fee checks, ledger bookkeeping, and failure handling.
    """

    mode: str = ""

    def __init__(
        self,
        identity: IdentityDirectory,
        ledger: TransactionLedger,
        fee_rate: Decimal = DEFAULT_FEE_RATE,
        fee_bps: int = DEFAULT_FEE_BPS,
        gas_estimate: Decimal = DEFAULT_GAS_ESTIMATE,
        clock: Callable[[], float] = time.time,
    ):
        self.identity = identity
        self.ledger = ledger
        self.fee_rate = Decimal(fee_rate)
        self.fee_bps = fee_bps
        self.gas_estimate = Decimal(gas_estimate)
        self._clock = clock

    @property
    def treasury_address(self) -> Optional[str]:
        return None

    # --- Public operations ---

    def settle(
        self,
        from_: str,
        to: str,
        amount: str,
        token: str = "USDC",
        network: str = "eip155:8453",
    ) -> SettlementResult:
        """
        Pay ``amount`` (gross, human units) minus fee and gas to ``to``.

        Args:
            from_: Payer handle or address
            to: Recipient handle or address
            amount: Gross amount as a decimal string
            token: Token symbol
            network: CAIP-2 network id

        Returns:
            SettlementResult of a confirmed settlement

        Raises:
            SettlementError: On any failure; the ledger record (if one was
                created) is left ``failed``
        """
        from_address = self._resolve(from_)
        to_address = self._resolve(to)
        quote = quote_settlement(amount, self.fee_rate, self.gas_estimate)

        from_handle = self._handle_for(from_, from_address)
        to_handle = self._handle_for(to, to_address)
        token_symbol = token.upper()

        record = self.ledger.create(Transaction(
            from_identifier=from_handle or from_address,
            to_identifier=to_handle or to_address,
            to_address=to_address,
            amount=quote.amount,
            token=token_symbol,
            network=network,
            fee=quote.fee,
            gas_cost=quote.gas,
        ))
        logger.info(
            f"Settlement {record.id} created: {record.from_identifier} -> {record.to_identifier} "
            f"{quote.amount} {token_symbol} on {network} (fee {quote.fee}, net {quote.net})"
        )
        audit.log_settlement_created(
            record.id, record.from_identifier, to_address, quote.amount, token_symbol, network, quote.fee
        )

        tx_hash = self._run(record, lambda: self._execute_transfer(record, to_address, quote, token_symbol, network))

        return SettlementResult(
            settlement_id=record.id,
            status=TransactionStatus.CONFIRMED,
            tx_hash=tx_hash,
            from_identifier=from_,
            from_address=from_address,
            to_identifier=to,
            to_address=to_address,
            amount=quote.amount,
            fee=quote.fee,
            gas=quote.gas,
            net=quote.net,
            token=token_symbol,
            network=network,
            explorer_url=get_tx_url(network, tx_hash),
            from_handle=from_handle,
            to_handle=to_handle,
        )

    def settle_payment(self, payload: PaymentPayload) -> PaymentResponse:
        """
        Execute a signed x402 payload through the settlement contract.

        Returns:
            PaymentResponse with the confirmed transaction hash

        Raises:
            SettlementError: PAYMENT_EXPIRED before any ledger write, or any
                execution failure (record left ``failed``)
        """
        deadline = payload_deadline(payload)
        if deadline <= self._clock():
            raise SettlementError("Payment deadline has passed", "PAYMENT_EXPIRED")

        gross = payload_amount(payload)
        fee_units = self._payload_fee_units(payload, gross)
        token_symbol, decimals = self._payload_token(payload)
        recipient = to_checksum_address(payload_recipient(payload))

        def human(units: int) -> str:
            return format_token_amount(units, decimals) if decimals is not None else str(units)

        record = self.ledger.create(Transaction(
            from_identifier=to_checksum_address(payload.payer),
            to_identifier=recipient,
            to_address=recipient,
            amount=human(gross),
            token=token_symbol,
            network=payload.network,
            fee=human(fee_units),
            gas_cost="0",
        ))
        logger.info(
            f"x402 settlement {record.id} created: {payload.scheme} {payload.payer} -> {recipient} "
            f"{record.amount} {token_symbol} on {payload.network}"
        )
        audit.log_settlement_created(
            record.id, record.from_identifier, recipient, record.amount, token_symbol, payload.network, record.fee
        )

        tx_hash = self._run(record, lambda: self._execute_payment(record, payload))
        return PaymentResponse(success=True, txHash=tx_hash, network=payload.network, settlementId=record.id)

    def verify_payment(
        self,
        from_: str,
        amount: str,
        token: str = "USDC",
        network: str = "eip155:8453",
    ) -> Dict[str, Any]:
        """
        Check that a payer is known and (when possible) able to cover ``amount`` plus fee.

        Returns:
            ``{valid, signer, registered, balanceSufficient?}`` or
            ``{valid: False, error}`` for an unknown handle
        """
        value = parse_amount(amount)
        if is_address(from_):
            address = to_checksum_address(from_)
            registered = self.identity.resolve_address(address) is not None
        else:
            address = self.identity.resolve_handle(from_)
            if address is None:
                return {"valid": False, "error": f'Handle "{from_}" not found'}
            registered = True

        result: Dict[str, Any] = {"valid": True, "signer": address, "registered": registered}
        required = value * (1 + self.fee_rate)
        sufficient = self._balance_sufficient(address, required, token.upper(), network)
        if sufficient is not None:
            result["balanceSufficient"] = sufficient
        return result

    def get_history(self, identifier: str, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        """
        Paginated settlement history for a handle or raw address.

        Raises:
            SettlementError: NOT_FOUND if a handle does not resolve
        """
        if is_address(identifier):
            address = to_checksum_address(identifier)
            handle = self.identity.resolve_address(address)
        else:
            address = self.identity.resolve_handle(identifier)
            if address is None:
                raise SettlementError(f'Handle "{identifier}" not found', "NOT_FOUND")
            handle = normalize_handle(identifier)

        key = handle or address
        transactions, total = self.ledger.list_by_identifier(key, limit, offset)

        result: Dict[str, Any] = {"handle": handle} if handle else {"address": address}
        result["transactions"] = [
            {
                "id": tx.id,
                "type": "payment_sent" if tx.from_identifier.lower() == key.lower() else "payment_received",
                "status": tx.status.value,
                "amount": tx.amount,
                "token": tx.token,
                "fee": tx.fee,
                "gas": tx.gas_cost,
                "from": tx.from_identifier,
                "to": tx.to_address,
                "tx_hash": tx.tx_hash,
                "network": tx.network,
                "timestamp": tx.created_at,
            }
            for tx in transactions
        ]
        result["pagination"] = {"limit": limit, "offset": offset, "total": total}
        return result

    def fee_schedule(self) -> Dict[str, Any]:
        percent = (self.fee_rate * 100).normalize()
        return {
            "fee_rate": str(self.fee_rate),
            "fee_bps": self.fee_bps,
            "fee_description": f"{self.fee_bps}bps ({format(percent, 'f')}%)",
            "gas_estimate": format_amount(self.gas_estimate),
            "treasury_address": self.treasury_address,
        }

    def supported(self) -> Dict[str, Any]:
        """Networks, tokens, schemes and fees served by this service."""
        return {
            "networks": [
                {
                    "id": network_id,
                    "name": SUPPORTED_NETWORKS[network_id].name,
                    "tokens": list(SUPPORTED_NETWORKS[network_id].tokens),
                    "schemes": self._schemes_for(network_id),
                }
                for network_id in self.supported_network_ids()
            ],
            "schemes": list(SUPPORTED_SCHEMES),
            "mode": self.mode,
            **self.fee_schedule(),
        }

    def supported_network_ids(self):
        return get_supported_network_ids()

    # --- Steps implemented per mode ---

    @abc.abstractmethod
    def _execute_transfer(
        self,
        record: Transaction,
        to_address: str,
        quote: FeeQuote,
        token: str,
        network: str,
    ) -> str:
        """Move the truncated net to ``to_address``; mark submitted/confirmed; return the hash."""

    @abc.abstractmethod
    def _execute_payment(self, record: Transaction, payload: PaymentPayload) -> str:
        """Execute a signed payload; mark submitted/confirmed; return the hash."""

    def _balance_sufficient(self, address: str, required: Decimal, token: str, network: str) -> Optional[bool]:
        return None

    # --- Helpers ---

    def _schemes_for(self, network: str):
        schemes = ["permit2"]
        if get_erc3009_token(network) is not None:
            schemes.append("erc3009")
        return schemes

    def _resolve(self, identifier: str) -> str:
        if is_address(identifier):
            return to_checksum_address(identifier)
        address = self.identity.resolve_handle(identifier)
        if address is None:
            raise SettlementError(f'Handle "{identifier}" not found', "NOT_FOUND")
        return to_checksum_address(address)

    def _handle_for(self, identifier: str, address: str) -> Optional[str]:
        if is_address(identifier):
            return self.identity.resolve_address(address)
        return normalize_handle(identifier)

    def _payload_fee_units(self, payload: PaymentPayload, gross: int) -> int:
        if isinstance(payload, Permit2Payload):
            return int(payload.permit.permitted[1].amount)
        if isinstance(payload, ERC3009Payload):
            return gross * self.fee_bps // BPS_DENOMINATOR
        assert_never(payload)

    def _payload_token(self, payload: PaymentPayload):
        if isinstance(payload, Permit2Payload):
            token = get_token_by_address(payload.network, payload.permit.permitted[0].token)
            if token is None:
                return payload.permit.permitted[0].token, None
            return token.symbol, token.decimals
        if isinstance(payload, ERC3009Payload):
            token = get_erc3009_token(payload.network)
            if token is None:
                return "USDC", None
            return token.symbol, token.decimals
        assert_never(payload)

    def _transition(self, record: Transaction, status: TransactionStatus, tx_hash: Optional[str] = None) -> Transaction:
        updated = self.ledger.update_status(record.id, status, tx_hash)
        logger.info(f"Settlement {record.id}: {status.value}" + (f" ({tx_hash})" if tx_hash else ""))
        if status == TransactionStatus.SUBMITTED:
            audit.log_settlement_submitted(record.id, tx_hash, record.network)
        elif status == TransactionStatus.CONFIRMED:
            audit.log_settlement_confirmed(record.id, updated.tx_hash, record.network)
        return updated

    def _run(self, record: Transaction, execute: Callable[[], str]) -> str:
        """Run an execution step, leaving the record terminal on any failure."""
        try:
            return execute()
        except SettlementError as e:
            e.settlement_id = record.id
            current = self._mark_failed(record, e.code, e.message, e.tx_hash)
            e.tx_hash = current.tx_hash
            raise
        except Exception as e:
            logger.error(f"Settlement {record.id} failed unexpectedly: {e}", exc_info=True)
            current = self._mark_failed(record, "SETTLEMENT_FAILED", str(e))
            raise SettlementError(
                f"Settlement failed: {e}", "SETTLEMENT_FAILED", record.id, current.tx_hash
            ) from e

    def _mark_failed(self, record: Transaction, code: str, reason: str, tx_hash: Optional[str] = None) -> Transaction:
        current = self.ledger.get(record.id)
        if current is not None and not current.status.is_terminal:
            current = self.ledger.update_status(record.id, TransactionStatus.FAILED, tx_hash)
        logger.error(f"Settlement {record.id} failed [{code}]: {reason}")
        audit.log_settlement_failed(record.id, code, reason, current.tx_hash if current else tx_hash)
        return current or record


class SimulatedSettlementService(SettlementService):
    """Development settlement: synthetic hashes, confirmed immediately, no network I/O."""

    mode = "simulated"

    def _simulate(self, record: Transaction) -> str:
        tx_hash = "0x" + secrets.token_hex(32)
        self._transition(record, TransactionStatus.SUBMITTED, tx_hash)
        self._transition(record, TransactionStatus.CONFIRMED)
        logger.info(f"Simulated settlement {record.id} confirmed with synthetic hash {tx_hash}")
        return tx_hash

    def _execute_transfer(self, record, to_address, quote, token, network) -> str:
        return self._simulate(record)

    def _execute_payment(self, record, payload) -> str:
        return self._simulate(record)


class LiveSettlementService(SettlementService):
    """On-chain settlement through per-network chain clients."""

    mode = "live"

    def __init__(
        self,
        identity: IdentityDirectory,
        ledger: TransactionLedger,
        clients: Mapping[str, ChainClients],
        settlement_addresses: Optional[Mapping[str, str]] = None,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
        **kwargs,
    ):
        super().__init__(identity, ledger, **kwargs)
        self.clients = dict(clients)
        self.settlement_addresses = dict(settlement_addresses or {})
        self.receipt_timeout = receipt_timeout

    @property
    def treasury_address(self) -> Optional[str]:
        for clients in self.clients.values():
            return clients.write.address
        return None

    def supported_network_ids(self):
        return [network for network in get_supported_network_ids() if network in self.clients]

    def _clients_for(self, network: str) -> ChainClients:
        clients = self.clients.get(network)
        if clients is None:
            raise SettlementError(f'Network "{network}" is not configured', "NETWORK_NOT_CONFIGURED")
        return clients

    def _execute_transfer(self, record, to_address, quote, token, network) -> str:
        clients = self._clients_for(network)

        token_info = get_token_for_network(network, token)
        if token_info is None:
            raise SettlementError(f"Token {token} is not supported on {network}", "UNSUPPORTED_TOKEN")

        units = parse_token_amount(format(quote.net_value, "f"), token_info.decimals)
        treasury = clients.write.address
        balance = clients.read.read_contract(token_info.address, ERC20_ABI, "balanceOf", [treasury])
        if balance < units:
            raise SettlementError(
                f"Insufficient treasury balance: have {balance}, need {units} ({token} on {network})",
                "INSUFFICIENT_BALANCE",
            )

        tx_hash = clients.write.write_contract(
            token_info.address, ERC20_ABI, "transfer", [to_checksum_address(to_address), units]
        )
        self._transition(record, TransactionStatus.SUBMITTED, tx_hash)
        return self._await_confirmation(record, clients, tx_hash)

    def _execute_payment(self, record, payload) -> str:
        clients = self._clients_for(payload.network)
        settlement = self.settlement_addresses.get(payload.network)
        if not settlement:
            raise SettlementError(
                f'No settlement contract configured for network "{payload.network}"',
                "SETTLEMENT_NOT_CONFIGURED",
            )
        settlement = to_checksum_address(settlement)

        if isinstance(payload, Permit2Payload):
            if payload.spender.lower() != settlement.lower():
                raise SettlementError("Permit spender is not the settlement contract", "INVALID_PAYMENT")
            permit = (
                [(to_checksum_address(entry.token), int(entry.amount)) for entry in payload.permit.permitted],
                int(payload.permit.nonce),
                payload.permit.deadline,
            )
            witness = (to_checksum_address(payload.witness.recipient), payload.witness.feeBps)
            tx_hash = clients.write.write_contract(
                settlement,
                SETTLEMENT_ABI,
                "settle",
                [permit, to_checksum_address(payload.payer), witness, to_bytes(hexstr=payload.signature)],
            )
        elif isinstance(payload, ERC3009Payload):
            token = get_erc3009_token(payload.network)
            if token is None:
                raise SettlementError(
                    f"Authorization transfers are not supported on {payload.network}", "UNSUPPORTED_TOKEN"
                )
            authorization = payload.authorization
            if authorization.to.lower() != settlement.lower():
                raise SettlementError("Authorization is not addressed to the settlement contract", "INVALID_PAYMENT")
            v, r, s = split_signature(payload.signature)
            tx_hash = clients.write.write_contract(
                settlement,
                SETTLEMENT_ABI,
                "settleWithAuthorization",
                [
                    to_checksum_address(token.address),
                    to_checksum_address(payload.payer),
                    to_checksum_address(payload.recipient),
                    int(authorization.value),
                    authorization.validAfter,
                    authorization.validBefore,
                    to_bytes(hexstr=authorization.nonce),
                    v,
                    r,
                    s,
                ],
            )
        else:
            assert_never(payload)

        self._transition(record, TransactionStatus.SUBMITTED, tx_hash)
        return self._await_confirmation(record, clients, tx_hash)

    def _await_confirmation(self, record: Transaction, clients: ChainClients, tx_hash: str) -> str:
        try:
            receipt = clients.read.wait_for_receipt(tx_hash, self.receipt_timeout)
        except ReceiptTimeoutError as e:
            raise SettlementError(
                f"Transaction not confirmed after {self.receipt_timeout}s. Tx hash: {tx_hash}",
                "TX_UNCONFIRMED",
                tx_hash=tx_hash,
            ) from e

        if not receipt.success:
            raise SettlementError(f"Transaction reverted on-chain. Tx hash: {tx_hash}", "TX_REVERTED", tx_hash=tx_hash)

        if receipt.gas_used is not None:
            logger.info(f"Settlement {record.id} used {receipt.gas_used} gas (block {receipt.block_number})")
        self._transition(record, TransactionStatus.CONFIRMED, tx_hash)
        return tx_hash

    def _balance_sufficient(self, address: str, required: Decimal, token: str, network: str) -> Optional[bool]:
        clients = self.clients.get(network)
        token_info = get_token_for_network(network, token)
        if clients is None or token_info is None:
            return None
        balance = clients.read.read_contract(token_info.address, ERC20_ABI, "balanceOf", [address])
        return balance >= parse_token_amount(str(required), token_info.decimals)


def create_settlement_service(
    config,
    identity: Optional[IdentityDirectory] = None,
    ledger: Optional[TransactionLedger] = None,
) -> SettlementService:
    """
    Build the settlement service selected by configuration.

    SETTLEMENT_MODE:
    - "live": requires TREASURY_PRIVATE_KEY
    - "simulated": never touches a chain
    - "auto": live when a treasury key is configured, simulated otherwise

    Raises:
        ValueError: On an unknown mode, or live mode without a key
    """
    identity = identity or InMemoryIdentityDirectory()
    ledger = ledger or InMemoryLedger()
    mode = config.SETTLEMENT_MODE.lower()
    if mode not in ("auto", "live", "simulated"):
        raise ValueError(f"Unknown SETTLEMENT_MODE: {config.SETTLEMENT_MODE}")

    fee_kwargs = {
        "fee_rate": config.SETTLEMENT_FEE_RATE,
        "fee_bps": config.SETTLEMENT_FEE_BPS,
        "gas_estimate": config.SETTLEMENT_GAS_ESTIMATE,
    }

    private_key = config.TREASURY_PRIVATE_KEY
    if mode == "live" and not private_key:
        raise ValueError("SETTLEMENT_MODE=live requires TREASURY_PRIVATE_KEY")

    if mode == "simulated" or not private_key:
        if mode == "auto":
            logger.warning("TREASURY_PRIVATE_KEY not set - running in SIMULATED settlement mode")
        return SimulatedSettlementService(identity, ledger, **fee_kwargs)

    treasury = Account.from_key(private_key).address
    clients = build_chain_clients(config.rpc_urls, private_key)
    logger.info(f"Live settlement enabled for {', '.join(clients)} (treasury {treasury})")
    return LiveSettlementService(
        identity,
        ledger,
        clients,
        settlement_addresses=config.settlement_addresses,
        receipt_timeout=config.SETTLEMENT_RECEIPT_TIMEOUT_SECONDS,
        **fee_kwargs,
    )
