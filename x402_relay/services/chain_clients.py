# x402_relay/services/chain_clients.py
"""
Per-network blockchain clients.

Each supported network gets one read client (contract reads, receipt waits)
and one signing client (contract writes from the treasury account). Clients
for different networks share nothing, so a slow chain never blocks another.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from eth_account import Account
from typing_extensions import Protocol
from web3 import HTTPProvider, Web3
from web3.exceptions import TimeExhausted

logger = logging.getLogger(__name__)


class ReceiptTimeoutError(Exception):
    """No receipt was observed within the timeout. The transaction may still land."""

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"Transaction {tx_hash} not confirmed after {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    success: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None


class ReadClient(Protocol):
    def read_contract(self, address: str, abi: List[Dict[str, Any]], function: str, args: Sequence[Any]) -> Any:
        ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt:
        ...


class WriteClient(Protocol):
    @property
    def address(self) -> str:
        ...

    def write_contract(self, address: str, abi: List[Dict[str, Any]], function: str, args: Sequence[Any]) -> str:
        ...


@dataclass
class ChainClients:
    network: str
    read: ReadClient
    write: WriteClient


def _make_web3(rpc_url: str, request_timeout: int) -> Web3:
    provider = HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
    return Web3(provider)


class Web3ReadClient:
    """Read-only client backed by a web3 HTTP provider."""

    def __init__(self, rpc_url: str, request_timeout: int = 30, w3: Optional[Web3] = None):
        self.w3 = w3 or _make_web3(rpc_url, request_timeout)

    def read_contract(self, address: str, abi: List[Dict[str, Any]], function: str, args: Sequence[Any]) -> Any:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        return getattr(contract.functions, function)(*args).call()

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt:
        """
        Block until the transaction is mined.

        Raises:
            ReceiptTimeoutError: If no receipt appears within ``timeout`` seconds
        """
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ReceiptTimeoutError(tx_hash, timeout) from e

        return TransactionReceipt(
            tx_hash=tx_hash,
            success=receipt["status"] == 1,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            effective_gas_price=receipt.get("effectiveGasPrice"),
        )


class Web3WriteClient:
    """
    Signing client for the treasury account.

    Transactions are signed locally and sent raw. Nonce allocation and
    broadcast are serialized per client so concurrent settlements on one
    network never reuse an account nonce.
    """

    def __init__(self, rpc_url: str, private_key: str, request_timeout: int = 30, w3: Optional[Web3] = None):
        self.w3 = w3 or _make_web3(rpc_url, request_timeout)
        self._account = Account.from_key(private_key)
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        return self._account.address

    def write_contract(self, address: str, abi: List[Dict[str, Any]], function: str, args: Sequence[Any]) -> str:
        """
        Build, sign and broadcast a contract call.

        Returns:
            The broadcast transaction hash (0x-prefixed hex)
        """
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        call = getattr(contract.functions, function)(*args)

        with self._lock:
            transaction = call.build_transaction({
                "from": self._account.address,
                "nonce": self.w3.eth.get_transaction_count(self._account.address, "pending"),
                "gasPrice": self.w3.eth.gas_price,
                "chainId": self.w3.eth.chain_id,
            })
            signed_txn = self._account.sign_transaction(transaction)
            # Handle both old and new web3.py / eth-account API
            raw_tx = signed_txn.raw_transaction if hasattr(signed_txn, "raw_transaction") else signed_txn.rawTransaction
            tx_hash = self.w3.eth.send_raw_transaction(raw_tx)

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"Transaction sent: {function} on {address}: {tx_hash_hex}")
        return tx_hash_hex


def build_chain_clients(
    rpc_urls: Mapping[str, str],
    private_key: str,
    request_timeout: int = 30,
) -> Dict[str, ChainClients]:
    """
    Create a read and a signing client for every network with an RPC URL.

    Args:
        rpc_urls: RPC endpoint per CAIP-2 network id
        private_key: Treasury key used by every signing client
        request_timeout: HTTP timeout for RPC calls, in seconds

    Returns:
        ChainClients per network id
    """
    clients: Dict[str, ChainClients] = {}
    for network, rpc_url in rpc_urls.items():
        if not rpc_url:
            continue
        clients[network] = ChainClients(
            network=network,
            read=Web3ReadClient(rpc_url, request_timeout),
            write=Web3WriteClient(rpc_url, private_key, request_timeout),
        )
        logger.info(f"Configured chain clients for {network} via {rpc_url}")
    return clients
