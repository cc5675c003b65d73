# x402_relay/services/ledger.py
"""
Transaction ledger for settlements.

Records are created once per settlement attempt in status ``pending`` and then
only move forward through the status machine::

    pending -> submitted -> confirmed
    pending -> submitted -> failed
    pending -> failed

``confirmed`` and ``failed`` are terminal. Records are never deleted.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from typing_extensions import Protocol

logger = logging.getLogger(__name__)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.CONFIRMED, TransactionStatus.FAILED)

    def can_transition_to(self, target: "TransactionStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.SUBMITTED, TransactionStatus.FAILED},
    TransactionStatus.SUBMITTED: {TransactionStatus.CONFIRMED, TransactionStatus.FAILED},
    TransactionStatus.CONFIRMED: set(),
    TransactionStatus.FAILED: set(),
}


class InvalidTransitionError(Exception):
    def __init__(self, transaction_id: str, current: TransactionStatus, target: TransactionStatus):
        super().__init__(f"Transaction {transaction_id}: cannot move from {current.value} to {target.value}")
        self.transaction_id = transaction_id
        self.current = current
        self.target = target


@dataclass(frozen=True)
class Transaction:
    """One settlement attempt. Amounts are human decimal strings."""
    from_identifier: str
    to_identifier: str
    to_address: str
    amount: str
    token: str
    network: str
    fee: str
    gas_cost: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tx_hash: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: int = field(default_factory=lambda: int(time.time()))


class TransactionLedger(Protocol):
    def create(self, transaction: Transaction) -> Transaction:
        ...

    def get(self, transaction_id: str) -> Optional[Transaction]:
        ...

    def update_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        tx_hash: Optional[str] = None,
    ) -> Transaction:
        ...

    def list_by_identifier(self, identifier: str, limit: int = 20, offset: int = 0) -> Tuple[List[Transaction], int]:
        ...


class InMemoryLedger:
    """Thread-safe in-memory ledger."""

    def __init__(self):
        self._transactions: Dict[str, Transaction] = {}
        self._order: List[str] = []
        self._lock = threading.Lock()

    def create(self, transaction: Transaction) -> Transaction:
        with self._lock:
            if transaction.id in self._transactions:
                raise ValueError(f"Transaction {transaction.id} already exists")
            self._transactions[transaction.id] = transaction
            self._order.append(transaction.id)
        logger.debug(f"Ledger: created transaction {transaction.id} ({transaction.status.value})")
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._transactions.get(transaction_id)

    def update_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        tx_hash: Optional[str] = None,
    ) -> Transaction:
        """
        Move a transaction to a new status.

        An existing hash is kept when ``tx_hash`` is None.

        Raises:
            KeyError: If the transaction does not exist
            InvalidTransitionError: If the status machine forbids the move
        """
        with self._lock:
            current = self._transactions.get(transaction_id)
            if current is None:
                raise KeyError(transaction_id)
            if not current.status.can_transition_to(status):
                raise InvalidTransitionError(transaction_id, current.status, status)
            updated = replace(current, status=status, tx_hash=tx_hash or current.tx_hash)
            self._transactions[transaction_id] = updated
        logger.debug(f"Ledger: {transaction_id} {current.status.value} -> {status.value}")
        return updated

    def list_by_identifier(self, identifier: str, limit: int = 20, offset: int = 0) -> Tuple[List[Transaction], int]:
        """
        List transactions sent or received by a handle or address, newest first.

        Returns:
            Tuple of (page of transactions, total matching count)
        """
        needle = identifier.lower()
        with self._lock:
            matches = [
                self._transactions[tx_id]
                for tx_id in reversed(self._order)
                if needle in (
                    self._transactions[tx_id].from_identifier.lower(),
                    self._transactions[tx_id].to_identifier.lower(),
                    self._transactions[tx_id].to_address.lower(),
                )
            ]
        return matches[offset:offset + limit], len(matches)

    def __len__(self) -> int:
        with self._lock:
            return len(self._transactions)
