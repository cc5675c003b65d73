# x402_relay/services/identity.py
"""
Handle directory: maps human-readable handles to wallet addresses.

Registration rules and metadata live elsewhere; settlement only needs the
two lookups in ``IdentityDirectory``.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from eth_utils import is_address, to_checksum_address
from typing_extensions import Protocol

from x402_relay.services.wallet import WalletService

logger = logging.getLogger(__name__)


class IdentityDirectory(Protocol):
    def resolve_handle(self, handle: str) -> Optional[str]:
        ...

    def resolve_address(self, address: str) -> Optional[str]:
        ...


@dataclass(frozen=True)
class OnboardedIdentity:
    handle: str
    wallet_address: str
    owner_address: str
    session_key_public: str
    session_key_private: str
    session_key_expires_at: int


def normalize_handle(handle: str) -> str:
    return handle.strip().lower()


class InMemoryIdentityDirectory:
    """Case-insensitive in-memory handle directory."""

    def __init__(self, wallet_service: Optional[WalletService] = None):
        self._wallet_service = wallet_service or WalletService()
        self._by_handle: Dict[str, str] = {}
        self._by_address: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add(self, handle: str, address: str) -> None:
        """
        Register a handle for an address.

        Raises:
            ValueError: If the address is malformed or the handle is taken
        """
        if not is_address(address):
            raise ValueError(f"Invalid address: {address}")
        key = normalize_handle(handle)
        with self._lock:
            if key in self._by_handle:
                raise ValueError(f"Handle already registered: {handle}")
            self._by_handle[key] = to_checksum_address(address)
            self._by_address[address.lower()] = key
        logger.info(f"Registered handle {key} -> {address}")

    def onboard(self, handle: str, owner_address: str) -> OnboardedIdentity:
        """Issue a session key, derive the handle's wallet address and register it."""
        session_key = self._wallet_service.generate_session_key()
        wallet_address = self._wallet_service.compute_address(
            normalize_handle(handle), owner_address, session_key.public_key
        )
        self.add(handle, wallet_address)
        return OnboardedIdentity(
            handle=normalize_handle(handle),
            wallet_address=wallet_address,
            owner_address=to_checksum_address(owner_address),
            session_key_public=session_key.public_key,
            session_key_private=session_key.private_key,
            session_key_expires_at=session_key.expires_at,
        )

    def resolve_handle(self, handle: str) -> Optional[str]:
        with self._lock:
            return self._by_handle.get(normalize_handle(handle))

    def resolve_address(self, address: str) -> Optional[str]:
        with self._lock:
            return self._by_address.get(address.lower())
