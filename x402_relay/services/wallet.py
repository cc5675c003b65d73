# x402_relay/services/wallet.py
"""
Deterministic wallet addresses and session keys.

A handle's wallet address is a CREATE2-style address computed from the handle,
the owner address and a session key. The factory address is the same on every
supported network, so one handle maps to one address on all of them.
"""
import logging
import re
import secrets
import time
from dataclasses import dataclass

from eth_abi.packed import encode_packed
from eth_keys import keys
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import is_address, keccak, to_bytes, to_checksum_address

logger = logging.getLogger(__name__)

# Account factory address (deployed via CREATE2, same on all chains)
DEFAULT_FACTORY_ADDRESS = "0x" + "0" * 38 + "01"
DEFAULT_SESSION_KEY_VALIDITY_SECONDS = 365 * 24 * 60 * 60

_BYTES32_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


@dataclass(frozen=True)
class SessionKeyPair:
    public_key: str
    private_key: str
    expires_at: int


class WalletService:
    """Computes handle wallet addresses and issues session keys."""

    def __init__(self, factory_address: str = DEFAULT_FACTORY_ADDRESS):
        if not is_address(factory_address):
            raise ValueError(f"Invalid factory address: {factory_address}")
        self._factory = to_bytes(hexstr=factory_address)

    @property
    def factory_address(self) -> str:
        return to_checksum_address(self._factory)

    def compute_address(self, handle: str, owner_address: str, session_key_public: str) -> str:
        """
        Compute the deterministic wallet address for a handle.

        ``salt = keccak(handle ‖ pad32(owner) ‖ sessionKey)`` and
        ``initCodeHash = keccak(pad32(owner) ‖ sessionKey ‖ handle)`` are
        combined as ``keccak(0xff ‖ factory ‖ salt ‖ initCodeHash)[12:]``.

        Args:
            handle: Human-readable handle
            owner_address: 20-byte hex address of the owner
            session_key_public: 32-byte hex session key identifier

        Returns:
            Checksummed address

        Raises:
            ValueError: If the owner address or session key is malformed
        """
        if not is_address(owner_address):
            raise ValueError(f"Invalid owner address: {owner_address}")
        if not _BYTES32_RE.match(session_key_public):
            raise ValueError("Session key must be a 32-byte hex string")

        owner = to_bytes(hexstr=owner_address).rjust(32, b"\x00")
        session_key = to_bytes(hexstr=session_key_public)

        salt = keccak(encode_packed(["string", "bytes32", "bytes32"], [handle, owner, session_key]))
        init_code_hash = keccak(encode_packed(["bytes32", "bytes32", "string"], [owner, session_key, handle]))

        digest = keccak(b"\xff" + self._factory + salt + init_code_hash)
        return to_checksum_address(digest[-20:])

    def generate_session_key(self, validity_seconds: int = DEFAULT_SESSION_KEY_VALIDITY_SECONDS) -> SessionKeyPair:
        """
        Generate a fresh secp256k1 session key.

        The public identifier is the keccak hash of the uncompressed public key.
        """
        if validity_seconds <= 0:
            raise ValueError("validity_seconds must be positive")

        while True:
            try:
                private_key = keys.PrivateKey(secrets.token_bytes(32))
                break
            except KeyValidationError:
                # Out of curve range, astronomically rare
                continue

        public_key = keccak(private_key.public_key.to_bytes())
        return SessionKeyPair(
            public_key="0x" + public_key.hex(),
            private_key="0x" + private_key.to_bytes().hex(),
            expires_at=int(time.time()) + validity_seconds,
        )
