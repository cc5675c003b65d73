# tests/test_wallet_service.py
"""
Unit tests for deterministic wallet addresses and session keys.
"""
import time

import pytest
from eth_utils import is_checksum_address, keccak

from x402_relay.services.identity import InMemoryIdentityDirectory
from x402_relay.services.wallet import DEFAULT_FACTORY_ADDRESS, WalletService

from helpers import PAYER_ADDRESS, RECIPIENT

SESSION_KEY = "0x" + "42" * 32


class TestComputeAddress:
    """Test CREATE2-style address derivation."""

    def test_deterministic(self):
        """Same inputs always yield the same address."""
        service = WalletService()
        first = service.compute_address("alice", PAYER_ADDRESS, SESSION_KEY)
        second = WalletService().compute_address("alice", PAYER_ADDRESS, SESSION_KEY)
        assert first == second
        assert is_checksum_address(first)

    def test_handle_sensitive(self):
        """Different handles yield different addresses."""
        service = WalletService()
        assert service.compute_address("alice", PAYER_ADDRESS, SESSION_KEY) != service.compute_address(
            "alicf", PAYER_ADDRESS, SESSION_KEY
        )

    def test_owner_and_key_sensitive(self):
        """Owner and session key both change the address."""
        service = WalletService()
        base = service.compute_address("alice", PAYER_ADDRESS, SESSION_KEY)
        assert service.compute_address("alice", RECIPIENT, SESSION_KEY) != base
        assert service.compute_address("alice", PAYER_ADDRESS, "0x" + "43" * 32) != base

    def test_factory_sensitive(self):
        """A different factory yields a different address."""
        other = WalletService(factory_address="0x" + "0" * 38 + "02")
        assert other.compute_address("alice", PAYER_ADDRESS, SESSION_KEY) != WalletService().compute_address(
            "alice", PAYER_ADDRESS, SESSION_KEY
        )

    def test_matches_packed_layout(self):
        """Address follows keccak(0xff ++ factory ++ salt ++ initCodeHash)[12:]."""
        handle = "bob"
        owner = bytes.fromhex(PAYER_ADDRESS[2:]).rjust(32, b"\x00")
        session_key = bytes.fromhex(SESSION_KEY[2:])
        factory = bytes.fromhex(DEFAULT_FACTORY_ADDRESS[2:])

        salt = keccak(handle.encode() + owner + session_key)
        init_code_hash = keccak(owner + session_key + handle.encode())
        expected = keccak(b"\xff" + factory + salt + init_code_hash)[12:]

        address = WalletService().compute_address(handle, PAYER_ADDRESS, SESSION_KEY)
        assert bytes.fromhex(address[2:]) == expected

    def test_rejects_bad_owner(self):
        """Malformed owner addresses raise ValueError."""
        with pytest.raises(ValueError):
            WalletService().compute_address("alice", "0x1234", SESSION_KEY)

    def test_rejects_bad_session_key(self):
        """Session keys must be 32-byte hex."""
        with pytest.raises(ValueError):
            WalletService().compute_address("alice", PAYER_ADDRESS, "0x1234")

    def test_rejects_bad_factory(self):
        """Factory address must be a valid address."""
        with pytest.raises(ValueError):
            WalletService(factory_address="factory")


class TestSessionKeys:
    """Test session key generation."""

    def test_key_format(self):
        """Public identifier and private key are 32-byte hex strings."""
        pair = WalletService().generate_session_key()
        assert pair.public_key.startswith("0x") and len(pair.public_key) == 66
        assert pair.private_key.startswith("0x") and len(pair.private_key) == 66

    def test_expiry(self):
        """Expiry is now plus the validity window."""
        before = int(time.time())
        pair = WalletService().generate_session_key(validity_seconds=3600)
        assert before + 3600 <= pair.expires_at <= int(time.time()) + 3600

    def test_unique(self):
        """Each call returns a fresh key."""
        service = WalletService()
        assert service.generate_session_key().private_key != service.generate_session_key().private_key

    def test_rejects_non_positive_validity(self):
        """Validity must be positive."""
        with pytest.raises(ValueError):
            WalletService().generate_session_key(validity_seconds=0)


class TestIdentityDirectory:
    """Test the in-memory handle directory."""

    def test_add_and_resolve(self):
        """Handles resolve case-insensitively in both directions."""
        directory = InMemoryIdentityDirectory()
        directory.add("Alice", PAYER_ADDRESS)
        assert directory.resolve_handle("alice") == PAYER_ADDRESS
        assert directory.resolve_address(PAYER_ADDRESS.lower()) == "alice"

    def test_unknown_handle(self):
        """Unknown handles resolve to None."""
        assert InMemoryIdentityDirectory().resolve_handle("nobody") is None

    def test_duplicate_handle_rejected(self):
        """A handle can only be registered once."""
        directory = InMemoryIdentityDirectory()
        directory.add("alice", PAYER_ADDRESS)
        with pytest.raises(ValueError):
            directory.add("ALICE", RECIPIENT)

    def test_onboard_registers_derived_wallet(self):
        """Onboarding derives the wallet address from the issued session key."""
        service = WalletService()
        directory = InMemoryIdentityDirectory(wallet_service=service)
        identity = directory.onboard("carol", PAYER_ADDRESS)
        assert directory.resolve_handle("carol") == identity.wallet_address
        assert identity.wallet_address == service.compute_address(
            "carol", PAYER_ADDRESS, identity.session_key_public
        )
