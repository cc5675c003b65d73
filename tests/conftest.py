# tests/conftest.py
import pytest

from x402_relay.core.config import settings
from x402_relay.protocol.nonces import reset_nonce_registry


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Write audit events to a per-test file."""
    log_path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(log_path))
    monkeypatch.setattr(settings, "X402_AUDIT_ENABLED", True)
    return log_path


@pytest.fixture(autouse=True)
def fresh_nonce_registry():
    """Each test starts with an empty process-wide nonce registry."""
    reset_nonce_registry()
    yield
    reset_nonce_registry()
