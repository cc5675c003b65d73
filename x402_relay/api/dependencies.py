# x402_relay/api/dependencies.py
"""
Service wiring for the facilitator endpoints.

Each service is built once per process. Tests replace them through
``app.dependency_overrides``.
"""
from functools import lru_cache

from x402_relay.core.config import settings
from x402_relay.services.identity import InMemoryIdentityDirectory
from x402_relay.services.ledger import InMemoryLedger
from x402_relay.services.settlement import SettlementService, create_settlement_service


@lru_cache()
def get_identity_directory() -> InMemoryIdentityDirectory:
    return InMemoryIdentityDirectory()


@lru_cache()
def get_ledger() -> InMemoryLedger:
    return InMemoryLedger()


@lru_cache()
def get_settlement_service() -> SettlementService:
    """Settlement service selected by SETTLEMENT_MODE."""
    return create_settlement_service(settings, identity=get_identity_directory(), ledger=get_ledger())
