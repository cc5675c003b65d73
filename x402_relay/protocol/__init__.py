# x402_relay/protocol/__init__.py
"""
x402 Payment Protocol Module.

Implements the HTTP 402 payment handshake: a server prices a resource, a
client signs a token authorization, and a facilitator settles it on-chain.

Key components:
- types: Wire models for requirements, payloads and responses
- encoding: Base64 header serialization
- nonces: Replay protection for payment nonces
- signing: EIP-712 signing and signer recovery for both schemes
- middleware: FastAPI middleware for payment verification
- client: requests-based client that pays 402 responses automatically
- facilitator: HTTP client for the facilitator service
- audit: Payment and settlement audit logging

Configuration is loaded from environment variables via x402_relay.core.config.
"""

__version__ = "0.1.0"
