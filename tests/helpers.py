# tests/helpers.py
"""Shared constants and builders for the test suite."""
import time

from eth_account import Account

from x402_relay.protocol.signing import sign_erc3009_payment, sign_permit2_payment
from x402_relay.protocol.types import AcceptOption, PaymentRequirement

# Well-known development keys (never funded on mainnet)
PAYER_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcaf784d7bf4f2ff80"
PAYER_ADDRESS = Account.from_key(PAYER_PRIVATE_KEY).address
TREASURY_PRIVATE_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
TREASURY_ADDRESS = Account.from_key(TREASURY_PRIVATE_KEY).address

RECIPIENT = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
SETTLEMENT_CONTRACT = "0x7c831477A025e05DbaB31ab91A792c1006beb0c6"
BASE_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BASE = "eip155:8453"


def payer_account():
    return Account.from_key(PAYER_PRIVATE_KEY)


def make_option(scheme="permit2", amount="1000000", network=BASE, fee_bps=50, max_deadline=None, **overrides):
    data = {
        "scheme": scheme,
        "network": network,
        "token": BASE_USDC,
        "amount": amount,
        "recipient": RECIPIENT,
        "settlement": SETTLEMENT_CONTRACT,
        "treasury": TREASURY_ADDRESS,
        "feeBps": fee_bps,
        "maxDeadline": max_deadline or int(time.time()) + 300,
    }
    data.update(overrides)
    return AcceptOption.model_validate(data)


def make_requirement(*options):
    return PaymentRequirement(accepts=list(options) or [make_option()])


def signed_permit2(amount="1000000", **option_overrides):
    return sign_permit2_payment(payer_account(), make_option("permit2", amount, **option_overrides))


def signed_erc3009(amount="1000000", **option_overrides):
    return sign_erc3009_payment(payer_account(), make_option("erc3009", amount, **option_overrides))
