# x402_relay/services/contracts.py
import json

# Standard ERC20 ABI for transfer, balanceOf and decimals
ERC20_ABI = json.loads('''[
    {
        "constant": true,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "constant": false,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "constant": true,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    }
]''')

# Settlement contract: executes payer-signed authorizations and splits net/fee
SETTLEMENT_ABI = json.loads('''[
    {
        "name": "settle",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {
                "name": "permit",
                "type": "tuple",
                "components": [
                    {
                        "name": "permitted",
                        "type": "tuple[]",
                        "components": [
                            {"name": "token", "type": "address"},
                            {"name": "amount", "type": "uint256"}
                        ]
                    },
                    {"name": "nonce", "type": "uint256"},
                    {"name": "deadline", "type": "uint256"}
                ]
            },
            {"name": "payer", "type": "address"},
            {
                "name": "witness",
                "type": "tuple",
                "components": [
                    {"name": "recipient", "type": "address"},
                    {"name": "feeBps", "type": "uint256"}
                ]
            },
            {"name": "signature", "type": "bytes"}
        ],
        "outputs": []
    },
    {
        "name": "settleWithAuthorization",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "payer", "type": "address"},
            {"name": "recipient", "type": "address"},
            {"name": "grossAmount", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"}
        ],
        "outputs": []
    }
]''')
