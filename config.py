"""
Configuration for smart account user operation submission
"""

import os
from dataclasses import dataclass
from decimal import Decimal

from web3 import Web3

# Network constants
ENTRYPOINT_V06 = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
ENTRYPOINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

# Canonical SimpleAccountFactory deployments per entry point version
ENTRY_POINTS = {
    "0.6": {
        "entry_point": ENTRYPOINT_V06,
        "factory": "0x9406Cc6185a346906296840746125a0E44976454",
    },
    "0.7": {
        "entry_point": ENTRYPOINT_V07,
        "factory": "0x91E60e0613810449d098b0b5Ec8b51A0FE8c8985",
    },
}

# Anvil's default chain
LOCAL_CHAIN_ID = 31337
LOCAL_RPC_URL = "http://127.0.0.1:8545"
LOCAL_BUNDLER_URL = "http://localhost:4337"

# Default gas limits for UserOperations, kept when the bundler cannot estimate
DEFAULT_GAS_LIMITS = {
    "verification": 1000000,
    "pre_verification": 60000,
}

# Fallbacks when estimation against the chain fails
FALLBACK_GAS_LIMIT = 3000000
FALLBACK_MAX_FEE_PER_GAS = 10000000000  # 10 gwei
FALLBACK_MAX_PRIORITY_FEE_PER_GAS = 5000000000  # 5 gwei

# AA execution costs more than the simulated direct call
GAS_SAFETY_MARGIN = 2

DEFAULT_FUNDING_AMOUNT_ETH = "1"
DEFAULT_FUNDING_TIMEOUT = 120

RECEIPT_TIMEOUT = 60
RECEIPT_RETRY_INTERVAL = 1.5


def get_entry_point(version: str) -> dict:
    """Look up entry point and factory addresses for an entry point version"""
    try:
        return ENTRY_POINTS[version]
    except KeyError:
        raise ValueError(
            f"Unsupported entry point version {version!r}, expected one of {sorted(ENTRY_POINTS)}"
        )


@dataclass
class SmartAccountConfig:
    """Configuration for smart account user operation submission"""

    def __init__(self):
        # Network configuration
        self.rpc_url = os.environ.get('RPC_URL', LOCAL_RPC_URL)
        self.chain_id = int(os.environ.get('CHAIN_ID', LOCAL_CHAIN_ID))
        self.bundler_url = os.environ.get('BUNDLER_URL', LOCAL_BUNDLER_URL)

        # Entry point and account
        self.entry_point_version = os.environ.get('ENTRY_POINT_VERSION', '0.6')
        entry_point = get_entry_point(self.entry_point_version)
        self.entry_point_address = os.environ.get('ENTRY_POINT_ADDRESS', entry_point['entry_point'])
        self.factory_address = os.environ.get('FACTORY_ADDRESS', entry_point['factory'])
        self.account_salt = int(os.environ.get('ACCOUNT_SALT', 0))
        self.nonce_key = int(os.environ.get('NONCE_KEY', 0))

        # Owner key
        self.owner_private_key = os.environ.get('OWNER_PRIVATE_KEY')
        if not self.owner_private_key:
            raise ValueError("OWNER_PRIVATE_KEY environment variable is required")

        # Funding
        funding_eth = os.environ.get('FUNDING_AMOUNT_ETH', DEFAULT_FUNDING_AMOUNT_ETH)
        self.funding_amount_wei = Web3.to_wei(Decimal(funding_eth), 'ether')
        self.funding_timeout = float(os.environ.get('FUNDING_TIMEOUT', DEFAULT_FUNDING_TIMEOUT))

        # Gas policy
        gas_safety_margin = os.environ.get('GAS_SAFETY_MARGIN', GAS_SAFETY_MARGIN)
        try:
            self.gas_safety_margin = int(gas_safety_margin)
        except ValueError:
            raise ValueError(
                f"GAS_SAFETY_MARGIN must be a whole-number multiplier such as 2, got {gas_safety_margin!r}"
            )
        self.fallback_gas_limit = int(os.environ.get('FALLBACK_GAS_LIMIT', FALLBACK_GAS_LIMIT))
        self.fallback_max_fee_per_gas = int(
            os.environ.get('FALLBACK_MAX_FEE_PER_GAS', FALLBACK_MAX_FEE_PER_GAS)
        )
        self.fallback_max_priority_fee_per_gas = int(
            os.environ.get('FALLBACK_MAX_PRIORITY_FEE_PER_GAS', FALLBACK_MAX_PRIORITY_FEE_PER_GAS)
        )
        if self.gas_safety_margin < 1:
            raise ValueError("GAS_SAFETY_MARGIN must be at least 1")
        if self.fallback_gas_limit <= 0:
            raise ValueError("FALLBACK_GAS_LIMIT must be greater than 0")

        # Receipt polling
        self.receipt_timeout = float(os.environ.get('RECEIPT_TIMEOUT', RECEIPT_TIMEOUT))
        self.receipt_retry_interval = float(
            os.environ.get('RECEIPT_RETRY_INTERVAL', RECEIPT_RETRY_INTERVAL)
        )
