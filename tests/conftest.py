from unittest.mock import MagicMock

import pytest
from eth_account import Account

from config import SmartAccountConfig
from tests.utils.constants import OWNER_PRIVATE_KEY, SMART_ACCOUNT_ADDRESS

CONFIG_ENV_VARS = (
    "RPC_URL",
    "CHAIN_ID",
    "BUNDLER_URL",
    "ENTRY_POINT_VERSION",
    "ENTRY_POINT_ADDRESS",
    "FACTORY_ADDRESS",
    "ACCOUNT_SALT",
    "NONCE_KEY",
    "OWNER_PRIVATE_KEY",
    "FUNDING_AMOUNT_ETH",
    "FUNDING_TIMEOUT",
    "GAS_SAFETY_MARGIN",
    "FALLBACK_GAS_LIMIT",
    "FALLBACK_MAX_FEE_PER_GAS",
    "FALLBACK_MAX_PRIORITY_FEE_PER_GAS",
    "RECEIPT_TIMEOUT",
    "RECEIPT_RETRY_INTERVAL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def config(clean_env) -> SmartAccountConfig:
    clean_env.setenv("OWNER_PRIVATE_KEY", OWNER_PRIVATE_KEY)
    clean_env.setenv("BUNDLER_URL", "http://bundler.test")
    return SmartAccountConfig()


@pytest.fixture
def owner():
    return Account.from_key(OWNER_PRIVATE_KEY)


@pytest.fixture
def web3():
    """web3 stand-in answering the factory and entry point view calls"""
    w3 = MagicMock()
    contract = w3.eth.contract.return_value
    contract.functions.getAddress.return_value.call.return_value = SMART_ACCOUNT_ADDRESS
    contract.functions.getNonce.return_value.call.return_value = 0
    return w3


@pytest.fixture
def timeline():
    return []
