"""
Read and write access to the chain through web3.py
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger(__name__)

# Matches the base fee multiplier viem applies when estimating EIP-1559 fees
BASE_FEE_MULTIPLIER_NUMERATOR = 12
BASE_FEE_MULTIPLIER_DENOMINATOR = 10

PLAIN_TRANSFER_GAS = 21000


@dataclass
class FeeEstimate:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


class ChainReader:
    """Read-only chain queries used by the submission pipeline"""

    def __init__(self, web3: Web3):
        self.web3 = web3

    def get_balance(self, address: str) -> int:
        return self.web3.eth.get_balance(Web3.to_checksum_address(address))

    def get_code(self, address: str) -> bytes:
        return bytes(self.web3.eth.get_code(Web3.to_checksum_address(address)))

    def is_deployed(self, address: str) -> bool:
        return len(self.get_code(address)) > 0

    def estimate_gas(self, from_: str, to: str, data: bytes, value: int = 0) -> int:
        """Simulate a direct call and return the gas it needs"""
        return self.web3.eth.estimate_gas({
            'from': Web3.to_checksum_address(from_),
            'to': Web3.to_checksum_address(to),
            'data': HexBytes(data).to_0x_hex(),
            'value': value,
        })

    def estimate_fees_per_gas(self) -> FeeEstimate:
        """Estimate EIP-1559 fees from the latest base fee and the node's priority fee"""
        latest_block = self.web3.eth.get_block('latest')
        base_fee = latest_block.get('baseFeePerGas')
        if base_fee is None:
            raise ValueError("Latest block has no base fee, chain does not support EIP-1559")

        max_priority_fee_per_gas = self.web3.eth.max_priority_fee
        max_fee_per_gas = (
            base_fee * BASE_FEE_MULTIPLIER_NUMERATOR // BASE_FEE_MULTIPLIER_DENOMINATOR
            + max_priority_fee_per_gas
        )
        return FeeEstimate(
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
        )

    def get_transaction_receipt(self, tx_hash: str) -> Dict:
        return self.web3.eth.get_transaction_receipt(HexBytes(tx_hash))


class ChainWriter:
    """Signs plain transactions with the owner key and broadcasts them"""

    def __init__(self, web3: Web3, account: LocalAccount, reader: Optional[ChainReader] = None):
        self.web3 = web3
        self.account = account
        self.reader = reader or ChainReader(web3)

    def send_transaction(self, to: str, value: int) -> str:
        """Transfer value from the owner EOA and return the transaction hash"""
        fees = self.reader.estimate_fees_per_gas()
        transaction = {
            'from': self.account.address,
            'to': Web3.to_checksum_address(to),
            'value': value,
            'nonce': self.web3.eth.get_transaction_count(self.account.address, 'pending'),
            'gas': PLAIN_TRANSFER_GAS,
            'maxFeePerGas': fees.max_fee_per_gas,
            'maxPriorityFeePerGas': fees.max_priority_fee_per_gas,
            'chainId': self.web3.eth.chain_id,
        }
        signed = self.account.sign_transaction(transaction)
        tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info(f"Sent {value} wei from {self.account.address} to {to}: {tx_hash.to_0x_hex()}")
        return tx_hash.to_0x_hex()

    def wait_for_transaction_receipt(self, tx_hash: str, timeout: float = 120) -> Dict:
        """Block until the transaction is mined; raises web3's TimeExhausted on timeout"""
        return self.web3.eth.wait_for_transaction_receipt(HexBytes(tx_hash), timeout=timeout)
