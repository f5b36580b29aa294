"""
UserOperation data model, call encoding and hashing for SimpleAccount smart accounts
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from eth_abi import encode
from web3 import Web3

logger = logging.getLogger(__name__)

# Function selectors on SimpleAccount
EXECUTE_SELECTOR = Web3.keccak(text="execute(address,uint256,bytes)")[:4]
EXECUTE_BATCH_V06_SELECTOR = Web3.keccak(text="executeBatch(address[],bytes[])")[:4]
EXECUTE_BATCH_V07_SELECTOR = Web3.keccak(text="executeBatch(address[],uint256[],bytes[])")[:4]

# Recoverable ECDSA signature accepted by SimpleAccount during gas estimation
DUMMY_SIGNATURE = bytes.fromhex(
    "fffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)


class GasSource(str, Enum):
    ESTIMATED = "estimated"
    FALLBACK = "fallback"


@dataclass
class Call:
    """A single call made by the smart account"""
    to: str
    data: bytes = b''
    value: int = 0


@dataclass
class GasPlan:
    """Gas and fee parameters chosen for one submission"""
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_source: GasSource = GasSource.ESTIMATED
    fee_source: GasSource = GasSource.ESTIMATED

    def __post_init__(self):
        if self.gas_limit <= 0:
            raise ValueError(f"Gas limit must be greater than 0, got {self.gas_limit}")


@dataclass
class UserOperationRequest:
    """One intended submission: the calls to make and the gas plan to use"""
    calls: List[Call]
    gas_plan: GasPlan

    def __post_init__(self):
        if not self.calls:
            raise ValueError("A user operation needs at least one call")


@dataclass
class UserOperation:
    """ERC-4337 UserOperation, expressed with v0.7 style factory and paymaster fields"""
    sender: str
    nonce: int
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    factory: Optional[str] = None
    factory_data: bytes = b''
    paymaster: Optional[str] = None
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0
    paymaster_data: bytes = b''

    @property
    def init_code(self) -> bytes:
        if not self.factory:
            return b''
        return bytes.fromhex(self.factory[2:]) + self.factory_data

    def paymaster_and_data(self, entry_point_version: str) -> bytes:
        if not self.paymaster:
            return b''
        paymaster = bytes.fromhex(self.paymaster[2:])
        if entry_point_version == "0.6":
            return paymaster + self.paymaster_data
        return (
            paymaster
            + self.paymaster_verification_gas_limit.to_bytes(16, 'big')
            + self.paymaster_post_op_gas_limit.to_bytes(16, 'big')
            + self.paymaster_data
        )


@dataclass
class SignedUserOperation:
    """Wrapper holding a UserOperation and its signature"""
    user_operation: UserOperation
    signature: bytes
    entry_point_version: str = "0.6"


def encode_calls(calls: List[Call], entry_point_version: str) -> bytes:
    """Encode calls as SimpleAccount execute/executeBatch call data"""
    if len(calls) == 1:
        call = calls[0]
        encoded_params = encode(
            ['address', 'uint256', 'bytes'],
            [Web3.to_checksum_address(call.to), call.value, call.data]
        )
        return EXECUTE_SELECTOR + encoded_params

    targets = [Web3.to_checksum_address(call.to) for call in calls]
    if entry_point_version == "0.6":
        # v0.6 SimpleAccount.executeBatch carries no values
        if any(call.value for call in calls):
            raise ValueError("executeBatch on entry point v0.6 accounts cannot transfer value")
        encoded_params = encode(['address[]', 'bytes[]'], [targets, [call.data for call in calls]])
        return EXECUTE_BATCH_V06_SELECTOR + encoded_params

    encoded_params = encode(
        ['address[]', 'uint256[]', 'bytes[]'],
        [targets, [call.value for call in calls], [call.data for call in calls]]
    )
    return EXECUTE_BATCH_V07_SELECTOR + encoded_params


def pack_user_operation(user_op: UserOperation, entry_point_version: str) -> bytes:
    """ABI-encode the hashed fields of a UserOperation (signature excluded)"""
    hashed = [
        Web3.keccak(user_op.init_code),
        Web3.keccak(user_op.call_data),
    ]
    paymaster_and_data_hash = Web3.keccak(user_op.paymaster_and_data(entry_point_version))

    if entry_point_version == "0.6":
        return encode(
            ['address', 'uint256', 'bytes32', 'bytes32', 'uint256', 'uint256',
             'uint256', 'uint256', 'uint256', 'bytes32'],
            [
                Web3.to_checksum_address(user_op.sender),
                user_op.nonce,
                *hashed,
                user_op.call_gas_limit,
                user_op.verification_gas_limit,
                user_op.pre_verification_gas,
                user_op.max_fee_per_gas,
                user_op.max_priority_fee_per_gas,
                paymaster_and_data_hash,
            ]
        )

    # v0.7 packs gas limits and fees into two bytes32 words
    account_gas_limits = (user_op.verification_gas_limit << 128 | user_op.call_gas_limit).to_bytes(32, 'big')
    gas_fees = (user_op.max_priority_fee_per_gas << 128 | user_op.max_fee_per_gas).to_bytes(32, 'big')
    return encode(
        ['address', 'uint256', 'bytes32', 'bytes32', 'bytes32', 'uint256', 'bytes32', 'bytes32'],
        [
            Web3.to_checksum_address(user_op.sender),
            user_op.nonce,
            *hashed,
            account_gas_limits,
            user_op.pre_verification_gas,
            gas_fees,
            paymaster_and_data_hash,
        ]
    )


def get_user_operation_hash(
    user_op: UserOperation,
    entry_point: str,
    chain_id: int,
    entry_point_version: str
) -> bytes:
    """Compute the hash the EntryPoint hands to the account for validation"""
    packed_hash = Web3.keccak(pack_user_operation(user_op, entry_point_version))
    return bytes(Web3.keccak(encode(
        ['bytes32', 'address', 'uint256'],
        [packed_hash, Web3.to_checksum_address(entry_point), chain_id]
    )))
