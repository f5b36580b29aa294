"""
SimpleAccount smart account facade: counterfactual address, init code, nonce and signing
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from eth_abi import encode
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.constants import ADDRESS_ZERO

from config import SmartAccountConfig, get_entry_point
from contracts import ENTRY_POINT_ABI, SIMPLE_ACCOUNT_FACTORY_ABI
from user_operations import (
    Call,
    GasPlan,
    SignedUserOperation,
    UserOperation,
    encode_calls,
    get_user_operation_hash,
)

logger = logging.getLogger(__name__)

CREATE_ACCOUNT_SELECTOR = Web3.keccak(text="createAccount(address,uint256)")[:4]


class SmartAccountError(Exception):
    """Raised when the smart account address cannot be derived"""


@dataclass(frozen=True)
class SmartAccountHandle:
    """A counterfactual SimpleAccount, deployed or not"""
    address: str
    owner: LocalAccount = field(repr=False, compare=False)
    entry_point_version: str
    entry_point: str
    factory: str
    salt: int = 0
    nonce_key: int = 0

    @property
    def owner_address(self) -> str:
        return self.owner.address


class SimpleSmartAccount:
    """Derives SimpleAccount addresses and prepares signed UserOperations for them"""

    def __init__(self, web3: Web3, config: SmartAccountConfig):
        self.web3 = web3
        self.config = config
        self._handles: Dict[Tuple[str, str, int, int], SmartAccountHandle] = {}

    def derive(
        self,
        owner: LocalAccount,
        entry_point_version: Optional[str] = None,
        nonce_key: Optional[int] = None
    ) -> SmartAccountHandle:
        """Derive the counterfactual account address for an owner without touching chain state"""
        entry_point_version = entry_point_version or self.config.entry_point_version
        nonce_key = self.config.nonce_key if nonce_key is None else nonce_key
        salt = self.config.account_salt

        key = (owner.address, entry_point_version, salt, nonce_key)
        if key in self._handles:
            return self._handles[key]

        entry_point, factory = self._get_contract_addresses(entry_point_version)
        factory_contract = self.web3.eth.contract(address=factory, abi=SIMPLE_ACCOUNT_FACTORY_ABI)
        try:
            address = factory_contract.functions.getAddress(owner.address, salt).call()
        except Exception as e:
            raise SmartAccountError(
                f"Failed to derive smart account address for owner {owner.address} from factory {factory}: {e}"
            ) from e

        if not address or address == ADDRESS_ZERO:
            raise SmartAccountError(f"Factory {factory} returned no address for owner {owner.address}")

        handle = SmartAccountHandle(
            address=Web3.to_checksum_address(address),
            owner=owner,
            entry_point_version=entry_point_version,
            entry_point=entry_point,
            factory=factory,
            salt=salt,
            nonce_key=nonce_key,
        )
        self._handles[key] = handle
        logger.info(f"Smart account for owner {owner.address} (entry point v{entry_point_version}): {handle.address}")
        return handle

    def get_nonce(self, handle: SmartAccountHandle) -> int:
        """Get current nonce for smart account from EntryPoint"""
        entry_point_contract = self.web3.eth.contract(address=handle.entry_point, abi=ENTRY_POINT_ABI)
        nonce = entry_point_contract.functions.getNonce(handle.address, handle.nonce_key).call()
        logger.info(f"Current nonce for {handle.address} (key {handle.nonce_key}): {nonce}")
        return nonce

    def get_factory_data(self, handle: SmartAccountHandle) -> bytes:
        """createAccount call data the EntryPoint runs to deploy the account"""
        return CREATE_ACCOUNT_SELECTOR + encode(['address', 'uint256'], [handle.owner_address, handle.salt])

    def encode_calls(self, handle: SmartAccountHandle, calls: List[Call]) -> bytes:
        return encode_calls(calls, handle.entry_point_version)

    def build_user_operation(
        self,
        handle: SmartAccountHandle,
        calls: List[Call],
        gas_plan: GasPlan,
        deployed: bool,
        verification_gas_limit: int,
        pre_verification_gas: int
    ) -> UserOperation:
        """Assemble an unsigned UserOperation; undeployed accounts carry their init code"""
        user_operation = UserOperation(
            sender=handle.address,
            nonce=self.get_nonce(handle),
            call_data=self.encode_calls(handle, calls),
            call_gas_limit=gas_plan.gas_limit,
            verification_gas_limit=verification_gas_limit,
            pre_verification_gas=pre_verification_gas,
            max_fee_per_gas=gas_plan.max_fee_per_gas,
            max_priority_fee_per_gas=gas_plan.max_priority_fee_per_gas,
        )
        if not deployed:
            user_operation.factory = handle.factory
            user_operation.factory_data = self.get_factory_data(handle)
        return user_operation

    def sign_user_operation(self, handle: SmartAccountHandle, user_operation: UserOperation) -> SignedUserOperation:
        """Sign the user operation hash as an Ethereum signed message, as SimpleAccount validates it"""
        user_operation_hash = get_user_operation_hash(
            user_operation, handle.entry_point, self.config.chain_id, handle.entry_point_version
        )
        signed_message = handle.owner.sign_message(encode_defunct(primitive=user_operation_hash))
        logger.debug(f"Signed user operation {user_operation_hash.hex()} for {handle.address}")
        return SignedUserOperation(
            user_operation=user_operation,
            signature=bytes(signed_message.signature),
            entry_point_version=handle.entry_point_version,
        )

    def _get_contract_addresses(self, entry_point_version: str) -> Tuple[str, str]:
        if entry_point_version == self.config.entry_point_version:
            entry_point, factory = self.config.entry_point_address, self.config.factory_address
        else:
            addresses = get_entry_point(entry_point_version)
            entry_point, factory = addresses['entry_point'], addresses['factory']
        return Web3.to_checksum_address(entry_point), Web3.to_checksum_address(factory)
