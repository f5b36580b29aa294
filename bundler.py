"""
ERC-4337 bundler JSON-RPC client, wire format conversion and error classification
"""

import logging
import time
from enum import Enum
from typing import Any, List, Dict, Optional, Union

import requests

from config import SmartAccountConfig
from user_operations import DUMMY_SIGNATURE, SignedUserOperation, UserOperation

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30

# ERC-4337 JSON-RPC error codes for operations rejected during validation
ACCOUNT_ABSTRACTION_ERROR_CODES = range(-32507, -32499)


class ErrorKind(str, Enum):
    ACCOUNT_ABSTRACTION = "account_abstraction"
    GAS = "gas"
    UNCLASSIFIED = "unclassified"


def classify_error(message: str) -> ErrorKind:
    """Coarse diagnostic category from an error message"""
    if "AA" in message:
        return ErrorKind.ACCOUNT_ABSTRACTION
    if "gas" in message:
        return ErrorKind.GAS
    return ErrorKind.UNCLASSIFIED


class BundlerError(Exception):
    """Raised when the bundler rejects a request"""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    @property
    def kind(self) -> ErrorKind:
        if self.code in ACCOUNT_ABSTRACTION_ERROR_CODES:
            return ErrorKind.ACCOUNT_ABSTRACTION
        return classify_error(self.message)


class UserOperationReceiptTimeout(Exception):
    """No receipt for the user operation within the polling window"""

    def __init__(self, user_operation_hash: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for user operation {user_operation_hash}")
        self.user_operation_hash = user_operation_hash
        self.timeout = timeout


def _hex(value: Union[bytes, str, None]) -> str:
    if value is None:
        return "0x"
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return value


def convert_user_operation_to_bundler_format(
    user_op: Union[UserOperation, SignedUserOperation],
    signature: bytes = None,
    entry_point_version: str = "0.6"
) -> Dict:
    """Convert a UserOperation to the bundler's JSON-RPC format for the given entry point version"""
    # Handle SignedUserOperation wrapper
    if isinstance(user_op, SignedUserOperation):
        op = user_op.user_operation
        signature = user_op.signature
        entry_point_version = user_op.entry_point_version
    else:
        op = user_op

    bundler_dict = {
        "sender": op.sender,
        "nonce": hex(op.nonce),
        "callData": _hex(op.call_data),
        "callGasLimit": hex(op.call_gas_limit),
        "verificationGasLimit": hex(op.verification_gas_limit),
        "preVerificationGas": hex(op.pre_verification_gas),
        "maxFeePerGas": hex(op.max_fee_per_gas),
        "maxPriorityFeePerGas": hex(op.max_priority_fee_per_gas),
        "signature": _hex(signature),
    }

    if entry_point_version == "0.6":
        bundler_dict.update({
            "initCode": _hex(op.init_code),
            "paymasterAndData": _hex(op.paymaster_and_data(entry_point_version)),
        })
        return bundler_dict

    # v0.7 splits factory and paymaster fields, omitted when unused
    if op.factory:
        bundler_dict.update({
            "factory": op.factory,
            "factoryData": _hex(op.factory_data),
        })
    if op.paymaster:
        bundler_dict.update({
            "paymaster": op.paymaster,
            "paymasterVerificationGasLimit": hex(op.paymaster_verification_gas_limit),
            "paymasterPostOpGasLimit": hex(op.paymaster_post_op_gas_limit),
            "paymasterData": _hex(op.paymaster_data),
        })

    return bundler_dict


class BundlerClient:
    """Client for interacting with ERC-4337 bundlers"""

    def __init__(self, config: SmartAccountConfig):
        self.config = config
        self.session = requests.Session()
        self._request_id = 0

    def estimate_user_operation_gas(self, user_operation: UserOperation) -> Dict:
        """Estimate gas limits for a UserOperation signed with a dummy signature"""
        user_op_dict = convert_user_operation_to_bundler_format(
            user_operation, DUMMY_SIGNATURE, self.config.entry_point_version
        )
        return self._make_bundler_request(
            "eth_estimateUserOperationGas", [user_op_dict, self.config.entry_point_address]
        )

    def send_user_operation(self, signed_user_op: SignedUserOperation) -> str:
        """Send SignedUserOperation to bundler and return the user operation hash"""
        user_op_dict = convert_user_operation_to_bundler_format(signed_user_op)
        logger.debug(f"Full UserOp to bundler: {user_op_dict}")
        user_operation_hash = self._make_bundler_request(
            "eth_sendUserOperation", [user_op_dict, self.config.entry_point_address]
        )
        if not isinstance(user_operation_hash, str):
            raise BundlerError(f"Bundler returned an invalid user operation hash: {user_operation_hash!r}")

        logger.info(f"UserOperation accepted by bundler: {user_operation_hash}")
        return user_operation_hash

    def get_user_operation_receipt(self, user_operation_hash: str) -> Optional[Dict]:
        """Return the receipt of an included user operation, None while it is pending"""
        return self._make_bundler_request("eth_getUserOperationReceipt", [user_operation_hash])

    def get_user_operation_by_hash(self, user_operation_hash: str) -> Optional[Dict]:
        return self._make_bundler_request("eth_getUserOperationByHash", [user_operation_hash])

    def supported_entry_points(self) -> List[str]:
        return self._make_bundler_request("eth_supportedEntryPoints", [])

    def wait_for_user_operation_receipt(
        self,
        user_operation_hash: str,
        timeout: float = None,
        retry_interval: float = None
    ) -> Dict:
        """Poll for the user operation receipt until it arrives or the timeout elapses"""
        timeout = self.config.receipt_timeout if timeout is None else timeout
        retry_interval = self.config.receipt_retry_interval if retry_interval is None else retry_interval

        deadline = time.monotonic() + timeout
        attempts = 0
        while True:
            attempts += 1
            receipt = self.get_user_operation_receipt(user_operation_hash)
            if receipt is not None:
                logger.info(f"Receipt for {user_operation_hash} found after {attempts} attempts")
                return receipt

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise UserOperationReceiptTimeout(user_operation_hash, timeout)
            time.sleep(min(retry_interval, remaining))

    def _make_bundler_request(self, method: str, params: List) -> Any:
        """Make JSON-RPC request to bundler"""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id
        }

        try:
            response = self.session.post(
                self.config.bundler_url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            logger.error(f"Bundler request {method} to {self.config.bundler_url} failed: {e}")
            raise BundlerError(f"Bundler request {method} failed: {e}") from e
        if response.status_code != 200:
            logger.error(f"HTTP error from bundler for {method}: {response.status_code}")
            raise BundlerError(f"Bundler responded with HTTP {response.status_code}: {response.text}")

        try:
            result = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from bundler for {method}: {e}")
            raise BundlerError(f"Bundler returned invalid JSON for {method}: {e}") from e
        if not isinstance(result, dict):
            raise BundlerError(f"Bundler returned an unexpected response for {method}: {result!r}")
        if 'error' in result:
            error = result['error'] or {}
            message = error.get('message', 'Unknown error')
            logger.error(f"Bundler error for {method}: {message}")
            raise BundlerError(message, code=error.get('code'), data=error.get('data'))

        return result.get('result')
