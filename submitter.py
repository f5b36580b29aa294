"""
User operation submission pipeline: derive, fund, estimate, submit and wait for inclusion
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3

from bundler import (
    BundlerClient,
    BundlerError,
    ErrorKind,
    UserOperationReceiptTimeout,
    classify_error,
)
from chain import ChainReader, ChainWriter
from config import DEFAULT_GAS_LIMITS, SmartAccountConfig
from smart_account import SimpleSmartAccount, SmartAccountHandle
from user_operations import Call, GasPlan, GasSource, UserOperation, UserOperationRequest

logger = logging.getLogger(__name__)

# Extra headroom on the bundler's verification estimate
VERIFICATION_GAS_BUFFER = 1.5


class FundingError(Exception):
    """The smart account could not be confirmed as funded"""


class SubmissionStatus(str, Enum):
    INCLUDED = "included"
    REVERTED = "reverted"
    PENDING = "pending"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class SubmissionResult:
    """Outcome of one user operation submission"""
    smart_account: str
    status: SubmissionStatus
    user_operation_hash: Optional[str] = None
    gas_plan: Optional[GasPlan] = None
    receipt: Optional[Dict] = None
    transaction_receipt: Optional[Dict] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def success(self) -> bool:
        return self.status == SubmissionStatus.INCLUDED

    @property
    def transaction_hash(self) -> Optional[str]:
        if not self.receipt:
            return None
        return self.receipt.get('receipt', {}).get('transactionHash')


class UserOperationSubmitter:
    """Submits calls from an owner's smart account through a bundler"""

    def __init__(
        self,
        config: SmartAccountConfig,
        owner: LocalAccount,
        reader: ChainReader,
        writer: ChainWriter,
        smart_account: SimpleSmartAccount,
        bundler_client: BundlerClient
    ):
        self.config = config
        self.owner = owner
        self.reader = reader
        self.writer = writer
        self.smart_account = smart_account
        self.bundler_client = bundler_client

    def submit(self, calls: List[Call]) -> SubmissionResult:
        """Run the whole pipeline for one user operation"""
        if not calls:
            raise ValueError("A user operation needs at least one call")
        logger.info(f"Preparing user operation with {len(calls)} call(s) for owner {self.owner.address}")

        handle = self.prepare_account()
        deployed = self.check_deployment(handle)
        self.ensure_funded(handle)

        request = UserOperationRequest(calls=calls, gas_plan=self.plan_gas(handle, calls))
        user_operation = self.smart_account.build_user_operation(
            handle,
            request.calls,
            request.gas_plan,
            deployed=deployed,
            verification_gas_limit=DEFAULT_GAS_LIMITS["verification"],
            pre_verification_gas=DEFAULT_GAS_LIMITS["pre_verification"],
        )
        user_operation = self._optimize_gas_settings(user_operation)
        signed_user_operation = self.smart_account.sign_user_operation(handle, user_operation)

        try:
            user_operation_hash = self.bundler_client.send_user_operation(signed_user_operation)
        except BundlerError as e:
            logger.error(f"Bundler rejected user operation from {handle.address} ({e.kind.value}): {e.message}")
            return SubmissionResult(
                smart_account=handle.address,
                status=SubmissionStatus.REJECTED,
                gas_plan=request.gas_plan,
                error=e.message,
                error_kind=e.kind,
            )

        logger.info(f"User operation submitted: {user_operation_hash}")
        result = self.wait_for_inclusion(user_operation_hash, smart_account=handle.address)
        result.gas_plan = request.gas_plan
        return result

    def prepare_account(self) -> SmartAccountHandle:
        """Derive the smart account; failures here are fatal"""
        handle = self.smart_account.derive(
            self.owner, self.config.entry_point_version, self.config.nonce_key
        )
        logger.info(f"Owner {self.owner.address} controls smart account {handle.address}")
        return handle

    def check_deployment(self, handle: SmartAccountHandle) -> bool:
        deployed = self.reader.is_deployed(handle.address)
        if not deployed:
            logger.info(
                f"Smart account {handle.address} not deployed yet, "
                f"it will be deployed with the first user operation"
            )
        return deployed

    def ensure_funded(self, handle: SmartAccountHandle) -> None:
        """Top up the smart account when its balance is exactly zero"""
        balance = self.reader.get_balance(handle.address)
        logger.info(f"Smart account {handle.address} balance: {balance} wei")
        if balance != 0:
            logger.info(f"Smart account {handle.address} already has funds, skipping funding")
            return

        amount = self.config.funding_amount_wei
        logger.info(f"Funding smart account {handle.address} with {amount} wei from {self.owner.address}")
        try:
            tx_hash = self.writer.send_transaction(handle.address, amount)
            receipt = self.writer.wait_for_transaction_receipt(tx_hash, timeout=self.config.funding_timeout)
        except Exception as e:
            raise FundingError(f"Failed to fund smart account {handle.address} with {amount} wei: {e}") from e

        if receipt.get('status') != 1:
            raise FundingError(f"Funding transaction {tx_hash} for {handle.address} failed: {dict(receipt)}")
        logger.info(f"Smart account {handle.address} funded in block {receipt.get('blockNumber')} ({tx_hash})")

    def plan_gas(self, handle: SmartAccountHandle, calls: List[Call]) -> GasPlan:
        """Estimate gas and fees independently, substituting fallbacks on failure"""
        call_data = self.smart_account.encode_calls(handle, calls)

        try:
            base_gas = self.reader.estimate_gas(
                from_=self.owner.address, to=handle.address, data=call_data, value=0
            )
            if base_gas <= 0:
                raise ValueError(f"gas estimate of {base_gas} is unusable")
            gas_source = GasSource.ESTIMATED
            logger.info(f"Estimated gas for direct call to {handle.address}: {base_gas}")
        except Exception as e:
            base_gas = self.config.fallback_gas_limit
            gas_source = GasSource.FALLBACK
            logger.warning(f"Gas estimation for {handle.address} failed: {e}. Using fallback of {base_gas}")

        try:
            fees = self.reader.estimate_fees_per_gas()
            max_fee_per_gas = fees.max_fee_per_gas
            max_priority_fee_per_gas = fees.max_priority_fee_per_gas
            fee_source = GasSource.ESTIMATED
        except Exception as e:
            max_fee_per_gas = self.config.fallback_max_fee_per_gas
            max_priority_fee_per_gas = self.config.fallback_max_priority_fee_per_gas
            fee_source = GasSource.FALLBACK
            logger.warning(f"Fee estimation failed: {e}. Using fallback fees")

        gas_plan = GasPlan(
            gas_limit=base_gas * self.config.gas_safety_margin,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            gas_source=gas_source,
            fee_source=fee_source,
        )
        logger.info(
            f"Gas plan: limit={gas_plan.gas_limit} ({gas_source.value} x{self.config.gas_safety_margin}), "
            f"maxFeePerGas={max_fee_per_gas}, maxPriorityFeePerGas={max_priority_fee_per_gas} ({fee_source.value})"
        )
        return gas_plan

    def wait_for_inclusion(
        self,
        user_operation_hash: str,
        smart_account: str = None,
        timeout: float = None,
        retry_interval: float = None
    ) -> SubmissionResult:
        """Poll the bundler for the receipt; a timeout reports the operation as pending"""
        result = SubmissionResult(
            smart_account=smart_account,
            status=SubmissionStatus.PENDING,
            user_operation_hash=user_operation_hash,
        )
        logger.info(f"Waiting for user operation {user_operation_hash} to be included...")

        try:
            receipt = self.bundler_client.wait_for_user_operation_receipt(
                user_operation_hash,
                timeout=self.config.receipt_timeout if timeout is None else timeout,
                retry_interval=self.config.receipt_retry_interval if retry_interval is None else retry_interval,
            )
        except UserOperationReceiptTimeout as e:
            logger.warning(f"{e}. Its outcome is unknown, it may still be included later")
            result.error = str(e)
            return result
        except BundlerError as e:
            result.status = SubmissionStatus.FAILED
            result.error = e.message
            result.error_kind = e.kind
            logger.error(f"Error waiting for receipt of {user_operation_hash} ({e.kind.value}): {e.message}")
            return result
        except Exception as e:
            result.status = SubmissionStatus.FAILED
            result.error = str(e)
            result.error_kind = classify_error(str(e))
            logger.error(f"Error waiting for receipt of {user_operation_hash} ({result.error_kind.value}): {e}")
            return result

        result.receipt = receipt
        if receipt.get('success', True):
            result.status = SubmissionStatus.INCLUDED
        else:
            result.status = SubmissionStatus.REVERTED
            result.error = receipt.get('reason')

        inner_receipt = receipt.get('receipt', {})
        logger.info(
            f"User operation {user_operation_hash} included in block {inner_receipt.get('blockNumber')}, "
            f"transaction {inner_receipt.get('transactionHash')}, status {result.status.value}"
        )
        result.transaction_receipt = self._fetch_transaction_receipt(inner_receipt.get('transactionHash'))
        return result

    def _fetch_transaction_receipt(self, tx_hash: Optional[str]) -> Optional[Dict]:
        if not tx_hash:
            return None
        try:
            tx_receipt = self.reader.get_transaction_receipt(tx_hash)
        except Exception as e:
            logger.warning(f"Could not fetch transaction receipt {tx_hash}: {e}")
            return None

        logs = tx_receipt.get('logs', [])
        logger.info(
            f"Transaction {tx_hash}: block {tx_receipt.get('blockNumber')}, "
            f"status {'success' if tx_receipt.get('status') == 1 else 'failed'}, "
            f"gas used {tx_receipt.get('gasUsed')}, {len(logs)} log(s)"
        )
        for index, log in enumerate(logs, start=1):
            topics = ", ".join(HexBytes(topic).to_0x_hex() for topic in log.get('topics', []))
            logger.info(
                f"Log #{index}: address={log.get('address')} topics=[{topics}] "
                f"data={HexBytes(log.get('data', b'')).to_0x_hex()}"
            )
        return tx_receipt

    def _optimize_gas_settings(self, user_operation: UserOperation) -> UserOperation:
        """Take verification gas limits from the bundler, keeping the planned call gas limit"""
        try:
            gas_estimates = self.bundler_client.estimate_user_operation_gas(user_operation)
        except BundlerError as e:
            logger.warning(
                f"Bundler gas estimation failed ({e.kind.value}): {e.message}. Keeping default verification limits"
            )
            return user_operation

        if not gas_estimates:
            return user_operation
        try:
            verification_gas = gas_estimates.get('verificationGasLimit')
            pre_verification_gas = gas_estimates.get('preVerificationGas')
            if verification_gas is not None:
                verification_gas = int(int(verification_gas, 16) * VERIFICATION_GAS_BUFFER)
            if pre_verification_gas is not None:
                pre_verification_gas = int(pre_verification_gas, 16)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Unusable bundler gas estimate {gas_estimates}: {e}. Keeping default verification limits")
            return user_operation

        if verification_gas is not None:
            user_operation.verification_gas_limit = verification_gas
        if pre_verification_gas is not None:
            user_operation.pre_verification_gas = pre_verification_gas
        return user_operation


def create_user_operation_submitter(config: SmartAccountConfig = None) -> UserOperationSubmitter:
    """Create a submitter with collaborators built from configuration"""
    config = config or SmartAccountConfig()
    owner = Account.from_key(config.owner_private_key)
    web3 = Web3(Web3.HTTPProvider(config.rpc_url))
    reader = ChainReader(web3)
    return UserOperationSubmitter(
        config=config,
        owner=owner,
        reader=reader,
        writer=ChainWriter(web3, owner, reader),
        smart_account=SimpleSmartAccount(web3, config),
        bundler_client=BundlerClient(config),
    )
