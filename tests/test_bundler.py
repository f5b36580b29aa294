from unittest.mock import MagicMock

import pytest
import requests

import bundler
from bundler import (
    BundlerClient,
    BundlerError,
    ErrorKind,
    UserOperationReceiptTimeout,
    classify_error,
    convert_user_operation_to_bundler_format,
)
from tests.utils.constants import SMART_ACCOUNT_ADDRESS, USER_OPERATION_HASH
from user_operations import SignedUserOperation, UserOperation

FACTORY = "0x9406Cc6185a346906296840746125a0E44976454"


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def rpc_response(result=None, error=None, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.text = "Bad Gateway"
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    response.json.return_value = body
    return response


@pytest.fixture
def user_operation():
    return UserOperation(
        sender=SMART_ACCOUNT_ADDRESS,
        nonce=1,
        call_data=b'\xb6\x1d\x27\xf6',
        call_gas_limit=100000,
        verification_gas_limit=1000000,
        pre_verification_gas=60000,
        max_fee_per_gas=2_000_000_000,
        max_priority_fee_per_gas=1_000_000_000,
        factory=FACTORY,
        factory_data=b'\x5f\xbf\xb9\xcf',
    )


@pytest.fixture
def client(config):
    bundler_client = BundlerClient(config)
    bundler_client.session = MagicMock()
    return bundler_client


@pytest.fixture
def clock(monkeypatch):
    fake_clock = FakeClock()
    monkeypatch.setattr(bundler, "time", fake_clock)
    return fake_clock


@pytest.mark.parametrize("message, kind", [
    ("AA21 didn't pay prefund", ErrorKind.ACCOUNT_ABSTRACTION),
    ("AA13 initCode failed or OOG: out of gas", ErrorKind.ACCOUNT_ABSTRACTION),
    ("max fee per gas too low", ErrorKind.GAS),
    ("intrinsic gas too low", ErrorKind.GAS),
    ("connection refused", ErrorKind.UNCLASSIFIED),
    ("", ErrorKind.UNCLASSIFIED),
])
def test_classify_error(message, kind):
    assert classify_error(message) == kind


def test_error_code_takes_precedence_over_message():
    assert BundlerError("validation failed", code=-32500).kind == ErrorKind.ACCOUNT_ABSTRACTION
    assert BundlerError("paymaster deposit too low", code=-32501).kind == ErrorKind.ACCOUNT_ABSTRACTION
    assert BundlerError("invalid fields: maxFeePerGas too low, gas", code=-32602).kind == ErrorKind.GAS
    assert BundlerError("internal error", code=-32603).kind == ErrorKind.UNCLASSIFIED


def test_v06_format(user_operation):
    signed = SignedUserOperation(user_operation=user_operation, signature=b'\x01' * 65, entry_point_version="0.6")

    bundler_dict = convert_user_operation_to_bundler_format(signed)

    assert bundler_dict["sender"] == SMART_ACCOUNT_ADDRESS
    assert bundler_dict["nonce"] == "0x1"
    assert bundler_dict["callData"] == "0xb61d27f6"
    assert bundler_dict["callGasLimit"] == hex(100000)
    assert bundler_dict["initCode"] == FACTORY.lower() + "5fbfb9cf"
    assert bundler_dict["paymasterAndData"] == "0x"
    assert bundler_dict["signature"] == "0x" + "01" * 65
    assert "factory" not in bundler_dict


def test_v07_format(user_operation):
    bundler_dict = convert_user_operation_to_bundler_format(user_operation, b'\x02', "0.7")

    assert bundler_dict["factory"] == FACTORY
    assert bundler_dict["factoryData"] == "0x5fbfb9cf"
    assert bundler_dict["signature"] == "0x02"
    assert "initCode" not in bundler_dict
    assert "paymaster" not in bundler_dict


def test_send_user_operation_returns_hash(client, user_operation, config):
    client.session.post.return_value = rpc_response(USER_OPERATION_HASH)
    signed = SignedUserOperation(user_operation=user_operation, signature=b'\x01' * 65)

    assert client.send_user_operation(signed) == USER_OPERATION_HASH

    payload = client.session.post.call_args.kwargs["json"]
    assert payload["method"] == "eth_sendUserOperation"
    assert payload["params"][1] == config.entry_point_address
    assert client.session.post.call_args.args[0] == "http://bundler.test"


def test_rpc_error_raises_bundler_error(client, user_operation):
    client.session.post.return_value = rpc_response(
        error={"code": -32500, "message": "AA21 didn't pay prefund", "data": None}
    )
    signed = SignedUserOperation(user_operation=user_operation, signature=b'\x01' * 65)

    with pytest.raises(BundlerError) as exc_info:
        client.send_user_operation(signed)

    assert exc_info.value.code == -32500
    assert exc_info.value.message == "AA21 didn't pay prefund"
    assert exc_info.value.kind == ErrorKind.ACCOUNT_ABSTRACTION


def test_http_error_raises_bundler_error(client):
    client.session.post.return_value = rpc_response(status_code=502)

    with pytest.raises(BundlerError):
        client.supported_entry_points()


def test_estimate_uses_dummy_signature(client, user_operation):
    client.session.post.return_value = rpc_response({"verificationGasLimit": "0x1"})

    assert client.estimate_user_operation_gas(user_operation) == {"verificationGasLimit": "0x1"}

    payload = client.session.post.call_args.kwargs["json"]
    assert payload["method"] == "eth_estimateUserOperationGas"
    assert len(payload["params"][0]["signature"]) == 2 + 130


def test_wait_returns_receipt_once_available(client, clock):
    receipt = {"success": True, "receipt": {"transactionHash": "0x" + "22" * 32}}
    client.session.post.side_effect = [rpc_response(None), rpc_response(None), rpc_response(receipt)]

    assert client.wait_for_user_operation_receipt(USER_OPERATION_HASH, timeout=60, retry_interval=1.5) == receipt
    assert clock.sleeps == [1.5, 1.5]


def test_wait_times_out_at_deadline(client, clock):
    client.session.post.return_value = rpc_response(None)

    with pytest.raises(UserOperationReceiptTimeout) as exc_info:
        client.wait_for_user_operation_receipt(USER_OPERATION_HASH, timeout=60, retry_interval=1.5)

    assert exc_info.value.user_operation_hash == USER_OPERATION_HASH
    assert clock.now == pytest.approx(60)
    assert len(clock.sleeps) == 40
    assert client.session.post.call_count == 41


def test_wait_does_not_oversleep_past_deadline(client, clock):
    client.session.post.return_value = rpc_response(None)

    with pytest.raises(UserOperationReceiptTimeout):
        client.wait_for_user_operation_receipt(USER_OPERATION_HASH, timeout=2, retry_interval=1.5)

    assert clock.sleeps == [1.5, 0.5]


def test_wait_uses_configured_defaults(client, clock):
    client.session.post.return_value = rpc_response(None)

    with pytest.raises(UserOperationReceiptTimeout) as exc_info:
        client.wait_for_user_operation_receipt(USER_OPERATION_HASH)

    assert exc_info.value.timeout == 60
    assert set(clock.sleeps) == {1.5}


def test_wait_propagates_bundler_errors(client, clock):
    client.session.post.return_value = rpc_response(error={"code": -32601, "message": "method not found"})

    with pytest.raises(BundlerError):
        client.wait_for_user_operation_receipt(USER_OPERATION_HASH, timeout=60, retry_interval=1.5)


def test_lookup_methods(client, config):
    client.session.post.side_effect = [
        rpc_response([config.entry_point_address]),
        rpc_response(None),
    ]

    assert client.supported_entry_points() == [config.entry_point_address]
    assert client.get_user_operation_by_hash(USER_OPERATION_HASH) is None

    methods = [call.kwargs["json"]["method"] for call in client.session.post.call_args_list]
    assert methods == ["eth_supportedEntryPoints", "eth_getUserOperationByHash"]


def test_transport_failure_raises_bundler_error(client, user_operation):
    client.session.post.side_effect = requests.ConnectionError("bundler down")

    with pytest.raises(BundlerError) as exc_info:
        client.estimate_user_operation_gas(user_operation)

    assert "bundler down" in exc_info.value.message


def test_non_json_response_raises_bundler_error(client):
    response = rpc_response()
    response.json.side_effect = ValueError("Expecting value")
    client.session.post.return_value = response

    with pytest.raises(BundlerError):
        client.supported_entry_points()
