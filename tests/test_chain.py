from unittest.mock import MagicMock

import pytest
from hexbytes import HexBytes

from chain import PLAIN_TRANSFER_GAS, ChainReader, ChainWriter
from tests.utils.constants import SMART_ACCOUNT_ADDRESS, TARGET_ADDRESS


@pytest.fixture
def web3():
    w3 = MagicMock()
    w3.eth.get_block.return_value = {'number': 10, 'baseFeePerGas': 1_000_000_000}
    w3.eth.max_priority_fee = 100
    w3.eth.chain_id = 31337
    w3.eth.get_transaction_count.return_value = 3
    w3.eth.send_raw_transaction.return_value = HexBytes("0x" + "aa" * 32)
    return w3


def test_fee_estimate_scales_base_fee(web3):
    fees = ChainReader(web3).estimate_fees_per_gas()

    assert fees.max_priority_fee_per_gas == 100
    assert fees.max_fee_per_gas == 1_200_000_100


def test_fee_estimate_requires_base_fee(web3):
    web3.eth.get_block.return_value = {'number': 10}

    with pytest.raises(ValueError):
        ChainReader(web3).estimate_fees_per_gas()


def test_estimate_gas_simulates_direct_call(web3, owner):
    web3.eth.estimate_gas.return_value = 50000

    gas = ChainReader(web3).estimate_gas(from_=owner.address, to=SMART_ACCOUNT_ADDRESS, data=b'\xb6\x1d', value=0)

    assert gas == 50000
    web3.eth.estimate_gas.assert_called_once_with({
        'from': owner.address,
        'to': SMART_ACCOUNT_ADDRESS,
        'data': "0xb61d",
        'value': 0,
    })


def test_is_deployed(web3):
    reader = ChainReader(web3)

    web3.eth.get_code.return_value = HexBytes("0x")
    assert not reader.is_deployed(SMART_ACCOUNT_ADDRESS)

    web3.eth.get_code.return_value = HexBytes("0x6080")
    assert reader.is_deployed(SMART_ACCOUNT_ADDRESS)


def test_send_transaction_signs_locally(web3, owner):
    writer = ChainWriter(web3, owner)

    tx_hash = writer.send_transaction(TARGET_ADDRESS, 10**18)

    assert tx_hash == "0x" + "aa" * 32
    web3.eth.get_transaction_count.assert_called_once_with(owner.address, 'pending')
    raw_transaction = web3.eth.send_raw_transaction.call_args.args[0]
    assert len(raw_transaction) > 0
    assert PLAIN_TRANSFER_GAS == 21000


def test_wait_for_transaction_receipt_forwards_timeout(web3, owner):
    web3.eth.wait_for_transaction_receipt.return_value = {'status': 1}

    receipt = ChainWriter(web3, owner).wait_for_transaction_receipt("0x" + "aa" * 32, timeout=5)

    assert receipt == {'status': 1}
    web3.eth.wait_for_transaction_receipt.assert_called_once_with(HexBytes("0x" + "aa" * 32), timeout=5)
