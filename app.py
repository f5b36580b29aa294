"""
Operator CLI for smart account user operations and contract event watching

1. send-userop: call a contract from the owner's smart account through the bundler
2. listen: watch contract events until interrupted
3. address: show the owner's smart account address and state
"""

import json
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Dict, List, Optional

import typer
from hexbytes import HexBytes
from web3 import Web3

from config import LOCAL_RPC_URL
from contracts import find_event_abi, load_abi, read_address_file
from events import DEFAULT_POLL_INTERVAL, EventSubscription, get_past_events
from submitter import SubmissionStatus, create_user_operation_submitter
from user_operations import Call

# Configure logging
logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO').upper())
logger = logging.getLogger(__name__)

cli = typer.Typer(help="Smart account user operation tools for a local development chain")


def resolve_address(address: Optional[str], address_file: Optional[Path]) -> str:
    """Contract address from an option or from a deploy script's address file"""
    if address:
        if not Web3.is_address(address):
            raise typer.BadParameter(f"Not an Ethereum address: {address}")
        return Web3.to_checksum_address(address)
    if address_file:
        return read_address_file(address_file)
    raise typer.BadParameter("Either an address or an address file is required")


def encode_function_call(abi: List[Dict], function: str, args: list) -> bytes:
    contract = Web3().eth.contract(abi=abi)
    return bytes(HexBytes(contract.encode_abi(function, args=args)))


def format_event(log: Dict) -> str:
    args = ", ".join(f"{name}={value}" for name, value in dict(log.get('args', {})).items())
    tx_hash = log.get('transactionHash')
    tx_hash = HexBytes(tx_hash).to_0x_hex() if tx_hash is not None else None
    return f"{log.get('event')}({args}) block={log.get('blockNumber')} tx={tx_hash}"


def print_logs(logs: List[Dict]) -> None:
    for log in logs:
        typer.echo(f"Event: {format_event(log)}")


@cli.command("send-userop", help="Send one contract call as a user operation from the owner's smart account")
def send_userop(
    abi: Path = typer.Option(..., exists=True, dir_okay=False, help="Contract ABI or build artifact JSON"),
    function: str = typer.Option(..., help="Contract function to call"),
    target: Optional[str] = typer.Option(None, help="Target contract address"),
    target_file: Optional[Path] = typer.Option(None, help="File holding the target contract address"),
    args: str = typer.Option("[]", help="Function arguments as a JSON array"),
    value: int = typer.Option(0, help="Wei sent along with the call"),
):
    target_address = resolve_address(target, target_file)
    try:
        function_args = json.loads(args)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"--args is not valid JSON: {e}")
    if not isinstance(function_args, list):
        raise typer.BadParameter("--args must be a JSON array")

    call_data = encode_function_call(load_abi(abi), function, function_args)
    submitter = create_user_operation_submitter()
    result = submitter.submit([Call(to=target_address, data=call_data, value=value)])

    typer.echo(f"Smart account: {result.smart_account}")
    if result.gas_plan:
        typer.echo(
            f"Gas plan: limit={result.gas_plan.gas_limit} ({result.gas_plan.gas_source.value}), "
            f"maxFeePerGas={result.gas_plan.max_fee_per_gas} ({result.gas_plan.fee_source.value})"
        )
    typer.echo(f"User operation hash: {result.user_operation_hash}")
    typer.echo(f"Status: {result.status.value}")
    if result.transaction_hash:
        typer.echo(f"Transaction hash: {result.transaction_hash}")
    if result.error:
        kind = f" [{result.error_kind.value}]" if result.error_kind else ""
        typer.echo(f"Error{kind}: {result.error}", err=True)

    if result.status in (SubmissionStatus.FAILED, SubmissionStatus.REJECTED, SubmissionStatus.REVERTED):
        raise typer.Exit(code=1)


@cli.command(help="Watch contract events until interrupted")
def listen(
    abi: Path = typer.Option(..., exists=True, dir_okay=False, help="Contract ABI or build artifact JSON"),
    event: List[str] = typer.Option(..., help="Event name to watch, repeatable"),
    address: Optional[str] = typer.Option(None, help="Contract address"),
    address_file: Optional[Path] = typer.Option(None, help="File holding the contract address"),
    past: bool = typer.Option(False, help="Print past events before watching"),
    poll_interval: float = typer.Option(DEFAULT_POLL_INTERVAL, help="Seconds between polls"),
    rpc_url: str = typer.Option(LOCAL_RPC_URL, envvar="RPC_URL", help="Chain RPC endpoint"),
):
    contract_address = resolve_address(address, address_file)
    contract_abi = load_abi(abi)
    for event_name in event:
        try:
            find_event_abi(contract_abi, event_name)
        except ValueError as e:
            raise typer.BadParameter(str(e))
    web3 = Web3(Web3.HTTPProvider(rpc_url))

    if past:
        for event_name in event:
            print_logs(get_past_events(web3, contract_address, contract_abi, event_name))

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    typer.echo(f"Listening for {', '.join(event)} events at {contract_address}...")
    with EventSubscription(web3, contract_address, contract_abi, {name: print_logs for name in event}) as subscription:
        try:
            subscription.run(stop, poll_interval=poll_interval)
        except KeyboardInterrupt:
            typer.echo("Interrupted, unsubscribing...")


@cli.command(help="Show the owner's smart account address and state")
def address():
    submitter = create_user_operation_submitter()
    handle = submitter.prepare_account()
    deployed = submitter.reader.is_deployed(handle.address)
    balance = submitter.reader.get_balance(handle.address)

    typer.echo(f"Owner: {handle.owner_address}")
    typer.echo(f"Smart account: {handle.address}")
    typer.echo(f"Entry point: {handle.entry_point} (v{handle.entry_point_version})")
    typer.echo(f"Deployed: {'yes' if deployed else 'no, deploys with the first user operation'}")
    typer.echo(f"Balance: {Web3.from_wei(balance, 'ether')} ETH")


if __name__ == "__main__":
    cli()
