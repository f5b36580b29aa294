"""
Minimal contract ABIs and artifact loading helpers
"""

import json
import logging
from pathlib import Path
from typing import List, Dict, Union

from web3 import Web3

logger = logging.getLogger(__name__)

ENTRY_POINT_ABI = [
    {
        "inputs": [{"name": "sender", "type": "address"}, {"name": "key", "type": "uint192"}],
        "name": "getNonce",
        "outputs": [{"name": "nonce", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
]

SIMPLE_ACCOUNT_FACTORY_ABI = [
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "salt", "type": "uint256"}],
        "name": "getAddress",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "salt", "type": "uint256"}],
        "name": "createAccount",
        "outputs": [{"name": "ret", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
]


def load_abi(path: Union[str, Path]) -> List[Dict]:
    """Load an ABI from a Foundry/Hardhat artifact or a bare ABI JSON file"""
    with open(path) as f:
        artifact = json.load(f)

    if isinstance(artifact, dict):
        if 'abi' not in artifact:
            raise ValueError(f"No 'abi' entry in artifact {path}")
        artifact = artifact['abi']
    if not isinstance(artifact, list):
        raise ValueError(f"Unexpected ABI format in {path}")

    logger.debug(f"Loaded ABI with {len(artifact)} entries from {path}")
    return artifact


def read_address_file(path: Union[str, Path]) -> str:
    """Read a deployed contract address written by a deploy script"""
    address = Path(path).read_text().strip()
    if not Web3.is_address(address):
        raise ValueError(f"File {path} does not contain a contract address: {address!r}")
    return Web3.to_checksum_address(address)


def find_event_abi(abi: List[Dict], event_name: str) -> Dict:
    """Return the ABI entry of a named event"""
    for entry in abi:
        if entry.get('type') == 'event' and entry.get('name') == event_name:
            return entry
    raise ValueError(f"Event {event_name} not found in ABI")
