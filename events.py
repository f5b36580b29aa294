"""
Contract event subscriptions with guaranteed filter release
"""

import logging
import threading
from typing import Callable, Dict, List, Union

from web3 import Web3

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0

LogHandler = Callable[[List[Dict]], None]


def get_past_events(
    web3: Web3,
    address: str,
    abi: List[Dict],
    event_name: str,
    from_block: Union[int, str] = 0,
    to_block: Union[int, str] = 'latest'
) -> List[Dict]:
    """Fetch decoded historical logs of one event"""
    contract = web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
    event = getattr(contract.events, event_name)
    logs = list(event.get_logs(from_block=from_block, to_block=to_block))
    logger.info(f"Found {len(logs)} past {event_name} event(s) at {address}")
    return logs


class EventSubscription:
    """Watches contract events for as long as the subscription is entered

    One log filter is installed per watched event on enter and every filter is
    uninstalled on exit, however the block is left.
    """

    def __init__(
        self,
        web3: Web3,
        address: str,
        abi: List[Dict],
        handlers: Dict[str, LogHandler],
        from_block: Union[int, str] = 'latest'
    ):
        if not handlers:
            raise ValueError("At least one event handler is required")
        self.web3 = web3
        self.address = Web3.to_checksum_address(address)
        self.contract = web3.eth.contract(address=self.address, abi=abi)
        self.handlers = handlers
        self.from_block = from_block
        self._filters = {}

    def __enter__(self) -> "EventSubscription":
        try:
            for event_name in self.handlers:
                event = getattr(self.contract.events, event_name)
                self._filters[event_name] = event.create_filter(from_block=self.from_block)
                logger.info(f"Watching {event_name} events at {self.address}")
        except Exception:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    @property
    def active(self) -> bool:
        return bool(self._filters)

    def poll(self) -> int:
        """Dispatch new logs to their handlers, returning how many were seen"""
        if not self.active:
            raise RuntimeError("Subscription is not active")

        seen = 0
        for event_name, event_filter in self._filters.items():
            logs = event_filter.get_new_entries()
            if logs:
                seen += len(logs)
                self.handlers[event_name](logs)
        return seen

    def run(self, stop_event: threading.Event, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        """Poll until the stop event is set"""
        while not stop_event.is_set():
            self.poll()
            stop_event.wait(poll_interval)
        logger.info(f"Stopped watching events at {self.address}")

    def close(self) -> None:
        while self._filters:
            event_name, event_filter = self._filters.popitem()
            try:
                self.web3.eth.uninstall_filter(event_filter.filter_id)
                logger.info(f"Unsubscribed from {event_name} events at {self.address}")
            except Exception as e:
                logger.warning(f"Failed to uninstall {event_name} filter {event_filter.filter_id}: {e}")
