"""
Contract ABI loader for the TicketAuction contract.

A built-in ABI covering the functions and events the scheduler uses is
provided. A deployment can override it with the compiled artifact via
BLOCKCHAIN_ABI_PATH; both plain ABI lists and {"abi": [...]} artifacts
(Hardhat, Foundry, Brownie) are accepted.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


def _param(name: str, type_: str, indexed: Optional[bool] = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"name": name, "type": type_, "internalType": type_}
    if indexed is not None:
        entry["indexed"] = indexed
    return entry


def _event(name: str, *params: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(params)}


def _function(name: str, inputs: List[Dict[str, Any]], outputs: List[Dict[str, Any]],
              mutability: str = "nonpayable") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs,
        "stateMutability": mutability,
    }


AUCTION_STRUCT_FIELDS = [
    ("auctionId", "uint256"),
    ("ticketId", "uint256"),
    ("ticketCount", "uint256"),
    ("startPrice", "uint256"),
    ("buyNowPrice", "uint256"),
    ("minIncrement", "uint256"),
    ("expiryTime", "uint256"),
    ("seller", "address"),
    ("highestBidder", "address"),
    ("highestBid", "uint256"),
    ("isActive", "bool"),
    ("isSettled", "bool"),
]

# Auction ids and participant addresses are indexed; point BLOCKCHAIN_ABI_PATH at the
# compiled artifact when a deployment differs.
TICKET_AUCTION_ABI: List[Dict[str, Any]] = [
    _event(
        "AuctionCreated",
        _param("auctionId", "uint256", True),
        _param("ticketId", "uint256", True),
        _param("ticketCount", "uint256", False),
        _param("startPrice", "uint256", False),
        _param("buyNowPrice", "uint256", False),
        _param("minIncrement", "uint256", False),
        _param("expiryTime", "uint256", False),
        _param("seller", "address", True),
    ),
    _event(
        "BidPlaced",
        _param("auctionId", "uint256", True),
        _param("bidder", "address", True),
        _param("bidAmount", "uint256", False),
    ),
    _event(
        "BuyNowExecuted",
        _param("auctionId", "uint256", True),
        _param("buyer", "address", True),
        _param("buyNowPrice", "uint256", False),
    ),
    _event(
        "AuctionSettled",
        _param("auctionId", "uint256", True),
        _param("winner", "address", True),
        _param("winningBid", "uint256", False),
    ),
    _event(
        "AuctionRefunded",
        _param("auctionId", "uint256", True),
        _param("seller", "address", True),
    ),
    _event(
        "CoordinatorUpdated",
        _param("oldCoordinator", "address", True),
        _param("newCoordinator", "address", True),
    ),
    _function(
        "createAuction",
        [_param("ticketId", "uint256"), _param("ticketCount", "uint256"), _param("startPrice", "uint256"),
         _param("buyNowPrice", "uint256"), _param("minIncrement", "uint256"), _param("expiryTime", "uint256")],
        [_param("", "uint256")],
    ),
    _function("bid", [_param("auctionId", "uint256"), _param("bidPrice", "uint256")], []),
    _function("buyNow", [_param("auctionId", "uint256")], []),
    _function("settle", [_param("auctionId", "uint256")], []),
    _function("refund", [_param("ticketId", "uint256")], []),
    _function(
        "getAuction",
        [_param("auctionId", "uint256")],
        [{
            "name": "",
            "type": "tuple",
            "internalType": "struct TicketAuction.Auction",
            "components": [_param(name, type_) for name, type_ in AUCTION_STRUCT_FIELDS],
        }],
        "view",
    ),
    _function(
        "getActiveAuctionForTicket",
        [_param("ticketId", "uint256")],
        [_param("", "uint256")],
        "view",
    ),
    _function("coordinator", [], [_param("", "address")], "view"),
]


class ContractABIs:
    """
    Utility class to load and inspect the TicketAuction ABI.

    Falls back to the built-in ABI when no artifact path is configured.
    """

    def __init__(self, abi_path: Optional[Union[str, Path]] = None):
        """Initialize the ABI loader."""
        self.abi_path = Path(abi_path) if abi_path else None
        self._abi: Optional[List[Dict[str, Any]]] = None

    def _load_artifact(self, path: Path) -> List[Dict[str, Any]]:
        """
        Load an ABI from a JSON file.

        Raises:
            ValueError: If the file does not hold an ABI list or artifact
        """
        with open(path, 'r') as f:
            data = json.load(f)

        if isinstance(data, dict) and 'abi' in data:
            return data['abi']
        if isinstance(data, list):
            return data
        raise ValueError(f"Invalid ABI format in {path}")

    def get_abi(self) -> List[Dict[str, Any]]:
        """Get the TicketAuction ABI, loading it on first use."""
        if self._abi is None:
            if self.abi_path:
                self._abi = self._load_artifact(self.abi_path)
                logger.info(f"Loaded TicketAuction ABI from {self.abi_path} ({len(self._abi)} entries)")
            else:
                self._abi = TICKET_AUCTION_ABI
                logger.debug("Using built-in TicketAuction ABI")
        return self._abi

    def get_event_signature(self, event_name: str) -> Optional[Dict[str, Any]]:
        """Get the ABI entry for an event, or None if the ABI lacks it."""
        for entry in self.get_abi():
            if entry.get('type') == 'event' and entry.get('name') == event_name:
                return entry
        return None

    def list_events(self) -> List[str]:
        """List all event names in the ABI."""
        return [entry['name'] for entry in self.get_abi() if entry.get('type') == 'event']

    def list_functions(self) -> List[str]:
        """List all function names in the ABI."""
        return [entry['name'] for entry in self.get_abi() if entry.get('type') == 'function']


def get_ticket_auction_abi(abi_path: Optional[Union[str, Path]] = None) -> List[Dict[str, Any]]:
    """Get the TicketAuction contract ABI."""
    return ContractABIs(abi_path).get_abi()
