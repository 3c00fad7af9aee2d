"""Ledger client for interacting with the TicketAuction contract."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.middleware import ExtraDataToPOAMiddleware

from ..config import BlockchainConfig
from ..exceptions import LedgerError, TransactionFailedError
from .auction_data import Auction, FeeEstimate, LedgerEvent
from .contract_abis import ContractABIs

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Chains whose blocks carry oversized extraData (BSC, Polygon, Mumbai, Base, Base Sepolia)
POA_CHAIN_IDS = {56, 137, 80001, 8453, 84532}


def normalize_tx_hash(tx_hash: Any) -> str:
    """Normalize a transaction hash to a 0x-prefixed hex string."""
    if isinstance(tx_hash, (bytes, bytearray)):
        text = bytes(tx_hash).hex()
    else:
        text = str(tx_hash)
    return text if text.startswith('0x') else f'0x{text}'


def auction_from_struct(values: Sequence[Any]) -> Auction:
    """Map the getAuction() tuple onto an Auction snapshot."""
    (auction_id, ticket_id, ticket_count, start_price, buy_now_price, min_increment,
     expiry_time, seller, highest_bidder, highest_bid, is_active, is_settled) = values

    return Auction(
        id=str(auction_id),
        ticket_id=str(ticket_id),
        ticket_count=int(ticket_count),
        start_price=int(start_price),
        buy_now_price=int(buy_now_price),
        min_increment=int(min_increment),
        expiry_time=int(expiry_time),
        seller=seller,
        highest_bid=int(highest_bid),
        highest_bidder=None if highest_bidder in (None, ZERO_ADDRESS) else highest_bidder,
        is_active=bool(is_active),
        is_settled=bool(is_settled),
    )


class PendingTransaction:
    """Handle for a submitted transaction; `wait()` resolves to its receipt."""

    def __init__(self, client: "LedgerClient", tx_hash: str, description: str = ""):
        self.client = client
        self.tx_hash = tx_hash
        self.description = description

    async def wait(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Wait for the transaction to be mined.

        Returns:
            Receipt summary with transactionHash, blockNumber, gasUsed and status

        Raises:
            TransactionFailedError: If the receipt reports a revert or never arrives
        """
        receipt = await self.client.wait_for_transaction(self.tx_hash, timeout=timeout)
        if receipt['status'] != 1:
            raise TransactionFailedError(
                "Transaction reverted",
                {"tx": self.tx_hash, "call": self.description, "block": receipt['blockNumber']}
            )
        return receipt

    def __repr__(self):
        return f"PendingTransaction({self.description}, {self.tx_hash})"


class LedgerClient:
    """
    Asynchronous client for the TicketAuction contract on an EVM network.

    Provides methods for:
    - Reading auctions and chain state
    - Submitting auction transactions (bid, buyNow, settle, refund)
    - Querying event logs over a block range
    """

    def __init__(self, blockchain_config: Optional[BlockchainConfig] = None):
        self.config = blockchain_config or BlockchainConfig()
        self.w3: Optional[AsyncWeb3] = None
        self.account = None
        self.contract = None
        self.abis = ContractABIs(self.config.abi_path)

    @property
    def address(self) -> Optional[str]:
        """Address of the signing account, if one is configured."""
        return self.account.address if self.account else None

    async def initialize(self):
        """Connect to the RPC endpoint, set up the signer and load the contract."""
        try:
            self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                self.config.rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.config.request_timeout)}
            ))

            if self.config.chain_id in POA_CHAIN_IDS:
                self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

            if self.config.private_key:
                self.account = Account.from_key(self.config.private_key)
                logger.info(f"Initialized signer account: {self.account.address}")

            if self.config.contract_address:
                self.contract = self.w3.eth.contract(
                    address=Web3.to_checksum_address(self.config.contract_address),
                    abi=self.abis.get_abi()
                )
                logger.info(f"Loaded TicketAuction contract at {self.config.contract_address}")

            if await self.is_connected():
                chain_id = await self.w3.eth.chain_id
                logger.info(f"Connected to ledger - Chain ID: {chain_id}")
            else:
                logger.error(f"Failed to connect to ledger at {self.config.rpc_url}")

        except Exception as e:
            logger.error(f"Error initializing ledger client: {e}")
            raise

    async def close(self):
        """Release the provider's HTTP session."""
        if self.w3 is not None:
            disconnect = getattr(self.w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()

    async def is_connected(self) -> bool:
        """Check if connected to the ledger."""
        try:
            if not self.w3:
                return False
            await self.w3.eth.block_number
            return True
        except Exception:
            return False

    def _require_contract(self):
        if not self.w3 or self.contract is None:
            raise LedgerError("Ledger client not initialized or contract address missing")
        return self.contract

    async def get_block_number(self) -> int:
        """Get the current chain head height."""
        if not self.w3:
            raise LedgerError("Ledger client not initialized")
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            raise LedgerError(f"Failed to read block height: {e}") from e

    async def get_fee_estimate(self) -> FeeEstimate:
        """Get current fee parameters (fixed gas price from config wins)."""
        if not self.w3:
            raise LedgerError("Ledger client not initialized")

        if self.config.gas_price:
            return FeeEstimate(gas_price=self.config.gas_price)

        try:
            gas_price = await self.w3.eth.gas_price
        except Exception as e:
            raise LedgerError(f"Failed to read gas price: {e}") from e

        try:
            priority_fee = await self.w3.eth.max_priority_fee
        except Exception:
            # Legacy networks do not expose eth_maxPriorityFeePerGas
            priority_fee = None

        return FeeEstimate(gas_price=int(gas_price), max_priority_fee=priority_fee)

    async def get_auction(self, auction_id: str) -> Auction:
        """Read an auction snapshot from the contract."""
        contract = self._require_contract()
        try:
            values = await contract.functions.getAuction(int(auction_id)).call()
        except Exception as e:
            raise LedgerError(f"Failed to read auction {auction_id}: {e}") from e
        return auction_from_struct(values)

    async def get_active_auction_for_ticket(self, ticket_id: str) -> Optional[str]:
        """Get the active auction id for a ticket, or None when there is none."""
        contract = self._require_contract()
        try:
            auction_id = await contract.functions.getActiveAuctionForTicket(int(ticket_id)).call()
        except Exception as e:
            raise LedgerError(f"Failed to read active auction for ticket {ticket_id}: {e}") from e
        return str(auction_id) if auction_id else None

    async def bid(self, auction_id: str, amount: int) -> PendingTransaction:
        """Place a bid on an auction."""
        return await self._send("bid", int(auction_id), int(amount))

    async def buy_now(self, auction_id: str) -> PendingTransaction:
        """Execute the buy-now price of an auction."""
        return await self._send("buyNow", int(auction_id))

    async def settle(self, auction_id: str, fee: Optional[FeeEstimate] = None) -> PendingTransaction:
        """Settle an expired auction (coordinator only)."""
        return await self._send("settle", int(auction_id), fee=fee)

    async def refund(self, ticket_id: str) -> PendingTransaction:
        """Return an unsold ticket to its seller."""
        return await self._send("refund", int(ticket_id))

    async def _send(self, method_name: str, *args, fee: Optional[FeeEstimate] = None) -> PendingTransaction:
        """Build, sign and broadcast a contract transaction."""
        if not self.account:
            raise LedgerError("No account configured for sending transactions")

        contract = self._require_contract()
        method = getattr(contract.functions, method_name)

        if fee is None:
            fee = await self.get_fee_estimate()

        try:
            transaction = await method(*args).build_transaction({
                'from': self.account.address,
                'gas': self.config.gas_limit,
                'gasPrice': fee.gas_price,
                'nonce': await self.w3.eth.get_transaction_count(self.account.address, 'pending'),
                'chainId': self.config.chain_id,
            })

            signed_txn = self.account.sign_transaction(transaction)
            tx_hash = await self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
        except Exception as e:
            raise TransactionFailedError(f"{method_name} submission failed: {e}") from e

        tx_hash_hex = normalize_tx_hash(tx_hash)
        logger.info(f"Sent {method_name} transaction: {tx_hash_hex}")
        return PendingTransaction(self, tx_hash_hex, f"{method_name}{args}")

    async def wait_for_transaction(self, tx_hash: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait for transaction confirmation."""
        if not self.w3:
            raise LedgerError("Ledger client not initialized")

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout or self.config.receipt_timeout
            )
        except Exception as e:
            logger.error(f"Error waiting for transaction {tx_hash}: {e}")
            raise TransactionFailedError(f"No receipt for {tx_hash}: {e}") from e

        return {
            'transactionHash': normalize_tx_hash(receipt['transactionHash']),
            'blockNumber': receipt['blockNumber'],
            'gasUsed': receipt['gasUsed'],
            'status': receipt['status'],
        }

    async def query_events(self, event_name: str, from_block: int, to_block: int) -> List[LedgerEvent]:
        """Get decoded contract events of one type in [from_block, to_block]."""
        contract = self._require_contract()
        event = getattr(contract.events, event_name)

        try:
            logs = await event.get_logs(from_block=from_block, to_block=to_block)
        except Exception as e:
            raise LedgerError(f"Failed to query {event_name} events in [{from_block}, {to_block}]: {e}") from e

        return [
            LedgerEvent(
                name=event_name,
                args=dict(log['args']),
                block_number=log.get('blockNumber'),
                log_index=log.get('logIndex'),
                transaction_hash=normalize_tx_hash(log['transactionHash']) if log.get('transactionHash') else None,
            )
            for log in logs
        ]
