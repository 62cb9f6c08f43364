"""RPC module for reading the marketplace contract and following its events.

The gateway wraps an AsyncWeb3 client bound to the marketplace contract:
- read-only contract calls (bounded concurrency)
- NFT contract calls (tokenURI lookups)
- a polling loop that delivers decoded logs to subscribed handlers in
  emission order (block number, then log index)
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import backoff
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from .events import ChainEvent, MarketplaceEvent, EVENT_FIELDS

logger = logging.getLogger(__name__)

ABI_DIR = Path(__file__).resolve().parent / 'abi'

# Largest block span requested in a single get_logs call
MAX_BLOCK_RANGE = 2000

EventHandler = Callable[[ChainEvent], Any]

class RPCError(Exception):
    """Base exception for RPC errors"""
    def __init__(self, message: str, method: Optional[str] = None):
        self.method = method
        super().__init__(f"RPC Error in {method}: {message}" if method else message)

class NodeConnectionError(RPCError):
    """Raised when the node cannot be reached"""
    pass

class ContractCallError(RPCError):
    """Raised when a contract call or log query is rejected"""
    pass

def load_abi(name: str) -> List[Dict[str, Any]]:
    """Load a bundled ABI by file stem (``marketplace`` or ``nft``)."""
    with open(ABI_DIR / f'{name}.json', 'r', encoding='utf-8') as f:
        return json.load(f)

async def gather_calls(*calls: Awaitable[Any]) -> List[Any]:
    """Run calls concurrently; on the first failure cancel the rest and re-raise it."""
    tasks = [asyncio.ensure_future(call) for call in calls]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

class ChainGateway:
    """Marketplace contract client"""

    def __init__(
        self,
        rpc_url: Optional[str],
        marketplace_address: str,
        poll_interval: float = 2.0,
        max_concurrent_calls: int = 16,
        w3: Optional[AsyncWeb3] = None,
        marketplace_abi: Optional[List[Dict[str, Any]]] = None,
        nft_abi: Optional[List[Dict[str, Any]]] = None
    ):
        """Initialize the gateway.

        Args:
            rpc_url: JSON-RPC endpoint, ignored when ``w3`` is given
            marketplace_address: Address of the marketplace contract
            poll_interval: Seconds between log polls
            max_concurrent_calls: Upper bound on in-flight contract reads
            w3: Optional preconfigured AsyncWeb3 client
            marketplace_abi: Override for the bundled marketplace ABI
            nft_abi: Override for the bundled NFT ABI
        """
        self.url = rpc_url
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={'timeout': 10})
        )
        self.marketplace_address = AsyncWeb3.to_checksum_address(marketplace_address)
        self.contract = self.w3.eth.contract(
            address=self.marketplace_address,
            abi=marketplace_abi or load_abi('marketplace')
        )
        self.nft_abi = nft_abi or load_abi('nft')
        self.poll_interval = poll_interval
        self.running = False

        self._nft_contracts: Dict[str, Any] = {}
        self._handlers: Dict[MarketplaceEvent, List[EventHandler]] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent_calls)
        self._stopped = asyncio.Event()

    @backoff.on_exception(backoff.expo, NodeConnectionError, max_tries=5)
    async def connect(self) -> None:
        """Verify the node is reachable.

        Raises:
            NodeConnectionError: Connection to node failed after retries
        """
        try:
            connected = await self.w3.is_connected()
        except (OSError, asyncio.TimeoutError) as e:
            raise NodeConnectionError(f"Failed to connect to node at {self.url}: {e}") from e
        if not connected:
            raise NodeConnectionError(f"Failed to connect to node at {self.url}")
        logger.info(f"Connected to chain node, marketplace at {self.marketplace_address}")

    async def block_number(self) -> int:
        """Current chain head."""
        try:
            return await self.w3.eth.block_number
        except Web3Exception as e:
            raise ContractCallError(str(e), 'eth_blockNumber') from e
        except (OSError, asyncio.TimeoutError) as e:
            raise NodeConnectionError(f"Request failed: {e}", 'eth_blockNumber') from e

    async def _call(self, contract, name: str, *args) -> Any:
        async with self._semaphore:
            try:
                function = getattr(contract.functions, name)
                return await function(*args).call()
            except Web3Exception as e:
                raise ContractCallError(str(e), name) from e
            except (OSError, asyncio.TimeoutError) as e:
                raise NodeConnectionError(f"Request failed: {e}", name) from e
            except ValueError as e:
                # Node-side JSON-RPC errors surface as ValueError
                raise ContractCallError(str(e), name) from e

    async def call_read_method(self, name: str, *args) -> Any:
        """Call a view function on the marketplace contract.

        Args:
            name: Contract function name, e.g. ``collectionCount``
            *args: Function arguments

        Returns:
            The decoded return value

        Raises:
            NodeConnectionError: Connection to node failed
            ContractCallError: The call reverted or the function is unknown
        """
        return await self._call(self.contract, name, *args)

    async def call_nft_method(self, address: str, name: str, *args) -> Any:
        """Call a view function on an NFT contract."""
        checksum = AsyncWeb3.to_checksum_address(address)
        contract = self._nft_contracts.get(checksum)
        if contract is None:
            contract = self.w3.eth.contract(address=checksum, abi=self.nft_abi)
            self._nft_contracts[checksum] = contract
        return await self._call(contract, name, *args)

    def subscribe(self, event: MarketplaceEvent, handler: EventHandler) -> None:
        """Register a handler for an event.

        Handlers are plain callables invoked from the delivery loop; anything
        slow should be scheduled by the handler itself.
        """
        self._handlers.setdefault(MarketplaceEvent(event), []).append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {event.value}")

    def unsubscribe(self, event: MarketplaceEvent, handler: Optional[EventHandler] = None) -> None:
        """Remove one handler, or every handler when ``handler`` is None."""
        event = MarketplaceEvent(event)
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(event, None)

    @property
    def subscriptions(self) -> List[MarketplaceEvent]:
        return [event for event in MarketplaceEvent if self._handlers.get(event)]

    async def fetch_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        """Fetch subscribed events in a block range, sorted by emission order."""
        events: List[ChainEvent] = []
        for event in self.subscriptions:
            start = from_block
            while start <= to_block:
                end = min(start + MAX_BLOCK_RANGE - 1, to_block)
                try:
                    contract_event = getattr(self.contract.events, event.value)()
                    logs = await contract_event.get_logs(from_block=start, to_block=end)
                except Web3Exception as e:
                    raise ContractCallError(str(e), f'get_logs({event.value})') from e
                except (OSError, asyncio.TimeoutError) as e:
                    raise NodeConnectionError(f"Request failed: {e}", f'get_logs({event.value})') from e
                events.extend(ChainEvent.from_log(event, log) for log in logs)
                start = end + 1

        events.sort(key=lambda e: e.ordering)
        return events

    def _deliver(self, event: ChainEvent) -> None:
        for handler in list(self._handlers.get(event.event, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Handler for {event.event.value} failed: {e}")

    async def poll(self, cursor: int) -> int:
        """Deliver every event from ``cursor`` to the chain head.

        Returns:
            The next block to poll from
        """
        head = await self.block_number()
        if head < cursor:
            return cursor

        events = await self.fetch_events(cursor, head)
        for event in events:
            self._deliver(event)

        if events:
            logger.debug(f"Delivered {len(events)} events from blocks {cursor}-{head}")
        return head + 1

    async def start(self, from_block: Optional[int] = None) -> None:
        """Run the delivery loop until stop() is called.

        Args:
            from_block: First block to deliver; defaults to the block after the current head
        """
        self.running = True
        self._stopped.clear()

        cursor = from_block if from_block is not None else await self.block_number() + 1
        logger.info(f"Following marketplace events from block {cursor}")

        while self.running:
            try:
                cursor = await self.poll(cursor)
            except RPCError as e:
                # The cursor is not advanced, the range is retried next poll
                logger.error(f"Error polling events from block {cursor}: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Stop the delivery loop."""
        logger.info("Stopping event delivery...")
        self.running = False
        self._stopped.set()

# Export public interface
__all__ = [
    'ChainGateway',
    'ChainEvent',
    'MarketplaceEvent',
    'EVENT_FIELDS',
    'RPCError',
    'NodeConnectionError',
    'ContractCallError',
    'load_abi',
    'gather_calls'
]
