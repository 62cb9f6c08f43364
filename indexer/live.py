"""Live event reconciler.

One handler per marketplace event. Handlers are scheduled as tasks by
dispatch() and never awaited by the delivery loop; their outcome is only
visible through the record store and the log.

Listing, sale, claim and acceptance handlers do not reconstruct missing
records from a partial event. A missing record is logged and skipped.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Hashable, Set, Tuple

from database.models import Collection, Item, Offer, to_decimal_string
from metadata import ItemMetadata
from rpc import ChainEvent, MarketplaceEvent
from .context import IndexerContext

logger = logging.getLogger(__name__)

Handler = Callable[[ChainEvent], Awaitable[None]]


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class LiveEventReconciler:
    """Applies marketplace events to the record store."""

    def __init__(self, context: IndexerContext, serialize_per_item: bool = True):
        """Initialize the reconciler.

        Args:
            context: Shared store, gateway and resolver
            serialize_per_item: Apply events for the same item one at a time, in
                dispatch order. When False, same-item handlers race and the last
                write wins.
        """
        self.store = context.store
        self.resolver = context.resolver
        self.serialize_per_item = serialize_per_item

        self.handlers: Dict[MarketplaceEvent, Handler] = {
            MarketplaceEvent.COLLECTION_ADDED: self.on_collection_added,
            MarketplaceEvent.ITEM_ADDED: self.on_item_added,
            MarketplaceEvent.ITEM_LISTED: self.on_item_listed,
            MarketplaceEvent.ITEM_SOLD: self.on_item_sold,
            MarketplaceEvent.OFFER_PLACED: self.on_offer_placed,
            MarketplaceEvent.OFFER_ACCEPTED: self.on_offer_accepted,
            MarketplaceEvent.ITEM_CLAIMED: self.on_item_claimed,
        }

        self._tasks: Set[asyncio.Task] = set()
        self._locks = KeyedLock()

    @staticmethod
    def ordering_key(event: ChainEvent) -> Tuple[str, str]:
        if event.event is MarketplaceEvent.COLLECTION_ADDED:
            return ('collection', to_decimal_string(event['id']))
        return ('item', to_decimal_string(event['id']))

    def dispatch(self, event: ChainEvent) -> asyncio.Task:
        """Schedule the handler for ``event`` without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.apply(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def apply(self, event: ChainEvent) -> bool:
        """Run the handler for one event.

        Returns:
            True if the handler completed, False if it failed and the event was dropped
        """
        handler = self.handlers[event.event]
        logger.info(f"{event.event.value} {event.describe()}")

        try:
            if self.serialize_per_item:
                async with self._locks.hold(self.ordering_key(event)):
                    await handler(event)
            else:
                await handler(event)
            return True
        except Exception as e:
            logger.error(f"Error handling {event.event.value} {event.describe()}: {e}")
            return False

    async def drain(self) -> None:
        """Wait for every dispatched handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def on_collection_added(self, event: ChainEvent) -> None:
        collection = Collection(id=int(event['id']), nft_collection=event['nftCollection'])
        await self.store.collections.save(collection)
        logger.info(f"Collection {collection.id} saved")

    async def on_item_added(self, event: ChainEvent) -> None:
        item_id = to_decimal_string(event['id'])

        resolved = await self.resolver.resolve_item(item_id)
        if resolved is None:
            logger.warning(f"Item {item_id} not found on chain, saving without metadata")
            metadata = ItemMetadata()
        else:
            metadata = resolved.metadata

        item = Item(
            id=item_id,
            nft_contract=event['nftContract'],
            token_id=to_decimal_string(event['tokenId']),
            owner=event['owner'],
            price="0",
            name=metadata.name,
            description=metadata.description,
            image=metadata.image
        )
        await self.store.items.save(item)
        logger.info(f"Item {item_id} saved")

    async def on_item_listed(self, event: ChainEvent) -> None:
        item_id = to_decimal_string(event['id'])

        item = await self.store.items.find_one({'id': item_id})
        if not item:
            logger.warning(f"Item {item_id} not found, listing ignored")
            return

        await self.store.items.save(item.model_copy(update={'price': to_decimal_string(event['price'])}))
        logger.info(f"Item {item_id} listed")

    async def on_item_sold(self, event: ChainEvent) -> None:
        item_id = to_decimal_string(event['id'])

        item = await self.store.items.find_one({'id': item_id})
        if not item:
            logger.warning(f"Item {item_id} not found, sale ignored")
            return

        await self.store.items.save(item.model_copy(update={'owner': event['buyer'], 'price': "0"}))
        logger.info(f"Item {item_id} sold to {event['buyer']}")

    async def on_offer_placed(self, event: ChainEvent) -> None:
        item_id = to_decimal_string(event['id'])
        buyer = event['buyer']
        price = to_decimal_string(event['price'])

        chain_item = await self.resolver.get_item(item_id)
        if chain_item is None:
            logger.warning(f"Item {item_id} not found on chain, offer ignored")
            return
        seller = chain_item.owner

        offer = await self.store.offers.find_one({'item_id': item_id, 'offerer': buyer})
        if offer:
            await self.store.offers.save(
                offer.model_copy(update={'price': price, 'seller': seller, 'is_accepted': False})
            )
            logger.info(f"Offer by {buyer} on item {item_id} updated")
            return

        await self.store.offers.save(Offer(
            item_id=item_id,
            offerer=buyer,
            seller=seller,
            price=price,
            is_accepted=False
        ))
        logger.info(f"Offer by {buyer} on item {item_id} saved")

    async def on_offer_accepted(self, event: ChainEvent) -> None:
        item_id = to_decimal_string(event['id'])
        offerer = event['offerer']

        offer = await self.store.offers.find_one({'item_id': item_id, 'offerer': offerer})
        if not offer:
            logger.warning(f"Offer by {offerer} on item {item_id} not found, acceptance ignored")
            return

        await self.store.offers.save(offer.model_copy(update={'is_accepted': True}))
        logger.info(f"Offer by {offerer} on item {item_id} accepted")

    async def on_item_claimed(self, event: ChainEvent) -> None:
        item_id = to_decimal_string(event['id'])
        claimer = event['claimer']

        item = await self.store.items.find_one({'id': item_id})
        if not item:
            logger.warning(f"Item {item_id} not found, clearing its offers only")
        else:
            await self.store.items.save(item.model_copy(update={'owner': claimer, 'price': "0"}))
            logger.info(f"Item {item_id} claimed by {claimer}")

        deleted = await self.store.offers.delete_many({'item_id': item_id})
        logger.info(f"Deleted {deleted} offers for item {item_id}")
