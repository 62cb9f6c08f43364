"""Shared fixtures: in-memory record store, chain and resolver."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from database.exceptions import InvalidFilterError
from database.models import Collection, Item, Offer
from indexer import IndexerContext
from metadata import ChainItem, ChainOffer, ItemMetadata, ResolvedItem
from rpc import ChainEvent, ContractCallError, MarketplaceEvent


class InMemoryCollection:
    """Same interface as database.records.RecordCollection, backed by a dict."""

    def __init__(self, model, key: Sequence[str]):
        self.model = model
        self.key = tuple(key)
        self.columns = tuple(model.model_fields)
        self.rows: Dict[tuple, Any] = {}
        # Seconds to sleep in successive find_one calls
        self.find_delays: List[float] = []
        self.replace_calls = 0

    def _check(self, filters: Dict[str, Any]) -> None:
        unknown = set(filters) - set(self.columns)
        if unknown:
            raise InvalidFilterError(f"Unknown columns: {sorted(unknown)}")

    def _matches(self, record, filters: Dict[str, Any]) -> bool:
        return all(getattr(record, column) == value for column, value in filters.items())

    def _key(self, record) -> tuple:
        return tuple(getattr(record, column) for column in self.key)

    async def delete_all(self) -> None:
        self.rows.clear()

    async def insert_many(self, records) -> int:
        records = list(records)
        for record in records:
            self.rows[self._key(record)] = record.model_copy()
        return len(records)

    async def replace_all(self, records) -> int:
        self.replace_calls += 1
        records = list(records)
        self.rows = {self._key(record): record.model_copy() for record in records}
        return len(records)

    async def find_one(self, filters: Dict[str, Any]):
        self._check(filters)
        found = None
        for record in self.rows.values():
            if self._matches(record, filters):
                found = record.model_copy()
                break
        # The read is taken before the delay, as a slow query would return it
        if self.find_delays:
            await asyncio.sleep(self.find_delays.pop(0))
        return found

    async def find_many(self, filters: Optional[Dict[str, Any]] = None):
        filters = filters or {}
        self._check(filters)
        return [r.model_copy() for r in self.rows.values() if self._matches(r, filters)]

    async def save(self, record) -> None:
        self.rows[self._key(record)] = record.model_copy()

    async def delete_many(self, filters: Dict[str, Any]) -> int:
        self._check(filters)
        doomed = [k for k, r in self.rows.items() if self._matches(r, filters)]
        for k in doomed:
            del self.rows[k]
        return len(doomed)

    async def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        return len(await self.find_many(filters))

    def dump(self) -> List[Dict[str, Any]]:
        return [record.model_dump() for record in self.rows.values()]


class InMemoryRecords:
    def __init__(self):
        self.pool = None
        self.collections = InMemoryCollection(Collection, ('id',))
        self.items = InMemoryCollection(Item, ('id',))
        self.offers = InMemoryCollection(Offer, ('item_id', 'offerer'))


class FakeChain:
    """Contract state served by FakeGateway and FakeResolver."""

    def __init__(self):
        self.head = 100
        self.collections: List[str] = []
        self.items: List[ChainItem] = []
        self.metadata: Dict[str, ItemMetadata] = {}
        self.offers: Dict[str, List[ChainOffer]] = {}
        # Operation name -> exception raised when it is called
        self.failures: Dict[str, Exception] = {}

    def fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def add_item(self, nft_contract: str, token_id: int, owner: str, price: str = "0",
                 name: str = None, description: str = None, image: str = None) -> ChainItem:
        item = ChainItem(
            id=str(len(self.items) + 1),
            nft_contract=nft_contract,
            token_id=str(token_id),
            owner=owner,
            price=price,
        )
        self.items.append(item)
        self.metadata[item.id] = ItemMetadata(name=name, description=description, image=image)
        return item

    def find_item(self, item_id: Any) -> Optional[ChainItem]:
        for item in self.items:
            if item.id == str(item_id):
                return item
        return None


class FakeGateway:
    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.handlers: Dict[MarketplaceEvent, list] = {}
        self.calls: List[tuple] = []
        self.queued: List[ChainEvent] = []
        self.started_from: Optional[int] = None
        self.running = False
        self.stopped = False

    async def call_read_method(self, name: str, *args):
        self.calls.append((name, args))
        self.chain.fail(name)
        if name == 'collectionCount':
            return len(self.chain.collections)
        if name == 'collections':
            self.chain.fail(f'collections:{args[0]}')
            return self.chain.collections[args[0] - 1]
        if name == 'itemCount':
            return len(self.chain.items)
        raise ContractCallError("unknown function", name)

    async def block_number(self) -> int:
        return self.chain.head

    def subscribe(self, event, handler) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, event, handler=None) -> None:
        if handler is None:
            self.handlers.pop(event, None)
            return
        handlers = self.handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self.handlers.pop(event, None)

    def emit(self, event: ChainEvent) -> None:
        for handler in list(self.handlers.get(event.event, [])):
            handler(event)

    async def start(self, from_block: Optional[int] = None) -> None:
        """Deliver queued events from ``from_block`` on, then return as if stopped."""
        self.started_from = from_block
        self.running = True
        for event in sorted(self.queued, key=lambda e: e.ordering):
            if from_block is None or (event.block_number or 0) >= from_block:
                self.emit(event)
        await asyncio.sleep(0)
        self.running = False

    def stop(self) -> None:
        self.running = False
        self.stopped = True


class FakeResolver:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    async def get_item(self, item_id):
        self.chain.fail('get_item')
        return self.chain.find_item(item_id)

    async def resolve_item(self, item_id):
        self.chain.fail('resolve_item')
        item = self.chain.find_item(item_id)
        if item is None:
            return None
        return ResolvedItem(item=item, metadata=self.chain.metadata.get(item.id, ItemMetadata()))

    async def load_all_items(self):
        self.chain.fail('load_all_items')
        return list(self.chain.items), [self.chain.metadata[item.id] for item in self.chain.items]

    async def get_offers(self, item_id):
        self.chain.fail('get_offers')
        self.chain.fail(f'get_offers:{item_id}')
        return list(self.chain.offers.get(str(item_id), []))


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def store() -> InMemoryRecords:
    return InMemoryRecords()


@pytest.fixture
def context(chain, store) -> IndexerContext:
    return IndexerContext(
        store=store,
        gateway=FakeGateway(chain),
        resolver=FakeResolver(chain),
        settings={'serialize_per_item': True}
    )


@pytest.fixture
def make_event():
    """Build a ChainEvent from keyword arguments."""
    counter = {'log_index': 0}

    def factory(event: MarketplaceEvent, block: int = 101, **args) -> ChainEvent:
        counter['log_index'] += 1
        return ChainEvent(event=event, args=args, block_number=block, log_index=counter['log_index'])

    return factory
