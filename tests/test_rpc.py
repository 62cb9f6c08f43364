"""Tests for the chain gateway and decoded events."""

import asyncio
import inspect
from unittest.mock import AsyncMock, MagicMock

import pytest
from hexbytes import HexBytes
from web3.contract.async_contract import AsyncContractEvent
from web3.exceptions import ContractLogicError

from rpc import (
    ChainEvent,
    ChainGateway,
    ContractCallError,
    MarketplaceEvent,
    NodeConnectionError,
    gather_calls,
    load_abi
)

pytestmark = pytest.mark.asyncio  # Mark all tests as async

MARKETPLACE = "0xf4351BA9Ca701Cf689442833CDA5F7FF18C2e00C"


def make_log(block: int, index: int, **args):
    return {
        'args': args,
        'blockNumber': block,
        'logIndex': index,
        'transactionHash': HexBytes(b'\x01' * 32),
    }


@pytest.fixture
def gateway() -> ChainGateway:
    gateway = ChainGateway(None, MARKETPLACE.lower(), poll_interval=0.01, w3=MagicMock())
    gateway.w3.is_connected = AsyncMock(return_value=True)
    return gateway


def set_logs(gateway: ChainGateway, event: MarketplaceEvent, logs) -> AsyncMock:
    get_logs = AsyncMock(return_value=logs)
    getattr(gateway.contract.events, event.value).return_value.get_logs = get_logs
    return get_logs


async def test_address_is_checksummed(gateway):
    assert gateway.marketplace_address == MARKETPLACE


async def test_connect(gateway):
    await gateway.connect()
    gateway.w3.is_connected.assert_awaited_once()


async def test_call_read_method(gateway):
    function = gateway.contract.functions.items
    function.return_value.call = AsyncMock(return_value=(7, "0xC", 3, "0xO", 0))

    result = await gateway.call_read_method('items', 7)

    assert result == (7, "0xC", 3, "0xO", 0)
    function.assert_called_once_with(7)


async def test_reverted_call_raises_contract_call_error(gateway):
    gateway.contract.functions.collections.return_value.call = AsyncMock(
        side_effect=ContractLogicError("execution reverted")
    )

    with pytest.raises(ContractCallError) as excinfo:
        await gateway.call_read_method('collections', 99)

    assert excinfo.value.method == 'collections'


async def test_unreachable_node_raises_connection_error(gateway):
    gateway.contract.functions.itemCount.return_value.call = AsyncMock(
        side_effect=ConnectionRefusedError("refused")
    )

    with pytest.raises(NodeConnectionError):
        await gateway.call_read_method('itemCount')


async def test_nft_contracts_are_cached(gateway):
    gateway.w3.eth.contract.return_value.functions.tokenURI.return_value.call = AsyncMock(
        return_value="ipfs://Qm"
    )
    calls_before = gateway.w3.eth.contract.call_count

    await gateway.call_nft_method(MARKETPLACE, 'tokenURI', 1)
    await gateway.call_nft_method(MARKETPLACE.lower(), 'tokenURI', 2)

    assert gateway.w3.eth.contract.call_count == calls_before + 1


async def test_subscribe_and_unsubscribe(gateway):
    first, second = MagicMock(), MagicMock()
    gateway.subscribe(MarketplaceEvent.ITEM_SOLD, first)
    gateway.subscribe(MarketplaceEvent.ITEM_SOLD, second)
    gateway.subscribe(MarketplaceEvent.ITEM_LISTED, first)

    gateway.unsubscribe(MarketplaceEvent.ITEM_SOLD, first)
    assert gateway.subscriptions == [MarketplaceEvent.ITEM_LISTED, MarketplaceEvent.ITEM_SOLD]

    gateway.unsubscribe(MarketplaceEvent.ITEM_SOLD)
    assert gateway.subscriptions == [MarketplaceEvent.ITEM_LISTED]


async def test_poll_delivers_in_emission_order(gateway):
    delivered = []
    gateway.subscribe(MarketplaceEvent.ITEM_LISTED, delivered.append)
    gateway.subscribe(MarketplaceEvent.ITEM_SOLD, delivered.append)
    gateway.block_number = AsyncMock(return_value=12)

    set_logs(gateway, MarketplaceEvent.ITEM_LISTED, [
        make_log(11, 0, id=7, nftContract="0xC", tokenId=3, seller="0xO", price=5),
    ])
    set_logs(gateway, MarketplaceEvent.ITEM_SOLD, [
        make_log(12, 1, id=7, nftContract="0xC", tokenId=3, seller="0xO", buyer="0xB", price=5),
        make_log(10, 4, id=2, nftContract="0xC", tokenId=1, seller="0xO", buyer="0xB", price=9),
    ])

    cursor = await gateway.poll(10)

    assert cursor == 13
    assert [e.ordering for e in delivered] == [(10, 4), (11, 0), (12, 1)]
    assert delivered[1].event == MarketplaceEvent.ITEM_LISTED


async def test_poll_before_new_blocks_keeps_cursor(gateway):
    gateway.subscribe(MarketplaceEvent.ITEM_SOLD, MagicMock())
    gateway.block_number = AsyncMock(return_value=9)
    get_logs = set_logs(gateway, MarketplaceEvent.ITEM_SOLD, [])

    assert await gateway.poll(10) == 10
    get_logs.assert_not_called()


async def test_large_ranges_are_chunked(gateway):
    gateway.subscribe(MarketplaceEvent.ITEM_CLAIMED, MagicMock())
    get_logs = set_logs(gateway, MarketplaceEvent.ITEM_CLAIMED, [])

    await gateway.fetch_events(0, 4500)

    ranges = [(c.kwargs['from_block'], c.kwargs['to_block']) for c in get_logs.call_args_list]
    assert ranges == [(0, 1999), (2000, 3999), (4000, 4500)]


async def test_failing_handler_does_not_stop_delivery(gateway):
    delivered = []

    def broken(event):
        raise RuntimeError("handler bug")

    gateway.subscribe(MarketplaceEvent.ITEM_CLAIMED, broken)
    gateway.subscribe(MarketplaceEvent.ITEM_CLAIMED, delivered.append)
    gateway.block_number = AsyncMock(return_value=3)
    set_logs(gateway, MarketplaceEvent.ITEM_CLAIMED, [
        make_log(2, 0, id=1, claimer="0xA"),
        make_log(3, 0, id=2, claimer="0xB"),
    ])

    await gateway.poll(1)

    assert [e['id'] for e in delivered] == [1, 2]


async def test_start_runs_until_stopped(gateway):
    delivered = []

    def handler(event):
        delivered.append(event)
        gateway.stop()

    gateway.subscribe(MarketplaceEvent.COLLECTION_ADDED, handler)
    gateway.block_number = AsyncMock(return_value=5)
    get_logs = set_logs(gateway, MarketplaceEvent.COLLECTION_ADDED, [
        make_log(5, 0, id=1, nftCollection="0xABC"),
    ])

    await gateway.start(from_block=4)

    assert len(delivered) == 1
    assert get_logs.call_args.kwargs == {'from_block': 4, 'to_block': 5}
    assert not gateway.running


async def test_start_retries_range_after_rpc_error(gateway):
    delivered = []

    def handler(event):
        delivered.append(event)
        gateway.stop()

    gateway.subscribe(MarketplaceEvent.COLLECTION_ADDED, handler)
    gateway.block_number = AsyncMock(side_effect=[NodeConnectionError("down"), 5])
    get_logs = set_logs(gateway, MarketplaceEvent.COLLECTION_ADDED, [
        make_log(5, 0, id=1, nftCollection="0xABC"),
    ])

    await gateway.start(from_block=4)

    assert get_logs.call_args.kwargs['from_block'] == 4
    assert len(delivered) == 1


async def test_chain_event_from_log():
    event = ChainEvent.from_log(
        MarketplaceEvent.OFFER_ACCEPTED, make_log(8, 2, id=3, offerer="0xB")
    )

    assert event['offerer'] == "0xB"
    assert event.ordering == (8, 2)
    assert event.tx_hash == '0x' + '01' * 32


async def test_chain_event_requires_every_argument():
    with pytest.raises(ValueError):
        ChainEvent(event=MarketplaceEvent.ITEM_SOLD, args={'id': 1, 'buyer': "0xB"})


async def test_describe_renders_integers_as_strings():
    event = ChainEvent(
        event=MarketplaceEvent.ITEM_LISTED,
        args={'id': 7, 'nftContract': "0xC", 'tokenId': 3, 'seller': "0xO", 'price': 10 ** 30}
    )

    assert event.describe()['price'] == str(10 ** 30)
    assert event.describe()['seller'] == "0xO"


async def test_bundled_abi_declares_every_event():
    names = {entry['name'] for entry in load_abi('marketplace') if entry['type'] == 'event'}

    assert names == {event.value for event in MarketplaceEvent}


async def test_gather_calls_returns_results_in_order():
    async def value(v, delay):
        await asyncio.sleep(delay)
        return v

    assert await gather_calls(value(1, 0.02), value(2, 0)) == [1, 2]
    assert await gather_calls() == []


async def test_gather_calls_cancels_remaining_on_failure():
    slow_finished = []

    async def slow():
        await asyncio.sleep(10)
        slow_finished.append(True)

    async def failing():
        raise ContractCallError("reverted", 'items')

    pending = asyncio.ensure_future(gather_calls(slow(), failing()))
    with pytest.raises(ContractCallError):
        await asyncio.wait_for(pending, timeout=1)

    assert slow_finished == []


async def test_installed_web3_accepts_snake_case_log_ranges():
    """fetch_events passes from_block/to_block, the web3 7 get_logs keywords."""
    parameters = inspect.signature(AsyncContractEvent.get_logs).parameters

    assert 'from_block' in parameters
    assert 'to_block' in parameters
