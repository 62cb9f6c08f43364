"""Command line interface for testing chain connectivity"""
import asyncio

from config import load_settings_conf
from . import ChainGateway, RPCError

async def check_rpc():
    """Read the marketplace counters from the configured node"""
    settings = load_settings_conf()
    gateway = ChainGateway(settings['rpc_url'], settings['marketplace_address'])

    try:
        print("\nTesting marketplace reads:")
        print("-" * 50)

        await gateway.connect()

        block = await gateway.block_number()
        print(f"1. Chain head: {block}")

        collection_count = await gateway.call_read_method('collectionCount')
        print(f"2. collectionCount: {collection_count}")

        item_count = await gateway.call_read_method('itemCount')
        print(f"3. itemCount: {item_count}")

        if item_count:
            item = await gateway.call_read_method('items', 1)
            print(f"4. items(1): {item}")

    except RPCError as e:
        print(f"  Error: {e}")

if __name__ == "__main__":
    asyncio.run(check_rpc())
