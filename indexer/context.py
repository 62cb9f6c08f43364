"""Shared handles for one indexer process."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from database import init_db, close as db_close, MarketplaceRecords
from metadata import MetadataResolver
from rpc import ChainGateway

logger = logging.getLogger(__name__)


@dataclass
class IndexerContext:
    """Store, gateway and resolver, built once at startup and passed explicitly."""

    store: MarketplaceRecords
    gateway: ChainGateway
    resolver: MetadataResolver
    settings: Dict[str, Any] = field(default_factory=dict)


async def create_context(settings: Dict[str, Any]) -> IndexerContext:
    """Connect the record store and chain node described by ``settings``.

    Raises:
        DatabaseError: If the record store cannot be initialized
        NodeConnectionError: If the chain node cannot be reached
    """
    pool = await init_db(settings['db_url'], force_recreate=settings.get('force_recreate', False))
    try:
        gateway = ChainGateway(
            settings['rpc_url'],
            settings['marketplace_address'],
            poll_interval=settings.get('poll_interval', 2.0),
            max_concurrent_calls=settings.get('max_concurrent_calls', 16)
        )
        await gateway.connect()
    except Exception:
        await db_close(pool)
        raise

    resolver = MetadataResolver(gateway, ipfs_gateway=settings.get('ipfs_gateway', 'https://ipfs.io/ipfs/'))
    return IndexerContext(
        store=MarketplaceRecords(pool),
        gateway=gateway,
        resolver=resolver,
        settings=settings
    )


async def close_context(context: IndexerContext) -> None:
    """Release the record store connection."""
    context.gateway.stop()
    await db_close(context.store.pool)
