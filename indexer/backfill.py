"""Backfill reconciler.

Rebuilds the collections, items and offers tables from current chain state.
Each table is swapped in one transaction once every read for it succeeded,
so a failed read leaves the previous snapshot in place.
"""
import logging
from dataclasses import dataclass

from database.models import Collection, Item, Offer
from rpc import gather_calls
from .context import IndexerContext

logger = logging.getLogger(__name__)


class BackfillError(Exception):
    """Raised when a backfill step cannot complete."""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"Backfill of {step} failed: {cause}")


@dataclass
class BackfillReport:
    collections: int = 0
    items: int = 0
    offers: int = 0


class BackfillReconciler:
    """Replaces the record tables with a snapshot of chain state."""

    def __init__(self, context: IndexerContext):
        self.store = context.store
        self.gateway = context.gateway
        self.resolver = context.resolver

    async def sync_collections(self) -> int:
        """Mirror every registered collection.

        Returns:
            Number of collections written
        """
        count = int(await self.gateway.call_read_method('collectionCount'))
        addresses = await gather_calls(
            *(self.gateway.call_read_method('collections', index) for index in range(1, count + 1))
        )

        collections = [
            Collection(id=index, nft_collection=address)
            for index, address in enumerate(addresses, start=1)
        ]
        saved = await self.store.collections.replace_all(collections)
        logger.info(f"Collections saved: {saved}")
        return saved

    async def sync_items(self) -> int:
        """Mirror every item together with its metadata.

        Returns:
            Number of items written
        """
        items, metadata = await self.resolver.load_all_items()
        if len(items) != len(metadata):
            raise ValueError(
                f"Resolver returned {len(items)} items but {len(metadata)} metadata entries"
            )

        records = [
            Item(
                id=item.id,
                nft_contract=item.nft_contract,
                token_id=item.token_id,
                owner=item.owner,
                price=item.price,
                name=meta.name,
                description=meta.description,
                image=meta.image
            )
            for item, meta in zip(items, metadata)
        ]
        saved = await self.store.items.replace_all(records)
        logger.info(f"Items saved: {saved}")
        return saved

    async def sync_offers(self) -> int:
        """Mirror the current offer of every item that has one.

        Returns:
            Number of offers written
        """
        count = int(await self.gateway.call_read_method('itemCount'))
        item_ids = range(1, count + 1)
        offer_lists = await gather_calls(*(self.resolver.get_offers(i) for i in item_ids))

        offers = []
        for item_id, item_offers in zip(item_ids, offer_lists):
            if not item_offers:
                continue
            # Only the item's current offer is surfaced
            current = item_offers[0]
            offers.append(Offer(
                item_id=str(item_id),
                offerer=current.offerer,
                seller=current.seller,
                price=current.price,
                is_accepted=current.is_accepted
            ))

        saved = await self.store.offers.replace_all(offers)
        logger.info(f"Offers saved: {saved}")
        return saved

    async def run(self) -> BackfillReport:
        """Run every backfill step in order.

        Raises:
            BackfillError: If any step fails; later steps are not run
        """
        report = BackfillReport()
        steps = (
            ('collections', self.sync_collections),
            ('items', self.sync_items),
            ('offers', self.sync_offers),
        )

        for name, step in steps:
            try:
                setattr(report, name, await step())
            except Exception as e:
                logger.error(f"Backfill of {name} failed: {e}")
                raise BackfillError(name, e) from e

        logger.info(
            f"Backfill complete: {report.collections} collections, "
            f"{report.items} items, {report.offers} offers"
        )
        return report
