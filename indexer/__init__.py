"""Indexer module for mirroring the marketplace contract into the record store.

This module provides:
- Backfill of collections, items and offers from current chain state
- Live application of contract events
- Orchestration of backfill followed by live sync
"""

import logging
from typing import Optional

from rpc import MarketplaceEvent
from .backfill import BackfillReconciler, BackfillError, BackfillReport
from .context import IndexerContext, create_context, close_context
from .live import LiveEventReconciler, KeyedLock

logger = logging.getLogger(__name__)

class SyncOrchestrator:
    """Runs backfill, then keeps the record store in sync with new events."""

    def __init__(self, context: IndexerContext):
        """Initialize the orchestrator.

        Args:
            context: Connected store, gateway and resolver
        """
        self.context = context
        self.gateway = context.gateway
        self.backfill = BackfillReconciler(context)
        self.live = LiveEventReconciler(
            context,
            serialize_per_item=context.settings.get('serialize_per_item', True)
        )
        self.report: Optional[BackfillReport] = None
        self.subscribed = False

    def subscribe(self) -> None:
        """Route every marketplace event to the live reconciler."""
        for event in MarketplaceEvent:
            self.gateway.subscribe(event, self.live.dispatch)
        self.subscribed = True
        logger.info(f"Subscribed to {len(MarketplaceEvent)} marketplace events")

    def unsubscribe(self) -> None:
        for event in MarketplaceEvent:
            self.gateway.unsubscribe(event, self.live.dispatch)
        self.subscribed = False

    async def start(self) -> None:
        """Backfill, subscribe, then follow events until stop() is called.

        Events from blocks mined while the backfill ran are replayed through
        the live handlers.

        Raises:
            BackfillError: If the store could not be rebuilt; nothing is subscribed
        """
        try:
            head = await self.gateway.block_number()
            logger.info(f"Starting backfill at block {head}...")

            self.report = await self.backfill.run()

            self.subscribe()
            await self.gateway.start(from_block=head + 1)
            await self.live.drain()

        except Exception as e:
            logger.error(f"Fatal error in indexer: {e}")
            if self.subscribed:
                self.unsubscribe()
            raise

    async def stop(self) -> None:
        """Stop following events and wait for in-flight handlers."""
        logger.info("Stopping indexer...")
        self.gateway.stop()
        if self.subscribed:
            self.unsubscribe()
        await self.live.drain()

# Export public interface
__all__ = [
    'SyncOrchestrator',
    'BackfillReconciler',
    'BackfillError',
    'BackfillReport',
    'LiveEventReconciler',
    'KeyedLock',
    'IndexerContext',
    'create_context',
    'close_context'
]
