"""Marketplace contract events."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class MarketplaceEvent(str, Enum):
    COLLECTION_ADDED = "LogCollectionAdded"
    ITEM_ADDED = "LogItemAdded"
    ITEM_LISTED = "LogItemListed"
    ITEM_SOLD = "LogItemSold"
    OFFER_PLACED = "LogOfferPlaced"
    OFFER_ACCEPTED = "LogOfferAccepted"
    ITEM_CLAIMED = "LogItemClaimed"


# Named arguments carried by each event, in ABI order
EVENT_FIELDS: Dict[MarketplaceEvent, Tuple[str, ...]] = {
    MarketplaceEvent.COLLECTION_ADDED: ('id', 'nftCollection'),
    MarketplaceEvent.ITEM_ADDED: ('id', 'nftContract', 'tokenId', 'owner'),
    MarketplaceEvent.ITEM_LISTED: ('id', 'nftContract', 'tokenId', 'seller', 'price'),
    MarketplaceEvent.ITEM_SOLD: ('id', 'nftContract', 'tokenId', 'seller', 'buyer', 'price'),
    MarketplaceEvent.OFFER_PLACED: ('id', 'nftContract', 'tokenId', 'buyer', 'price'),
    MarketplaceEvent.OFFER_ACCEPTED: ('id', 'offerer'),
    MarketplaceEvent.ITEM_CLAIMED: ('id', 'claimer'),
}


@dataclass(frozen=True)
class ChainEvent:
    """One decoded contract log."""

    event: MarketplaceEvent
    args: Mapping[str, Any]
    block_number: Optional[int] = None
    log_index: Optional[int] = None
    tx_hash: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        missing = [name for name in EVENT_FIELDS[self.event] if name not in self.args]
        if missing:
            raise ValueError(f"{self.event.value} is missing arguments: {', '.join(missing)}")

    def __getitem__(self, name: str) -> Any:
        return self.args[name]

    @property
    def ordering(self) -> Tuple[int, int]:
        return (self.block_number or 0, self.log_index or 0)

    @classmethod
    def from_log(cls, event: MarketplaceEvent, log: Mapping[str, Any]) -> 'ChainEvent':
        tx_hash = log.get('transactionHash')
        if isinstance(tx_hash, (bytes, bytearray)):
            tx_hash = '0x' + bytes(tx_hash).hex()
        elif tx_hash is not None and hasattr(tx_hash, 'to_0x_hex'):
            tx_hash = tx_hash.to_0x_hex()
        return cls(
            event=event,
            args=dict(log['args']),
            block_number=log.get('blockNumber'),
            log_index=log.get('logIndex'),
            tx_hash=tx_hash,
        )

    def describe(self) -> Dict[str, Any]:
        """Arguments with integers rendered as strings, for logging."""
        return {
            name: str(value) if isinstance(value, int) and not isinstance(value, bool) else value
            for name, value in self.args.items()
        }


__all__ = ['MarketplaceEvent', 'EVENT_FIELDS', 'ChainEvent']
