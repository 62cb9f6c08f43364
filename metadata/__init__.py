"""Metadata resolver for marketplace items.

Items on chain only carry ids, the NFT contract and the current owner/price.
Descriptive metadata (name, description, image) lives behind the token's
tokenURI, usually on IPFS. This module resolves both and also reads the
current offer list of an item.
"""
import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote

import backoff
import requests

from database.models import to_decimal_string
from rpc import ChainGateway, gather_calls

logger = logging.getLogger(__name__)

IPFS_SCHEME = 'ipfs://'

class MetadataError(Exception):
    """Raised when item metadata cannot be fetched or parsed."""
    pass

@dataclass(frozen=True)
class ChainItem:
    """Marketplace item as stored by the contract."""
    id: str
    nft_contract: str
    token_id: str
    owner: str
    price: str

    @classmethod
    def from_contract(cls, raw: Sequence[Any]) -> 'ChainItem':
        item_id, nft_contract, token_id, owner, price = raw[:5]
        return cls(
            id=to_decimal_string(item_id),
            nft_contract=nft_contract,
            token_id=to_decimal_string(token_id),
            owner=owner,
            price=to_decimal_string(price),
        )

@dataclass(frozen=True)
class ItemMetadata:
    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None

@dataclass(frozen=True)
class ResolvedItem:
    item: ChainItem
    metadata: ItemMetadata

    @property
    def owner(self) -> str:
        return self.item.owner

    @property
    def price(self) -> str:
        return self.item.price

@dataclass(frozen=True)
class ChainOffer:
    offerer: str
    seller: str
    price: str
    is_accepted: bool

    @classmethod
    def from_contract(cls, raw: Sequence[Any]) -> 'ChainOffer':
        offerer, seller, price, is_accepted = raw[:4]
        return cls(
            offerer=offerer,
            seller=seller,
            price=to_decimal_string(price),
            is_accepted=bool(is_accepted),
        )

class MetadataResolver:
    """Resolves items, their metadata and their offers."""

    def __init__(
        self,
        gateway: ChainGateway,
        ipfs_gateway: str = 'https://ipfs.io/ipfs/',
        timeout: int = 10,
        session: Optional[requests.Session] = None
    ):
        """Initialize the resolver.

        Args:
            gateway: Chain gateway used for contract reads
            ipfs_gateway: HTTP prefix that ``ipfs://`` URIs are rewritten to
            timeout: HTTP timeout in seconds for metadata documents
            session: Optional requests session
        """
        self.gateway = gateway
        self.ipfs_gateway = ipfs_gateway if ipfs_gateway.endswith('/') else ipfs_gateway + '/'
        self.timeout = timeout
        self.session = session or requests.Session()

    def to_http_url(self, uri: str) -> str:
        """Rewrite ipfs:// URIs onto the configured HTTP gateway."""
        if uri.startswith(IPFS_SCHEME):
            path = uri[len(IPFS_SCHEME):]
            if path.startswith('ipfs/'):
                path = path[len('ipfs/'):]
            return self.ipfs_gateway + path.lstrip('/')
        return uri

    @backoff.on_exception(
        backoff.expo,
        (requests.exceptions.ConnectionError, requests.exceptions.Timeout),
        max_tries=3
    )
    def _get_json(self, url: str) -> Dict[str, Any]:
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def fetch_json(self, uri: str) -> Dict[str, Any]:
        """Fetch a metadata document.

        Supports ipfs://, http(s):// and inline ``data:application/json`` URIs.

        Raises:
            MetadataError: If the document cannot be fetched or is not a JSON object
        """
        try:
            if uri.startswith('data:'):
                header, _, payload = uri.partition(',')
                if header.endswith(';base64'):
                    document = json.loads(base64.b64decode(payload))
                else:
                    document = json.loads(unquote(payload))
            else:
                document = await asyncio.to_thread(self._get_json, self.to_http_url(uri))
        except requests.exceptions.RequestException as e:
            raise MetadataError(f"Failed to fetch metadata from {uri}: {e}") from e
        except ValueError as e:
            raise MetadataError(f"Invalid metadata document at {uri}: {e}") from e

        if not isinstance(document, dict):
            raise MetadataError(f"Metadata at {uri} is not a JSON object")
        return document

    async def get_item(self, item_id: Any) -> Optional[ChainItem]:
        """Read an item from the contract, None if the id is unknown."""
        raw = await self.gateway.call_read_method('items', int(item_id))
        item = ChainItem.from_contract(raw)
        if item.id == '0':
            return None
        return item

    async def get_metadata(self, item: ChainItem) -> ItemMetadata:
        """Resolve name, description and image for an item."""
        uri = await self.gateway.call_nft_method(item.nft_contract, 'tokenURI', int(item.token_id))
        if not uri:
            logger.warning(f"Item {item.id} has no token URI")
            return ItemMetadata()

        document = await self.fetch_json(uri)
        image = document.get('image')
        return ItemMetadata(
            name=document.get('name'),
            description=document.get('description'),
            image=self.to_http_url(image) if isinstance(image, str) else image,
        )

    async def resolve_item(self, item_id: Any) -> Optional[ResolvedItem]:
        """Read an item and its metadata, None if the id is unknown."""
        item = await self.get_item(item_id)
        if item is None:
            return None
        return ResolvedItem(item=item, metadata=await self.get_metadata(item))

    async def load_all_items(self) -> Tuple[List[ChainItem], List[ItemMetadata]]:
        """Load every item with its metadata.

        Returns:
            ``(items, metadata)`` where ``metadata[i]`` belongs to ``items[i]``
        """
        count = int(await self.gateway.call_read_method('itemCount'))
        found = await gather_calls(*(self.get_item(i) for i in range(1, count + 1)))
        items = [item for item in found if item is not None]
        metadata = await gather_calls(*(self.get_metadata(item) for item in items))
        logger.info(f"Loaded {len(items)} items with metadata")
        return items, list(metadata)

    async def get_offers(self, item_id: Any) -> List[ChainOffer]:
        """Current offers on an item, empty if there are none."""
        raw = await self.gateway.call_read_method('getOffers', int(item_id))
        return [ChainOffer.from_contract(offer) for offer in raw or []]

__all__ = [
    'MetadataResolver',
    'MetadataError',
    'ChainItem',
    'ChainOffer',
    'ItemMetadata',
    'ResolvedItem'
]
