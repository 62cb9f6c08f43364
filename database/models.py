"""Record models persisted by the indexer."""
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field


def to_decimal_string(value: Any) -> str:
    """Render a chain integer (int, Decimal or digit string) in decimal-string form."""
    if isinstance(value, bool):
        raise TypeError(f"Expected an integer value, got {value!r}")
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise ValueError(f"Expected an integral value, got {value}")
        return str(int(value))
    if isinstance(value, str):
        return str(int(value.strip(), 10))
    return str(int(value))


class Collection(BaseModel):
    id: int = Field(..., gt=0)
    nft_collection: str


class Item(BaseModel):
    id: str
    nft_contract: str
    token_id: str
    owner: str
    price: str = "0"
    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None

    @property
    def is_listed(self) -> bool:
        return self.price != "0"


class Offer(BaseModel):
    item_id: str
    offerer: str
    seller: str
    price: str
    is_accepted: bool = False
