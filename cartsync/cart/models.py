"""Cart models with Decimal-based pricing."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cartsync.errors import InvalidDiscount
from cartsync.services.money import parse_decimal, to_decimal


def parse_price(value) -> Decimal:
    """
    Strict price conversion for catalog and cart data.

    Raises:
        ValueError: if the price is missing, not numeric, or negative
    """
    price = parse_decimal(value)
    if price < 0:
        raise ValueError(f"Price must not be negative, got {value!r}")
    return price


class LineKey(NamedTuple):
    """Composite identity of a cart line: one per user per catalog item."""
    user_id: str
    item_id: str

    @property
    def doc_id(self) -> str:
        """Remote document id, ``"{user_id}_{item_id}"``."""
        return f"{self.user_id}_{self.item_id}"


@dataclass
class CatalogItem:
    """Catalog snapshot handed over at "add to cart" time."""
    item_id: str
    name: str
    unit_price: Decimal
    discount_percent: Decimal = Decimal("0")
    source: str = ""  # restaurant / hotel label
    image: str = ""
    delivery_estimate: int = 0  # minutes

    def __post_init__(self):
        self.unit_price = parse_price(self.unit_price)
        self.discount_percent = to_decimal(self.discount_percent)


@dataclass
class CartLine:
    """
    Single line in a user's cart.

    Display fields (name, source, image, delivery_estimate) and prices are a
    denormalized copy of the catalog item as of the last add/update; they are
    not re-synced when the catalog changes later.
    """
    user_id: str
    item_id: str
    quantity: int
    unit_price: Decimal
    discount_percent: Decimal = Decimal("0")
    name: str = ""
    source: str = ""
    image: str = ""
    delivery_estimate: int = 0

    def __post_init__(self):
        self.unit_price = parse_price(self.unit_price)
        self.discount_percent = to_decimal(self.discount_percent)

    @property
    def key(self) -> LineKey:
        return LineKey(self.user_id, self.item_id)

    @classmethod
    def from_catalog(cls, user_id: str, item: CatalogItem, quantity: int) -> "CartLine":
        """Build a line from a fresh catalog snapshot."""
        return cls(
            user_id=user_id,
            item_id=item.item_id,
            quantity=quantity,
            unit_price=item.unit_price,
            discount_percent=item.discount_percent,
            name=item.name,
            source=item.source,
            image=item.image,
            delivery_estimate=item.delivery_estimate,
        )

    def to_catalog_item(self) -> CatalogItem:
        """Snapshot stored on this line, for edits made from the cart view."""
        return CatalogItem(
            item_id=self.item_id,
            name=self.name,
            unit_price=self.unit_price,
            discount_percent=self.discount_percent,
            source=self.source,
            image=self.image,
            delivery_estimate=self.delivery_estimate,
        )

    def with_quantity(self, quantity: int) -> "CartLine":
        return replace(self, quantity=quantity)

    def to_document(self) -> "CartLineDocument":
        return CartLineDocument(
            userId=self.user_id,
            itemId=self.item_id,
            quantity=self.quantity,
            unitPrice=self.unit_price,
            discountPercent=self.discount_percent,
            name=self.name,
            source=self.source,
            image=self.image,
            deliveryEstimate=self.delivery_estimate,
        )

    def to_dict(self) -> dict:
        """Plain dict for JSON responses and logs."""
        return {
            "user_id": self.user_id,
            "item_id": self.item_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "discount_percent": str(self.discount_percent),
            "name": self.name,
            "source": self.source,
            "image": self.image,
            "delivery_estimate": self.delivery_estimate,
        }


class CartLineDocument(BaseModel):
    """Persisted shape of a cart line, keyed by ``"{userId}_{itemId}"``."""
    model_config = ConfigDict(extra="ignore")

    userId: str
    itemId: str
    quantity: int = Field(ge=1)
    unitPrice: Decimal
    discountPercent: Decimal = Decimal("0")
    name: str = ""
    source: str = ""
    image: str = ""
    deliveryEstimate: int = 0

    @field_validator("unitPrice", mode="before")
    @classmethod
    def convert_price_to_decimal(cls, v):
        return parse_price(v)

    @field_validator("discountPercent", mode="before")
    @classmethod
    def check_discount(cls, v):
        # Import here: pricing imports this module
        from cartsync.cart.pricing import validate_discount
        try:
            return validate_discount(0 if v is None else v)
        except InvalidDiscount as e:
            # pydantic only wraps ValueError/AssertionError into ValidationError
            raise ValueError(str(e)) from None

    @property
    def doc_id(self) -> str:
        return f"{self.userId}_{self.itemId}"

    def to_line(self) -> CartLine:
        return CartLine(
            user_id=self.userId,
            item_id=self.itemId,
            quantity=self.quantity,
            unit_price=self.unitPrice,
            discount_percent=self.discountPercent,
            name=self.name,
            source=self.source,
            image=self.image,
            delivery_estimate=self.deliveryEstimate,
        )


@dataclass(frozen=True)
class CheckoutPayload:
    """Immutable hand-off to the checkout collaborator."""
    user_id: str
    lines: Tuple[CartLine, ...]
    subtotal: Decimal
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "items": [line.to_dict() for line in self.lines],
            "subtotal": str(self.subtotal),
            "item_count": self.item_count,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a cart mutation: ``ok`` or a failure with its reason."""
    ok: bool
    key: Optional[LineKey] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None
    superseded: bool = False

    @classmethod
    def success(cls, key: LineKey, superseded: bool = False) -> "WriteResult":
        return cls(ok=True, key=key, superseded=superseded)

    @classmethod
    def failure(cls, key: LineKey, reason: str, error: Optional[Exception] = None) -> "WriteResult":
        return cls(ok=False, key=key, reason=reason, error=error)
