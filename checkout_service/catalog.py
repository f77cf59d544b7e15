"""Read-only access to product prices, stock and store-wide rates."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .config import DEFAULT_EMBROIDERY_PRICE, DEFAULT_SHIPPING_RATES, DOMESTIC_COUNTRIES
from .models import Product, StoreSettings


@dataclass(frozen=True)
class ProductSnapshot:
    id: str
    name: str
    stock: int
    unlimited_stock: bool
    colors: List[str] = field(default_factory=list)
    # size -> currency -> unit price
    variants: Dict[str, Dict[str, Decimal]] = field(default_factory=dict)

    def price_for(self, size: Optional[str], currency: str) -> Optional[Decimal]:
        """Unit price for a size; a product with a single size may omit it."""
        if size is None:
            priced = [prices[currency] for prices in self.variants.values() if currency in prices]
            return priced[0] if len(priced) == 1 else None
        return self.variants.get(size, {}).get(currency)

    def resolve_size(self, size: Optional[str], currency: str) -> Optional[str]:
        if size is not None:
            return size
        sizes = [name for name, prices in self.variants.items() if currency in prices]
        return sizes[0] if len(sizes) == 1 else None


def get_product(db: Session, product_id: str) -> Optional[ProductSnapshot]:
    product = db.get(Product, product_id)
    if product is None or not product.is_active:
        return None

    variants: Dict[str, Dict[str, Decimal]] = {}
    for variant in product.variants:
        variants.setdefault(variant.size, {})[variant.currency] = Decimal(variant.price)

    return ProductSnapshot(
        id=product.id,
        name=product.name,
        stock=product.stock,
        unlimited_stock=product.unlimited_stock,
        colors=list(product.colors or []),
        variants=variants,
    )


def destination_zone(country: str) -> str:
    return "domestic" if (country or "").strip().lower() in DOMESTIC_COUNTRIES else "international"


def shipping_cost(db: Session, country: str, currency: str) -> Decimal:
    zone = destination_zone(country)
    settings = db.query(StoreSettings).first()
    if settings is None:
        return DEFAULT_SHIPPING_RATES[(zone, currency)]

    column = {
        ("domestic", "TRY"): "turkey_shipping_try",
        ("domestic", "USD"): "turkey_shipping_usd",
        ("international", "TRY"): "international_shipping_try",
        ("international", "USD"): "international_shipping_usd",
    }[(zone, currency)]
    return Decimal(getattr(settings, column))


def embroidery_price(db: Session, currency: str) -> Decimal:
    settings = db.query(StoreSettings).first()
    if settings is None:
        return DEFAULT_EMBROIDERY_PRICE[currency]
    if currency == "USD":
        return Decimal(settings.embroidery_price_usd)
    return Decimal(settings.embroidery_price_try)
