"""Product data models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class KeepaProduct:
    asin: str
    title: str
    current_price: float
    original_price: float
    category: str
    sales_rank: int | None = None
    rating: float | None = None
    review_count: int | None = None
    image_url: str | None = None

    @property
    def discount(self) -> int:
        if self.original_price <= 0 or self.current_price <= 0:
            return 0
        if self.current_price >= self.original_price:
            return 0
        return round((self.original_price - self.current_price) / self.original_price * 100)


@dataclass(slots=True)
class ProductRecord:
    asin: str
    title: str
    current_price: float
    original_price: float
    discount: int
    category: str
    last_price_check_at: datetime
    keepa_data_ttl: int
    sales_rank: int | None = None
    rating: float | None = None
    review_count: int | None = None
    image_url: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class CacheStats:
    total_products: int
    fresh: int
    stale: int
    average_age: int
