"""Keepa product API client."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from dealpilot.products.models import KeepaProduct
from dealpilot.utils.retry import retry_async

logger = logging.getLogger(__name__)

KEEPA_ENDPOINT = "https://api.keepa.com"
IMAGE_BASE_URL = "https://m.media-amazon.com/images/I/"

DOMAIN_IDS = {
    "com": 1,
    "co.uk": 2,
    "de": 3,
    "fr": 4,
    "co.jp": 5,
    "ca": 6,
    "it": 8,
    "es": 9,
    "in": 10,
    "com.mx": 11,
    "com.br": 12,
}

# Indices into stats.current / stats.avg30 / csv.
AMAZON = 0
NEW = 1
SALES = 3
LISTPRICE = 4
RATING = 16
COUNT_REVIEWS = 17


class KeepaError(RuntimeError):
    pass


class KeepaAuthError(KeepaError):
    pass


class KeepaQuotaError(KeepaError):
    pass


class KeepaBadRequestError(KeepaError):
    pass


class KeepaUnavailableError(KeepaError):
    pass


class KeepaProductNotFoundError(KeepaError):
    pass


class KeepaClient:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        domain: str | None = None,
        max_retries: int | None = None,
        retry_base_delay: float = 1.0,
        session: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("KEEPA_API_KEY", "")
        domain_code = (domain or os.environ.get("KEEPA_DOMAIN", "it")).lower()
        self.domain_id = DOMAIN_IDS.get(domain_code, DOMAIN_IDS["it"])
        if max_retries is None:
            max_retries = int(os.environ.get("KEEPA_MAX_RETRIES", 3))
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        timeout = float(os.environ.get("KEEPA_TIMEOUT_SECONDS", 30.0))
        self.session = session or httpx.AsyncClient(base_url=KEEPA_ENDPOINT, timeout=timeout)

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_product(self, asin: str) -> KeepaProduct:
        if not self.api_key:
            raise KeepaAuthError("KEEPA_API_KEY is not configured")
        params = {
            "key": self.api_key,
            "domain": self.domain_id,
            "asin": asin,
            "stats": 30,
            "rating": 1,
            "buybox": 1,
        }
        request = retry_async(
            self._get,
            max_attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            sleep=self._sleep,
        )
        try:
            data = await request(f"{KEEPA_ENDPOINT}/product", params)
        except httpx.HTTPStatusError as exc:
            raise _translate_status(exc, asin) from exc
        except httpx.HTTPError as exc:
            raise KeepaUnavailableError(f"Keepa API error: {exc}. Context: {asin}") from exc
        items = data.get("products") or []
        if not items:
            raise KeepaProductNotFoundError(f"Product {asin} not found in Keepa")
        return parse_product(items[0])

    async def _get(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await self.session.get(url, params=params)
        response.raise_for_status()
        return response.json()


def _translate_status(exc: httpx.HTTPStatusError, context: str) -> KeepaError:
    status = exc.response.status_code
    if status == 401:
        return KeepaAuthError(f"Keepa unauthorized. Invalid API key. Context: {context}")
    if status == 429:
        return KeepaQuotaError(f"Keepa rate limit exceeded. Token quota depleted. Context: {context}")
    if status == 400:
        try:
            message = exc.response.json().get("message") or "Invalid parameters"
        except ValueError:
            message = "Invalid parameters"
        return KeepaBadRequestError(f"Keepa bad request: {message}. Context: {context}")
    return KeepaUnavailableError(f"Keepa API error: HTTP {status}. Context: {context}")


def parse_product(data: dict[str, Any]) -> KeepaProduct:
    """Map a Keepa product object to the prices Amazon actually displays."""
    asin = data.get("asin", "")
    stats = data.get("stats") or {}
    current = stats.get("current") or []
    current_cents = -1
    original_cents = -1

    buy_box = stats.get("buyBoxPrice") or 0
    if buy_box > 0:
        current_cents = buy_box
        saving_basis = stats.get("buyBoxSavingBasis") or 0
        if saving_basis > 0:
            original_cents = saving_basis

    if current_cents <= 0 and current:
        current_cents = _at(current, AMAZON)
        if current_cents <= 0:
            current_cents = _at(current, NEW)
        if original_cents <= 0:
            original_cents = _at(current, LISTPRICE)

    avg30 = stats.get("avg30") or []
    if original_cents <= 0 and avg30:
        original_cents = _at(avg30, AMAZON) if _at(avg30, AMAZON) > 0 else _at(avg30, NEW)

    csv = data.get("csv") or []
    if current_cents <= 0 and csv:
        current_cents = _latest(csv, AMAZON)
        if current_cents <= 0:
            current_cents = _latest(csv, NEW)
        if original_cents <= 0:
            original_cents = _latest(csv, LISTPRICE)

    if original_cents <= 0:
        original_cents = current_cents

    sales_rank = _at(current, SALES)
    rating = _at(current, RATING)
    reviews = _at(current, COUNT_REVIEWS)

    return KeepaProduct(
        asin=asin,
        title=data.get("title") or f"Product {asin}",
        current_price=_cents_to_units(current_cents),
        original_price=_cents_to_units(original_cents),
        category=category_name(data),
        sales_rank=sales_rank if sales_rank > 0 else None,
        rating=rating / 10 if rating > 0 else None,
        review_count=reviews if reviews > 0 else None,
        image_url=_image_url(data.get("images")),
    )


def category_name(data: dict[str, Any]) -> str:
    tree = data.get("categoryTree") or []
    if tree:
        return tree[-1].get("name") or "General"
    return data.get("binding") or "General"


def _at(values: list[Any], index: int) -> int:
    if index >= len(values) or values[index] is None:
        return -1
    return int(values[index])


def _latest(csv: list[Any], index: int) -> int:
    # csv series are flat [keepaTime, value, keepaTime, value, ...] lists
    if index >= len(csv) or not csv[index] or len(csv[index]) < 2:
        return -1
    return int(csv[index][-1])


def _cents_to_units(cents: int) -> float:
    if cents <= 0:
        return 0.0
    return cents / 100


def _image_url(images: list[dict[str, Any]] | None) -> str | None:
    if not images:
        return None
    name = images[0].get("l") or images[0].get("m")
    if not name:
        return None
    return f"{IMAGE_BASE_URL}{name}"
