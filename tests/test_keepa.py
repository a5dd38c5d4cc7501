import httpx
import pytest
import respx

from dealpilot.products.keepa import (
    KeepaAuthError,
    KeepaClient,
    KeepaProductNotFoundError,
    KeepaQuotaError,
    KeepaUnavailableError,
    parse_product,
)


def keepa_product(asin: str = "B000TEST01") -> dict:
    current = [-1] * 18
    current[0] = 5200
    current[3] = 1500
    current[16] = 45
    current[17] = 1234
    return {
        "asin": asin,
        "title": "Cuffie Bluetooth",
        "stats": {"buyBoxPrice": 4999, "buyBoxSavingBasis": 7999, "current": current},
        "categoryTree": [{"name": "Elettronica"}, {"name": "Cuffie"}],
        "images": [{"l": "71abc.jpg", "m": "71abc_m.jpg"}],
    }


async def no_sleep(seconds):
    return None


def test_parse_product_prefers_buy_box():
    product = parse_product(keepa_product())
    assert product.current_price == 49.99
    assert product.original_price == 79.99
    assert product.discount == 38
    assert product.rating == 4.5
    assert product.review_count == 1234
    assert product.sales_rank == 1500
    assert product.category == "Cuffie"
    assert product.image_url == "https://m.media-amazon.com/images/I/71abc.jpg"


def test_parse_product_falls_back_to_csv_history():
    data = {
        "asin": "B000TEST02",
        "csv": [[100, 2599, 200, 1999], None, None, None, [100, 3999]],
        "binding": "Cucina",
    }
    product = parse_product(data)
    assert product.current_price == 19.99
    assert product.original_price == 39.99
    assert product.title == "Product B000TEST02"
    assert product.category == "Cucina"
    assert product.rating is None


def test_parse_product_without_original_uses_current():
    current = [-1] * 18
    current[1] = 1500
    product = parse_product({"asin": "B000TEST03", "stats": {"current": current}})
    assert product.original_price == 15.0
    assert product.discount == 0


@pytest.mark.asyncio
async def test_fetch_product_success():
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(host="api.keepa.com", path="/product").mock(
            return_value=httpx.Response(200, json={"products": [keepa_product()]})
        )
        async with httpx.AsyncClient() as session:
            client = KeepaClient("key", domain="it", session=session, sleep=no_sleep)
            product = await client.fetch_product("B000TEST01")
    assert product.asin == "B000TEST01"
    params = route.calls.last.request.url.params
    assert params["domain"] == "8"
    assert params["asin"] == "B000TEST01"


@pytest.mark.asyncio
async def test_unauthorized_is_not_retried():
    async with respx.mock() as router:
        route = router.get(host="api.keepa.com", path="/product").mock(return_value=httpx.Response(401))
        async with httpx.AsyncClient() as session:
            client = KeepaClient("bad", session=session, sleep=no_sleep)
            with pytest.raises(KeepaAuthError):
                await client.fetch_product("B000TEST01")
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_raised():
    async with respx.mock() as router:
        route = router.get(host="api.keepa.com", path="/product").mock(return_value=httpx.Response(503))
        async with httpx.AsyncClient() as session:
            client = KeepaClient("key", max_retries=3, session=session, sleep=no_sleep)
            with pytest.raises(KeepaUnavailableError):
                await client.fetch_product("B000TEST01")
    assert route.call_count == 3


@pytest.mark.asyncio
async def test_zero_retries_makes_a_single_call(monkeypatch):
    monkeypatch.setenv("KEEPA_MAX_RETRIES", "5")
    async with respx.mock() as router:
        route = router.get(host="api.keepa.com", path="/product").mock(return_value=httpx.Response(503))
        async with httpx.AsyncClient() as session:
            client = KeepaClient("key", max_retries=0, session=session, sleep=no_sleep)
            assert client.max_retries == 0
            with pytest.raises(KeepaUnavailableError):
                await client.fetch_product("B000TEST01")
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_quota_error_after_retries():
    async with respx.mock() as router:
        router.get(host="api.keepa.com", path="/product").mock(
            side_effect=[httpx.Response(429), httpx.Response(429), httpx.Response(429)]
        )
        async with httpx.AsyncClient() as session:
            client = KeepaClient("key", max_retries=3, session=session, sleep=no_sleep)
            with pytest.raises(KeepaQuotaError):
                await client.fetch_product("B000TEST01")


@pytest.mark.asyncio
async def test_transient_failure_recovers():
    async with respx.mock() as router:
        router.get(host="api.keepa.com", path="/product").mock(
            side_effect=[httpx.Response(500), httpx.Response(200, json={"products": [keepa_product()]})]
        )
        async with httpx.AsyncClient() as session:
            client = KeepaClient("key", session=session, sleep=no_sleep)
            product = await client.fetch_product("B000TEST01")
    assert product.current_price == 49.99


@pytest.mark.asyncio
async def test_empty_products_is_not_found():
    async with respx.mock() as router:
        router.get(host="api.keepa.com", path="/product").mock(return_value=httpx.Response(200, json={"products": []}))
        async with httpx.AsyncClient() as session:
            client = KeepaClient("key", session=session, sleep=no_sleep)
            with pytest.raises(KeepaProductNotFoundError):
                await client.fetch_product("B000MISSING")


@pytest.mark.asyncio
async def test_missing_api_key_fails_fast(monkeypatch):
    monkeypatch.delenv("KEEPA_API_KEY", raising=False)
    async with httpx.AsyncClient() as session:
        client = KeepaClient(session=session)
        with pytest.raises(KeepaAuthError):
            await client.fetch_product("B000TEST01")
