import httpx
import pytest

from dealpilot.utils.retry import is_retryable, retry_async


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.com")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))


@pytest.mark.asyncio
async def test_retry_backs_off_exponentially():
    calls = []
    waits = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise httpx.ConnectError("down")
        return "ok"

    async def fake_sleep(seconds):
        waits.append(seconds)

    wrapped = retry_async(flaky, max_attempts=3, base_delay=1.0, sleep=fake_sleep)
    assert await wrapped() == "ok"
    assert waits == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_attempts():
    calls = []

    async def always_down():
        calls.append(1)
        raise _status_error(503)

    async def fake_sleep(seconds):
        return None

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(always_down, max_attempts=3, sleep=fake_sleep)()
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_zero_attempts_still_calls_once():
    calls = []

    async def down():
        calls.append(1)
        raise _status_error(503)

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(down, max_attempts=0)()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_unauthorized_is_not_retried():
    calls = []

    async def unauthorized():
        calls.append(1)
        raise _status_error(401)

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(unauthorized, max_attempts=5)()
    assert len(calls) == 1


def test_is_retryable():
    assert is_retryable(_status_error(429))
    assert is_retryable(httpx.ReadTimeout("slow"))
    assert not is_retryable(_status_error(401))
    assert not is_retryable(ValueError("bad"))
