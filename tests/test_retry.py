import asyncio

import pytest

from minerboard.errors import ContractRevert, RpcError
from minerboard.retry import RetryPolicy, retry_async


def test_retries_until_success():
    attempts = []
    sleeps = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RpcError("timeout", retryable=True)
        return "ok"

    async def fake_sleep(delay):
        sleeps.append(delay)

    async def _run():
        return await retry_async(flaky, RetryPolicy(max_attempts=5, delay=0.5), sleep=fake_sleep)

    assert asyncio.run(_run()) == "ok"
    assert len(attempts) == 3
    assert sleeps == [0.5, 0.5]


def test_gives_up_after_max_attempts_with_last_error():
    calls = []

    async def failing():
        calls.append(1)
        raise RpcError(f"failure {len(calls)}", retryable=True)

    async def no_sleep(_):
        return None

    async def _run():
        await retry_async(failing, RetryPolicy(max_attempts=3), sleep=no_sleep)

    with pytest.raises(RpcError, match="failure 3"):
        asyncio.run(_run())


def test_give_up_on_skips_retries():
    calls = []
    retried = []

    async def reverting():
        calls.append(1)
        raise ContractRevert("execution reverted")

    async def _run():
        await retry_async(
            reverting,
            RetryPolicy(max_attempts=5, retry_on=(RpcError,), give_up_on=(ContractRevert,)),
            on_retry=lambda attempt, exc: retried.append(attempt),
        )

    with pytest.raises(ContractRevert):
        asyncio.run(_run())
    assert calls == [1]
    assert retried == []


def test_non_retryable_rpc_error_is_raised_at_once():
    calls = []

    async def invalid_params():
        calls.append(1)
        raise RpcError("invalid params", code=-32602)

    async def _run():
        await retry_async(invalid_params, RetryPolicy(max_attempts=5, retry_on=(RpcError,)))

    with pytest.raises(RpcError, match="invalid params"):
        asyncio.run(_run())
    assert calls == [1]
    assert RetryPolicy().should_retry(RpcError("rate limit", retryable=True))
    assert RetryPolicy().should_retry(ValueError("boom"))


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(delay=1.0, backoff="exponential", max_delay=5.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_invalid_policy():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(backoff="linear")
