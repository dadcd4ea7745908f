import pytest

from roomview.core.exceptions import AIAdapterError, AIErrorKind, InvalidInputError, StorageError
from roomview.pipeline.retry import call_with_retries


class Flaky:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)
    return _sleep


@pytest.mark.asyncio
async def test_retries_transient_errors_with_backoff(sleeps, fake_sleep):
    operation = Flaky([
        AIAdapterError("busy", service="composite", kind=AIErrorKind.RATE_LIMITED),
        StorageError("blob timeout"),
    ])

    result = await call_with_retries(operation, max_attempts=3, base_delay=0.5, sleep=fake_sleep)

    assert result == "ok"
    assert operation.calls == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_budget_exhaustion_raises_last_error(fake_sleep):
    errors = [AIAdapterError(f"down {i}", service="composite") for i in range(3)]
    operation = Flaky(list(errors))

    with pytest.raises(AIAdapterError) as exc_info:
        await call_with_retries(operation, max_attempts=3, base_delay=0, sleep=fake_sleep)

    assert exc_info.value is errors[2]
    assert operation.calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    InvalidInputError("bad image"),
    AIAdapterError("rejected", service="composite", kind=AIErrorKind.INVALID_INPUT),
    RuntimeError("bug"),
])
async def test_non_retryable_errors_fail_fast(error, sleeps, fake_sleep):
    operation = Flaky([error])

    with pytest.raises(type(error)):
        await call_with_retries(operation, max_attempts=3, base_delay=1, sleep=fake_sleep)

    assert operation.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_on_attempt_sees_each_attempt(fake_sleep):
    attempts = []

    async def on_attempt(n):
        attempts.append(n)

    operation = Flaky([StorageError("blip")])
    await call_with_retries(operation, max_attempts=2, base_delay=0, on_attempt=on_attempt, sleep=fake_sleep)

    assert attempts == [1, 2]


@pytest.mark.asyncio
async def test_single_attempt_budget_never_sleeps(sleeps, fake_sleep):
    error = StorageError("blob timeout")
    operation = Flaky([error])

    with pytest.raises(StorageError) as exc_info:
        await call_with_retries(operation, max_attempts=1, base_delay=5, sleep=fake_sleep)

    assert exc_info.value is error
    assert operation.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_backoff_doubles_per_attempt(sleeps, fake_sleep):
    operation = Flaky([StorageError(f"blip {i}") for i in range(3)])

    await call_with_retries(operation, max_attempts=4, base_delay=0.25, sleep=fake_sleep)

    assert sleeps == [0.25, 0.5, 1.0]
