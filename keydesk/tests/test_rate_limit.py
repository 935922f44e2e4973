import pytest

from keydesk.app.admission.rate_limit import InMemoryRateLimitStore, RateLimitEntry, RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    store = InMemoryRateLimitStore(capacity=100, clock=clock)
    return RateLimiter(store, window_seconds=60, max_attempts=5, clock=clock)


def test_attempt_after_budget_is_rejected(limiter: RateLimiter):
    results = [limiter.hit("1.2.3.4:alice") for _ in range(6)]

    assert [result.allowed for result in results] == [True] * 5 + [False]
    assert results[4].remaining == 0
    assert results[5].retry_after == 60


def test_rejected_attempts_do_not_extend_the_window(limiter: RateLimiter, clock: FakeClock):
    for _ in range(5):
        limiter.hit("key")
    clock.advance(30)
    for _ in range(10):
        assert limiter.is_rate_limited("key") is True

    clock.advance(30)

    assert limiter.is_rate_limited("key") is False


def test_window_is_anchored_to_first_attempt(limiter: RateLimiter, clock: FakeClock):
    limiter.hit("key")
    clock.advance(59)
    for _ in range(4):
        assert limiter.hit("key").allowed
    assert limiter.hit("key").retry_after == 1

    clock.advance(1)

    assert limiter.hit("key").allowed is True


def test_reset_clears_the_counter(limiter: RateLimiter):
    for _ in range(5):
        limiter.hit("key")
    assert limiter.is_rate_limited("key") is True

    limiter.reset("key")

    assert limiter.is_rate_limited("key") is False


def test_keys_are_independent(limiter: RateLimiter):
    for _ in range(5):
        limiter.hit("a")

    assert limiter.is_rate_limited("a") is True
    assert limiter.is_rate_limited("b") is False


def test_store_evicts_least_recently_used(clock: FakeClock):
    store = InMemoryRateLimitStore(capacity=2, clock=clock)
    store.set("a", RateLimitEntry(count=1, window_start=clock(), expires_at=clock() + 60))
    store.set("b", RateLimitEntry(count=1, window_start=clock(), expires_at=clock() + 60))
    store.get("a")
    store.set("c", RateLimitEntry(count=1, window_start=clock(), expires_at=clock() + 60))

    assert len(store) == 2
    assert store.get("b") is None
    assert store.get("a") is not None
    assert store.get("c") is not None


def test_store_drops_expired_entries(clock: FakeClock):
    store = InMemoryRateLimitStore(capacity=10, clock=clock)
    store.set("a", RateLimitEntry(count=3, window_start=clock(), expires_at=clock() + 5))

    clock.advance(5)

    assert store.get("a") is None
    assert len(store) == 0


def test_invalid_configuration_is_rejected():
    with pytest.raises(ValueError):
        RateLimiter(InMemoryRateLimitStore(), window_seconds=0, max_attempts=5)
    with pytest.raises(ValueError):
        RateLimiter(InMemoryRateLimitStore(), window_seconds=60, max_attempts=0)
    with pytest.raises(ValueError):
        InMemoryRateLimitStore(capacity=0)
