import pytest

from booking_engine.core.errors import RateLimited
from booking_engine.services.rate_limiter import (
    AUTH,
    BATCH,
    GUEST,
    PASSWORD_RESET,
    STANDARD,
    VERIFICATION,
    InMemoryRateCounter,
    RateLimiter,
    RedisRateCounter,
    classify_flow,
    classify_request,
)


class FakeClock:
    def __init__(self, now: float = 1_000_040.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakePipeline:
    def __init__(self, store: dict) -> None:
        self._store = store
        self._commands = []

    def incr(self, key):
        self._commands.append(('incr', key))
        return self

    def expire(self, key, seconds):
        self._commands.append(('expire', key, seconds))
        return self

    def execute(self):
        results = []
        for command in self._commands:
            if command[0] == 'incr':
                self._store[command[1]] = self._store.get(command[1], 0) + 1
                results.append(self._store[command[1]])
            else:
                self._store.setdefault('_ttl', {})[command[1]] = command[2]
                results.append(True)
        self._commands = []
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.store = {}
        self.transactions = []

    def pipeline(self, transaction=True):
        self.transactions.append(transaction)
        return FakePipeline(self.store)


@pytest.mark.parametrize(
    ('path', 'user_id', 'tier', 'key'),
    [
        ('/auth/token', 7, AUTH, 'ip:10.0.0.1'),
        ('/api/auth', None, AUTH, 'ip:10.0.0.1'),
        ('/login', 7, AUTH, 'ip:10.0.0.1'),
        ('/api/register/', None, AUTH, 'ip:10.0.0.1'),
        ('/appointments/batch/transition', 7, BATCH, 'user:7'),
        ('/api/appointments/bulk', None, BATCH, 'ip:10.0.0.1'),
        ('/appointments', 7, STANDARD, 'user:7'),
        ('/appointments', None, GUEST, 'ip:10.0.0.1'),
        ('/authors', None, GUEST, 'ip:10.0.0.1'),
        ('/batch', 7, STANDARD, 'user:7'),
    ],
)
def test_classify_request(path: str, user_id, tier, key: str) -> None:
    assignment = classify_request(path, 'POST', '10.0.0.1', user_id)

    assert assignment.tier == tier
    assert assignment.key == key
    assert assignment.method == 'POST'


def test_classify_flow_assigns_narrow_tiers() -> None:
    reset = classify_flow('password-reset', ' User@Example.EDU ')
    verification = classify_flow('verification', '10.0.0.1')

    assert reset.tier == PASSWORD_RESET
    assert reset.key == 'email:user@example.edu'
    assert verification.tier == VERIFICATION
    assert verification.key == 'ip:10.0.0.1'


def test_classify_flow_rejects_unknown_flow() -> None:
    with pytest.raises(ValueError):
        classify_flow('signup', 'someone')


def test_in_memory_limiter_blocks_after_tier_limit() -> None:
    clock = FakeClock()
    limiter = RateLimiter(InMemoryRateCounter(clock), clock)
    assignment = classify_request('/login', 'POST', '10.0.0.1')

    decisions = [limiter.hit(assignment) for _ in range(AUTH.limit)]
    assert all(decision.allowed for decision in decisions)
    assert decisions[-1].remaining == 0

    with pytest.raises(RateLimited) as exception_info:
        limiter.check(assignment)

    assert exception_info.value.tier == 'auth'
    assert exception_info.value.retry_after == 40


def test_in_memory_limiter_resets_in_next_window() -> None:
    clock = FakeClock()
    limiter = RateLimiter(InMemoryRateCounter(clock), clock)
    assignment = classify_flow('verification', '10.0.0.1')

    for _ in range(VERIFICATION.limit):
        limiter.check(assignment)
    assert limiter.hit(assignment).allowed is False

    clock.now += 60

    assert limiter.check(assignment).remaining == VERIFICATION.limit - 1


def test_keys_are_counted_independently() -> None:
    clock = FakeClock()
    limiter = RateLimiter(InMemoryRateCounter(clock), clock)

    for _ in range(GUEST.limit):
        limiter.check(classify_request('/appointments', 'GET', '10.0.0.1'))

    assert limiter.hit(classify_request('/appointments', 'GET', '10.0.0.2')).allowed is True
    assert limiter.hit(classify_request('/appointments', 'GET', '10.0.0.1')).allowed is False


def test_redis_counter_increments_atomically() -> None:
    client = FakeRedis()
    clock = FakeClock()
    limiter = RateLimiter(RedisRateCounter(client), clock)
    assignment = classify_request('/appointments', 'GET', '10.0.0.1', user_id=7)

    first = limiter.hit(assignment)
    second = limiter.hit(assignment)

    assert (first.remaining, second.remaining) == (STANDARD.limit - 1, STANDARD.limit - 2)
    assert client.store['rate:standard:user:7:1000020'] == 2
    assert client.store['_ttl']['rate:standard:user:7:1000020'] == 60
    assert client.transactions == [True, True]
