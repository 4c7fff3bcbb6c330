import pytest

from errors import RateLimited
from rate_limit import RateLimiter

class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

@pytest.fixture
def clock():
    return FakeClock()

def test_exactly_max_calls_pass_within_window(clock):
    rl = RateLimiter(clock=clock)
    assert [rl.allow("k", 3, 60) for _ in range(4)] == [True, True, True, False]

def test_window_resets_after_duration(clock):
    rl = RateLimiter(clock=clock)
    for _ in range(3):
        assert rl.allow("k", 3, 60)
    clock.now += 59
    assert rl.allow("k", 3, 60) is False
    clock.now += 1
    assert rl.allow("k", 3, 60) is True

def test_keys_are_independent(clock):
    rl = RateLimiter(clock=clock)
    for _ in range(3):
        rl.allow("create:1.2.3.4", 3, 60)
    assert rl.allow("create:1.2.3.4", 3, 60) is False
    assert rl.allow("create:5.6.7.8", 3, 60) is True

def test_enforce_raises_with_retry_after(clock):
    rl = RateLimiter(clock=clock)
    for _ in range(2):
        rl.enforce("k", 2, 600)
    clock.now += 100
    with pytest.raises(RateLimited) as exc:
        rl.enforce("k", 2, 600)
    assert exc.value.retry_after == 500
    assert exc.value.status_code == 429
    assert exc.value.to_dict()["retry_after"] == 500

def test_retry_after_is_at_least_one_second(clock):
    rl = RateLimiter(clock=clock)
    rl.allow("k", 1, 10)
    clock.now += 9.99
    assert rl.retry_after("k") == 1
    assert rl.retry_after("unknown") == 1

def test_reset(clock):
    rl = RateLimiter(clock=clock)
    rl.allow("a", 1, 60)
    rl.allow("b", 1, 60)
    rl.reset("a")
    assert rl.allow("a", 1, 60) is True
    assert rl.allow("b", 1, 60) is False
    rl.reset()
    assert rl.allow("b", 1, 60) is True

def test_expired_windows_are_swept(clock):
    rl = RateLimiter(clock=clock, sweep_interval=30)
    rl.allow("verify:198.51.100.1", 3, 10)
    rl.allow("verify:198.51.100.2", 3, 10)
    rl.allow("request:abc", 3, 100)
    assert len(rl) == 3
    clock.now += 30
    rl.allow("verify:198.51.100.3", 3, 10)
    assert len(rl) == 2
    # a swept key starts a fresh window
    assert rl.allow("verify:198.51.100.1", 1, 10) is True

def test_sweep_keeps_live_counts(clock):
    rl = RateLimiter(clock=clock, sweep_interval=1)
    rl.allow("k", 1, 600)
    clock.now += 5
    assert rl.allow("other", 1, 600) is True
    assert rl.allow("k", 1, 600) is False
