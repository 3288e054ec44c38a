from pulsecheck.idempotency import IdempotencyCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_repeat_within_ttl_is_rejected():
    cache = IdempotencyCache(ttl_seconds=60, clock=FakeClock())
    assert cache.check_and_remember("evt-1") is True
    assert cache.check_and_remember("evt-1") is False
    assert cache.check_and_remember("evt-2") is True


def test_key_expires_after_ttl():
    clock = FakeClock()
    cache = IdempotencyCache(ttl_seconds=60, clock=clock)
    cache.check_and_remember("evt-1")
    clock.now += 61
    assert len(cache) == 0
    assert cache.check_and_remember("evt-1") is True


def test_forgotten_key_is_accepted_again():
    cache = IdempotencyCache(ttl_seconds=60, clock=FakeClock())
    cache.check_and_remember("evt-1")
    cache.forget("evt-1")
    cache.forget("never-seen")
    assert cache.check_and_remember("evt-1") is True
