import unittest

from rns_manager.status_cache import StatusCache


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Counter:
    def __init__(self, value="up") -> None:
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return self.value


class TestStatusCache(unittest.TestCase):
    def test_live_entry_skips_producer(self) -> None:
        clock = FakeClock()
        cache = StatusCache(default_ttl=10, clock=clock)
        producer = Counter()

        self.assertEqual(cache.get("svc", producer), "up")
        clock.now += 9.9
        self.assertEqual(cache.get("svc", producer), "up")
        self.assertEqual(producer.calls, 1)

    def test_entry_expires_at_ttl(self) -> None:
        clock = FakeClock()
        cache = StatusCache(default_ttl=10, clock=clock)
        producer = Counter()

        cache.get("svc", producer)
        clock.now += 10
        cache.get("svc", producer)

        self.assertEqual(producer.calls, 2)

    def test_errors_are_not_cached_and_prior_value_survives(self) -> None:
        clock = FakeClock()
        cache = StatusCache(default_ttl=5, clock=clock)
        cache.get("svc", lambda: "old")
        clock.now += 6

        def _boom():
            raise RuntimeError("probe failed")

        with self.assertRaises(RuntimeError):
            cache.get("svc", _boom)
        with self.assertRaises(RuntimeError):
            cache.get("svc", _boom)

        producer = Counter("new")
        self.assertEqual(cache.get("svc", producer), "new")
        self.assertEqual(producer.calls, 1)

    def test_error_on_empty_cache_leaves_no_entry(self) -> None:
        cache = StatusCache(clock=FakeClock())

        with self.assertRaises(ValueError):
            cache.get("svc", lambda: (_ for _ in ()).throw(ValueError("x")))

        self.assertEqual(len(cache), 0)
        self.assertNotIn("svc", cache)

    def test_invalidate_forces_refetch(self) -> None:
        cache = StatusCache(clock=FakeClock())
        producer = Counter()
        cache.get("svc", producer)

        cache.invalidate("svc")
        cache.get("svc", producer)

        self.assertEqual(producer.calls, 2)

    def test_invalidate_prefix_and_all(self) -> None:
        cache = StatusCache(clock=FakeClock())
        cache.get("version:rns", lambda: "1.0")
        cache.get("version:lxmf", lambda: "0.5")
        cache.get("service:rnsd:alive", lambda: True)

        cache.invalidate_prefix("version:")
        self.assertEqual(len(cache), 1)
        self.assertIn("service:rnsd:alive", cache)

        cache.invalidate_all()
        self.assertEqual(len(cache), 0)

    def test_zero_ttl_never_caches(self) -> None:
        cache = StatusCache(default_ttl=10, clock=FakeClock())
        producer = Counter()

        cache.get("svc", producer, ttl=0)
        cache.get("svc", producer, ttl=0)

        self.assertEqual(producer.calls, 2)
        self.assertEqual(len(cache), 0)

    def test_shorter_requested_ttl_bypasses_older_entry(self) -> None:
        clock = FakeClock()
        cache = StatusCache(default_ttl=10, clock=clock)
        producer = Counter()
        cache.get("svc", producer)
        clock.now += 3

        cache.get("svc", producer, ttl=2)

        self.assertEqual(producer.calls, 2)

    def test_peek_does_not_produce(self) -> None:
        clock = FakeClock()
        cache = StatusCache(default_ttl=1, clock=clock)

        self.assertIsNone(cache.peek("svc"))
        cache.get("svc", lambda: "up")
        self.assertEqual(cache.peek("svc"), "up")
        clock.now += 1
        self.assertIsNone(cache.peek("svc"))


if __name__ == "__main__":
    unittest.main()
