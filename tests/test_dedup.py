from unittest.mock import Mock, patch

import redis

from oyadeki.services import dedup
from oyadeki.services.dedup import (
    InMemoryWindowedSet,
    RedisWindowedSet,
    action_key,
    event_key,
    is_duplicate_action,
    is_duplicate_event,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestInMemoryWindowedSet:
    def test_first_call_is_new_second_is_duplicate(self):
        window = InMemoryWindowedSet(clock=FakeClock())
        assert window.seen("evt-1", 120) is False
        assert window.seen("evt-1", 120) is True

    def test_key_is_new_again_after_window(self):
        clock = FakeClock()
        window = InMemoryWindowedSet(clock=clock)
        assert window.seen("evt-1", 120) is False
        clock.now += 121
        assert window.seen("evt-1", 120) is False

    def test_inside_window_edge_is_duplicate(self):
        clock = FakeClock()
        window = InMemoryWindowedSet(clock=clock)
        window.seen("evt-1", 3)
        clock.now += 3
        assert window.seen("evt-1", 3) is True

    def test_distinct_keys_do_not_collide(self):
        window = InMemoryWindowedSet(clock=FakeClock())
        assert window.seen("U1:100", 120) is False
        assert window.seen("U1:101", 120) is False
        assert window.seen("U2:100", 120) is False

    def test_lookup_sweeps_expired_entries(self):
        clock = FakeClock()
        window = InMemoryWindowedSet(clock=clock)
        window.seen("a", 10)
        window.seen("b", 10)
        clock.now += 11
        window.seen("c", 10)
        assert len(window) == 1


class TestRedisWindowedSet:
    def test_set_nx_success_means_new(self):
        client = Mock()
        client.set.return_value = True
        window = RedisWindowedSet(client, prefix="test")

        assert window.seen("evt-1", 120) is False
        client.set.assert_called_once_with("test:evt-1", "1", px=120000, nx=True)

    def test_set_nx_rejected_means_duplicate(self):
        client = Mock()
        client.set.return_value = None
        window = RedisWindowedSet(client, prefix="test")
        assert window.seen("evt-1", 120) is True

    def test_redis_error_falls_back_to_memory(self):
        client = Mock()
        client.set.side_effect = redis.ConnectionError("down")
        window = RedisWindowedSet(client, prefix="test", fallback=InMemoryWindowedSet(clock=FakeClock()))

        assert window.seen("evt-1", 120) is False
        assert window.seen("evt-1", 120) is True


class TestKeys:
    def test_event_key_prefers_platform_id(self):
        assert event_key("U1", "01HXYZ", 1700000000000) == "01HXYZ"

    def test_event_key_falls_back_to_owner_and_timestamp(self):
        assert event_key("U1", None, 1700000000000) == "U1:1700000000000"

    def test_action_key(self):
        assert action_key("U1", "rate:abc") == "U1:rate:abc"


class TestModuleWindows:
    def test_event_and_action_windows_are_independent(self):
        assert is_duplicate_event("U1:rate:abc") is False
        assert is_duplicate_action("U1", "rate:abc") is False
        assert is_duplicate_action("U1", "rate:abc") is True
        assert is_duplicate_event("U1:rate:abc") is True

    def test_redis_backend_selected_by_settings(self):
        with patch.object(dedup.settings, "dedup_backend", "redis"), patch.object(
            dedup.redis.Redis, "from_url", return_value=Mock()
        ) as from_url:
            dedup.reset_dedup_state()
            window = dedup.get_event_set()

        assert isinstance(window, RedisWindowedSet)
        from_url.assert_called_once()
