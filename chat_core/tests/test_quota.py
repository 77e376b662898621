import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from chat_core.chat.quota import MemoryQuotaStorage, UsageQuota, UsageQuotaTracker, exhausted_message, next_reset
from chat_core.infrastructure.storage.quota_store import JsonQuotaStorage

TZ = timezone(timedelta(hours=8))


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_next_reset_is_strictly_after_now():
    now = datetime(2024, 5, 1, 1, 30, tzinfo=TZ)
    assert next_reset(now, 2) == datetime(2024, 5, 1, 2, 0, tzinfo=TZ)
    at_reset = datetime(2024, 5, 1, 2, 0, tzinfo=TZ)
    assert next_reset(at_reset, 2) == datetime(2024, 5, 2, 2, 0, tzinfo=TZ)


def test_count_at_limit_blocks_anonymous_only():
    clock = FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=TZ))
    storage = MemoryQuotaStorage(UsageQuota(count=20, limit=20, reset_at=clock.now + timedelta(hours=3)))
    tracker = UsageQuotaTracker(storage, limit=20, reset_hour=2, clock=clock)

    assert tracker.can_send() is False
    assert tracker.can_send(authenticated=True) is True
    assert tracker.remaining() == 0


def test_record_send_increments_and_persists():
    clock = FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=TZ))
    storage = MemoryQuotaStorage()
    tracker = UsageQuotaTracker(storage, limit=3, reset_hour=2, clock=clock)

    tracker.record_send()
    tracker.record_send()
    assert tracker.stats().count == 2
    assert storage.quota.count == 2
    assert tracker.remaining() == 1
    assert tracker.reset_time_label() == "02:00"


def test_expired_window_resets_on_next_record():
    clock = FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=TZ))
    past = clock.now - timedelta(minutes=1)
    storage = MemoryQuotaStorage(UsageQuota(count=20, limit=20, reset_at=past))
    tracker = UsageQuotaTracker(storage, limit=20, reset_hour=2, clock=clock)

    # 过期时只读视图按 0 计算，但不写回
    assert tracker.can_send() is True
    assert storage.quota.count == 20

    tracker.record_send()
    assert storage.quota.count == 1
    assert storage.quota.reset_at == datetime(2024, 5, 2, 2, 0, tzinfo=TZ)


def test_configured_limit_overrides_stored_limit():
    clock = FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=TZ))
    storage = MemoryQuotaStorage(UsageQuota(count=5, limit=20, reset_at=clock.now + timedelta(hours=1)))
    tracker = UsageQuotaTracker(storage, limit=5, reset_hour=2, clock=clock)
    assert tracker.can_send() is False


def test_storage_failures_do_not_break_tracker():
    class Broken:
        def load(self):
            raise OSError("disk gone")

        def save(self, quota):
            raise OSError("disk gone")

    clock = FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=TZ))
    tracker = UsageQuotaTracker(Broken(), limit=2, reset_hour=2, clock=clock)
    tracker.record_send()
    assert tracker.stats().count == 1


def test_json_quota_storage_roundtrip():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "usage.json"
        storage = JsonQuotaStorage(path)
        assert storage.load() is None

        quota = UsageQuota(count=3, limit=10, reset_at=datetime(2024, 5, 2, 2, 0, tzinfo=TZ))
        storage.save(quota)
        assert JsonQuotaStorage(path).load() == quota


def test_exhausted_message_mentions_limit_and_reset():
    quota = UsageQuota(count=10, limit=10, reset_at=datetime(2024, 5, 2, 2, 0, tzinfo=TZ))
    text = exhausted_message(quota)
    assert "10 free messages" in text
    assert "02:00" in text
