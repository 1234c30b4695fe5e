import pytest

from app.services.dedup_service import DEDUP_KEY_PREFIX, RequestDeduplicator


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestLocalDedup:
    @pytest.mark.asyncio
    async def test_first_delivery_is_not_duplicate(self):
        dedup = RequestDeduplicator(ttl_seconds=60)
        assert await dedup.is_duplicate("req-1") is False

    @pytest.mark.asyncio
    async def test_redelivery_within_window_is_duplicate(self):
        clock = FakeClock()
        dedup = RequestDeduplicator(ttl_seconds=60, clock=clock)

        assert await dedup.is_duplicate("req-1") is False
        clock.now += 59
        assert await dedup.is_duplicate("req-1") is True

    @pytest.mark.asyncio
    async def test_redelivery_after_window_is_processed(self):
        clock = FakeClock()
        dedup = RequestDeduplicator(ttl_seconds=60, clock=clock)

        assert await dedup.is_duplicate("req-1") is False
        clock.now += 61
        assert await dedup.is_duplicate("req-1") is False

    @pytest.mark.asyncio
    async def test_missing_request_id_is_never_duplicate(self):
        dedup = RequestDeduplicator()
        assert await dedup.is_duplicate(None) is False
        assert await dedup.is_duplicate(None) is False
        assert len(dedup) == 0

    @pytest.mark.asyncio
    async def test_expired_ids_are_purged(self):
        clock = FakeClock()
        dedup = RequestDeduplicator(ttl_seconds=60, clock=clock)
        await dedup.is_duplicate("a")
        await dedup.is_duplicate("b")
        assert len(dedup) == 2

        clock.now += 120
        assert len(dedup) == 0


class TestRedisDedup:
    @pytest.mark.asyncio
    async def test_seen_by_other_instance_is_duplicate(self, fake_redis):
        first = RequestDeduplicator(ttl_seconds=60, redis_client=fake_redis)
        second = RequestDeduplicator(ttl_seconds=60, redis_client=fake_redis)

        assert await first.is_duplicate("req-1") is False
        assert await second.is_duplicate("req-1") is True

    @pytest.mark.asyncio
    async def test_redis_key_uses_ttl(self, fake_redis):
        dedup = RequestDeduplicator(ttl_seconds=60, redis_client=fake_redis)
        await dedup.is_duplicate("req-1")
        assert fake_redis.expirations[f"{DEDUP_KEY_PREFIX}:req-1"] == 60

    @pytest.mark.asyncio
    async def test_redis_failure_falls_back_to_local(self, broken_redis):
        dedup = RequestDeduplicator(ttl_seconds=60, redis_client=broken_redis)

        assert await dedup.is_duplicate("req-1") is False
        assert await dedup.is_duplicate("req-1") is True
