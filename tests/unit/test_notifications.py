import pytest

from wedged_risk.models import RiskComponents, RiskLevel, RiskSnapshot
from wedged_risk.notifications import RiskUpdateNotifier


def snapshot(pool_id=1, score=4000):
    return RiskSnapshot(
        pool_id=pool_id,
        timestamp=1,
        composite_score=score,
        level=RiskLevel.MEDIUM,
        components=RiskComponents(),
        utilization=50.0,
        hedge_ratio=0.0,
        concentration_risk=1000
    )


@pytest.mark.asyncio
class TestRiskUpdateNotifier:
    async def test_sync_and_async_callbacks(self):
        notifier = RiskUpdateNotifier()
        seen, awaited = [], []

        async def on_update(s):
            awaited.append(s.pool_id)

        notifier.subscribe(lambda s: seen.append(s.pool_id))
        notifier.subscribe(on_update)

        await notifier.publish(snapshot())

        assert seen == [1]
        assert awaited == [1]
        assert notifier.subscriber_count == 2

    async def test_failing_subscriber_does_not_block_others(self):
        notifier = RiskUpdateNotifier()
        seen = []

        def broken(s):
            raise RuntimeError("subscriber bug")

        notifier.subscribe(broken)
        notifier.subscribe(lambda s: seen.append(s.pool_id))

        await notifier.publish(snapshot())

        assert seen == [1]

    async def test_unsubscribe_is_idempotent(self):
        notifier = RiskUpdateNotifier()
        unsubscribe = notifier.subscribe(lambda s: None)

        unsubscribe()
        unsubscribe()

        assert notifier.subscriber_count == 0

    async def test_full_queue_drops_oldest(self):
        notifier = RiskUpdateNotifier(queue_size=2)
        queue = notifier.subscribe_queue()

        for pool_id in (1, 2, 3):
            await notifier.publish(snapshot(pool_id))

        assert [queue.get_nowait().pool_id for _ in range(queue.qsize())] == [2, 3]

    async def test_unsubscribed_queue_receives_nothing(self):
        notifier = RiskUpdateNotifier()
        queue = notifier.subscribe_queue()
        notifier.unsubscribe_queue(queue)

        await notifier.publish(snapshot())

        assert queue.empty()
