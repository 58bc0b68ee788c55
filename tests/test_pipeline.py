import asyncio

from vmawatch.models import AlertSource
from vmawatch.pipeline import CircuitBreaker, DistributionPipeline

PROD = AlertSource.PRODUCTION
TEST = AlertSource.TEST


class SlowFetcher:
    def __init__(self, delay):
        self.delay = delay
        self.calls = 0

    async def fetch_alerts(self, source):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return []


def test_burst_of_requests_runs_once(fast_cfg, make_registry, make_fetcher, make_target):
    registry = make_registry([make_target("a", "01")])
    fetcher = make_fetcher()

    async def scenario():
        pipe = DistributionPipeline(fast_cfg, registry=registry, fetcher=fetcher)
        for _ in range(5):
            pipe.request_run()
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)
        await pipe.aclose()
        return pipe.runs_completed

    assert asyncio.run(scenario()) == 1
    assert fetcher.calls == [PROD]


def test_overlapping_run_is_skipped(fast_cfg, make_registry, make_target):
    registry = make_registry([make_target("a", "01")])
    fetcher = SlowFetcher(0.05)

    async def scenario():
        pipe = DistributionPipeline(fast_cfg, registry=registry, fetcher=fetcher)
        first = asyncio.create_task(pipe.run())
        await asyncio.sleep(0.01)
        second = await pipe.run()
        return await first, second

    first, second = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert fetcher.calls == 1


def test_breaker_opens_after_threshold_and_recovers(fast_cfg, make_registry, make_fetcher, make_target):
    registry = make_registry([make_target("a", "01")])
    registry.failures = 5
    fetcher = make_fetcher()

    async def scenario():
        pipe = DistributionPipeline(fast_cfg, registry=registry, fetcher=fetcher)
        for _ in range(5):
            await pipe.run()
        opened = pipe.breaker.open
        skipped = await pipe.run()
        calls_while_open = registry.calls

        await asyncio.sleep(0.15)
        reopened = pipe.breaker.open
        ran = await pipe.run()
        await pipe.aclose()
        return opened, skipped, calls_while_open, reopened, ran, pipe.breaker.failure_count

    opened, skipped, calls_while_open, reopened, ran, failures = asyncio.run(scenario())

    assert opened is True
    assert skipped is False
    assert calls_while_open == 5
    assert reopened is False
    assert ran is True
    assert failures == 0
    assert fetcher.calls == [PROD]


def test_breaker_counts_only_up_to_threshold():
    async def scenario():
        b = CircuitBreaker(threshold=3, cooldown_seconds=60)
        opened = [b.record_failure() for _ in range(4)]
        b.cancel()
        return opened, b.open

    opened, is_open = asyncio.run(scenario())
    assert opened == [False, False, True, False]
    assert is_open


def test_success_resets_failure_count(fast_cfg, make_registry, make_fetcher, make_target):
    registry = make_registry([make_target("a", "01")])
    registry.failures = 4

    async def scenario():
        pipe = DistributionPipeline(fast_cfg, registry=registry, fetcher=make_fetcher())
        for _ in range(4):
            await pipe.run()
        before = pipe.breaker.failure_count
        await pipe.run()
        return before, pipe.breaker.failure_count, pipe.breaker.open

    assert asyncio.run(scenario()) == (4, 0, False)


def test_targets_get_their_own_source(fast_cfg, make_registry, make_fetcher, make_target, make_alert):
    prod_target = make_target("prod", "01")
    test_target = make_target("test", "01", test_mode=True)
    fetcher = make_fetcher(
        {
            PROD: [make_alert("real")],
            TEST: [make_alert("drill", status="Test")],
        }
    )
    registry = make_registry([prod_target, test_target])

    async def scenario():
        pipe = DistributionPipeline(fast_cfg, registry=registry, fetcher=fetcher)
        return await pipe.run()

    assert asyncio.run(scenario()) is True
    assert sorted(s.value for s in fetcher.calls) == ["production", "test"]
    assert list(prod_target.registry) == ["real"]
    assert list(test_target.registry) == ["drill"]


def test_only_matching_areas_are_processed(fast_cfg, make_registry, make_fetcher, make_target, make_alert):
    sthlm = make_target("sthlm", "0180")
    skane = make_target("malmo", "1280")
    fetcher = make_fetcher(
        {
            PROD: [
                make_alert("county", geocodes=("01",)),
                make_alert("south", geocodes=("12",)),
            ]
        }
    )

    asyncio.run(DistributionPipeline(fast_cfg, registry=make_registry([sthlm, skane]), fetcher=fetcher).run())

    assert list(sthlm.registry) == ["county"]
    assert list(skane.registry) == ["south"]


def test_disabled_and_incapable_targets_are_skipped(fast_cfg, make_registry, make_fetcher, make_target, make_alert):
    off = make_target("off", "01", enabled=False)
    incapable = make_target("bare", "01", capable=False)
    on = make_target("on", "01")
    fetcher = make_fetcher({PROD: [make_alert("a")]})

    asyncio.run(DistributionPipeline(fast_cfg, registry=make_registry([off, incapable, on]), fetcher=fetcher).run())

    assert off.registry == {} and off.alarm is None
    assert incapable.registry == {} and incapable.alarm is None
    assert list(on.registry) == ["a"]


def test_no_enabled_targets_fetches_nothing(fast_cfg, make_registry, make_fetcher, make_target):
    fetcher = make_fetcher()
    registry = make_registry([make_target("off", "01", enabled=False)])

    assert asyncio.run(DistributionPipeline(fast_cfg, registry=registry, fetcher=fetcher).run()) is True
    assert fetcher.calls == []


def test_failing_target_does_not_stop_others(fast_cfg, make_registry, make_fetcher, make_target, make_alert):
    class Broken:
        target_id = "broken"
        area_code = "01"
        enabled = True
        test_mode = False

        def __init__(self):
            self.removed = False
            self.lock = asyncio.Lock()

        def has_required_capability(self):
            return True

        def load_incident_registry(self):
            raise RuntimeError("corrupt store")

    good = make_target("good", "01")
    fetcher = make_fetcher({PROD: [make_alert("a")]})

    async def scenario():
        pipe = DistributionPipeline(fast_cfg, registry=make_registry([Broken(), good]), fetcher=fetcher)
        ran = await pipe.run()
        return ran, pipe.breaker.failure_count

    ran, failures = asyncio.run(scenario())

    assert ran is True
    assert failures == 0
    assert list(good.registry) == ["a"]


def test_empty_fetch_clears_nothing_but_indicators(fast_cfg, make_registry, make_fetcher, make_target):
    t = make_target("a", "01")
    t.registry = {"old": {"incidents": "old", "msgType": "Alert", "status": "Actual"}}

    asyncio.run(DistributionPipeline(fast_cfg, registry=make_registry([t]), fetcher=make_fetcher()).run())

    # absence from a fetch is not a cancellation
    assert list(t.registry) == ["old"]
    assert t.cancelled == []
    assert t.alarm is True
