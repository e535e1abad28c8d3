from datetime import datetime, timedelta

import pytest

from models.mysql_models import MetricSample, Resource
from models.schemas import ResourceKind, ResourceStatus
from services.bandwidth_service import BandwidthAggregator, billing_period
from services.exceptions import MetricFetchError, ResourceNotFoundError
from services.metric_service import MetricSampler


class ManualClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 3, 10, 12, 0))


@pytest.mark.asyncio
async def test_fresh_sample_served_from_storage(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account())
    sampler = MetricSampler(session, provider, clock=clock)

    first = await sampler.get_latest_sample(resource_id)
    clock.advance(minutes=4)
    second = await sampler.get_latest_sample(resource_id)

    assert second.id == first.id
    assert provider.sampled == ["ext-1"]


@pytest.mark.asyncio
async def test_stale_sample_is_refetched(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account())
    sampler = MetricSampler(session, provider, clock=clock)

    first = await sampler.get_latest_sample(resource_id)
    clock.advance(minutes=6)
    second = await sampler.get_latest_sample(resource_id)

    assert second.id != first.id
    assert second.timestamp == clock.now
    assert len(provider.sampled) == 2
    assert session.query(MetricSample).filter(MetricSample.resource_id == resource_id).count() == 2


@pytest.mark.asyncio
async def test_refresh_always_queries_provider(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account())
    sampler = MetricSampler(session, provider, clock=clock)

    await sampler.get_latest_sample(resource_id)
    await sampler.refresh_sample(resource_id)

    assert len(provider.sampled) == 2


@pytest.mark.asyncio
async def test_sample_marks_resource_monitored(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account())
    resource = session.get(Resource, resource_id)
    resource.status = ResourceStatus.NEW.value
    session.commit()

    await MetricSampler(session, provider, clock=clock).get_latest_sample(resource_id)

    resource = session.get(Resource, resource_id)
    assert resource.last_monitored == clock.now
    assert resource.status == ResourceStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_provider_failure_raises_metric_fetch_error(session, make_account, make_resource, provider_factory, clock):
    resource_id = make_resource(make_account())
    sampler = MetricSampler(session, provider_factory(metric_error=True), clock=clock)

    with pytest.raises(MetricFetchError):
        await sampler.get_latest_sample(resource_id)
    assert session.query(MetricSample).count() == 0


@pytest.mark.asyncio
async def test_snapshot_values_are_clamped(session, make_account, make_resource, provider_factory, clock):
    resource_id = make_resource(make_account())
    provider = provider_factory(sample={
        "cpu": 150.2,
        "memory": -3,
        "disk": 99.6,
        "network_in": -10,
        "network_out": 4096,
        "load_average": [1, 2, 3, 4],
        "uptime_seconds": 120
    })

    sample = await MetricSampler(session, provider, clock=clock).get_latest_sample(resource_id)

    assert sample.cpu_usage == 100
    assert sample.memory_usage == 0
    assert sample.disk_usage == 100
    assert sample.network_in == 0
    assert sample.network_out == 4096
    assert sample.load_average == [1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_malformed_snapshot_rejected(session, make_account, make_resource, provider_factory, clock):
    resource_id = make_resource(make_account())
    provider = provider_factory(sample={"cpu": "n/a"})

    with pytest.raises(MetricFetchError):
        await MetricSampler(session, provider, clock=clock).get_latest_sample(resource_id)


@pytest.mark.asyncio
async def test_volumes_have_no_metrics(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account(), kind=ResourceKind.VOLUME, size_gb=50)

    with pytest.raises(ValueError):
        await MetricSampler(session, provider, clock=clock).get_latest_sample(resource_id)


@pytest.mark.asyncio
async def test_unknown_resource(session, provider, clock):
    with pytest.raises(ResourceNotFoundError):
        await MetricSampler(session, provider, clock=clock).get_latest_sample(404)


def test_history_is_newest_first_and_bounded(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account())
    start = datetime(2024, 3, 1)
    for hour in range(30):
        session.add(MetricSample(
            resource_id=resource_id,
            timestamp=start + timedelta(hours=hour),
            cpu_usage=hour,
            memory_usage=10,
            disk_usage=10,
            network_in=0,
            network_out=0,
            load_average=[0, 0, 0],
            uptime_seconds=0
        ))
    session.commit()
    sampler = MetricSampler(session, provider, clock=clock)

    history = sampler.get_sample_history(resource_id)
    assert len(history) == 24
    assert [s.cpu_usage for s in history] == list(range(29, 5, -1))

    assert len(sampler.get_sample_history(resource_id, limit=5)) == 5
    with pytest.raises(ValueError):
        sampler.get_sample_history(resource_id, limit=0)


def created_an_hour_ago(session, resource_id, clock):
    resource = session.get(Resource, resource_id)
    resource.created_at = clock.now - timedelta(hours=1)
    session.commit()


@pytest.mark.asyncio
async def test_traffic_window_starts_at_previous_sample(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account())
    created_an_hour_ago(session, resource_id, clock)
    sampler = MetricSampler(session, provider, clock=clock)

    await sampler.refresh_sample(resource_id)
    clock.advance(minutes=20)
    await sampler.refresh_sample(resource_id)
    await sampler.refresh_sample(resource_id)

    assert provider.windows == [3600, 1200, 0]


@pytest.mark.asyncio
async def test_repeated_refresh_does_not_count_traffic_twice(
    session, make_account, make_resource, provider_factory, clock
):
    resource_id = make_resource(make_account())
    created_an_hour_ago(session, resource_id, clock)
    sampler = MetricSampler(session, provider_factory(bytes_per_second=1_000_000), clock=clock)
    aggregator = BandwidthAggregator(session)
    period = billing_period(clock.now)

    await sampler.refresh_sample(resource_id)
    once = aggregator.get_usage(resource_id, *period).used_gb
    await sampler.refresh_sample(resource_id)
    twice = aggregator.get_usage(resource_id, *period).used_gb

    assert once == pytest.approx(7_200_000_000 / 1024 ** 3)
    assert twice == once

    clock.advance(minutes=30)
    await sampler.refresh_sample(resource_id)
    assert aggregator.get_usage(resource_id, *period).used_gb == pytest.approx(10_800_000_000 / 1024 ** 3)


@pytest.mark.asyncio
async def test_traffic_window_is_capped(session, make_account, make_resource, provider, clock):
    resource_id = make_resource(make_account())
    resource = session.get(Resource, resource_id)
    resource.created_at = clock.now - timedelta(days=30)
    session.commit()

    await MetricSampler(session, provider, clock=clock).refresh_sample(resource_id)

    assert provider.windows == [int(MetricSampler.MAX_TRAFFIC_WINDOW.total_seconds())]
