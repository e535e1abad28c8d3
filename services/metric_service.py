import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.mysql_models import MetricSample, Resource
from models.schemas import ResourceKind
from services.exceptions import MetricFetchError, PersistenceError, ProviderError
from services.resource_service import ResourceService

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 24


def _percentage(value: Any) -> int:
    return min(100, max(0, round(float(value))))


def _counter(value: Any) -> int:
    return max(0, int(value))


class MetricSampler:
    """Read-through cache of usage samples, one row per observation.

    A stored sample younger than ``freshness`` is served as is; anything
    older triggers a provider query whose result is persisted. Each new
    sample carries the traffic since the previous one, so summing samples
    gives usage however often they are taken.
    """

    FRESHNESS = timedelta(minutes=5)
    MAX_TRAFFIC_WINDOW = timedelta(days=1)

    def __init__(
        self,
        mysql_session: Session,
        provider,
        freshness: timedelta = FRESHNESS,
        clock=datetime.utcnow
    ):
        self.mysql_session = mysql_session
        self.provider = provider
        self.freshness = freshness
        self.clock = clock
        self.resource_service = ResourceService(mysql_session)

    async def get_latest_sample(self, resource_id: int) -> MetricSample:
        resource = self._get_compute(resource_id)
        latest = self._latest_stored(resource_id)
        if latest is not None and self.clock() - latest.timestamp < self.freshness:
            return latest
        return await self._fetch_and_store(resource)

    async def refresh_sample(self, resource_id: int) -> MetricSample:
        resource = self._get_compute(resource_id)
        return await self._fetch_and_store(resource)

    def get_sample_history(self, resource_id: int, limit: int = DEFAULT_HISTORY_LIMIT) -> List[MetricSample]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.resource_service.get_resource(resource_id)
        return self.mysql_session.query(MetricSample).filter(
            MetricSample.resource_id == resource_id
        ).order_by(
            MetricSample.timestamp.desc(),
            MetricSample.id.desc()
        ).limit(limit).all()

    def _get_compute(self, resource_id: int) -> Resource:
        resource = self.resource_service.get_resource(resource_id)
        if resource.kind != ResourceKind.COMPUTE.value:
            raise ValueError("Metrics are only collected for compute resources")
        return resource

    def _latest_stored(self, resource_id: int) -> Optional[MetricSample]:
        return self.mysql_session.query(MetricSample).filter(
            MetricSample.resource_id == resource_id
        ).order_by(
            MetricSample.timestamp.desc(),
            MetricSample.id.desc()
        ).first()

    def _traffic_window(self, resource: Resource, now: datetime) -> int:
        """Seconds since the last stored sample, so consecutive samples never overlap."""
        latest = self._latest_stored(resource.id)
        since = latest.timestamp if latest is not None else resource.created_at
        if since is None:
            return 0
        seconds = int((now - since).total_seconds())
        return min(max(0, seconds), int(self.MAX_TRAFFIC_WINDOW.total_seconds()))

    async def _fetch_and_store(self, resource: Resource) -> MetricSample:
        now = self.clock()
        window = self._traffic_window(resource, now)
        try:
            raw = await self.provider.get_usage_sample(resource.external_id, window_seconds=window)
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning(f"Metric fetch failed for resource {resource.id}: {e}")
            raise MetricFetchError(f"Could not fetch metrics for resource {resource.id}: {e}") from e

        sample = self._build_sample(resource.id, raw, now)
        try:
            self.mysql_session.add(sample)
            self.resource_service.mark_monitored(resource, now)
            self.mysql_session.commit()
        except SQLAlchemyError as e:
            self.mysql_session.rollback()
            raise PersistenceError(str(e)) from e
        return sample

    def _build_sample(self, resource_id: int, raw: Dict[str, Any], now: datetime) -> MetricSample:
        try:
            load_average = [float(v) for v in (raw.get("load_average") or [0, 0, 0])][:3]
            return MetricSample(
                resource_id=resource_id,
                timestamp=now,
                cpu_usage=_percentage(raw.get("cpu", 0)),
                memory_usage=_percentage(raw.get("memory", 0)),
                disk_usage=_percentage(raw.get("disk", 0)),
                network_in=_counter(raw.get("network_in", 0)),
                network_out=_counter(raw.get("network_out", 0)),
                load_average=load_average,
                uptime_seconds=_counter(raw.get("uptime_seconds", 0))
            )
        except (TypeError, ValueError) as e:
            raise MetricFetchError(f"Malformed usage snapshot for resource {resource_id}: {e}") from e
