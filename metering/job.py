import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models.mysql_models import MeteringTick, Resource
from models.schemas import ResourceKind, TransactionKind
from services.bandwidth_service import (
    BandwidthAggregator,
    billing_period,
    is_final_hour_of_period,
    previous_billing_period,
)
from services.exceptions import (
    BillingError,
    InsufficientBalanceError,
    MetricFetchError,
    PersistenceError,
    ProviderError,
)
from services.ledger_service import LedgerService
from services.metric_service import MetricSampler
from services.pricing import hourly_rate_cents
from services.resource_service import ResourceService
from .config import metering_config, MeteringConfig

logger = logging.getLogger(__name__)

CHARGED = "charged"
RECLAIMED = "reclaimed"


@dataclass
class TickReport:
    hour_slot: datetime
    skipped: bool = False
    charged: List[int] = field(default_factory=list)
    reclaimed: List[int] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    overage_settled: List[int] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record_failure(self, resource_id: int, error: Exception):
        self.failed.append({"resource_id": resource_id, "error": str(error)})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hour_slot": self.hour_slot,
            "skipped": self.skipped,
            "charged": list(self.charged),
            "reclaimed": list(self.reclaimed),
            "failed": list(self.failed),
            "overage_settled": list(self.overage_settled),
            "started_at": self.started_at,
            "finished_at": self.finished_at
        }


class HourlyMeteringJob:
    """One metering pass over every provisioned resource.

    Each resource is charged its hourly rate when the owner can cover it and
    reclaimed otherwise. Resources are independent tasks: a failing or hung
    provider call only affects its own resource and is retried next tick.
    The hour slot is claimed in the database first, so concurrent workers
    never bill the same hour twice.
    """

    def __init__(
        self,
        session_factory,
        provider,
        config: MeteringConfig = None,
        archive=None,
        clock=datetime.utcnow
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.config = config or metering_config
        self.archive = archive
        self.clock = clock

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock()
        hour_slot = now.replace(minute=0, second=0, microsecond=0)
        report = TickReport(hour_slot=hour_slot, started_at=self.clock())

        if not self._claim_slot(hour_slot, report.started_at):
            logger.warning(f"Metering slot {hour_slot.isoformat()} already claimed, skipping tick")
            report.skipped = True
            return report

        resource_ids = self._load_resource_ids()
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def process_with_limit(resource_id):
            async with semaphore:
                return await self._process_resource(resource_id, now)

        results = await asyncio.gather(
            *[process_with_limit(resource_id) for resource_id in resource_ids],
            return_exceptions=True
        )

        for resource_id, result in zip(resource_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Metering failed for resource {resource_id}: {result}")
                report.record_failure(resource_id, result)
            elif result == CHARGED:
                report.charged.append(resource_id)
            elif result == RECLAIMED:
                report.reclaimed.append(resource_id)

        if is_final_hour_of_period(now):
            self._settle_overages(billing_period(now), report)
        if self.config.settle_previous_period:
            period = previous_billing_period(now)
            self._settle_overages(period, report, created_before=period[1])

        report.finished_at = self.clock()
        self._finish_slot(report)
        self._archive(report)

        logger.info(
            f"Metering tick {hour_slot.isoformat()} - Charged: {len(report.charged)}, "
            f"Reclaimed: {len(report.reclaimed)}, Failed: {len(report.failed)}, "
            f"Overage settled: {len(report.overage_settled)}"
        )
        return report

    def _claim_slot(self, hour_slot: datetime, started_at: datetime) -> bool:
        with self.session_factory() as session:
            session.add(MeteringTick(hour_slot=hour_slot, started_at=started_at))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Could not claim metering slot: {e}") from e
        return True

    def _finish_slot(self, report: TickReport):
        with self.session_factory() as session:
            try:
                session.query(MeteringTick).filter(
                    MeteringTick.hour_slot == report.hour_slot
                ).update({
                    MeteringTick.finished_at: report.finished_at,
                    MeteringTick.charged: len(report.charged),
                    MeteringTick.reclaimed: len(report.reclaimed),
                    MeteringTick.failed: len(report.failed)
                }, synchronize_session=False)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Could not record metering slot {report.hour_slot.isoformat()}: {e}")

    def _load_resource_ids(self) -> List[int]:
        with self.session_factory() as session:
            return [resource.id for resource in ResourceService(session).get_all_resources()]

    async def _process_resource(self, resource_id: int, now: datetime) -> Optional[str]:
        with self.session_factory() as session:
            resource = session.get(Resource, resource_id)
            if resource is None:
                # deleted by its owner since the tick started
                return None

            account_id = resource.account_id
            kind = resource.kind
            external_id = resource.external_id
            name = resource.name
            rate = hourly_rate_cents(resource)
            ledger = LedgerService(session, clock=self.clock)

            try:
                ledger.charge_if_sufficient(
                    account_id,
                    rate,
                    TransactionKind.HOURLY_CHARGE,
                    f"Hourly charge for {kind} '{name}' ({now:%Y-%m-%d %H}:00)",
                    resource_id=resource_id
                )
            except InsufficientBalanceError as e:
                logger.warning(
                    f"Account {account_id} cannot cover {rate} cents for resource {resource_id} "
                    f"(balance {e.balance_cents}), reclaiming"
                )
                await self._teardown(kind, external_id)
                ResourceService(session).delete_resource(resource_id, commit=False)
                ledger.record_event(
                    account_id,
                    TransactionKind.FORCED_DELETION,
                    f"{kind.capitalize()} '{name}' deleted for insufficient balance",
                    resource_id=resource_id
                )
                return RECLAIMED

            logger.debug(f"Charged account {account_id} {rate} cents for resource {resource_id}")
            if self.config.collect_samples and kind == ResourceKind.COMPUTE.value:
                await self._collect_sample(session, resource_id)
            return CHARGED

    async def _teardown(self, kind: str, external_id: str):
        if kind == ResourceKind.VOLUME.value:
            call = self.provider.destroy_volume(external_id)
        else:
            call = self.provider.destroy_instance(external_id)
        try:
            await asyncio.wait_for(call, timeout=self.config.provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"Teardown of {external_id} timed out after {self.config.provider_timeout}s"
            ) from e

    async def _collect_sample(self, session, resource_id: int):
        sampler = MetricSampler(session, self.provider, clock=self.clock)
        try:
            await asyncio.wait_for(
                sampler.get_latest_sample(resource_id),
                timeout=self.config.provider_timeout
            )
        except (MetricFetchError, PersistenceError, asyncio.TimeoutError) as e:
            logger.warning(f"Usage sample for resource {resource_id} not collected: {e}")

    def _settle_overages(
        self,
        period: Tuple[datetime, datetime],
        report: TickReport,
        created_before: Optional[datetime] = None
    ):
        with self.session_factory() as session:
            aggregator = BandwidthAggregator(session, clock=self.clock)
            candidates = [
                resource.id
                for resource in ResourceService(session).get_all_resources(kind=ResourceKind.COMPUTE)
                if created_before is None or resource.created_at is None or resource.created_at < created_before
            ]
            for resource_id in candidates:
                resource = session.get(Resource, resource_id)
                if resource is None:
                    continue
                try:
                    tx = aggregator.settle_overage(resource, period=period)
                except BillingError as e:
                    logger.error(f"Overage settlement failed for resource {resource_id}: {e}")
                    report.record_failure(resource_id, e)
                    continue
                if tx is not None:
                    report.overage_settled.append(resource_id)

    def _archive(self, report: TickReport):
        if self.archive is None:
            return
        try:
            self.archive.record(report)
        except PyMongoError as e:
            logger.error(f"Could not archive metering report {report.hour_slot.isoformat()}: {e}")
