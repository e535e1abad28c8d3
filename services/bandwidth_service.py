import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.mysql_models import BillingTransaction, MetricSample, OverageSettlement, Resource
from models.schemas import ResourceKind, TransactionKind
from services.exceptions import PersistenceError
from services.ledger_service import LedgerService
from services.pricing import (
    OVERAGE_RATE,
    SIZE_PLANS,
    SizePlan,
    bandwidth_limit_gb,
    monthly_price,
    to_cents,
)
from services.resource_service import ResourceService

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3


def billing_period(now: datetime) -> Tuple[datetime, datetime]:
    """Calendar month containing ``now`` as a half-open [start, end) window."""
    start = datetime(now.year, now.month, 1)
    return start, start + relativedelta(months=1)


def previous_billing_period(now: datetime) -> Tuple[datetime, datetime]:
    start, _ = billing_period(now)
    return start - relativedelta(months=1), start


def is_last_day_of_month(now: datetime) -> bool:
    return (now + timedelta(days=1)).month != now.month


def is_final_hour_of_period(now: datetime) -> bool:
    """True within the last hour slot of the month, when nothing else can be sampled into it."""
    return is_last_day_of_month(now) and now.hour == 23


@dataclass
class BandwidthUsage:
    used_gb: float
    limit_gb: float
    overage_gb: float
    last_updated: Optional[datetime] = None


class BandwidthAggregator:
    def __init__(
        self,
        mysql_session: Session,
        ledger: Optional[LedgerService] = None,
        plans: Dict[str, SizePlan] = SIZE_PLANS,
        clock=datetime.utcnow
    ):
        self.mysql_session = mysql_session
        self.ledger = ledger or LedgerService(mysql_session)
        self.plans = plans
        self.clock = clock
        self.resource_service = ResourceService(mysql_session)

    def get_usage(self, resource_id: int, period_start: datetime, period_end: datetime) -> BandwidthUsage:
        resource = self.resource_service.get_resource(resource_id)
        return self._usage_for(resource, period_start, period_end)

    def get_usage_summary(self, resource_id: int, now: Optional[datetime] = None) -> dict:
        period_start, period_end = billing_period(now or self.clock())
        usage = self.get_usage(resource_id, period_start, period_end)
        return {
            "current": round(usage.used_gb, 2),
            "limit": usage.limit_gb,
            "periodStart": period_start,
            "periodEnd": period_end,
            "lastUpdated": usage.last_updated or period_start,
            "overageRate": float(OVERAGE_RATE)
        }

    def is_settled(self, resource_id: int, period_start: datetime) -> bool:
        return self.mysql_session.query(OverageSettlement.id).filter(
            OverageSettlement.resource_id == resource_id,
            OverageSettlement.period_start == period_start
        ).first() is not None

    def settle_overage(
        self,
        resource: Resource,
        now: Optional[datetime] = None,
        period: Optional[Tuple[datetime, datetime]] = None
    ) -> Optional[BillingTransaction]:
        """Charge the overage of one billing period, at most once.

        A settlement marker keyed by (resource, period start) is written in
        the same unit of work as the charge; a period that already carries a
        marker is skipped. Under-limit periods still get a zero marker.
        """
        if resource.kind != ResourceKind.COMPUTE.value:
            return None

        period_start, period_end = period or billing_period(now or self.clock())
        if self.is_settled(resource.id, period_start):
            logger.debug(f"Overage for resource {resource.id} already settled for {period_start:%Y-%m}")
            return None

        usage = self._usage_for(resource, period_start, period_end)
        overage_cost = Decimal(str(usage.overage_gb)) * monthly_price(resource.size, self.plans) * OVERAGE_RATE
        amount_cents = to_cents(overage_cost)

        tx = None
        try:
            marker = OverageSettlement(
                resource_id=resource.id,
                period_start=period_start,
                overage_gb=usage.overage_gb,
                amount=max(amount_cents, 0),
                created_at=self.clock()
            )
            self.mysql_session.add(marker)
            self.mysql_session.flush()

            if amount_cents > 0:
                tx = self.ledger.record_charge(
                    resource.account_id,
                    amount_cents,
                    TransactionKind.BANDWIDTH_OVERAGE,
                    f"Bandwidth overage charge for server '{resource.name}' "
                    f"({round(usage.overage_gb)}GB above limit)",
                    resource_id=resource.id,
                    commit=False
                )
                marker.transaction_id = tx.id
            self.mysql_session.commit()
        except IntegrityError:
            # another worker settled this period first
            self.mysql_session.rollback()
            return None
        except SQLAlchemyError as e:
            self.mysql_session.rollback()
            raise PersistenceError(str(e)) from e

        if tx is not None:
            logger.info(
                f"Charged account {resource.account_id} ${amount_cents / 100:.2f} for "
                f"{round(usage.overage_gb)}GB bandwidth overage on resource {resource.id}"
            )
        return tx

    def _usage_for(self, resource: Resource, period_start: datetime, period_end: datetime) -> BandwidthUsage:
        total_bytes, last_updated = self.mysql_session.query(
            func.coalesce(func.sum(MetricSample.network_in + MetricSample.network_out), 0),
            func.max(MetricSample.timestamp)
        ).filter(
            MetricSample.resource_id == resource.id,
            MetricSample.timestamp >= period_start,
            MetricSample.timestamp < period_end
        ).one()

        used_gb = int(total_bytes) / BYTES_PER_GB
        limit_gb = float(bandwidth_limit_gb(resource.size, self.plans))
        return BandwidthUsage(
            used_gb=used_gb,
            limit_gb=limit_gb,
            overage_gb=max(0.0, used_gb - limit_gb),
            last_updated=last_updated
        )
