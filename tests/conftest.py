import asyncio
import os
import sys
import tempfile
from datetime import timedelta
from itertools import count

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# must be set before db.config builds its module engine
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'vpsbilling-test.db')}"

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from models.mysql_models import Base, MetricSample  # noqa: E402
from models.schemas import ResourceKind  # noqa: E402
from services.exceptions import PaymentError, ProviderError  # noqa: E402
from services.ledger_service import LedgerService  # noqa: E402
from services.resource_service import ResourceService  # noqa: E402

DEFAULT_SAMPLE = {
    "cpu": 12.4,
    "memory": 40.0,
    "disk": 55.0,
    "network_in": 1000,
    "network_out": 2000,
    "load_average": [0.1, 0.2, 0.3],
    "uptime_seconds": 3600,
}


class FakeProvider:
    """In-memory stand-in for the compute provider."""

    def __init__(self, sample=None, fail_on=(), hang_on=(), metric_error=False, bytes_per_second=None):
        self.sample = dict(sample or DEFAULT_SAMPLE)
        self.fail_on = set(fail_on)
        self.hang_on = set(hang_on)
        self.metric_error = metric_error
        self.bytes_per_second = bytes_per_second
        self.destroyed = []
        self.sampled = []
        self.windows = []

    async def _teardown(self, kind, external_id):
        if external_id in self.hang_on:
            await asyncio.sleep(60)
        if external_id in self.fail_on:
            raise ProviderError(f"Destroy {external_id} failed (500): boom", 500)
        self.destroyed.append((kind, external_id))

    async def destroy_instance(self, external_id):
        await self._teardown("instance", external_id)

    async def destroy_volume(self, external_id):
        await self._teardown("volume", external_id)

    async def get_usage_sample(self, external_id, window_seconds=None):
        if self.metric_error:
            raise ProviderError("monitoring unavailable", 503)
        self.sampled.append(external_id)
        self.windows.append(window_seconds)
        sample = dict(self.sample)
        if self.bytes_per_second is not None:
            # steady traffic in each direction over the requested window
            sample["network_in"] = sample["network_out"] = self.bytes_per_second * (window_seconds or 0)
        return sample


class FakePayment:
    def __init__(self, amount_cents=1000, fail=False):
        self.amount_cents = amount_cents
        self.fail = fail
        self.created = []
        self.captured = []

    async def create_payment_intent(self, amount_cents, currency="USD"):
        if self.fail:
            raise PaymentError("card declined")
        order_id = f"ORDER-{len(self.created) + 1}"
        self.created.append((order_id, amount_cents, currency))
        return {
            "order_id": order_id,
            "status": "CREATED",
            "approve_url": f"https://paypal.test/checkoutnow?token={order_id}"
        }

    async def capture(self, order_id):
        if self.fail:
            raise PaymentError("card declined")
        self.captured.append(order_id)
        return {
            "external_ref": f"CAPTURE-{order_id}",
            "amount_cents": self.amount_cents,
            "currency": "USD"
        }


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def payment():
    return FakePayment()


@pytest.fixture
def make_account(session):
    seq = count(1)

    def _make(balance=0, username=None):
        n = next(seq)
        ledger = LedgerService(session)
        account = ledger.create_account(username or f"user{n}")
        if balance > 0:
            ledger.record_deposit(account.id, balance, f"seed-{account.id}-{n}")
        return account.id

    return _make


@pytest.fixture
def make_resource(session):
    seq = count(1)

    def _make(account_id, kind=ResourceKind.COMPUTE, size="s-1vcpu-1gb", size_gb=None, external_id=None):
        n = next(seq)
        resource = ResourceService(session).add_resource(
            account_id=account_id,
            kind=kind,
            name=f"server-{n}",
            external_id=external_id or f"ext-{n}",
            region="nyc3",
            size=size if kind == ResourceKind.COMPUTE else None,
            size_gb=size_gb
        )
        session.commit()
        return resource.id

    return _make


@pytest.fixture
def provider_factory():
    return FakeProvider


@pytest.fixture
def payment_factory():
    return FakePayment


@pytest.fixture
def add_traffic(session):
    """Store samples carrying ``gb`` of combined traffic, spread over ``hours`` from ``start``."""

    def _add(resource_id, gb, start, hours=4):
        total = int(gb * 1024 ** 3)
        share = total // hours
        for hour in range(hours):
            chunk = share if hour < hours - 1 else total - share * (hours - 1)
            session.add(MetricSample(
                resource_id=resource_id,
                timestamp=start + timedelta(hours=hour),
                cpu_usage=10,
                memory_usage=20,
                disk_usage=30,
                network_in=chunk // 2,
                network_out=chunk - chunk // 2,
                load_average=[0.1, 0.1, 0.1],
                uptime_seconds=3600 * (hour + 1)
            ))
        session.commit()

    return _add
