from sqlalchemy import (
    Column,
    String,
    JSON,
    DateTime,
    Integer,
    BigInteger,
    Float,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

# sqlite only auto-increments INTEGER primary keys
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Account(Base):
    __tablename__ = "accounts"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    # minor currency units (cents); negative after unguarded charges
    balance = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="USD")
    created_at = Column(DateTime, server_default=func.now())

    resources = relationship("Resource", back_populates="account")


class Resource(Base):
    __tablename__ = "resources"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, ForeignKey("accounts.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False, default="compute")
    external_id = Column(String(64), nullable=False)
    name = Column(String(100), nullable=False)
    region = Column(String(20), nullable=False)
    size = Column(String(50), nullable=True)
    size_gb = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="new")
    created_at = Column(DateTime, server_default=func.now())
    last_monitored = Column(DateTime, nullable=True)

    account = relationship("Account", back_populates="resources")
    samples = relationship(
        "MetricSample",
        back_populates="resource",
        cascade="all, delete-orphan",
    )


class BillingTransaction(Base):
    __tablename__ = "billing_transactions"
    __table_args__ = (
        Index("ix_billing_transactions_account_created", "account_id", "created_at"),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, ForeignKey("accounts.id"), nullable=False)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False, default="USD")
    kind = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    description = Column(String(255), nullable=True)
    external_ref = Column(String(100), unique=True, nullable=True)
    # no FK: ledger rows outlive reclaimed resources
    resource_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class MetricSample(Base):
    __tablename__ = "metric_samples"
    __table_args__ = (
        Index("ix_metric_samples_resource_timestamp", "resource_id", "timestamp"),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    resource_id = Column(BigInteger, ForeignKey("resources.id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(DateTime, nullable=False, server_default=func.now())
    cpu_usage = Column(Integer, nullable=False)
    memory_usage = Column(Integer, nullable=False)
    disk_usage = Column(Integer, nullable=False)
    network_in = Column(BigInteger, nullable=False, default=0)
    network_out = Column(BigInteger, nullable=False, default=0)
    load_average = Column(JSON, nullable=False)
    uptime_seconds = Column(BigInteger, nullable=False, default=0)

    resource = relationship("Resource", back_populates="samples")


class OverageSettlement(Base):
    __tablename__ = "overage_settlements"
    __table_args__ = (
        UniqueConstraint("resource_id", "period_start", name="uq_overage_resource_period"),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    resource_id = Column(BigInteger, nullable=False)
    period_start = Column(DateTime, nullable=False)
    overage_gb = Column(Float, nullable=False, default=0)
    amount = Column(BigInteger, nullable=False, default=0)
    transaction_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class MeteringTick(Base):
    __tablename__ = "metering_ticks"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    hour_slot = Column(DateTime, unique=True, nullable=False)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    charged = Column(Integer, nullable=False, default=0)
    reclaimed = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
