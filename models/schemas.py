from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from enum import Enum


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    RESOURCE_CHARGE = "resource_charge"
    RESOURCE_RESIZE_CHARGE = "resource_resize_charge"
    HOURLY_CHARGE = "hourly_charge"
    BANDWIDTH_OVERAGE = "bandwidth_overage"
    FORCED_DELETION = "forced_deletion"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class ResourceKind(str, Enum):
    COMPUTE = "compute"
    VOLUME = "volume"


class ResourceStatus(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    OFF = "off"


class AccountCreateRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    currency: str = "USD"


class AccountResponse(BaseModel):
    id: int
    username: str
    balance: int
    currency: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BalanceResponse(BaseModel):
    account_id: int
    balance: int
    currency: str


class ReconciliationResponse(BaseModel):
    account_id: int
    balance: int
    ledger_total: int
    consistent: bool


class TransactionResponse(BaseModel):
    id: int
    account_id: int
    amount: int
    currency: str
    kind: str
    status: str
    description: Optional[str] = None
    external_ref: Optional[str] = None
    resource_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TransactionPage(BaseModel):
    items: List[TransactionResponse]
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class DepositRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)
    currency: str = "USD"


class DepositHandleResponse(BaseModel):
    order_id: str
    status: str
    approve_url: Optional[str] = None


class CaptureResponse(BaseModel):
    success: bool
    transaction: TransactionResponse


class ProvisionRequest(BaseModel):
    account_id: int
    kind: ResourceKind = ResourceKind.COMPUTE
    name: str = Field(..., min_length=1, max_length=100)
    external_id: str = Field(..., min_length=1, max_length=64)
    region: str
    size: Optional[str] = None
    size_gb: Optional[int] = None

    @model_validator(mode="after")
    def check_size(self):
        if self.kind == ResourceKind.COMPUTE and not self.size:
            raise ValueError("size is required for compute resources")
        if self.kind == ResourceKind.VOLUME and self.size_gb is None:
            raise ValueError("size_gb is required for volumes")
        return self


class VolumeResizeRequest(BaseModel):
    account_id: int
    size_gb: int = Field(..., gt=0)


class ResourceResponse(BaseModel):
    id: int
    account_id: int
    kind: str
    external_id: str
    name: str
    region: str
    size: Optional[str] = None
    size_gb: Optional[int] = None
    status: str
    created_at: Optional[datetime] = None
    last_monitored: Optional[datetime] = None

    class Config:
        from_attributes = True


class MetricSampleResponse(BaseModel):
    id: int
    resource_id: int
    timestamp: datetime
    cpu_usage: int
    memory_usage: int
    disk_usage: int
    network_in: int
    network_out: int
    load_average: List[float]
    uptime_seconds: int

    class Config:
        from_attributes = True


class BandwidthSummaryResponse(BaseModel):
    current: float
    limit: float
    periodStart: datetime
    periodEnd: datetime
    lastUpdated: Optional[datetime] = None
    overageRate: float


class MeteringRunResponse(BaseModel):
    hour_slot: datetime
    skipped: bool
    charged: List[int] = []
    reclaimed: List[int] = []
    failed: List[Dict[str, Any]] = []
    overage_settled: List[int] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
