"""Static price and allowance tables.

Droplet plans are keyed by the provider's size slug. Anything not in the
table is billed with ``DEFAULT_PLAN``.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Union


@dataclass(frozen=True)
class SizePlan:
    monthly_price: Decimal
    bandwidth_limit_gb: int
    hourly_rate_cents: int = 100


SIZE_PLANS: Dict[str, SizePlan] = {
    "s-1vcpu-1gb": SizePlan(Decimal("5"), 1000),
    "s-1vcpu-2gb": SizePlan(Decimal("10"), 2000),
    "s-2vcpu-2gb": SizePlan(Decimal("15"), 3000),
    "s-2vcpu-4gb": SizePlan(Decimal("20"), 4000),
    "s-4vcpu-8gb": SizePlan(Decimal("40"), 5000),
    "s-8vcpu-16gb": SizePlan(Decimal("80"), 6000),
}

DEFAULT_PLAN = SizePlan(Decimal("5"), 1000)

# fraction of the monthly plan price charged per GB over the allowance
OVERAGE_RATE = Decimal("0.005")

VOLUME_BASE_RATE = Decimal("0.00014")
VOLUME_MARKUP = Decimal("0.009")
VOLUME_MAX_SIZE_GB = 1000

MINIMUM_DEPOSIT_CENTS = 500

CENT = Decimal("0.01")


def get_plan(size: str, plans: Dict[str, SizePlan] = SIZE_PLANS) -> SizePlan:
    return plans.get(size, DEFAULT_PLAN)


def monthly_price(size: str, plans: Dict[str, SizePlan] = SIZE_PLANS) -> Decimal:
    return get_plan(size, plans).monthly_price


def bandwidth_limit_gb(size: str, plans: Dict[str, SizePlan] = SIZE_PLANS) -> int:
    return get_plan(size, plans).bandwidth_limit_gb


def to_cents(dollars: Union[int, float, str, Decimal]) -> int:
    """Convert a dollar amount to integer cents, rounding half up."""
    if not isinstance(dollars, Decimal):
        dollars = Decimal(str(dollars))
    return int((dollars.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def volume_hourly_cost(size_gb: int) -> Decimal:
    return Decimal(size_gb) * (VOLUME_BASE_RATE + VOLUME_MARKUP)


def hourly_rate_cents(resource, plans: Dict[str, SizePlan] = SIZE_PLANS) -> int:
    if resource.kind == "volume":
        return max(1, to_cents(volume_hourly_cost(resource.size_gb or 0)))
    return get_plan(resource.size, plans).hourly_rate_cents
