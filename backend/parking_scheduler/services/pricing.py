"""
Price quotes for a parking interval.

Up to 24 hours is charged per started hour at the lot's hourly rate;
longer stays are charged per started day at the daily rate. Intervals
starting in the morning (07-09h) or evening (17-19h) peak, in the
scheduling timezone, carry a surcharge.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from parking_scheduler.core.clock import local_zone
from parking_scheduler.core.config import get_settings
from parking_scheduler.models.parking_lot import ParkingLot

settings = get_settings()

CENT = Decimal("0.01")
PEAK_HOURS = frozenset({7, 8, 9, 17, 18, 19})


@dataclass
class PriceLine:
    type: str
    amount: Decimal
    description: str


@dataclass
class PriceQuote:
    base_amount: Decimal
    total_amount: Decimal
    duration_hours: int
    currency: str
    breakdown: list[PriceLine] = field(default_factory=list)


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def quote(lot: ParkingLot, start: datetime, end: datetime) -> PriceQuote:
    hours = max(math.ceil((end - start).total_seconds() / 3600), 1)
    hourly = Decimal(lot.hourly_rate)
    daily = Decimal(lot.daily_rate)

    if hours <= 24:
        base = _money(hourly * hours)
        line = PriceLine("hourly", base, f"{hours} hours at {hourly} {lot.currency}/hour")
    else:
        days = math.ceil(hours / 24)
        base = _money(daily * days)
        line = PriceLine("daily", base, f"{days} days at {daily} {lot.currency}/day")

    breakdown = [line]
    total = base
    if start.astimezone(local_zone()).hour in PEAK_HOURS:
        ratio = Decimal(str(settings.PEAK_SURCHARGE_RATIO))
        surcharge = _money(base * ratio)
        total += surcharge
        breakdown.append(
            PriceLine("peak_surcharge", surcharge, f"Peak hour surcharge ({int(ratio * 100)}%)")
        )

    return PriceQuote(
        base_amount=base,
        total_amount=total,
        duration_hours=hours,
        currency=lot.currency,
        breakdown=breakdown,
    )
