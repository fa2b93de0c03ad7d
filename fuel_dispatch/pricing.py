# pricing.py
import itertools
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from fuel_dispatch import config
from fuel_dispatch.errors import ValidationError
from fuel_dispatch.schemas import FuelType

MINOR_UNITS = Decimal(100)


def to_minor(amount: Decimal) -> int:
    """Major currency units (e.g. rupees) to integer minor units (paise), half-up."""
    return int((Decimal(amount) * MINOR_UNITS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_amount(minor: int) -> str:
    return str((Decimal(minor) / MINOR_UNITS).quantize(Decimal("0.01")))


@dataclass(frozen=True)
class Quote:
    unit_price: int
    base_amount: int
    delivery_fee: int
    tax_amount: int
    total_amount: int


class PriceCatalog:
    """Current fuel prices. A quote snapshots them; orders never re-price."""

    def __init__(
        self,
        prices: Optional[Dict[str, Decimal]] = None,
        delivery_fee: Decimal = config.DELIVERY_FEE,
        tax_percent: Decimal = config.TAX_PERCENT,
    ):
        self.prices = {FuelType(k): Decimal(v) for k, v in (prices or config.FUEL_PRICES).items()}
        self.delivery_fee = Decimal(delivery_fee)
        self.tax_percent = Decimal(tax_percent)

    def quote(self, fuel_type: FuelType, quantity: Decimal) -> Quote:
        quantity = Decimal(quantity)
        if quantity < 1:
            raise ValidationError("Invalid quantity", {"quantity": "Quantity must be at least 1 liter"})
        if fuel_type not in self.prices:
            raise ValidationError("Invalid fuel type", {"fuel_type": f"No price for {fuel_type}"})

        unit_price = to_minor(self.prices[fuel_type])
        base = (quantity * unit_price).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        tax = (base * self.tax_percent / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        fee = to_minor(self.delivery_fee)
        return Quote(
            unit_price=unit_price,
            base_amount=int(base),
            delivery_fee=fee,
            tax_amount=int(tax),
            total_amount=int(base) + fee + int(tax),
        )


class OrderNumberGenerator:
    """`<prefix><epoch millis><4-digit sequence>`; the store enforces uniqueness."""

    def __init__(self, prefix: str = config.ORDER_NUMBER_PREFIX, clock=time.time):
        self.prefix = prefix
        self.clock = clock
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            seq = next(self._seq) % 10000
        millis = int(self.clock() * 1000)
        return f"{self.prefix}{millis}{seq:04d}"
