# store.py
"""
Persistence for orders, driver profile fragments and processed gateway events.

Both implementations support the same small set of operations: create,
fetch-by-id, conditional update (compare-and-swap), indexed range query and
aggregation. `update_if` is the only way mutations reach storage: it applies
`values` only when every `expected` field still holds (None means unset) and
returns the updated document, or None when the condition no longer matches.
"""
import copy
import sqlite3
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from asyncpg.exceptions import UniqueViolationError
from pydantic import BaseModel
from sqlalchemy import and_, case, func, select
from sqlalchemy.exc import IntegrityError

from fuel_dispatch.errors import ConflictError
from fuel_dispatch.models import orders, drivers, processed_events
from fuel_dispatch.schemas import DriverProfile, Order, OrderStatus


class DuplicateKeyError(ConflictError):
    pass


# raised through `databases` by the sqlite and postgres drivers
UNIQUE_VIOLATIONS = (IntegrityError, sqlite3.IntegrityError, UniqueViolationError)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _matches(doc: BaseModel, expected: Dict[str, Any]) -> bool:
    for key, value in expected.items():
        current = getattr(doc, key)
        if value is None:
            if current is not None:
                return False
        elif _plain(current) != _plain(value):
            return False
    return True


def _filter_orders(
    docs: Iterable[Order],
    customer_id: Optional[str] = None,
    driver_id: Optional[str] = None,
    statuses: Optional[Iterable[OrderStatus]] = None,
    unassigned: bool = False,
    fuel_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Order]:
    wanted = {OrderStatus(s) for s in statuses} if statuses else None
    out = []
    for o in docs:
        if customer_id is not None and o.customer_id != customer_id:
            continue
        if driver_id is not None and o.driver_id != driver_id:
            continue
        if wanted is not None and o.status not in wanted:
            continue
        if unassigned and o.driver_id is not None:
            continue
        if fuel_type is not None and o.fuel_type.value != _plain(fuel_type):
            continue
        if since is not None and o.created_at < since:
            continue
        if until is not None and o.created_at > until:
            continue
        out.append(o)
    return out


def _stats_from(rows: List[Order]) -> Dict[str, Any]:
    completed = [o for o in rows if o.status is OrderStatus.COMPLETED]
    return {
        "total_orders": len(rows),
        "completed_orders": len(completed),
        "cancelled_orders": sum(1 for o in rows if o.status is OrderStatus.CANCELLED),
        "total_earnings": sum(o.total_amount for o in completed),
        "total_fuel_delivered": sum((o.quantity for o in completed), start=0),
    }


# ───────────────────────────────────────────────────────────
# In-memory stores
# ───────────────────────────────────────────────────────────
class MemoryOrderStore:
    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._numbers = set()
        self._lock = threading.Lock()

    async def create(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders or order.order_number in self._numbers:
                raise DuplicateKeyError(f"Order number {order.order_number} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            self._numbers.add(order.order_number)
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def find_by_intent(self, intent_id: str) -> Optional[Order]:
        for order in self._orders.values():
            if order.payment_intent_id == intent_id:
                return order.model_copy(deep=True)
        return None

    async def update_if(self, order_id: str, expected: Dict[str, Any], values: Dict[str, Any]) -> Optional[Order]:
        with self._lock:
            current = self._orders.get(order_id)
            if current is None or not _matches(current, expected):
                return None
            updated = Order.model_validate({**current.model_dump(), **copy.deepcopy(values)})
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def find(self, newest_first: bool = True, limit: Optional[int] = None, offset: int = 0, **filters) -> List[Order]:
        rows = sorted(
            _filter_orders(self._orders.values(), **filters),
            key=lambda o: o.created_at,
            reverse=newest_first,
        )
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [o.model_copy(deep=True) for o in rows]

    async def count(self, **filters) -> int:
        return len(_filter_orders(self._orders.values(), **filters))

    async def driver_stats(self, driver_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        return _stats_from(_filter_orders(self._orders.values(), driver_id=driver_id, since=since))


class MemoryDriverStore:
    def __init__(self):
        self._drivers: Dict[str, DriverProfile] = {}
        self._lock = threading.Lock()

    async def create(self, profile: DriverProfile) -> DriverProfile:
        with self._lock:
            if profile.id in self._drivers:
                raise DuplicateKeyError("Driver already exists")
            self._drivers[profile.id] = profile.model_copy(deep=True)
        return profile

    async def get(self, driver_id: str) -> Optional[DriverProfile]:
        profile = self._drivers.get(driver_id)
        return profile.model_copy(deep=True) if profile else None

    async def update_if(self, driver_id: str, expected: Dict[str, Any], values: Dict[str, Any]) -> Optional[DriverProfile]:
        with self._lock:
            current = self._drivers.get(driver_id)
            if current is None or not _matches(current, expected):
                return None
            updated = DriverProfile.model_validate({**current.model_dump(), **copy.deepcopy(values)})
            self._drivers[driver_id] = updated
            return updated.model_copy(deep=True)


class MemoryEventLedger:
    def __init__(self):
        self._seen = set()
        self._lock = threading.Lock()

    async def record(self, event_id: str, event_type: str, source: str) -> bool:
        with self._lock:
            if event_id in self._seen:
                return False
            self._seen.add(event_id)
            return True

    async def forget(self, event_id: str):
        with self._lock:
            self._seen.discard(event_id)


# ───────────────────────────────────────────────────────────
# SQL stores (databases + SQLAlchemy core)
# ───────────────────────────────────────────────────────────
def _record_to_dict(table, row) -> Dict[str, Any]:
    return {column.name: row[column.name] for column in table.c}


def _to_row(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _plain(value) for key, value in values.items()}


def _conditions(table, expected: Dict[str, Any]):
    clauses = []
    for key, value in expected.items():
        column = table.c[key]
        clauses.append(column.is_(None) if value is None else column == _plain(value))
    return clauses


def _order_filters(
    customer_id=None, driver_id=None, statuses=None, unassigned=False, fuel_type=None, since=None, until=None,
):
    clauses = []
    if customer_id is not None:
        clauses.append(orders.c.customer_id == customer_id)
    if driver_id is not None:
        clauses.append(orders.c.driver_id == driver_id)
    if statuses:
        clauses.append(orders.c.status.in_([_plain(s) for s in statuses]))
    if unassigned:
        clauses.append(orders.c.driver_id.is_(None))
    if fuel_type is not None:
        clauses.append(orders.c.fuel_type == _plain(fuel_type))
    if since is not None:
        clauses.append(orders.c.created_at >= since)
    if until is not None:
        clauses.append(orders.c.created_at <= until)
    return clauses


class SqlOrderStore:
    def __init__(self, database):
        self.database = database

    async def create(self, order: Order) -> Order:
        try:
            await self.database.execute(orders.insert().values(**_to_row(dict(order))))
        except UNIQUE_VIOLATIONS:
            raise DuplicateKeyError(f"Order number {order.order_number} already exists")
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        row = await self.database.fetch_one(orders.select().where(orders.c.id == order_id))
        return Order.model_validate(_record_to_dict(orders, row)) if row else None

    async def find_by_intent(self, intent_id: str) -> Optional[Order]:
        row = await self.database.fetch_one(orders.select().where(orders.c.payment_intent_id == intent_id))
        return Order.model_validate(_record_to_dict(orders, row)) if row else None

    async def update_if(self, order_id: str, expected: Dict[str, Any], values: Dict[str, Any]) -> Optional[Order]:
        query = (
            orders.update()
            .where(orders.c.id == order_id, *_conditions(orders, expected))
            .values(**_to_row(values))
            .returning(*orders.c)
        )
        row = await self.database.fetch_one(query)
        return Order.model_validate(_record_to_dict(orders, row)) if row else None

    async def find(self, newest_first: bool = True, limit: Optional[int] = None, offset: int = 0, **filters) -> List[Order]:
        order_by = orders.c.created_at.desc() if newest_first else orders.c.created_at.asc()
        query = orders.select().where(and_(True, *_order_filters(**filters))).order_by(order_by).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        rows = await self.database.fetch_all(query)
        return [Order.model_validate(_record_to_dict(orders, r)) for r in rows]

    async def count(self, **filters) -> int:
        query = select(func.count()).select_from(orders).where(and_(True, *_order_filters(**filters)))
        return int(await self.database.fetch_val(query) or 0)

    async def driver_stats(self, driver_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        completed = orders.c.status == OrderStatus.COMPLETED.value
        query = select(
            func.count().label("total_orders"),
            func.sum(case((completed, 1), else_=0)).label("completed_orders"),
            func.sum(case((orders.c.status == OrderStatus.CANCELLED.value, 1), else_=0)).label("cancelled_orders"),
            func.sum(case((completed, orders.c.total_amount), else_=0)).label("total_earnings"),
            func.sum(case((completed, orders.c.quantity), else_=0)).label("total_fuel_delivered"),
        ).where(and_(True, *_order_filters(driver_id=driver_id, since=since)))
        row = await self.database.fetch_one(query)
        return {
            "total_orders": int(row["total_orders"] or 0),
            "completed_orders": int(row["completed_orders"] or 0),
            "cancelled_orders": int(row["cancelled_orders"] or 0),
            "total_earnings": int(row["total_earnings"] or 0),
            "total_fuel_delivered": row["total_fuel_delivered"] or 0,
        }


class SqlDriverStore:
    def __init__(self, database):
        self.database = database

    async def create(self, profile: DriverProfile) -> DriverProfile:
        try:
            await self.database.execute(drivers.insert().values(**_to_row(dict(profile))))
        except UNIQUE_VIOLATIONS:
            raise DuplicateKeyError("Driver already exists")
        return profile

    async def get(self, driver_id: str) -> Optional[DriverProfile]:
        row = await self.database.fetch_one(drivers.select().where(drivers.c.id == driver_id))
        return DriverProfile.model_validate(_record_to_dict(drivers, row)) if row else None

    async def update_if(self, driver_id: str, expected: Dict[str, Any], values: Dict[str, Any]) -> Optional[DriverProfile]:
        query = (
            drivers.update()
            .where(drivers.c.id == driver_id, *_conditions(drivers, expected))
            .values(**_to_row(values))
            .returning(*drivers.c)
        )
        row = await self.database.fetch_one(query)
        return DriverProfile.model_validate(_record_to_dict(drivers, row)) if row else None


class SqlEventLedger:
    def __init__(self, database):
        self.database = database

    async def record(self, event_id: str, event_type: str, source: str) -> bool:
        """Returns False if the event was already processed."""
        try:
            await self.database.execute(
                processed_events.insert().values(
                    event_id=event_id,
                    event_type=event_type,
                    source_service=source,
                    processed_at=datetime.utcnow(),
                )
            )
        except UNIQUE_VIOLATIONS:
            return False
        return True

    async def forget(self, event_id: str):
        await self.database.execute(processed_events.delete().where(processed_events.c.event_id == event_id))
