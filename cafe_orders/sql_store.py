"""SQLAlchemy-backed implementation of ``OrderStore``.

The store keeps a process-wide engine (connection pool with pre-ping) and
runs each operation in its own session on a worker thread, so callers on the
event loop only ever await. Every call is bounded by ``timeout`` seconds.
Multi-step operations (archive-and-delete, read-modify-write updates) run in
a single transaction and roll back on any failure.

Error mapping:
- unique violation on ``orders.external_id`` -> ``ReconciliationConflict``
- connectivity / driver failures and timeouts -> ``StorageUnavailable``
"""

import asyncio
import logging
import time
from datetime import date, datetime, timedelta, timezone
from datetime import time as dtime
from typing import Callable, List, Optional

from sqlalchemy import create_engine, delete, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .domain import (
    ArchiveSummary,
    ArchiveUnit,
    Order,
    OrderItem,
    OrderStatus,
    normalize_amount,
    parse_payment_method,
    parse_status,
)
from .errors import NotFound, OrderError, ReconciliationConflict, StorageUnavailable
from .models import ArchivedOrderRow, Base, OrderRow

logger = logging.getLogger(__name__)


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_domain(row: OrderRow) -> Order:
    return Order(
        id=row.id,
        customer_name=row.customer_name,
        items=[OrderItem.from_dict(it) for it in (row.items or [])],
        total=normalize_amount(row.total or 0),
        status=parse_status(row.status),
        created_at=_utc(row.created_at),
        email=row.email,
        payment_method=parse_payment_method(row.payment_method),
        note=row.note,
        payment_intent_id=row.payment_intent_id,
        external_id=row.external_id,
        paid_at=_utc(row.paid_at),
    )


def _column_values(changes: dict) -> dict:
    """Translate domain field values into column values."""
    out = {}
    for key, value in changes.items():
        if key == "items":
            value = [it.to_dict() for it in value]
        elif key in ("status", "payment_method"):
            value = value.value if value is not None else None
        elif key in ("created_at", "paid_at"):
            value = _utc(value)
        out[key] = value
    return out


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, dtime.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class SqlOrderStore:
    """Relational order store over a SQLAlchemy engine."""

    def __init__(self, engine: Engine, timeout: float = 5.0):
        self.engine = engine
        self.timeout = timeout

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> "SqlOrderStore":
        """Build the store from a database URL.

        Raises:
            ImportError: When the DBAPI driver for the URL is not installed.
            sqlalchemy.exc.ArgumentError: When the URL or dialect is invalid.
        """
        return cls(create_engine(url, pool_pre_ping=True), timeout=timeout)

    async def _run(self, op: str, fn: Callable, *args, **log_ctx):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.timeout)
        except OrderError:
            raise
        except asyncio.TimeoutError:
            logger.error("storage call timed out", extra={"op": op, "timeout": self.timeout, **log_ctx})
            raise StorageUnavailable("STORAGE_TIMEOUT", f"{op} timed out after {self.timeout}s")
        except SQLAlchemyError as e:
            logger.error("storage call failed", extra={"op": op, "error": str(e), **log_ctx})
            raise StorageUnavailable("STORAGE_UNAVAILABLE", f"{op} failed: database unavailable") from e

    # ---- lifecycle ----

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    async def wait_until_ready(self, deadline_secs: float) -> None:
        """Wait until the database accepts connections, then create the schema.

        Raises:
            StorageUnavailable: When the database is still unreachable after
                ``deadline_secs``.
        """
        deadline = time.monotonic() + deadline_secs
        while True:
            try:
                await self.ping()
                break
            except StorageUnavailable:
                if time.monotonic() > deadline:
                    raise
                await asyncio.sleep(1)
        await self._run("create_schema", self.create_schema)

    async def ping(self) -> bool:
        def _ping():
            with self.engine.connect() as conn:
                conn.execute(text("select 1"))
            return True

        return await self._run("ping", _ping)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)

    # ---- orders ----

    def _create(self, order: Order) -> Order:
        values = _column_values(
            {
                "external_id": order.external_id,
                "customer_name": order.customer_name,
                "email": order.email,
                "items": order.items,
                "total": order.total,
                "status": order.status,
                "payment_method": order.payment_method,
                "note": order.note,
                "payment_intent_id": order.payment_intent_id,
                "created_at": order.created_at,
                "paid_at": order.paid_at,
            }
        )
        with Session(self.engine) as s:
            row = OrderRow(**values)
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise ReconciliationConflict(
                    "DUPLICATE_EXTERNAL_ID", f"external id {order.external_id!r} already has an order"
                )
            return _to_domain(row)

    async def create_order(self, order: Order) -> Order:
        return await self._run("create_order", self._create, order, external_id=order.external_id)

    def _get(self, order_id: int) -> Order:
        with Session(self.engine) as s:
            row = s.get(OrderRow, order_id)
            if row is None:
                raise NotFound("ORDER_NOT_FOUND", f"order {order_id} not found")
            return _to_domain(row)

    async def get_order(self, order_id: int) -> Order:
        return await self._run("get_order", self._get, order_id, order_id=order_id)

    def _list(self, status: Optional[OrderStatus], external_id: Optional[str]) -> List[Order]:
        stmt = select(OrderRow)
        if status is not None:
            stmt = stmt.where(OrderRow.status == status.value)
        if external_id is not None:
            stmt = stmt.where(OrderRow.external_id == external_id)
        stmt = stmt.order_by(OrderRow.created_at.desc(), OrderRow.id.desc())
        with Session(self.engine) as s:
            return [_to_domain(r) for r in s.execute(stmt).scalars().all()]

    async def list_orders(
        self, status: Optional[OrderStatus] = None, external_id: Optional[str] = None
    ) -> List[Order]:
        return await self._run("list_orders", self._list, status, external_id)

    def _update(self, order_id: int, changes: dict) -> Order:
        with Session(self.engine) as s:
            try:
                with s.begin():
                    row = s.get(OrderRow, order_id, with_for_update=True)
                    if row is None:
                        raise NotFound("ORDER_NOT_FOUND", f"order {order_id} not found")
                    for column, value in _column_values(changes).items():
                        setattr(row, column, value)
                    s.flush()
                    order = _to_domain(row)
            except IntegrityError:
                raise ReconciliationConflict(
                    "DUPLICATE_EXTERNAL_ID", f"external id {changes.get('external_id')!r} already has an order"
                )
            return order

    async def update_order(self, order_id: int, changes: dict) -> Order:
        return await self._run("update_order", self._update, order_id, changes, order_id=order_id)

    def _find_external(self, external_id: str) -> Optional[Order]:
        with Session(self.engine) as s:
            row = s.execute(select(OrderRow).where(OrderRow.external_id == external_id)).scalars().first()
            return _to_domain(row) if row else None

    async def find_by_external_id(self, external_id: str) -> Optional[Order]:
        return await self._run("find_by_external_id", self._find_external, external_id, external_id=external_id)

    # ---- archives ----

    def _archive(self, day: date, actor: str, archived_at: datetime, seal: Callable[[Order], Order]) -> List[Order]:
        start, end = _day_bounds(day)
        with Session(self.engine) as s:
            with s.begin():
                rows = (
                    s.execute(
                        select(OrderRow)
                        .where(OrderRow.created_at >= start, OrderRow.created_at < end)
                        .order_by(OrderRow.id)
                        .with_for_update()
                    )
                    .scalars()
                    .all()
                )
                if not rows:
                    return []
                sealed = [seal(_to_domain(r)) for r in rows]
                for order in sealed:
                    s.add(
                        ArchivedOrderRow(
                            archive_date=day,
                            original_order_id=order.id,
                            archived_at=_utc(archived_at),
                            archived_by=actor,
                            order_data=order.to_dict(),
                        )
                    )
                s.execute(delete(OrderRow).where(OrderRow.id.in_([r.id for r in rows])))
            return sealed

    async def archive_orders(
        self, day: date, actor: str, archived_at: datetime, seal: Callable[[Order], Order]
    ) -> List[Order]:
        return await self._run("archive_orders", self._archive, day, actor, archived_at, seal, day=day.isoformat())

    def _list_archives(self) -> List[ArchiveSummary]:
        # one row per date: the latest run (its actor and time) plus the date's order count
        by_day = ArchivedOrderRow.archive_date
        ranked = select(
            by_day.label("archive_date"),
            ArchivedOrderRow.archived_by,
            ArchivedOrderRow.archived_at,
            func.count().over(partition_by=by_day).label("order_count"),
            func.row_number()
            .over(
                partition_by=by_day,
                order_by=(ArchivedOrderRow.archived_at.desc(), ArchivedOrderRow.id.desc()),
            )
            .label("run_rank"),
        ).subquery()
        stmt = (
            select(ranked.c.archive_date, ranked.c.order_count, ranked.c.archived_at, ranked.c.archived_by)
            .where(ranked.c.run_rank == 1)
            .order_by(ranked.c.archive_date.desc())
        )
        with Session(self.engine) as s:
            return [
                ArchiveSummary(
                    date=day.isoformat(),
                    count=int(count),
                    archived_by=actor,
                    archived_at=_utc(last_at),
                )
                for day, count, last_at, actor in s.execute(stmt).all()
            ]

    async def list_archives(self) -> List[ArchiveSummary]:
        return await self._run("list_archives", self._list_archives)

    def _get_archive(self, day: date) -> Optional[ArchiveUnit]:
        with Session(self.engine) as s:
            rows = (
                s.execute(
                    select(ArchivedOrderRow)
                    .where(ArchivedOrderRow.archive_date == day)
                    .order_by(ArchivedOrderRow.archived_at, ArchivedOrderRow.id)
                )
                .scalars()
                .all()
            )
            if not rows:
                return None
            last = rows[-1]
            return ArchiveUnit(
                date=day.isoformat(),
                archived_at=_utc(last.archived_at),
                archived_by=last.archived_by,
                orders=[Order.from_dict(r.order_data) for r in rows],
            )

    async def get_archive(self, day: date) -> Optional[ArchiveUnit]:
        return await self._run("get_archive", self._get_archive, day, day=day.isoformat())

    def _delete_archive(self, day: date) -> bool:
        with Session(self.engine) as s:
            with s.begin():
                result = s.execute(delete(ArchivedOrderRow).where(ArchivedOrderRow.archive_date == day))
            return (result.rowcount or 0) > 0

    async def delete_archive(self, day: date) -> bool:
        return await self._run("delete_archive", self._delete_archive, day, day=day.isoformat())
