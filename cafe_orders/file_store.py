"""Flat-file implementation of ``OrderStore``.

The live order set is one JSON array (``pedidos.json``) read fully into
memory, mutated and rewritten. Archive units are one JSON document per day
(``pedidos_archivados/YYYY-MM-DD.json``) shaped
``{archived_at, archived_by, orders}``. Records keep the field names of the
original ordering site (``cliente``, ``items[{nombre, precio, cantidad}]``,
``estado``, ``fecha`` ...) so existing data files stay readable.

The whole store is a critical section: every operation runs under a single
``asyncio.Lock`` and its blocking I/O happens on a worker thread. Writes go
to a temporary file which is fsynced and renamed over the target.
Order ids come from a sequence file (``pedidos.seq``) next to the live
file, so ids are never reused after an archive empties the live set.
"""

import asyncio
import json
import logging
import os
import tempfile
from contextlib import suppress
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

from .domain import (
    LEGACY_PAYMENT_LABELS,
    LEGACY_STATUS_LABELS,
    ArchiveSummary,
    ArchiveUnit,
    Order,
    OrderItem,
    OrderStatus,
    format_ts,
    normalize_amount,
    parse_payment_method,
    parse_status,
    parse_ts,
    utcnow,
)
from .errors import NotFound, OrderError, ReconciliationConflict, StorageUnavailable

logger = logging.getLogger(__name__)


# ---- record codec ----

def to_record(order: Order) -> dict:
    """Serialize an order to the flat-file record shape."""
    rec = {
        "id": order.id,
        "cliente": order.customer_name,
        "email": order.email or "",
        "items": [
            {"nombre": it.name, "precio": it.unit_price, "cantidad": it.quantity} for it in order.items
        ],
        "total": order.total,
        "metodoPago": LEGACY_PAYMENT_LABELS[order.payment_method] if order.payment_method else None,
        "nota": order.note or "",
        "estado": LEGACY_STATUS_LABELS[order.status],
        "paymentIntentId": order.payment_intent_id,
        "fecha": format_ts(order.created_at),
    }
    if order.external_id:
        rec["sessionId"] = order.external_id
    if order.paid_at:
        rec["fechaPago"] = format_ts(order.paid_at)
    return rec


def from_record(rec: dict) -> Order:
    """Parse a flat-file record (current or legacy writer) into an ``Order``."""
    return Order(
        id=rec.get("id"),
        customer_name=rec.get("cliente") or "",
        items=[OrderItem.from_dict(it) for it in rec.get("items") or []],
        total=normalize_amount(rec.get("total") or 0),
        status=parse_status(rec.get("estado")),
        created_at=parse_ts(rec.get("fecha")) or utcnow(),
        email=rec.get("email") or None,
        payment_method=parse_payment_method(rec.get("metodoPago")),
        note=rec.get("nota") or None,
        payment_intent_id=rec.get("paymentIntentId") or None,
        external_id=rec.get("sessionId") or None,
        paid_at=parse_ts(rec.get("fechaPago")),
    )


def _write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` to a temp file next to ``path``, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


class FileOrderStore:
    """JSON-document order store with single-writer semantics."""

    def __init__(self, orders_file: Path, archive_dir: Path):
        self.orders_file = Path(orders_file)
        self.archive_dir = Path(archive_dir)
        # last issued id; survives archives that empty the live file
        self.seq_file = self.orders_file.with_suffix(".seq")
        self._lock = asyncio.Lock()

    async def _run(self, op: str, fn: Callable, *args, **log_ctx):
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except OrderError:
                raise
            except (OSError, ValueError) as e:
                # ValueError covers json.JSONDecodeError and unparseable records
                logger.error("file store call failed", extra={"op": op, "error": str(e), **log_ctx})
                raise StorageUnavailable("STORAGE_UNAVAILABLE", f"{op} failed: order file unavailable") from e

    # ---- lifecycle ----

    def _ensure_layout(self) -> None:
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        if not self.orders_file.exists():
            _write_json_atomic(self.orders_file, [])

    async def ensure_layout(self) -> None:
        await self._run("ensure_layout", self._ensure_layout)

    async def ping(self) -> bool:
        return await self._run("ping", lambda: os.access(self.orders_file.parent, os.W_OK))

    async def close(self) -> None:
        return None

    # ---- document helpers (called with the lock held) ----

    def _load(self) -> List[Order]:
        if not self.orders_file.exists():
            return []
        data = _read_json(self.orders_file)
        if not isinstance(data, list):
            raise ValueError(f"{self.orders_file} does not hold a JSON array")
        try:
            return [from_record(rec) for rec in data]
        except OrderError as e:
            raise ValueError(f"unreadable order record in {self.orders_file}: {e.detail}") from e

    def _save(self, orders: List[Order]) -> None:
        _write_json_atomic(self.orders_file, [to_record(o) for o in orders])

    @staticmethod
    def _check_external_id(orders: List[Order], external_id: Optional[str], skip_id: Optional[int] = None) -> None:
        if not external_id:
            return
        for o in orders:
            if o.external_id == external_id and o.id != skip_id:
                raise ReconciliationConflict(
                    "DUPLICATE_EXTERNAL_ID", f"external id {external_id!r} already has an order"
                )

    def _archive_path(self, day: date) -> Path:
        return self.archive_dir / f"{day.isoformat()}.json"

    def _archived_ids(self) -> List[int]:
        ids = []
        for path in self.archive_dir.glob("*.json"):
            ids.extend(int(rec.get("id") or 0) for rec in _read_json(path).get("orders") or [])
        return ids

    def _next_id(self, orders: List[Order]) -> int:
        """Reserve the next order id, persisting it before the order is written."""
        last = max((o.id or 0 for o in orders), default=0)
        if self.seq_file.exists():
            last = max(last, int(_read_json(self.seq_file).get("last_id") or 0))
        else:
            # data written before the sequence file existed
            last = max([last, *self._archived_ids()])
        _write_json_atomic(self.seq_file, {"last_id": last + 1})
        return last + 1

    # ---- orders ----

    def _create(self, order: Order) -> Order:
        orders = self._load()
        self._check_external_id(orders, order.external_id)
        next_id = self._next_id(orders)
        # decode the record so callers see the persisted (millisecond) timestamps
        stored = from_record(to_record(order.with_changes(id=next_id)))
        orders.append(stored)
        self._save(orders)
        return stored

    async def create_order(self, order: Order) -> Order:
        return await self._run("create_order", self._create, order, external_id=order.external_id)

    def _get(self, order_id: int) -> Order:
        for o in self._load():
            if o.id == order_id:
                return o
        raise NotFound("ORDER_NOT_FOUND", f"order {order_id} not found")

    async def get_order(self, order_id: int) -> Order:
        return await self._run("get_order", self._get, order_id, order_id=order_id)

    def _list(self, status: Optional[OrderStatus], external_id: Optional[str]) -> List[Order]:
        orders = [
            o
            for o in self._load()
            if (status is None or o.status == status) and (external_id is None or o.external_id == external_id)
        ]
        orders.sort(key=lambda o: (o.created_at, o.id or 0), reverse=True)
        return orders

    async def list_orders(
        self, status: Optional[OrderStatus] = None, external_id: Optional[str] = None
    ) -> List[Order]:
        return await self._run("list_orders", self._list, status, external_id)

    def _update(self, order_id: int, changes: dict) -> Order:
        orders = self._load()
        for idx, o in enumerate(orders):
            if o.id == order_id:
                updated = from_record(to_record(o.with_changes(**changes)))
                if updated.external_id != o.external_id:
                    self._check_external_id(orders, updated.external_id, skip_id=order_id)
                orders[idx] = updated
                self._save(orders)
                return updated
        raise NotFound("ORDER_NOT_FOUND", f"order {order_id} not found")

    async def update_order(self, order_id: int, changes: dict) -> Order:
        return await self._run("update_order", self._update, order_id, changes, order_id=order_id)

    def _find_external(self, external_id: str) -> Optional[Order]:
        for o in self._load():
            if o.external_id == external_id:
                return o
        return None

    async def find_by_external_id(self, external_id: str) -> Optional[Order]:
        return await self._run("find_by_external_id", self._find_external, external_id, external_id=external_id)

    # ---- archives ----

    def _archive(self, day: date, actor: str, archived_at: datetime, seal: Callable[[Order], Order]) -> List[Order]:
        # The flat file holds only the current day's working set: all of it is archived.
        orders = self._load()
        if not orders:
            return []
        sealed = [seal(o) for o in orders]
        path = self._archive_path(day)
        previous: list = []
        if path.exists():
            previous = _read_json(path).get("orders") or []
        _write_json_atomic(
            path,
            {
                "archived_at": format_ts(archived_at),
                "archived_by": actor,
                "orders": previous + [to_record(o) for o in sealed],
            },
        )
        try:
            self._save([])
        except OSError as e:
            logger.error(
                "archive written but live orders not cleared; remove archived orders from the live file manually",
                extra={"archive": str(path), "count": len(sealed), "error": str(e)},
            )
            raise
        return sealed

    async def archive_orders(
        self, day: date, actor: str, archived_at: datetime, seal: Callable[[Order], Order]
    ) -> List[Order]:
        return await self._run("archive_orders", self._archive, day, actor, archived_at, seal, day=day.isoformat())

    def _list_archives(self) -> List[ArchiveSummary]:
        if not self.archive_dir.exists():
            return []
        out = []
        for path in sorted(self.archive_dir.glob("*.json"), reverse=True):
            try:
                doc = _read_json(path)
            except (OSError, ValueError) as e:
                logger.warning("unreadable archive file", extra={"archive": str(path), "error": str(e)})
                out.append(ArchiveSummary(date=path.stem, count=0, archived_by=None, archived_at=None))
                continue
            out.append(
                ArchiveSummary(
                    date=path.stem,
                    count=len(doc.get("orders") or []),
                    archived_by=doc.get("archived_by") or "system",
                    archived_at=parse_ts(doc.get("archived_at")),
                )
            )
        return out

    async def list_archives(self) -> List[ArchiveSummary]:
        return await self._run("list_archives", self._list_archives)

    def _get_archive(self, day: date) -> Optional[ArchiveUnit]:
        path = self._archive_path(day)
        if not path.exists():
            return None
        doc = _read_json(path)
        try:
            orders = [from_record(rec) for rec in doc.get("orders") or []]
        except OrderError as e:
            raise ValueError(f"unreadable order record in {path}: {e.detail}") from e
        return ArchiveUnit(
            date=day.isoformat(),
            archived_at=parse_ts(doc.get("archived_at")),
            archived_by=doc.get("archived_by"),
            orders=orders,
        )

    async def get_archive(self, day: date) -> Optional[ArchiveUnit]:
        return await self._run("get_archive", self._get_archive, day, day=day.isoformat())

    def _delete_archive(self, day: date) -> bool:
        try:
            self._archive_path(day).unlink()
        except FileNotFoundError:
            return False
        return True

    async def delete_archive(self, day: date) -> bool:
        return await self._run("delete_archive", self._delete_archive, day, day=day.isoformat())
