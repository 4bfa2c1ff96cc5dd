"""Persistence port for orders and archive units, and backend selection.

Both backends implement ``OrderStore``; the repository, the reconciliation
engine and the archive service are written against this protocol only.
The backend is chosen once by ``open_store`` at startup and stays fixed for
the lifetime of the process.
"""

import logging
from datetime import date, datetime
from typing import Callable, List, Optional, Protocol

from sqlalchemy.exc import ArgumentError

from .domain import ArchiveSummary, ArchiveUnit, Order, OrderStatus
from .errors import StorageUnavailable
from .file_store import FileOrderStore
from .settings import Settings
from .sql_store import SqlOrderStore

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    """Port describing order and archive storage.

    Every method is a suspension point. Implementations raise
    ``StorageUnavailable`` on backend/I/O failure, ``NotFound`` for unknown
    ids and ``ReconciliationConflict`` when an ``external_id`` is already
    taken by another live order.
    """

    async def create_order(self, order: Order) -> Order:
        """Persist a new order and return it with its assigned ``id``."""
        raise NotImplementedError()

    async def get_order(self, order_id: int) -> Order:
        raise NotImplementedError()

    async def list_orders(
        self, status: Optional[OrderStatus] = None, external_id: Optional[str] = None
    ) -> List[Order]:
        """Return matching orders, most recent first."""
        raise NotImplementedError()

    async def update_order(self, order_id: int, changes: dict) -> Order:
        """Apply ``changes`` (domain field names) to an order and return it."""
        raise NotImplementedError()

    async def find_by_external_id(self, external_id: str) -> Optional[Order]:
        raise NotImplementedError()

    async def archive_orders(
        self, day: date, actor: str, archived_at: datetime, seal: Callable[[Order], Order]
    ) -> List[Order]:
        """Move the live orders of ``day`` into the archive unit for ``day``.

        Writing the archive unit and removing the orders from the live set
        happen as one unit of work. Returns the sealed orders that were
        archived; an empty list means nothing was written.
        """
        raise NotImplementedError()

    async def list_archives(self) -> List[ArchiveSummary]:
        raise NotImplementedError()

    async def get_archive(self, day: date) -> Optional[ArchiveUnit]:
        raise NotImplementedError()

    async def delete_archive(self, day: date) -> bool:
        raise NotImplementedError()

    async def ping(self) -> bool:
        raise NotImplementedError()

    async def close(self) -> None:
        raise NotImplementedError()


async def open_store(settings: Settings) -> OrderStore:
    """Select and initialize the storage backend for this process.

    A configured ``database_url`` whose driver can be loaded selects the
    relational store; startup then waits for the server up to
    ``db_connect_deadline_secs`` and fails with ``StorageUnavailable`` if it
    never answers. Without a URL, or when the driver is missing, the flat
    file store is used unless ``require_db`` is set.
    """
    if settings.database_url:
        try:
            store = SqlOrderStore.from_url(settings.database_url, timeout=settings.storage_timeout_secs)
        except (ImportError, ArgumentError) as e:
            if settings.require_db:
                raise StorageUnavailable("DB_DRIVER_UNAVAILABLE", f"database driver unavailable: {e}") from e
            logger.warning("database driver unavailable, using file store", extra={"error": str(e)})
        else:
            await store.wait_until_ready(settings.db_connect_deadline_secs)
            logger.info("storage backend selected", extra={"backend": "sql"})
            return store
    elif settings.require_db:
        raise StorageUnavailable("DB_NOT_CONFIGURED", "DATABASE_URL is required when USE_DB_ONLY is set")

    store = FileOrderStore(settings.orders_file, settings.archive_dir)
    await store.ensure_layout()
    logger.info("storage backend selected", extra={"backend": "file", "path": str(settings.orders_file)})
    return store
