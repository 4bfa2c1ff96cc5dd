"""End-of-day archival of live orders.

``archive_today`` moves the day's live orders into an archive unit keyed by
the current UTC date and removes them from the live set. Archiving twice on
the same date appends to the existing unit; ``archived_at``/``archived_by``
of the unit then describe the latest run.
"""

import logging
import re
from datetime import date, datetime
from typing import Callable, List

from . import state_machine
from .domain import ArchiveResult, ArchiveSummary, ArchiveUnit, utcnow
from .errors import NotFound, ValidationError
from .persistence import OrderStore

logger = logging.getLogger(__name__)

DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def validate_archive_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` archive key.

    Raises:
        ValidationError: ``INVALID_DATE`` for anything that is not exactly
            that pattern or not a real calendar date.
    """
    if not isinstance(value, str) or not DATE_RE.fullmatch(value):
        raise ValidationError("INVALID_DATE", "date must be YYYY-MM-DD")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("INVALID_DATE", f"{value} is not a calendar date")


class ArchiveService:
    """Archive, list, read and delete dated archive units.

    Args:
        store: The persistence backend selected at startup.
        clock: Returns the current UTC time; its date is the archive key.
    """

    def __init__(self, store: OrderStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def archive_today(self, actor: str = "system") -> ArchiveResult:
        now = self.clock()
        day = now.date()
        actor = (actor or "").strip() or "system"
        archived = await self.store.archive_orders(day, actor, now, state_machine.seal_for_archive)
        if not archived:
            logger.info("archive skipped, no live orders", extra={"day": day.isoformat(), "actor": actor})
            return ArchiveResult(archived_count=0)
        logger.info(
            "orders archived",
            extra={"day": day.isoformat(), "actor": actor, "count": len(archived)},
        )
        return ArchiveResult(archived_count=len(archived), archive_ref=day.isoformat(), archived_at=now)

    async def list_archives(self) -> List[ArchiveSummary]:
        """Archive units, most recent date first."""
        return await self.store.list_archives()

    async def get_archive(self, day: str) -> ArchiveUnit:
        """Return the archive unit for ``day``.

        Raises:
            ValidationError: Malformed date (no storage access happens).
            NotFound: ``ARCHIVE_NOT_FOUND`` when no unit exists for that date.
        """
        key = validate_archive_date(day)
        unit = await self.store.get_archive(key)
        if unit is None:
            raise NotFound("ARCHIVE_NOT_FOUND", f"no archive for {day}")
        return unit

    async def delete_archive(self, day: str) -> None:
        key = validate_archive_date(day)
        if not await self.store.delete_archive(key):
            raise NotFound("ARCHIVE_NOT_FOUND", f"no archive for {day}")
        logger.warning("archive deleted", extra={"day": day})
