"""
Scan lifecycle state machine
pending -> processing -> completed | failed | cancelled
"""

from datetime import datetime
from typing import Dict, Iterable, Optional
import structlog
from sqlalchemy import func, select, update

from photo_extractor.core.database import DatabaseManager
from photo_extractor.core.errors import (
    InvalidTransitionError, ScanAlreadyTerminalError, ScanNotFoundError
)
from photo_extractor.models.scan import Scan, ScanStatus

logger = structlog.get_logger()


class ScanStateMachine:
    """
    Authoritative lifecycle record for scans

    Every transition is a compare-and-set on the current status, so two
    writers can never both move the same scan out of a given state.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.logger = logger.bind(component="scan_state")

    async def get_scan(self, scan_id: str) -> Scan:
        async with self.db.get_session() as session:
            scan = await session.get(Scan, scan_id)
            if scan is None:
                raise ScanNotFoundError(scan_id)
            return scan

    async def _transition(
        self,
        scan_id: str,
        allowed: Iterable[str],
        target: str,
        values: Dict
    ):
        allowed = tuple(allowed)
        async with self.db.get_session() as session:
            result = await session.execute(
                update(Scan)
                .where(Scan.id == scan_id, Scan.status.in_(allowed))
                .values(status=target, **values)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount

        if changed:
            self.logger.info("Scan transitioned", scan_id=scan_id, status=target)
            return

        scan = await self.get_scan(scan_id)
        raise InvalidTransitionError(scan_id, scan.status, target)

    async def mark_processing(self, scan_id: str):
        """
        Enter processing and reset the run's counters

        A retried run re-enters from processing; the start time is only
        recorded the first time.
        """
        await self._transition(
            scan_id,
            (ScanStatus.PENDING, ScanStatus.PROCESSING),
            ScanStatus.PROCESSING,
            {
                "started_at": func.coalesce(Scan.started_at, datetime.utcnow()),
                "total_items": 0,
                "scanned_items": 0,
                "matched_items": 0,
                "uploaded_items": 0,
                "error_message": None,
            }
        )

    async def mark_completed(self, scan_id: str, counters: Optional[Dict[str, int]] = None):
        await self._transition(
            scan_id,
            (ScanStatus.PROCESSING,),
            ScanStatus.COMPLETED,
            {"completed_at": datetime.utcnow(), **(counters or {})}
        )

    async def mark_failed(self, scan_id: str, error: str):
        await self._transition(
            scan_id,
            (ScanStatus.PENDING, ScanStatus.PROCESSING),
            ScanStatus.FAILED,
            {"completed_at": datetime.utcnow(), "error_message": error}
        )

    async def mark_cancelled(self, scan_id: str):
        await self._transition(
            scan_id,
            (ScanStatus.PENDING, ScanStatus.PROCESSING),
            ScanStatus.CANCELLED,
            {"completed_at": datetime.utcnow()}
        )

    async def request_cancel(self, scan_id: str) -> str:
        """
        Ask for a scan to stop

        Pending scans are cancelled immediately. Processing scans are
        flagged and stop at the next batch boundary.

        Returns:
            The status the scan is in after the request

        Raises:
            ScanAlreadyTerminalError: the scan already finished
        """
        async with self.db.get_session() as session:
            scan = await session.get(Scan, scan_id)
            if scan is None:
                raise ScanNotFoundError(scan_id)
            status = scan.status

        if status in ScanStatus.TERMINAL:
            raise ScanAlreadyTerminalError(scan_id, status, ScanStatus.CANCELLED)

        if status == ScanStatus.PENDING:
            try:
                await self.mark_cancelled(scan_id)
                return ScanStatus.CANCELLED
            except InvalidTransitionError as e:
                # A worker picked it up in the meantime
                if e.current != ScanStatus.PROCESSING:
                    raise ScanAlreadyTerminalError(scan_id, e.current, ScanStatus.CANCELLED)

        async with self.db.get_session() as session:
            result = await session.execute(
                update(Scan)
                .where(Scan.id == scan_id, Scan.status == ScanStatus.PROCESSING)
                .values(cancel_requested=True)
                .execution_options(synchronize_session=False)
            )
            flagged = result.rowcount

        if not flagged:
            scan = await self.get_scan(scan_id)
            raise ScanAlreadyTerminalError(scan_id, scan.status, ScanStatus.CANCELLED)

        self.logger.info("Cancellation requested", scan_id=scan_id)
        return ScanStatus.PROCESSING

    async def is_cancel_requested(self, scan_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Scan.cancel_requested).where(Scan.id == scan_id)
            )
            return bool(result.scalar_one_or_none())
