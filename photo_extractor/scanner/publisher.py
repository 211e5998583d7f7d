"""
Progress stream publisher
Polls scan progress for observers over SSE or WebSocket
"""

import asyncio
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import AsyncIterator, Optional
import structlog

from photo_extractor.models.scan import ScanStatus
from photo_extractor.scanner.progress import ProgressTracker
from photo_extractor.scanner.state import ScanStateMachine

logger = structlog.get_logger()

PROGRESS_EVENT = "progress"
TERMINAL_EVENT = "terminal"


@dataclass
class ProgressMessage:
    scan_id: str
    status: str
    total_items: int
    scanned_items: int
    matched_items: int
    uploaded_items: int
    current_batch: int
    total_batches: int
    error: Optional[str]
    timestamp: str
    event: str = PROGRESS_EVENT

    @property
    def is_terminal(self) -> bool:
        return self.event == TERMINAL_EVENT

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("event")
        if data["error"] is None:
            data.pop("error")
        return data


def sse_frame(message: ProgressMessage) -> str:
    """Encode a message as a Server-Sent Events frame"""
    return f"event: {message.event}\ndata: {json.dumps(message.to_dict())}\n\n"


class ProgressPublisher:
    """
    Read-only view of scan progress

    Every subscription polls on its own, so any number of observers can
    follow the same scan without affecting it or each other.
    """

    def __init__(self, tracker: ProgressTracker, state: ScanStateMachine, interval: float = 2.0):
        self.tracker = tracker
        self.state = state
        self.interval = interval
        self.logger = logger.bind(component="progress_publisher")

    async def read_progress(self, scan_id: str) -> ProgressMessage:
        """
        Current progress of a scan

        Raises:
            ScanNotFoundError: the scan does not exist
        """
        scan = await self.state.get_scan(scan_id)
        terminal = scan.status in ScanStatus.TERMINAL

        snapshot = await self.tracker.read_snapshot(scan_id)
        current_batch = snapshot.current_batch if snapshot else 0
        total_batches = snapshot.total_batches if snapshot else 0

        # Counters of a finished scan come from the durable record
        if snapshot and not terminal:
            counters = (
                snapshot.total_items, snapshot.scanned_items,
                snapshot.matched_items, snapshot.uploaded_items,
            )
        else:
            counters = (
                scan.total_items or 0, scan.scanned_items or 0,
                scan.matched_items or 0, scan.uploaded_items or 0,
            )

        return ProgressMessage(
            scan_id=scan_id,
            status=scan.status,
            total_items=counters[0],
            scanned_items=counters[1],
            matched_items=counters[2],
            uploaded_items=counters[3],
            current_batch=current_batch,
            total_batches=total_batches,
            error=scan.error_message if scan.status == ScanStatus.FAILED else None,
            timestamp=datetime.utcnow().isoformat(),
            event=TERMINAL_EVENT if terminal else PROGRESS_EVENT,
        )

    async def subscribe(self, scan_id: str) -> AsyncIterator[ProgressMessage]:
        """
        Yield progress every interval until the scan finishes

        The last message is the single terminal message. Closing the
        iterator stops polling for this subscriber only.
        """
        message = await self.read_progress(scan_id)
        self.logger.debug("Subscriber attached", scan_id=scan_id)

        try:
            while True:
                yield message
                if message.is_terminal:
                    return
                await asyncio.sleep(self.interval)
                message = await self.read_progress(scan_id)
        finally:
            self.logger.debug("Subscriber detached", scan_id=scan_id)
