"""
Scan progress tracking
Writes counters to a TTL'd Redis snapshot and merges them into the durable Scan row
"""

import asyncio
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, Optional
import structlog
from redis import asyncio as aioredis
from sqlalchemy import update

from photo_extractor.core.config import RedisConfig
from photo_extractor.core.database import DatabaseManager
from photo_extractor.models.scan import Scan

logger = structlog.get_logger()

# Counters that also live on the Scan row
DURABLE_FIELDS = ("total_items", "scanned_items", "matched_items", "uploaded_items")


@dataclass
class ProgressUpdate:
    """Counters for one update. None means the field is not part of the update."""

    total_items: Optional[int] = None
    scanned_items: Optional[int] = None
    matched_items: Optional[int] = None
    uploaded_items: Optional[int] = None
    current_batch: Optional[int] = None
    total_batches: Optional[int] = None

    def present(self) -> Dict[str, int]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass
class ProgressSnapshot:
    """Ephemeral mirror of a scan's counters"""

    scan_id: str
    total_items: int = 0
    scanned_items: int = 0
    matched_items: int = 0
    uploaded_items: int = 0
    current_batch: int = 0
    total_batches: int = 0
    updated_at: Optional[str] = None

    @classmethod
    def from_hash(cls, scan_id: str, data: Dict[str, str]) -> "ProgressSnapshot":
        def _int(name):
            try:
                return int(data.get(name) or 0)
            except ValueError:
                return 0

        return cls(
            scan_id=scan_id,
            total_items=_int("total_items"),
            scanned_items=_int("scanned_items"),
            matched_items=_int("matched_items"),
            uploaded_items=_int("uploaded_items"),
            current_batch=_int("current_batch"),
            total_batches=_int("total_batches"),
            updated_at=data.get("updated_at"),
        )


class ProgressTracker:
    """
    Dual-sink progress store

    The Redis snapshot is advisory and written first; the Scan row is the
    authoritative record. The two writes are not transactional.
    """

    def __init__(self, redis: aioredis.Redis, db: DatabaseManager, config: RedisConfig):
        self.redis = redis
        self.db = db
        self.prefix = config.progress_key_prefix
        self.ttl = config.progress_ttl_seconds
        self.logger = logger.bind(component="progress_tracker")

    def key(self, scan_id: str) -> str:
        return f"{self.prefix}:{scan_id}"

    async def update(self, scan_id: str, progress: ProgressUpdate):
        values = progress.present()
        if not values:
            return

        mapping = {name: str(value) for name, value in values.items()}
        mapping["updated_at"] = datetime.utcnow().isoformat()

        # Overwrite wholesale and restart the TTL
        key = self.key(scan_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, self.ttl)
            await pipe.execute()

        durable = {name: values[name] for name in DURABLE_FIELDS if name in values}
        if durable:
            async with self.db.get_session() as session:
                await session.execute(
                    update(Scan).where(Scan.id == scan_id).values(**durable)
                )

        self.logger.debug("Progress updated", scan_id=scan_id, **values)

    async def read_snapshot(self, scan_id: str) -> Optional[ProgressSnapshot]:
        """Current snapshot, or None if it never existed or has expired"""
        data = await self.redis.hgetall(self.key(scan_id))
        if not data:
            return None
        return ProgressSnapshot.from_hash(scan_id, data)

    async def reset(self, scan_id: str):
        """Drop the snapshot so a fresh run starts from zero"""
        await self.redis.delete(self.key(scan_id))


class ProgressChannel:
    """
    Fire-and-forget side channel between the pipeline and the tracker

    publish() never waits. A single drainer writes updates in order; when
    the drainer falls behind, only the newest pending update is kept.
    """

    def __init__(self, tracker: ProgressTracker, scan_id: str):
        self.tracker = tracker
        self.scan_id = scan_id
        self.published = 0
        self.written = 0
        self._pending: Optional[ProgressUpdate] = None
        self._wakeup = asyncio.Event()
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self.logger = logger.bind(component="progress_channel", scan_id=scan_id)

    def start(self) -> "ProgressChannel":
        if self._task is None:
            self._task = asyncio.create_task(self._drain())
        return self

    def publish(self, progress: ProgressUpdate):
        if self._closed:
            return
        self._pending = progress
        self.published += 1
        self._wakeup.set()

    async def _drain(self):
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()

            progress, self._pending = self._pending, None
            if progress is not None:
                try:
                    await self.tracker.update(self.scan_id, progress)
                    self.written += 1
                except Exception as e:
                    self.logger.error("Failed to write progress", error=str(e))

            if self._closed and self._pending is None:
                return

    async def close(self):
        """Flush the last pending update and stop the drainer"""
        self._closed = True
        if self._task is None:
            if self._pending is not None:
                await self.tracker.update(self.scan_id, self._pending)
                self._pending = None
            return

        self._wakeup.set()
        await self._task
        self._task = None
