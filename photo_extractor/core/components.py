"""
Component wiring shared by the API server and the worker process
Every collaborator is built once here and passed down explicitly
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
import structlog
from redis import asyncio as aioredis

from photo_extractor.core.config import ApplicationConfig
from photo_extractor.core.database import DatabaseManager
from photo_extractor.scanner.blob_store import BlobStore, create_blob_store
from photo_extractor.scanner.credentials import CredentialCipher
from photo_extractor.scanner.job_queue import ScanJobQueue
from photo_extractor.scanner.matcher import Matcher, create_matcher
from photo_extractor.scanner.photo_source import GooglePhotosClient
from photo_extractor.scanner.pipeline import PipelineOrchestrator
from photo_extractor.scanner.progress import ProgressTracker
from photo_extractor.scanner.publisher import ProgressPublisher
from photo_extractor.scanner.service import ScanService
from photo_extractor.scanner.state import ScanStateMachine
from photo_extractor.scanner.worker import ScanWorker

logger = structlog.get_logger()


@dataclass
class Components:
    config: ApplicationConfig
    db: DatabaseManager
    redis: aioredis.Redis
    cipher: CredentialCipher
    state: ScanStateMachine
    tracker: ProgressTracker
    queue: ScanJobQueue
    blob_store: BlobStore
    publisher: ProgressPublisher
    scan_service: ScanService
    source: Optional[GooglePhotosClient] = None
    matcher: Optional[Matcher] = None

    def build_worker(self) -> ScanWorker:
        """Pipeline plus worker; only the worker process needs these"""
        if self.source is None:
            self.source = GooglePhotosClient(self.config.photo_source)
        if self.matcher is None:
            self.matcher = create_matcher(self.config.worker)

        pipeline = PipelineOrchestrator(
            config=self.config.worker,
            source=self.source,
            matcher=self.matcher,
            blob_store=self.blob_store,
            tracker=self.tracker,
            state=self.state,
            db=self.db,
            cipher=self.cipher,
            refresh_margin=timedelta(seconds=self.config.photo_source.token_refresh_margin_seconds),
        )
        return ScanWorker(self.queue, pipeline, self.config.worker, state=self.state)

    async def close(self):
        if self.source:
            await self.source.close()
        if self.matcher:
            await self.matcher.close()
        await self.redis.aclose()
        await self.db.close()


async def build_components(
    config: ApplicationConfig,
    redis: Optional[aioredis.Redis] = None
) -> Components:
    db = DatabaseManager(config.database)
    await db.initialize()

    if redis is None:
        redis = aioredis.from_url(config.redis.redis_url, decode_responses=True)

    cipher = CredentialCipher(config.security.master_key)
    state = ScanStateMachine(db)
    tracker = ProgressTracker(redis, db, config.redis)
    queue = ScanJobQueue(redis, config.redis, config.worker)
    blob_store = create_blob_store(config.storage)
    publisher = ProgressPublisher(tracker, state, config.worker.stream_interval_seconds)
    scan_service = ScanService(db, state, queue, tracker, cipher, blob_store)

    logger.info(
        "Components initialized",
        storage=config.storage.storage_backend,
        queue=config.redis.queue_name
    )

    return Components(
        config=config,
        db=db,
        redis=redis,
        cipher=cipher,
        state=state,
        tracker=tracker,
        queue=queue,
        blob_store=blob_store,
        publisher=publisher,
        scan_service=scan_service,
    )
