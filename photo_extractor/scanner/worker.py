"""
Scan worker
Pulls scan jobs from the queue and runs the pipeline for each of them
"""

import asyncio
import socket
import uuid
from typing import List, Optional
import structlog

from photo_extractor.core.config import WorkerConfig
from photo_extractor.core.errors import InvalidTransitionError, ScanNotFoundError
from photo_extractor.scanner.job_queue import STALLED_REASON, Job, ScanJobQueue
from photo_extractor.scanner.pipeline import PipelineOrchestrator
from photo_extractor.scanner.state import ScanStateMachine

logger = structlog.get_logger()


class ScanWorker:
    """
    Runs several consumer loops in one process

    Each loop handles one scan at a time; scans never share pipeline state.
    """

    def __init__(
        self,
        queue: ScanJobQueue,
        pipeline: PipelineOrchestrator,
        config: WorkerConfig,
        worker_id: Optional[str] = None,
        state: Optional[ScanStateMachine] = None
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.config = config
        self.state = state or getattr(pipeline, "state", None)
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.processed = 0
        self.failed = 0
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self.logger = logger.bind(component="worker", worker=self.worker_id)

    async def _keep_alive(self, job_id: str):
        """Extend the lease while the job runs"""
        interval = max(self.config.stall_timeout_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.heartbeat(job_id)
            except Exception as e:
                self.logger.warning("Heartbeat failed", job_id=job_id, error=str(e))

    async def process_one(self, consumer: str = "0") -> Optional[Job]:
        """Run the next job, if any. Returns the job that was handled."""
        job = await self.queue.dequeue(f"{self.worker_id}:{consumer}")
        if job is None:
            return None

        payload = job.payload
        heartbeat = asyncio.create_task(self._keep_alive(job.id))
        try:
            result = await self.pipeline.run(
                payload.scan_id,
                payload.credential_ref,
                payload.reference_fingerprints,
                final_attempt=job.is_final_attempt
            )
        except Exception as e:
            self.failed += 1
            await self.queue.fail(
                job.id,
                str(e) or type(e).__name__,
                retryable=getattr(e, "retryable", True)
            )
        else:
            self.processed += 1
            await self.queue.complete(job.id, result.to_dict())
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        return job

    async def _consume(self, consumer: str):
        self.logger.info("Consumer started", consumer=consumer)
        while not self._stop.is_set():
            try:
                job = await self.process_one(consumer)
            except Exception as e:
                self.logger.error("Consumer error", consumer=consumer, error=str(e))
                job = None

            if job is None:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.config.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass

        self.logger.info("Consumer stopped", consumer=consumer)

    async def _fail_stalled_scan(self, job: Job):
        """A job that stalled on its last attempt takes its scan down with it"""
        if self.state is None:
            return

        scan_id = job.payload.scan_id
        try:
            await self.state.mark_failed(scan_id, STALLED_REASON)
        except (InvalidTransitionError, ScanNotFoundError) as e:
            self.logger.info("Stalled job's scan left as is", scan_id=scan_id, reason=str(e))
        else:
            self.logger.warning("Scan failed after stalled job", scan_id=scan_id, job_id=job.id)

    async def recover_stalled(self) -> List[str]:
        return await self.queue.recover_stalled(on_failed=self._fail_stalled_scan)

    async def _watch_stalled(self):
        while not self._stop.is_set():
            try:
                await self.recover_stalled()
            except Exception as e:
                self.logger.error("Stalled job check failed", error=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.config.stall_timeout_seconds)
            except asyncio.TimeoutError:
                pass

    async def run(self):
        """Run until stop() is called. Jobs in progress finish first."""
        self.logger.info("Worker started", concurrency=self.config.worker_concurrency)

        self._tasks = [
            asyncio.create_task(self._consume(str(i)))
            for i in range(self.config.worker_concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._watch_stalled()))

        try:
            await asyncio.gather(*self._tasks)
        finally:
            self.logger.info(
                "Worker stopped",
                processed=self.processed,
                failed=self.failed
            )

    def stop(self):
        self._stop.set()
