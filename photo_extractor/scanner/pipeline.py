"""
Scan pipeline orchestrator
Enumerates a remote library, matches every item against the reference
identity, and uploads the originals of the matches
"""

import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional
import structlog
from sqlalchemy import insert

from photo_extractor.core.config import WorkerConfig
from photo_extractor.core.database import DatabaseManager
from photo_extractor.core.errors import InvalidTransitionError
from photo_extractor.models.scan import MatchedItem, ScanStatus
from photo_extractor.scanner.blob_store import BlobStore, UploadOutcome, UploadRequest
from photo_extractor.scanner.credentials import CredentialCipher, CredentialProvider
from photo_extractor.scanner.matcher import Matcher
from photo_extractor.scanner.photo_source import (
    ORIGINAL, THUMBNAIL, GooglePhotosClient, RemoteItem
)
from photo_extractor.scanner.progress import ProgressChannel, ProgressTracker, ProgressUpdate
from photo_extractor.scanner.state import ScanStateMachine

logger = structlog.get_logger()


@dataclass
class ScanResult:
    scan_id: str
    status: str
    total_items: int = 0
    scanned_items: int = 0
    matched_items: int = 0
    uploaded_items: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "scan_id": self.scan_id,
            "status": self.status,
            "total_items": self.total_items,
            "scanned_items": self.scanned_items,
            "matched_items": self.matched_items,
            "uploaded_items": self.uploaded_items,
            "error": self.error,
        }


@dataclass
class PendingMatch:
    """A matched item waiting for its original to be uploaded"""

    item: RemoteItem
    confidence: float
    metadata: Dict = field(default_factory=dict)


@dataclass
class RunCounters:
    total_items: int = 0
    scanned_items: int = 0
    matched_items: int = 0
    uploaded_items: int = 0
    current_batch: int = 0
    total_batches: int = 0

    def as_update(self) -> ProgressUpdate:
        return ProgressUpdate(
            total_items=self.total_items,
            scanned_items=self.scanned_items,
            matched_items=self.matched_items,
            uploaded_items=self.uploaded_items,
            current_batch=self.current_batch,
            total_batches=self.total_batches,
        )

    def durable(self) -> Dict[str, int]:
        return {
            "total_items": self.total_items,
            "scanned_items": self.scanned_items,
            "matched_items": self.matched_items,
            "uploaded_items": self.uploaded_items,
        }


class PipelineOrchestrator:
    """
    Runs one scan end to end

    Download and upload pools are used one after the other, never at the
    same time. Cancellation is honoured between batches only.
    """

    def __init__(
        self,
        config: WorkerConfig,
        source: GooglePhotosClient,
        matcher: Matcher,
        blob_store: BlobStore,
        tracker: ProgressTracker,
        state: ScanStateMachine,
        db: DatabaseManager,
        cipher: CredentialCipher,
        refresh_margin: timedelta = timedelta(minutes=5)
    ):
        self.config = config
        self.source = source
        self.matcher = matcher
        self.blob_store = blob_store
        self.tracker = tracker
        self.state = state
        self.db = db
        self.cipher = cipher
        self.refresh_margin = refresh_margin
        self.logger = logger.bind(component="pipeline")

    async def run(
        self,
        scan_id: str,
        credential_ref: str,
        reference_fingerprints: List[List[float]],
        final_attempt: bool = True
    ) -> ScanResult:
        """
        Execute the scan

        Args:
            scan_id: Scan to run
            credential_ref: Encrypted OAuth credential
            reference_fingerprints: Fingerprints of the identity to collect
            final_attempt: False when the queue will retry this scan on failure

        Returns:
            ScanResult with the terminal status and counters

        Raises:
            ScanNotFoundError: the scan does not exist
            Exception: any fatal error of this run, after the scan was
                marked failed (or left processing for a retry)
        """
        log = self.logger.bind(scan_id=scan_id)

        try:
            await self.state.mark_processing(scan_id)
        except InvalidTransitionError as e:
            if e.current not in ScanStatus.TERMINAL:
                raise
            # Delivered again after it already finished
            log.warning("Scan already finished, skipping", status=e.current)
            scan = await self.state.get_scan(scan_id)
            return ScanResult(
                scan_id=scan_id,
                status=scan.status,
                total_items=scan.total_items,
                scanned_items=scan.scanned_items,
                matched_items=scan.matched_items,
                uploaded_items=scan.uploaded_items,
                error=scan.error_message,
            )

        await self.tracker.reset(scan_id)
        counters = RunCounters()
        channel = ProgressChannel(self.tracker, scan_id).start()
        log.info("Scan started", attempt_is_final=final_attempt)

        try:
            return await self._execute(scan_id, credential_ref, reference_fingerprints, counters, channel, log)
        except Exception as e:
            await channel.close()
            error = str(e) or type(e).__name__
            retryable = getattr(e, "retryable", True)

            if final_attempt or not retryable:
                log.error("Scan failed", error=error, error_type=type(e).__name__)
                try:
                    await self.state.mark_failed(scan_id, error)
                except Exception as state_error:
                    log.error("Could not record scan failure", error=str(state_error))
            else:
                log.warning("Scan attempt failed, will be retried", error=error)
            raise
        finally:
            await channel.close()

    async def _execute(
        self,
        scan_id: str,
        credential_ref: str,
        reference_fingerprints: List[List[float]],
        counters: RunCounters,
        channel: ProgressChannel,
        log
    ) -> ScanResult:
        # Credential
        credential = self.cipher.decrypt(credential_ref)
        credentials = CredentialProvider(
            credential, self.source.refresh_access_token, self.refresh_margin
        )
        await credentials.get_access_token()

        # Enumeration
        items: List[RemoteItem] = []
        async for page in self.source.iter_pages(credentials):
            items.extend(page)
            counters.total_items = len(items)
            channel.publish(counters.as_update())

        log.info("Enumeration finished", total_items=counters.total_items)

        if not items:
            return await self._complete(scan_id, counters, channel, log)

        # Scanning
        batch_size = self.config.batch_size
        counters.total_batches = math.ceil(len(items) / batch_size)
        matches: List[PendingMatch] = []
        cancelled = False

        for index in range(counters.total_batches):
            if await self.state.is_cancel_requested(scan_id):
                cancelled = True
                break

            batch = items[index * batch_size:(index + 1) * batch_size]
            counters.current_batch = index + 1
            await self._scan_batch(batch, reference_fingerprints, credentials, counters, matches, channel, log)

        if cancelled or await self.state.is_cancel_requested(scan_id):
            log.info(
                "Scan cancelled at batch boundary",
                scanned_items=counters.scanned_items,
                matched_items=counters.matched_items
            )
            channel.publish(counters.as_update())
            await channel.close()
            await self.state.mark_cancelled(scan_id)
            return self._result(scan_id, ScanStatus.CANCELLED, counters)

        # Upload
        if matches:
            await self._collect_matches(scan_id, matches, credentials, counters, channel, log)

        return await self._complete(scan_id, counters, channel, log)

    async def _scan_batch(
        self,
        batch: List[RemoteItem],
        reference_fingerprints: List[List[float]],
        credentials: CredentialProvider,
        counters: RunCounters,
        matches: List[PendingMatch],
        channel: ProgressChannel,
        log
    ):
        downloaded = await self.source.download_many(
            batch, self.config.thumbnail_concurrency, THUMBNAIL, credentials
        )

        evaluated = 0
        for thumbnail in downloaded:
            try:
                result = await self.matcher.evaluate(thumbnail.content, reference_fingerprints)
            except Exception as e:
                log.warning("Failed to evaluate item", item_id=thumbnail.item.id, error=str(e))
                continue
            finally:
                thumbnail.release()

            evaluated += 1
            counters.scanned_items += 1
            if result.confidence > self.config.match_threshold:
                counters.matched_items += 1
                metadata = thumbnail.item.capture_metadata()
                metadata["faces_detected"] = result.faces_detected
                matches.append(PendingMatch(
                    item=thumbnail.item,
                    confidence=result.confidence,
                    metadata=metadata
                ))

            if evaluated % self.config.progress_every == 0:
                channel.publish(counters.as_update())

        channel.publish(counters.as_update())
        log.info(
            "Batch scanned",
            batch=counters.current_batch,
            total_batches=counters.total_batches,
            downloaded=len(downloaded),
            batch_size=len(batch),
            scanned_items=counters.scanned_items,
            matched_items=counters.matched_items
        )

    async def _collect_matches(
        self,
        scan_id: str,
        matches: List[PendingMatch],
        credentials: CredentialProvider,
        counters: RunCounters,
        channel: ProgressChannel,
        log
    ):
        """Fetch originals of the matches, upload them and record the results"""
        by_id = {match.item.id: match for match in matches}

        originals = await self.source.download_many(
            [match.item for match in matches],
            self.config.original_concurrency,
            ORIGINAL,
            credentials
        )

        requests = [
            UploadRequest(
                item_id=original.item.id,
                content=original.content,
                name=original.item.filename or f"{original.item.id}.jpg",
                metadata={
                    "scan_id": scan_id,
                    "remote_id": original.item.id,
                    "confidence": by_id[original.item.id].confidence,
                }
            )
            for original in originals
        ]

        def on_upload(outcome: UploadOutcome):
            if outcome.ok:
                counters.uploaded_items += 1
                channel.publish(counters.as_update())

        outcomes = await self.blob_store.upload_many(
            requests, self.config.upload_concurrency, on_complete=on_upload
        )

        for original in originals:
            original.release()

        rows = []
        for outcome in outcomes:
            if not outcome.ok:
                continue
            match = by_id[outcome.item_id]
            rows.append({
                "scan_id": scan_id,
                "remote_id": match.item.id,
                "remote_url": match.item.base_url,
                "blob_url": outcome.reference.url,
                "blob_key": outcome.reference.key,
                "confidence": match.confidence,
                "metadata": match.metadata,
            })

        if rows:
            async with self.db.transaction() as conn:
                await conn.execute(insert(MatchedItem.__table__), rows)

        log.info(
            "Matches persisted",
            matched_items=len(matches),
            originals=len(originals),
            persisted=len(rows)
        )

    async def _complete(
        self,
        scan_id: str,
        counters: RunCounters,
        channel: ProgressChannel,
        log
    ) -> ScanResult:
        channel.publish(counters.as_update())
        await channel.close()
        await self.state.mark_completed(scan_id, counters.durable())
        log.info("Scan completed", **counters.durable())
        return self._result(scan_id, ScanStatus.COMPLETED, counters)

    @staticmethod
    def _result(scan_id: str, status: str, counters: RunCounters) -> ScanResult:
        return ScanResult(scan_id=scan_id, status=status, **counters.durable())
