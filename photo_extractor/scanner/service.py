"""
Scan service
Glue between the web layer, the durable store and the job queue
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import uuid
import structlog
from sqlalchemy import func, select

from photo_extractor.core.database import DatabaseManager
from photo_extractor.core.errors import ScanNotFoundError, SessionUnavailableError
from photo_extractor.models.scan import MatchedItem, OwnerSession, Scan, ScanStatus
from photo_extractor.scanner.blob_store import BlobStore
from photo_extractor.scanner.credentials import CredentialCipher, OAuthCredential
from photo_extractor.scanner.job_queue import ScanJobQueue
from photo_extractor.scanner.progress import ProgressTracker
from photo_extractor.scanner.state import ScanStateMachine

logger = structlog.get_logger()


class ScanService:
    """Creates scans, answers status queries and forwards cancel requests"""

    def __init__(
        self,
        db: DatabaseManager,
        state: ScanStateMachine,
        queue: ScanJobQueue,
        tracker: ProgressTracker,
        cipher: CredentialCipher,
        blob_store: BlobStore
    ):
        self.db = db
        self.state = state
        self.queue = queue
        self.tracker = tracker
        self.cipher = cipher
        self.blob_store = blob_store
        self.logger = logger.bind(component="scan_service")

    async def create_session(
        self,
        reference_fingerprints: List[List[float]],
        creator_name: Optional[str] = None,
        creator_email: Optional[str] = None,
        ttl_days: int = 30
    ) -> OwnerSession:
        async with self.db.get_session() as session:
            owner = OwnerSession(
                creator_name=creator_name,
                creator_email=creator_email,
                reference_fingerprints=reference_fingerprints,
                expires_at=datetime.utcnow() + timedelta(days=ttl_days),
            )
            session.add(owner)
            await session.flush()

        self.logger.info("Session created", session_id=owner.id)
        return owner

    async def create_scan(
        self,
        session_id: str,
        credential: OAuthCredential,
        friend_email: Optional[str] = None
    ) -> Scan:
        """
        Create a pending scan and queue its job

        Raises:
            SessionUnavailableError: the session is missing or expired
            JobPayloadError: the session's fingerprints cannot be queued
        """
        scan_id = str(uuid.uuid4())
        credential_ref = self.cipher.encrypt(credential)

        async with self.db.get_session() as session:
            owner = await session.get(OwnerSession, session_id)
            if owner is None:
                raise SessionUnavailableError(f"Session {session_id} not found")
            if owner.is_expired():
                raise SessionUnavailableError(f"Session {session_id} has expired")

            payload = self.queue.validate_payload({
                "scan_id": scan_id,
                "session_id": session_id,
                "credential_ref": credential_ref,
                "reference_fingerprints": owner.reference_fingerprints,
            })

            scan = Scan(
                id=scan_id,
                session_id=session_id,
                job_id=scan_id,
                friend_email=friend_email,
                credential_encrypted=credential_ref,
                status=ScanStatus.PENDING,
            )
            session.add(scan)

        try:
            await self.queue.enqueue(payload)
        except Exception as e:
            # No job will ever pick this scan up
            error = f"Could not queue scan: {str(e) or type(e).__name__}"
            self.logger.error("Scan enqueue failed", scan_id=scan_id, error=str(e))
            await self.state.mark_failed(scan_id, error)
            raise

        self.logger.info("Scan created", scan_id=scan_id, session_id=session_id)
        return scan

    async def get_status(self, scan_id: str) -> Dict[str, Any]:
        scan = await self.state.get_scan(scan_id)
        status = scan.to_dict()

        snapshot = await self.tracker.read_snapshot(scan_id)
        status["progress"] = {
            "current_batch": snapshot.current_batch if snapshot else 0,
            "total_batches": snapshot.total_batches if snapshot else 0,
            "updated_at": snapshot.updated_at if snapshot else None,
        }
        return status

    async def cancel_scan(self, scan_id: str) -> Dict[str, Any]:
        """
        Raises:
            ScanNotFoundError, ScanAlreadyTerminalError
        """
        status = await self.state.request_cancel(scan_id)
        if status == ScanStatus.CANCELLED:
            # Never started, so the job can simply go
            await self.queue.remove(scan_id)

        return {
            "scan_id": scan_id,
            "status": status,
            "cancel_requested": status == ScanStatus.PROCESSING,
        }

    async def get_results(
        self,
        scan_id: str,
        page: int = 1,
        page_size: int = 50
    ) -> Dict[str, Any]:
        """Matched items of a scan with fresh access URLs"""
        scan = await self.state.get_scan(scan_id)
        page = max(page, 1)
        page_size = min(max(page_size, 1), 500)

        async with self.db.get_session() as session:
            result = await session.execute(
                select(MatchedItem)
                .where(MatchedItem.scan_id == scan_id)
                .order_by(MatchedItem.confidence.desc(), MatchedItem.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = result.scalars().all()

            stats_row = (await session.execute(
                select(
                    func.count(MatchedItem.id),
                    func.avg(MatchedItem.confidence),
                    func.min(MatchedItem.confidence),
                    func.max(MatchedItem.confidence),
                ).where(MatchedItem.scan_id == scan_id)
            )).one()

        photos = []
        for item in items:
            data = item.to_dict()
            try:
                data["access_url"] = await self.blob_store.presigned_url(item.blob_key)
            except Exception as e:
                self.logger.warning("Could not sign blob URL", key=item.blob_key, error=str(e))
                data["access_url"] = item.blob_url
            photos.append(data)

        total, avg_conf, min_conf, max_conf = stats_row
        return {
            "scan": scan.to_dict(),
            "photos": photos,
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "pages": (total + page_size - 1) // page_size,
            },
            "stats": {
                "total_matches": total,
                "avg_confidence": round(avg_conf, 4) if avg_conf is not None else None,
                "min_confidence": min_conf,
                "max_confidence": max_conf,
            },
        }

    async def get_job_status(self, scan_id: str) -> Dict[str, Any]:
        scan = await self.state.get_scan(scan_id)
        job = await self.queue.get_job_status(scan.job_id or scan_id)
        if job is None:
            raise ScanNotFoundError(scan_id)
        return job
