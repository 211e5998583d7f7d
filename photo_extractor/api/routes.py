"""
API routes for scan management and results retrieval
"""

from fastapi import APIRouter, HTTPException, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, timezone
import structlog

from photo_extractor.core.errors import (
    InvalidTransitionError, JobPayloadError, PhotoExtractorError,
    ScanNotFoundError, SessionUnavailableError
)
from photo_extractor.scanner.credentials import OAuthCredential
from photo_extractor.scanner.publisher import sse_frame

logger = structlog.get_logger()

router = APIRouter()


# Dependencies resolved from the application state
def get_scan_service():
    from main import app_state
    return app_state["scan_service"]


def get_publisher():
    from main import app_state
    return app_state["publisher"]


def to_http_error(error: PhotoExtractorError) -> HTTPException:
    """Map a domain error to a response without internal details"""
    if isinstance(error, ScanNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (JobPayloadError, SessionUnavailableError)):
        return HTTPException(status_code=422, detail=str(error))

    logger.error("Unhandled domain error", error=str(error), error_type=type(error).__name__)
    return HTTPException(status_code=500, detail="Internal error")


# Request models
class CreateSessionRequest(BaseModel):
    reference_fingerprints: List[List[float]] = Field(..., min_length=1)
    creator_name: Optional[str] = None
    creator_email: Optional[str] = None
    ttl_days: int = Field(30, ge=1, le=365)


class CreateScanRequest(BaseModel):
    session_id: str
    access_token: str
    refresh_token: Optional[str] = None
    # Milliseconds since epoch
    expiry_date: Optional[int] = None
    friend_email: Optional[str] = None


@router.post("/sessions")
async def create_session(
    request: CreateSessionRequest,
    service = Depends(get_scan_service)
):
    """Register the reference identity to collect"""
    owner = await service.create_session(
        request.reference_fingerprints,
        creator_name=request.creator_name,
        creator_email=request.creator_email,
        ttl_days=request.ttl_days
    )
    return {
        "session_id": owner.id,
        "expires_at": owner.expires_at.isoformat() if owner.expires_at else None
    }


@router.post("/scans", status_code=201)
async def create_scan(
    request: CreateScanRequest,
    service = Depends(get_scan_service)
):
    """Create a scan and queue it for a worker"""
    credential = OAuthCredential(
        access_token=request.access_token,
        refresh_token=request.refresh_token,
        expires_at=(
            datetime.fromtimestamp(request.expiry_date / 1000, tz=timezone.utc)
            if request.expiry_date else None
        ),
    )

    try:
        scan = await service.create_scan(
            request.session_id, credential, friend_email=request.friend_email
        )
    except PhotoExtractorError as e:
        raise to_http_error(e)

    return {
        "scan_id": scan.id,
        "job_id": scan.job_id,
        "status": scan.status,
        "message": "Scan queued"
    }


@router.get("/scans/{scan_id}")
async def get_scan(
    scan_id: str,
    service = Depends(get_scan_service)
):
    """Durable scan record"""
    try:
        scan = await service.state.get_scan(scan_id)
    except PhotoExtractorError as e:
        raise to_http_error(e)
    return scan.to_dict()


@router.get("/scans/{scan_id}/status")
async def get_scan_status(
    scan_id: str,
    service = Depends(get_scan_service)
):
    """Scan counters plus live batch progress"""
    try:
        return await service.get_status(scan_id)
    except PhotoExtractorError as e:
        raise to_http_error(e)


@router.get("/scans/{scan_id}/results")
async def get_scan_results(
    scan_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    service = Depends(get_scan_service)
):
    """Matched photos with time-limited access URLs"""
    try:
        return await service.get_results(scan_id, page=page, page_size=page_size)
    except PhotoExtractorError as e:
        raise to_http_error(e)


@router.get("/scans/{scan_id}/progress")
async def stream_scan_progress(
    scan_id: str,
    publisher = Depends(get_publisher)
):
    """Server-Sent Events stream of scan progress"""
    try:
        # Unknown scans are rejected before the stream starts
        await publisher.read_progress(scan_id)
    except PhotoExtractorError as e:
        raise to_http_error(e)

    async def event_generator():
        stream = publisher.subscribe(scan_id)
        try:
            async for message in stream:
                yield sse_frame(message)
        except ScanNotFoundError:
            return
        finally:
            await stream.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )


@router.post("/scans/{scan_id}/cancel")
async def cancel_scan(
    scan_id: str,
    service = Depends(get_scan_service)
):
    """Cancel a pending scan or ask a running one to stop"""
    try:
        return await service.cancel_scan(scan_id)
    except PhotoExtractorError as e:
        raise to_http_error(e)


@router.get("/scans/{scan_id}/job")
async def get_job_status(
    scan_id: str,
    service = Depends(get_scan_service)
):
    """Queue-level state of the scan's job"""
    try:
        return await service.get_job_status(scan_id)
    except PhotoExtractorError as e:
        raise to_http_error(e)
