"""
Blob storage for uploaded originals
S3 in production, a local directory for development
"""

import asyncio
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional
import boto3
import structlog

from photo_extractor.core.config import StorageConfig
from photo_extractor.core.errors import UploadError

logger = structlog.get_logger()

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class BlobReference:
    """Where an upload landed. The key alone can produce a new access URL."""

    url: str
    key: str


@dataclass
class UploadRequest:
    item_id: str
    content: bytes = field(repr=False)
    name: str
    metadata: Dict = field(default_factory=dict)


@dataclass
class UploadOutcome:
    """Result or error for one upload, correlated by item id"""

    item_id: str
    reference: Optional[BlobReference] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reference is not None


class BlobStore(ABC):
    """Upload with retry and bounded concurrency on top of a storage backend"""

    def __init__(self, config: StorageConfig):
        self.config = config
        self.max_attempts = config.upload_max_attempts
        self.backoff_base = config.upload_backoff_base_seconds
        self._sleep = asyncio.sleep
        self.logger = logger.bind(component="blob_store", backend=self.backend_name)

    backend_name = "abstract"

    @abstractmethod
    async def put(self, key: str, content: bytes, metadata: Dict[str, str]) -> str:
        """Store the bytes under the key and return a URL"""

    @abstractmethod
    async def presigned_url(self, key: str, expires_in: Optional[int] = None) -> str:
        ...

    @abstractmethod
    async def delete(self, key: str):
        ...

    def build_key(self, name: str) -> str:
        safe_name = _UNSAFE_NAME.sub("_", name or "photo.jpg").strip("_") or "photo.jpg"
        return f"{self.config.key_prefix}/{int(time.time() * 1000)}-{uuid.uuid4()}-{safe_name}"

    async def upload(
        self,
        content: bytes,
        name: str,
        metadata: Optional[Dict] = None
    ) -> BlobReference:
        """
        Upload bytes, retrying with exponential backoff

        Raises:
            UploadError: every attempt failed
        """
        metadata = {
            str(k): str(v) for k, v in (metadata or {}).items() if v is not None
        }
        metadata.setdefault("original_name", name)
        metadata.setdefault("uploaded_at", datetime.utcnow().isoformat())

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            key = self.build_key(name)
            try:
                url = await self.put(key, content, metadata)
                self.logger.debug("Uploaded blob", key=key, attempt=attempt)
                return BlobReference(url=url, key=key)
            except Exception as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.backoff_base * (2 ** (attempt - 1))
                self.logger.warning(
                    "Upload attempt failed, retrying",
                    name=name,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e)
                )
                await self._sleep(delay)

        raise UploadError(
            f"Upload of {name} failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    async def upload_many(
        self,
        requests: List[UploadRequest],
        concurrency: int,
        on_complete: Optional[Callable[[UploadOutcome], None]] = None
    ) -> List[UploadOutcome]:
        """
        Upload every request with a bounded pool

        Returns one outcome per request in completion order. Callers must
        correlate by item_id, not by position.
        """
        semaphore = asyncio.Semaphore(concurrency)
        outcomes: List[UploadOutcome] = []

        async def run(request: UploadRequest):
            async with semaphore:
                try:
                    reference = await self.upload(request.content, request.name, request.metadata)
                    outcome = UploadOutcome(item_id=request.item_id, reference=reference)
                except Exception as e:
                    self.logger.warning(
                        "Failed to upload item",
                        item_id=request.item_id,
                        error=str(e)
                    )
                    outcome = UploadOutcome(item_id=request.item_id, error=str(e))

            outcomes.append(outcome)
            if on_complete:
                on_complete(outcome)

        await asyncio.gather(*(run(request) for request in requests))

        succeeded = sum(1 for o in outcomes if o.ok)
        self.logger.info(
            "Uploads finished",
            uploaded=succeeded,
            requested=len(requests),
            dropped=len(requests) - succeeded
        )
        return outcomes


class S3BlobStore(BlobStore):
    """Amazon S3 or any S3-compatible endpoint"""

    backend_name = "s3"

    def __init__(self, config: StorageConfig, client=None):
        super().__init__(config)
        self.bucket = config.s3_bucket_name

        if client is None:
            kwargs = {"region_name": config.aws_region}
            if config.s3_endpoint_url:
                kwargs["endpoint_url"] = config.s3_endpoint_url
            client = boto3.client("s3", **kwargs)
        self.client = client

    def _object_url(self, key: str) -> str:
        if self.config.s3_endpoint_url:
            return f"{self.config.s3_endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.config.aws_region}.amazonaws.com/{key}"

    async def put(self, key: str, content: bytes, metadata: Dict[str, str]) -> str:
        # boto3 is blocking
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=content,
            ContentType="image/jpeg",
            Metadata=metadata,
        )
        return self._object_url(key)

    async def presigned_url(self, key: str, expires_in: Optional[int] = None) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in or self.config.presigned_url_expiry_seconds,
        )

    async def delete(self, key: str):
        await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        self.logger.info("Deleted blob", key=key)


class LocalBlobStore(BlobStore):
    """Files on local disk served under a public base URL"""

    backend_name = "local"

    def __init__(self, config: StorageConfig):
        super().__init__(config)
        self.root = Path(config.local_storage_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / Path(key).name

    def _public_url(self, key: str) -> str:
        return f"{self.config.public_base_url.rstrip('/')}/{Path(key).name}"

    async def put(self, key: str, content: bytes, metadata: Dict[str, str]) -> str:
        await asyncio.to_thread(self._path(key).write_bytes, content)
        return self._public_url(key)

    async def presigned_url(self, key: str, expires_in: Optional[int] = None) -> str:
        # Local files are served without signing
        return self._public_url(key)

    async def delete(self, key: str):
        path = self._path(key)
        if path.exists():
            path.unlink()
            self.logger.info("Deleted blob", key=key)


def create_blob_store(config: StorageConfig) -> BlobStore:
    if config.storage_backend == "s3":
        return S3BlobStore(config)
    logger.info("Using local file storage for photos", directory=str(config.local_storage_dir))
    return LocalBlobStore(config)
