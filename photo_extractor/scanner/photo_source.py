"""
Google Photos Library client
Paginated enumeration and bounded-concurrency downloads of remote items
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional
import aiohttp
import structlog

from photo_extractor.core.config import PhotoSourceConfig
from photo_extractor.core.errors import (
    CredentialRefreshError, DownloadError, EnumerationError
)
from photo_extractor.scanner.credentials import CredentialProvider, TokenGrant

logger = structlog.get_logger()

THUMBNAIL = "thumbnail"
ORIGINAL = "original"


@dataclass
class RemoteItem:
    """Metadata for one item of the remote library"""

    id: str
    base_url: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    creation_time: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict) -> "RemoteItem":
        media = data.get("mediaMetadata") or {}

        def _int(value):
            try:
                return int(value) if value is not None else None
            except (TypeError, ValueError):
                return None

        return cls(
            id=data["id"],
            base_url=data["baseUrl"],
            filename=data.get("filename"),
            mime_type=data.get("mimeType"),
            width=_int(media.get("width")),
            height=_int(media.get("height")),
            creation_time=media.get("creationTime"),
        )

    def capture_metadata(self) -> Dict:
        """Metadata recorded with a match"""
        return {
            "filename": self.filename,
            "mime_type": self.mime_type,
            "creation_time": self.creation_time,
            "width": self.width,
            "height": self.height,
        }


@dataclass
class DownloadedItem:
    """Downloaded bytes for a remote item"""

    item: RemoteItem
    content: bytes = field(repr=False)

    def release(self):
        """Drop the buffer once it has been evaluated"""
        self.content = b""


class GooglePhotosClient:
    """
    Remote photo source backed by the Google Photos Library API
    Enumeration is not resumable: every call starts from page one
    """

    def __init__(
        self,
        config: PhotoSourceConfig,
        http_session: Optional[aiohttp.ClientSession] = None
    ):
        self.config = config
        self._session = http_session
        self._owns_session = http_session is None
        self.logger = logger.bind(component="photo_source")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token

        Returns:
            TokenGrant with the new token and its absolute expiry
        """
        session = await self._get_session()
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.google_client_id or "",
            "client_secret": self.config.google_client_secret or "",
        }

        try:
            async with session.post(
                self.config.oauth_token_url,
                data=data,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            ) as response:
                payload = await response.json(content_type=None)
                if response.status != 200 or "access_token" not in payload:
                    raise CredentialRefreshError(
                        f"Token endpoint returned {response.status}: "
                        f"{payload.get('error', 'unknown error')}"
                    )
        except aiohttp.ClientError as e:
            raise CredentialRefreshError(f"Token refresh request failed: {e}") from e

        expires_in = int(payload.get("expires_in", 3600))
        return TokenGrant(
            access_token=payload["access_token"],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    async def iter_pages(
        self,
        credentials: CredentialProvider
    ) -> AsyncIterator[List[RemoteItem]]:
        """
        Yield the remote library one page at a time

        Raises:
            EnumerationError: a page could not be fetched
        """
        session = await self._get_session()
        url = f"{self.config.photos_api_url}/mediaItems:search"
        page_token: Optional[str] = None
        page_count = 0
        total = 0

        while True:
            if page_count >= self.config.max_pages:
                self.logger.warning(
                    "Enumeration truncated at page cap",
                    max_pages=self.config.max_pages,
                    items=total
                )
                return

            access_token = await credentials.get_access_token()
            body = {"pageSize": self.config.page_size}
            if page_token:
                body["pageToken"] = page_token

            try:
                async with session.post(
                    url,
                    json=body,
                    headers={"Authorization": f"Bearer {access_token}"},
                    timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
                ) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise EnumerationError(
                            f"Page {page_count + 1} fetch failed with status "
                            f"{response.status}: {text[:200]}"
                        )
                    data = await response.json(content_type=None)
            except aiohttp.ClientError as e:
                raise EnumerationError(f"Page {page_count + 1} fetch failed: {e}") from e
            except asyncio.TimeoutError as e:
                raise EnumerationError(f"Page {page_count + 1} fetch timed out") from e

            items = []
            for raw in data.get("mediaItems") or []:
                try:
                    items.append(RemoteItem.from_api(raw))
                except KeyError:
                    self.logger.warning("Skipping malformed media item", item=raw.get("id"))

            page_count += 1
            total += len(items)
            page_token = data.get("nextPageToken")

            self.logger.debug("Fetched page", page=page_count, total=total)
            yield items

            # Small delay to respect rate limits
            await asyncio.sleep(self.config.page_delay_seconds)

            if not page_token:
                break

        self.logger.info("Enumeration complete", pages=page_count, items=total)

    async def enumerate(self, credentials: CredentialProvider) -> AsyncIterator[RemoteItem]:
        """Lazy sequence of every item in the library"""
        async for page in self.iter_pages(credentials):
            for item in page:
                yield item

    async def download(
        self,
        item: RemoteItem,
        size: str,
        credentials: CredentialProvider
    ) -> bytes:
        """Download one item as a thumbnail or at original resolution"""
        if size == ORIGINAL:
            url = f"{item.base_url}=d"
            timeout = self.config.original_timeout_seconds
            max_bytes = self.config.max_original_bytes
        else:
            edge = self.config.thumbnail_size
            url = f"{item.base_url}=w{edge}-h{edge}"
            timeout = self.config.request_timeout_seconds
            max_bytes = None

        access_token = await credentials.get_access_token()
        session = await self._get_session()

        try:
            async with session.get(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status != 200:
                    raise DownloadError(f"Download of {item.id} returned {response.status}")
                if max_bytes and response.content_length and response.content_length > max_bytes:
                    raise DownloadError(f"Item {item.id} exceeds {max_bytes} bytes")
                content = await response.read()
        except aiohttp.ClientError as e:
            raise DownloadError(f"Download of {item.id} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise DownloadError(f"Download of {item.id} timed out") from e

        if max_bytes and len(content) > max_bytes:
            raise DownloadError(f"Item {item.id} exceeds {max_bytes} bytes")
        return content

    async def download_many(
        self,
        items: List[RemoteItem],
        concurrency: int,
        size: str,
        credentials: CredentialProvider
    ) -> List[DownloadedItem]:
        """
        Download every item with a bounded pool

        Every item is attempted and failures never cancel siblings. Only
        successes are returned, so the result can be shorter than the input.
        """
        if not items:
            return []

        semaphore = asyncio.Semaphore(concurrency)

        async def fetch(item: RemoteItem) -> DownloadedItem:
            async with semaphore:
                content = await self.download(item, size, credentials)
                return DownloadedItem(item=item, content=content)

        settled = await asyncio.gather(
            *(fetch(item) for item in items),
            return_exceptions=True
        )

        results = []
        for item, outcome in zip(items, settled):
            if isinstance(outcome, DownloadedItem):
                results.append(outcome)
            elif isinstance(outcome, CredentialRefreshError):
                # Nothing else will succeed either
                raise outcome
            elif isinstance(outcome, Exception):
                self.logger.warning(
                    "Failed to download item",
                    item_id=item.id,
                    size=size,
                    error=str(outcome)
                )
            else:
                raise outcome

        dropped = len(items) - len(results)
        self.logger.info(
            "Downloaded items",
            size=size,
            downloaded=len(results),
            requested=len(items),
            dropped=dropped
        )
        return results
