"""
OAuth credential handling for the remote photo source
Decrypts stored credentials and keeps the access token fresh during a scan
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
import structlog
from cryptography.fernet import Fernet, InvalidToken

from photo_extractor.core.errors import CredentialError, CredentialRefreshError

logger = structlog.get_logger()


@dataclass
class OAuthCredential:
    """Access/refresh token pair issued by the OAuth handshake"""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True if the token is expired or will be within the margin"""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now < margin

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            # Milliseconds since epoch, as issued by Google client libraries
            "expiry_date": int(self.expires_at.timestamp() * 1000) if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OAuthCredential":
        if not data.get("access_token"):
            raise CredentialError("Credential has no access token")

        expires_at = None
        if data.get("expiry_date"):
            expires_at = datetime.fromtimestamp(
                int(data["expiry_date"]) / 1000, tz=timezone.utc
            )

        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )


@dataclass
class TokenGrant:
    """Result of a refresh-token exchange"""

    access_token: str
    expires_at: datetime


class CredentialCipher:
    """
    Encrypts credentials at rest with Fernet
    Only holders of the master key can resolve a credential reference
    """

    def __init__(self, master_key: str):
        self.cipher = Fernet(master_key.encode() if isinstance(master_key, str) else master_key)

    def encrypt(self, credential: OAuthCredential) -> str:
        return self.cipher.encrypt(json.dumps(credential.to_dict()).encode()).decode()

    def decrypt(self, credential_ref: str) -> OAuthCredential:
        """
        Resolve a credential reference

        Older references hold a bare access token rather than a JSON
        document; those are accepted without refresh capability.
        """
        if not credential_ref:
            raise CredentialError("Credential reference is empty")

        try:
            plaintext = self.cipher.decrypt(credential_ref.encode()).decode()
        except InvalidToken as e:
            raise CredentialError("Credential reference cannot be decrypted") from e

        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError:
            return OAuthCredential(access_token=plaintext)

        if not isinstance(data, dict):
            return OAuthCredential(access_token=plaintext)
        return OAuthCredential.from_dict(data)


class CredentialProvider:
    """
    Hands out a usable access token for the duration of one scan
    Expiry is re-checked before every remote call, not only at scan start
    """

    def __init__(
        self,
        credential: OAuthCredential,
        refresher: Callable[[str], Awaitable[TokenGrant]],
        refresh_margin: timedelta = timedelta(minutes=5)
    ):
        self.credential = credential
        self.refresher = refresher
        self.refresh_margin = refresh_margin
        self.refresh_count = 0
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="credentials")

    async def get_access_token(self) -> str:
        """Return a token with at least the safety margin left"""
        if not self.credential.expires_within(self.refresh_margin):
            return self.credential.access_token

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self.credential.expires_within(self.refresh_margin):
                await self._refresh()
            return self.credential.access_token

    async def _refresh(self):
        if not self.credential.refresh_token:
            raise CredentialRefreshError("Access token expired and no refresh token is available")

        self.logger.info("Access token expired or expiring soon, refreshing")
        try:
            grant = await self.refresher(self.credential.refresh_token)
        except CredentialRefreshError:
            raise
        except Exception as e:
            self.logger.error("Failed to refresh access token", error=str(e))
            raise CredentialRefreshError("OAuth token expired and refresh failed") from e

        # The refreshed token lives only for this run
        self.credential = OAuthCredential(
            access_token=grant.access_token,
            refresh_token=self.credential.refresh_token,
            expires_at=grant.expires_at,
        )
        self.refresh_count += 1
        self.logger.info("Access token refreshed", expires_at=grant.expires_at.isoformat())
