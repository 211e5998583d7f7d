"""
Shared fixtures: a throwaway SQLite database and an in-memory Redis per test
"""

from datetime import datetime, timedelta
import pytest
from fakeredis import FakeServer, aioredis as fake_aioredis
from cryptography.fernet import Fernet

from photo_extractor.core.config import (
    DatabaseConfig, RedisConfig, StorageConfig, WorkerConfig
)
from photo_extractor.core.database import DatabaseManager
from photo_extractor.models.scan import OwnerSession, Scan, ScanStatus
from photo_extractor.scanner.credentials import CredentialCipher, OAuthCredential
from photo_extractor.scanner.job_queue import ScanJobQueue
from photo_extractor.scanner.progress import ProgressTracker
from photo_extractor.scanner.state import ScanStateMachine


@pytest.fixture
async def db(tmp_path):
    manager = DatabaseManager(
        DatabaseConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    )
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
async def redis():
    client = fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def redis_config():
    return RedisConfig(
        redis_url="redis://localhost:6379/15",
        progress_key_prefix="scan:progress",
        progress_ttl_seconds=86400,
        queue_name="test-scans",
    )


@pytest.fixture
def worker_config():
    return WorkerConfig(
        worker_concurrency=1,
        batch_size=100,
        thumbnail_concurrency=5,
        original_concurrency=3,
        upload_concurrency=5,
        progress_every=10,
        match_threshold=0.6,
        max_retries=3,
        retry_backoff_ms=2000,
        stall_timeout_seconds=60,
        poll_interval_seconds=0.01,
        stream_interval_seconds=0.01,
        mock_mode=True,
    )


@pytest.fixture
def storage_config(tmp_path):
    return StorageConfig(
        storage_backend="local",
        local_storage_dir=tmp_path / "uploads",
        public_base_url="http://testserver/uploads/photos",
        upload_max_attempts=3,
        upload_backoff_base_seconds=1.0,
    )


@pytest.fixture
def cipher():
    return CredentialCipher(Fernet.generate_key().decode())


@pytest.fixture
def state(db):
    return ScanStateMachine(db)


@pytest.fixture
def tracker(redis, db, redis_config):
    return ProgressTracker(redis, db, redis_config)


@pytest.fixture
def queue(redis, redis_config, worker_config):
    return ScanJobQueue(redis, redis_config, worker_config)


@pytest.fixture
def fingerprints():
    return [[0.1, 0.2, 0.3, 0.4], [0.4, 0.3, 0.2, 0.1]]


@pytest.fixture
def make_scan(db, cipher, fingerprints):
    """Insert a session plus a scan and return the scan id"""

    async def _make(
        status: str = ScanStatus.PENDING,
        credential: OAuthCredential = None,
        expired_session: bool = False,
        **scan_fields
    ) -> str:
        credential = credential or OAuthCredential(
            access_token="access-token",
            refresh_token="refresh-token",
        )
        async with db.get_session() as session:
            owner = OwnerSession(
                creator_name="Owner",
                creator_email="owner@example.com",
                reference_fingerprints=fingerprints,
                expires_at=(
                    datetime.utcnow() - timedelta(days=1) if expired_session
                    else datetime.utcnow() + timedelta(days=30)
                ),
            )
            session.add(owner)
            await session.flush()

            scan = Scan(
                session_id=owner.id,
                credential_encrypted=cipher.encrypt(credential),
                status=status,
                **scan_fields
            )
            session.add(scan)
            await session.flush()
            scan.job_id = scan.id
            scan_id = scan.id

        return scan_id

    return _make
