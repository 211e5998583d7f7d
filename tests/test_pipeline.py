"""
Test the scan pipeline end to end with in-memory collaborators
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List
import pytest
from sqlalchemy import func, select

from photo_extractor.core.errors import (
    CredentialRefreshError, EnumerationError, ScanNotFoundError
)
from photo_extractor.models.scan import MatchedItem, ScanStatus
from photo_extractor.scanner.blob_store import BlobStore
from photo_extractor.scanner.credentials import OAuthCredential, TokenGrant
from photo_extractor.scanner.matcher import Matcher, MatchResult
from photo_extractor.scanner.photo_source import ORIGINAL, DownloadedItem, RemoteItem
from photo_extractor.scanner.pipeline import PipelineOrchestrator
from photo_extractor.scanner.progress import ProgressChannel, ProgressTracker


class FakeSource:
    def __init__(self, total: int, page_size: int = 100, failing=(), failing_originals=()):
        self.items = [
            RemoteItem(
                id=f"item-{i}",
                base_url=f"https://photos.example/item-{i}",
                filename=f"IMG_{i}.jpg",
                mime_type="image/jpeg",
                width=4032,
                height=3024,
            )
            for i in range(total)
        ]
        self.page_size = page_size
        self.failing = set(failing)
        self.failing_originals = set(failing_originals)
        self.enumeration_error = None
        self.download_calls = []

    async def refresh_access_token(self, refresh_token):
        return TokenGrant("refreshed", datetime.now(timezone.utc) + timedelta(hours=1))

    async def iter_pages(self, credentials):
        await credentials.get_access_token()
        if self.enumeration_error:
            raise self.enumeration_error
        for start in range(0, len(self.items), self.page_size):
            yield self.items[start:start + self.page_size]

    async def download_many(self, items, concurrency, size, credentials):
        self.download_calls.append((size, len(items)))
        failing = self.failing_originals if size == ORIGINAL else self.failing
        return [
            DownloadedItem(item=item, content=f"{size}:{item.id}".encode())
            for item in items
            if item.id not in failing
        ]


class EveryTenthMatcher(Matcher):
    """Items whose index is a multiple of ten contain the identity"""

    def __init__(self, threshold=0.6, on_evaluate=None):
        super().__init__(threshold)
        self.evaluated = 0
        self.on_evaluate = on_evaluate

    async def evaluate(self, image_bytes, reference_fingerprints):
        self.evaluated += 1
        if self.on_evaluate:
            await self.on_evaluate(self.evaluated)
        index = int(image_bytes.decode().rsplit("-", 1)[1])
        confidence = 0.9 if index % 10 == 0 else 0.2
        return MatchResult(is_match=confidence >= 0.6, confidence=confidence, faces_detected=1)


class MemoryBlobStore(BlobStore):
    backend_name = "memory"

    def __init__(self, config, failing_names=()):
        super().__init__(config)
        self.failing_names = set(failing_names)
        self.blobs: Dict[str, bytes] = {}

        async def no_wait(delay):
            pass

        self._sleep = no_wait

    async def put(self, key, content, metadata):
        if metadata.get("original_name") in self.failing_names:
            raise ConnectionError("storage unavailable")
        self.blobs[key] = content
        return f"https://blobs.example/{key}"

    async def presigned_url(self, key, expires_in=None):
        return f"https://blobs.example/{key}?signature=test"

    async def delete(self, key):
        self.blobs.pop(key, None)


class RecordingTracker(ProgressTracker):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.updates: List[Dict[str, int]] = []

    async def update(self, scan_id, progress):
        self.updates.append(progress.present())
        await super().update(scan_id, progress)


@pytest.fixture
def recording_tracker(redis, db, redis_config):
    return RecordingTracker(redis, db, redis_config)


@pytest.fixture
def build_pipeline(worker_config, storage_config, recording_tracker, state, db, cipher):
    def _build(source, matcher=None, blob_store=None):
        return PipelineOrchestrator(
            config=worker_config,
            source=source,
            matcher=matcher or EveryTenthMatcher(),
            blob_store=blob_store or MemoryBlobStore(storage_config),
            tracker=recording_tracker,
            state=state,
            db=db,
            cipher=cipher,
        )

    return _build


async def credential_ref(state, scan_id):
    return (await state.get_scan(scan_id)).credential_encrypted


async def count_matches(db, scan_id):
    async with db.get_session() as session:
        result = await session.execute(
            select(func.count(MatchedItem.id)).where(MatchedItem.scan_id == scan_id)
        )
        return result.scalar_one()


async def test_batches_drop_failed_downloads(
    build_pipeline, state, db, make_scan, fingerprints, recording_tracker
):
    source = FakeSource(237, failing={f"item-{i}" for i in range(237) if i % 100 < 5})
    pipeline = build_pipeline(source)
    scan_id = await make_scan()

    result = await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    assert result.status == ScanStatus.COMPLETED
    assert result.total_items == 237
    assert result.scanned_items == 222
    assert result.matched_items == 21
    assert result.uploaded_items == 21

    assert source.download_calls == [
        ("thumbnail", 100), ("thumbnail", 100), ("thumbnail", 37), ("original", 21)
    ]
    assert len(pipeline.blob_store.blobs) == 21

    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.COMPLETED
    assert scan.scanned_items == 222
    assert scan.uploaded_items == await count_matches(db, scan_id)

    snapshot = await recording_tracker.read_snapshot(scan_id)
    assert snapshot.total_batches == 3
    assert snapshot.current_batch == 3
    assert snapshot.uploaded_items == 21


async def test_progress_counters_never_decrease(
    build_pipeline, state, make_scan, fingerprints, recording_tracker
):
    pipeline = build_pipeline(FakeSource(237, failing={"item-7", "item-150"}))
    scan_id = await make_scan()

    await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    updates = recording_tracker.updates
    assert updates
    for name in ("total_items", "scanned_items", "matched_items", "uploaded_items"):
        values = [u[name] for u in updates]
        assert values == sorted(values), name

    for update in updates:
        assert update["scanned_items"] <= update["total_items"]
    assert updates[-1]["scanned_items"] == 235


async def test_matched_items_carry_metadata_and_blob_reference(
    build_pipeline, state, db, make_scan, fingerprints
):
    pipeline = build_pipeline(FakeSource(25))
    scan_id = await make_scan()

    await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    async with db.get_session() as session:
        rows = (await session.execute(
            select(MatchedItem).where(MatchedItem.scan_id == scan_id)
        )).scalars().all()

    assert sorted(row.remote_id for row in rows) == ["item-0", "item-10", "item-20"]
    row = rows[0]
    assert row.confidence == 0.9
    assert row.remote_url.startswith("https://photos.example/")
    assert row.blob_url == f"https://blobs.example/{row.blob_key}"
    assert row.item_metadata["mime_type"] == "image/jpeg"
    assert row.item_metadata["width"] == 4032


async def test_zero_items_completes_without_batches(
    build_pipeline, state, make_scan, fingerprints
):
    source = FakeSource(0)
    pipeline = build_pipeline(source)
    scan_id = await make_scan()

    result = await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    assert result.status == ScanStatus.COMPLETED
    assert result.total_items == 0
    assert result.matched_items == 0
    assert source.download_calls == []
    assert pipeline.blob_store.blobs == {}

    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.COMPLETED
    assert scan.completed_at is not None


async def test_failed_uploads_are_dropped(
    build_pipeline, storage_config, state, db, make_scan, fingerprints
):
    blob_store = MemoryBlobStore(storage_config, failing_names={"IMG_20.jpg"})
    source = FakeSource(50, failing_originals={"item-40"})
    pipeline = build_pipeline(source, blob_store=blob_store)
    scan_id = await make_scan()

    result = await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    assert result.status == ScanStatus.COMPLETED
    assert result.matched_items == 5
    assert result.uploaded_items == 3
    assert await count_matches(db, scan_id) == 3


async def test_enumeration_failure_on_final_attempt_fails_scan(
    build_pipeline, state, make_scan, fingerprints
):
    source = FakeSource(10)
    source.enumeration_error = EnumerationError("Page 1 fetch failed with status 503")
    pipeline = build_pipeline(source)
    scan_id = await make_scan()

    with pytest.raises(EnumerationError):
        await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.FAILED
    assert scan.error_message == "Page 1 fetch failed with status 503"
    assert scan.completed_at is not None


async def test_retryable_failure_before_final_attempt_stays_processing(
    build_pipeline, state, make_scan, fingerprints
):
    source = FakeSource(10)
    source.enumeration_error = EnumerationError("temporarily unavailable")
    pipeline = build_pipeline(source)
    scan_id = await make_scan()

    with pytest.raises(EnumerationError):
        await pipeline.run(
            scan_id, await credential_ref(state, scan_id), fingerprints, final_attempt=False
        )

    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.PROCESSING
    assert scan.error_message is None

    # The retried run starts over and succeeds
    source.enumeration_error = None
    result = await pipeline.run(scan_id, scan.credential_encrypted, fingerprints)
    assert result.status == ScanStatus.COMPLETED
    assert result.total_items == 10


async def test_unrefreshable_credential_fails_scan(
    build_pipeline, state, make_scan, fingerprints
):
    expired = OAuthCredential(
        "old-token", None, datetime.now(timezone.utc) - timedelta(minutes=1)
    )
    pipeline = build_pipeline(FakeSource(10))
    scan_id = await make_scan(credential=expired)

    with pytest.raises(CredentialRefreshError):
        await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.FAILED
    assert "refresh token" in scan.error_message


async def test_cancel_is_honoured_at_batch_boundary(
    build_pipeline, state, make_scan, fingerprints
):
    scan_id = await make_scan()

    async def cancel_on_first(evaluated):
        if evaluated == 1:
            await state.request_cancel(scan_id)

    source = FakeSource(237, failing={"item-1", "item-2", "item-3", "item-4", "item-5"})
    pipeline = build_pipeline(source, matcher=EveryTenthMatcher(on_evaluate=cancel_on_first))

    result = await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    assert result.status == ScanStatus.CANCELLED
    assert result.scanned_items == 95
    assert result.uploaded_items == 0
    assert source.download_calls == [("thumbnail", 100)]
    assert pipeline.blob_store.blobs == {}

    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.CANCELLED
    assert scan.scanned_items == 95


async def test_unknown_scan_fails_fast(build_pipeline, fingerprints):
    pipeline = build_pipeline(FakeSource(3))

    with pytest.raises(ScanNotFoundError):
        await pipeline.run("missing-scan", "irrelevant", fingerprints)


async def test_redelivered_finished_scan_is_left_alone(
    build_pipeline, state, make_scan, fingerprints
):
    source = FakeSource(3)
    pipeline = build_pipeline(source)
    scan_id = await make_scan(status=ScanStatus.COMPLETED, total_items=3, scanned_items=3)

    result = await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    assert result.status == ScanStatus.COMPLETED
    assert result.total_items == 3
    assert source.download_calls == []


class FixedConfidenceMatcher(Matcher):
    def __init__(self, confidence, threshold=0.6):
        super().__init__(threshold)
        self.confidence = confidence

    async def evaluate(self, image_bytes, reference_fingerprints):
        return MatchResult(is_match=True, confidence=self.confidence, faces_detected=1)


async def test_confidence_equal_to_threshold_is_not_a_match(
    build_pipeline, state, db, make_scan, fingerprints, worker_config
):
    matcher = FixedConfidenceMatcher(worker_config.match_threshold)
    pipeline = build_pipeline(FakeSource(12), matcher=matcher)
    scan_id = await make_scan()

    result = await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    assert result.status == ScanStatus.COMPLETED
    assert result.scanned_items == 12
    assert result.matched_items == 0
    assert result.uploaded_items == 0
    assert await count_matches(db, scan_id) == 0


class FlakyMatcher(EveryTenthMatcher):
    """Raises for every third evaluation"""

    async def evaluate(self, image_bytes, reference_fingerprints):
        result = await super().evaluate(image_bytes, reference_fingerprints)
        if self.evaluated % 3 == 0:
            raise RuntimeError("matcher timeout")
        return result


async def test_progress_cadence_counts_evaluated_items(
    build_pipeline, state, make_scan, fingerprints, monkeypatch
):
    published = []
    publish = ProgressChannel.publish

    def record(channel, update):
        published.append(update.scanned_items)
        publish(channel, update)

    monkeypatch.setattr(ProgressChannel, "publish", record)
    pipeline = build_pipeline(FakeSource(30), matcher=FlakyMatcher())
    scan_id = await make_scan()

    result = await pipeline.run(scan_id, await credential_ref(state, scan_id), fingerprints)

    assert result.scanned_items == 20
    assert 10 in published
    assert all(count % 10 == 0 for count in published)
