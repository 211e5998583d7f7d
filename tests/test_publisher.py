"""
Test the progress stream publisher
"""

import json
import pytest

from photo_extractor.core.errors import ScanNotFoundError
from photo_extractor.models.scan import ScanStatus
from photo_extractor.scanner.progress import ProgressUpdate
from photo_extractor.scanner.publisher import (
    PROGRESS_EVENT, TERMINAL_EVENT, ProgressPublisher, sse_frame
)


@pytest.fixture
def publisher(tracker, state):
    return ProgressPublisher(tracker, state, interval=0.01)


async def test_failed_scan_yields_exactly_one_terminal_message(publisher, state, make_scan):
    scan_id = await make_scan()
    await state.mark_processing(scan_id)
    await state.mark_failed(scan_id, "OAuth token expired and refresh failed")

    messages = [message async for message in publisher.subscribe(scan_id)]

    assert len(messages) == 1
    message = messages[0]
    assert message.event == TERMINAL_EVENT
    assert message.status == ScanStatus.FAILED
    assert message.error == "OAuth token expired and refresh failed"


async def test_live_scan_reads_snapshot_then_terminates(publisher, tracker, state, make_scan):
    scan_id = await make_scan()
    await state.mark_processing(scan_id)
    await tracker.update(scan_id, ProgressUpdate(
        total_items=237, scanned_items=120, matched_items=4, uploaded_items=0,
        current_batch=2, total_batches=3
    ))

    messages = []
    async for message in publisher.subscribe(scan_id):
        messages.append(message)
        if len(messages) == 2:
            await state.mark_completed(scan_id, {
                "total_items": 237, "scanned_items": 237,
                "matched_items": 9, "uploaded_items": 9,
            })

    assert [m.event for m in messages[:2]] == [PROGRESS_EVENT, PROGRESS_EVENT]
    assert messages[0].scanned_items == 120
    assert messages[0].current_batch == 2
    assert messages[-1].event == TERMINAL_EVENT
    assert messages[-1].uploaded_items == 9
    assert sum(1 for m in messages if m.is_terminal) == 1


async def test_missing_snapshot_falls_back_to_durable_record(publisher, state, make_scan):
    scan_id = await make_scan(
        status=ScanStatus.PROCESSING, total_items=40, scanned_items=10
    )

    message = await publisher.read_progress(scan_id)

    assert message.status == ScanStatus.PROCESSING
    assert message.total_items == 40
    assert message.scanned_items == 10
    assert message.total_batches == 0
    assert message.error is None


async def test_subscriptions_are_independent(publisher, state, make_scan):
    scan_id = await make_scan()
    await state.mark_processing(scan_id)

    first = publisher.subscribe(scan_id)
    second = publisher.subscribe(scan_id)

    assert (await first.__anext__()).event == PROGRESS_EVENT
    await first.aclose()

    await state.mark_cancelled(scan_id)
    remaining = [message async for message in second]
    assert remaining[-1].event == TERMINAL_EVENT
    assert remaining[-1].status == ScanStatus.CANCELLED


async def test_unknown_scan_is_rejected(publisher):
    with pytest.raises(ScanNotFoundError):
        await publisher.read_progress("missing")

    with pytest.raises(ScanNotFoundError):
        async for _ in publisher.subscribe("missing"):
            pass


async def test_sse_frame_encoding(publisher, state, make_scan):
    scan_id = await make_scan()
    await state.mark_processing(scan_id)
    await state.mark_failed(scan_id, "boom")

    frame = sse_frame(await publisher.read_progress(scan_id))

    event_line, data_line, blank, end = frame.split("\n")
    assert event_line == "event: terminal"
    payload = json.loads(data_line[len("data: "):])
    assert payload["scan_id"] == scan_id
    assert payload["error"] == "boom"
    assert set(payload) >= {
        "status", "total_items", "scanned_items", "matched_items",
        "uploaded_items", "current_batch", "total_batches", "timestamp",
    }
    assert blank == end == ""
