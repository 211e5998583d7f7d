"""
Test scan lifecycle transitions and cancel requests
"""

import pytest

from photo_extractor.core.errors import (
    InvalidTransitionError, ScanAlreadyTerminalError, ScanNotFoundError
)
from photo_extractor.models.scan import Scan, ScanStatus


async def test_happy_path_sets_timestamps_in_order(state, make_scan):
    scan_id = await make_scan()

    await state.mark_processing(scan_id)
    processing = await state.get_scan(scan_id)
    assert processing.status == ScanStatus.PROCESSING
    assert processing.started_at is not None
    assert processing.completed_at is None

    await state.mark_completed(scan_id, {"total_items": 4, "scanned_items": 4})
    completed = await state.get_scan(scan_id)
    assert completed.status == ScanStatus.COMPLETED
    assert completed.total_items == 4
    assert completed.created_at <= completed.started_at <= completed.completed_at


async def test_reentering_processing_keeps_start_time_and_resets_counters(state, make_scan):
    scan_id = await make_scan()

    await state.mark_processing(scan_id)
    first = await state.get_scan(scan_id)

    async with state.db.get_session() as session:
        scan = await session.get(Scan, scan_id)
        scan.scanned_items = 12

    await state.mark_processing(scan_id)
    second = await state.get_scan(scan_id)

    assert second.started_at == first.started_at
    assert second.scanned_items == 0


async def test_no_transition_out_of_terminal_states(state, make_scan):
    for terminal in (ScanStatus.COMPLETED, ScanStatus.FAILED, ScanStatus.CANCELLED):
        scan_id = await make_scan(status=terminal)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await state.mark_processing(scan_id)
        assert exc_info.value.current == terminal

        with pytest.raises(InvalidTransitionError):
            await state.mark_failed(scan_id, "late failure")

        assert (await state.get_scan(scan_id)).status == terminal


async def test_failed_carries_error_text(state, make_scan):
    scan_id = await make_scan()
    await state.mark_processing(scan_id)

    await state.mark_failed(scan_id, "enumeration failed")

    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.FAILED
    assert scan.error_message == "enumeration failed"
    assert scan.to_dict()["error"] == "enumeration failed"


async def test_unknown_scan_is_reported(state):
    with pytest.raises(ScanNotFoundError):
        await state.mark_processing("does-not-exist")

    with pytest.raises(ScanNotFoundError):
        await state.request_cancel("does-not-exist")


async def test_cancel_pending_scan_is_immediate(state, make_scan):
    scan_id = await make_scan()

    status = await state.request_cancel(scan_id)

    assert status == ScanStatus.CANCELLED
    scan = await state.get_scan(scan_id)
    assert scan.status == ScanStatus.CANCELLED
    assert scan.completed_at is not None


async def test_cancel_processing_scan_sets_flag(state, make_scan):
    scan_id = await make_scan()
    await state.mark_processing(scan_id)

    assert not await state.is_cancel_requested(scan_id)
    status = await state.request_cancel(scan_id)

    assert status == ScanStatus.PROCESSING
    assert await state.is_cancel_requested(scan_id)
    assert (await state.get_scan(scan_id)).status == ScanStatus.PROCESSING


async def test_cancel_completed_scan_is_rejected_without_mutation(state, make_scan):
    scan_id = await make_scan(status=ScanStatus.COMPLETED, total_items=7, scanned_items=7)
    before = (await state.get_scan(scan_id)).to_dict()

    with pytest.raises(ScanAlreadyTerminalError):
        await state.request_cancel(scan_id)

    after = await state.get_scan(scan_id)
    assert after.to_dict() == before
    assert after.cancel_requested is False
