"""
Tests for the application's background loops
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from backend.billing.models import ReconciliationResult
from backend.main import _reconcile_usage


async def wait_for_calls(mock, count):
    for _ in range(200):
        if mock.call_count >= count:
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_usage_reconciliation_repeats_until_cancelled(mocker):
    tracker = mocker.Mock()
    tracker.process_usage_records.return_value = ReconciliationResult(reports_sent=1)

    task = asyncio.create_task(_reconcile_usage(tracker, 0.01))
    await wait_for_calls(tracker.process_usage_records, 2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert tracker.process_usage_records.call_count >= 2


@pytest.mark.asyncio
async def test_usage_reconciliation_survives_database_errors(mocker):
    results = iter([
        OperationalError("SELECT 1", {}, Exception("database is locked")),
        ReconciliationResult(reports_failed=1),
    ])

    def run():
        outcome = next(results, ReconciliationResult())
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    tracker = mocker.Mock()
    tracker.process_usage_records.side_effect = run

    task = asyncio.create_task(_reconcile_usage(tracker, 0.01))
    await wait_for_calls(tracker.process_usage_records, 3)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert tracker.process_usage_records.call_count >= 3
