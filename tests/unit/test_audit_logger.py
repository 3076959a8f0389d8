"""
Tests for the billing audit trail
"""

from datetime import datetime

import pytest

from backend.core.audit_logger import AuditEventType, AuditLogger

from conftest import FrozenClock


@pytest.mark.asyncio
async def test_failures_are_flagged_for_attention(session_factory):
    clock = FrozenClock(datetime(2024, 1, 15, 12, 0, 0))
    audit = AuditLogger(session_factory, clock=clock)

    await audit.log_webhook_event(AuditEventType.WEBHOOK_PROCESSED, "evt_1", "invoice.paid")
    clock.advance(minutes=1)
    await audit.log_webhook_event(AuditEventType.WEBHOOK_SIGNATURE_FAILED, None,
                                  details={"message": "bad signature"})
    clock.advance(minutes=1)
    await audit.log_system_error("sweep", "database unavailable", resource_id="sweeper")

    flagged = audit.search_events(datetime(2024, 1, 15), datetime(2024, 1, 16), requires_attention=True)
    assert flagged["total"] == 2
    assert [event["event_type"] for event in flagged["events"]] == [
        "system_error", "webhook_signature_failed"
    ]
    assert flagged["events"][0]["severity"] == "error"


@pytest.mark.asyncio
async def test_search_filters_and_pages(session_factory):
    clock = FrozenClock(datetime(2024, 1, 15, 12, 0, 0))
    audit = AuditLogger(session_factory, clock=clock)
    for index in range(3):
        await audit.log_webhook_event(AuditEventType.WEBHOOK_PROCESSED, f"evt_{index}",
                                      "invoice.paid", resource_id="sub_1")
        clock.advance(seconds=1)

    first_page = audit.search_events(
        datetime(2024, 1, 15), datetime(2024, 1, 16),
        event_types=[AuditEventType.WEBHOOK_PROCESSED], resource_id="sub_1", size=2
    )
    assert first_page["total"] == 3
    assert first_page["has_next"] and not first_page["has_prev"]
    assert first_page["events"][0]["details"]["gateway_event_id"] == "evt_2"

    other = audit.search_events(datetime(2024, 1, 15), datetime(2024, 1, 16), resource_id="sub_2")
    assert other["total"] == 0
