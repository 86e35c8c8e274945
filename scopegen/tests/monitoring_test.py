import json
import logging

import pytest
from sqlmodel import select

from scopegen import monitoring
from scopegen.db import RunHistory, get_session


def test_scrub_event_redacts_credentials():
    event = {
        "request": {
            "headers": {
                "Authorization": "Bearer secret",
                "X-Mobile-Api-Key": "key",
                "Stripe-Signature": "t=1,v1=abc",
                "Content-Type": "application/json",
            }
        }
    }
    headers = monitoring.scrub_event(event)["request"]["headers"]
    assert headers["Authorization"] == "[redacted]"
    assert headers["X-Mobile-Api-Key"] == "[redacted]"
    assert headers["Stripe-Signature"] == "[redacted]"
    assert headers["Content-Type"] == "application/json"
    assert monitoring.scrub_event({"message": "boom"}) == {"message": "boom"}


def test_log_event_emits_one_json_line(caplog):
    with caplog.at_level(logging.INFO, logger="scopegen.events"):
        monitoring.log_event("mobile.job.create.ok", jobId=7, userId="user-1")
    record = json.loads(caplog.records[-1].getMessage())
    assert record["event"] == "mobile.job.create.ok"
    assert record["jobId"] == 7
    assert "ts" in record


def test_capture_exception_logs_tags_without_sentry(caplog):
    with caplog.at_level(logging.ERROR, logger="scopegen"):
        monitoring.capture_exception(RuntimeError("vision down"), photo_id=3)
    assert "photo_id" in caplog.records[-1].getMessage()
    assert caplog.records[-1].exc_info[0] is RuntimeError


@pytest.mark.asyncio
async def test_record_run_truncates_error_text(database):
    await monitoring.record_run(
        stage="vision", user_id="user-1", job_id=4, success=False, duration_ms=12.5, error_text="x" * 5000
    )
    async with get_session() as session:
        run = (await session.exec(select(RunHistory))).one()
    assert run.stage == "vision"
    assert run.success is False
    assert len(run.error_text) == 1024
