import json
import logging
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from scopegen.db import RunHistory, get_session, utcnow

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
PROVIDER_LOGGERS = ("botocore", "boto3", "httpx", "openai", "stripe")
SCRUBBED_HEADERS = {"authorization", "cookie", "x-mobile-api-key", "stripe-signature"}

_logger = logging.getLogger("scopegen")
_event_logger = logging.getLogger("scopegen.events")
_initialized = False


def scrub_event(event: Dict[str, Any], hint: Any = None) -> Dict[str, Any]:
    """Sentry ``before_send`` hook: drop credentials from captured request headers."""
    headers = (event.get("request") or {}).get("headers") or {}
    for name in list(headers):
        if name.lower() in SCRUBBED_HEADERS:
            headers[name] = "[redacted]"
    return event


def init_monitoring() -> None:
    global _initialized
    if _initialized:
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for name in PROVIDER_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        _logger.info("SENTRY_DSN not set; exceptions are only logged")
        _initialized = True
        return

    environment = os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development"))
    sentry_sdk.init(
        dsn=dsn,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        environment=environment,
        release=os.getenv("SCOPEGEN_RELEASE"),
        send_default_pii=False,
        before_send=scrub_event,
    )
    sentry_sdk.set_tag("service", "scopegen-api")
    _logger.info("Sentry initialized (%s)", environment)
    _initialized = True


def log_event(name: str, **fields: Any) -> None:
    """Emit one JSON line for a business event (job created, photo analysed, ...)."""
    record = {"event": name, "ts": utcnow().isoformat(), **fields}
    _event_logger.info(json.dumps(record, default=str, sort_keys=True))


async def record_run(
    *,
    stage: str,
    user_id: Optional[str],
    job_id: Optional[int],
    success: bool,
    duration_ms: float,
    error_text: Optional[str] = None,
) -> None:
    entry = RunHistory(
        user_id=user_id,
        job_id=job_id,
        stage=stage,
        success=success,
        error_text=error_text[:1024] if error_text else None,
        duration_ms=duration_ms,
    )
    async with get_session() as session:
        session.add(entry)
        await session.commit()


def capture_exception(exc: BaseException, **tags: Any) -> None:
    """Log an unexpected error and forward it to Sentry tagged with job/photo/event ids."""
    _logger.error("Exception captured %s", tags or "", exc_info=exc)
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            if value is not None:
                scope.set_tag(key, value)
        sentry_sdk.capture_exception(exc)
