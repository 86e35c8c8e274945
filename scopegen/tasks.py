import asyncio
import os

from celery import Celery

from scopegen.drafts.worker import advance_draft, process_pending_drafts
from scopegen.vision.runner import advance_analysis, process_pending_photos


def _get_broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")


celery_app = Celery(
    "scopegen",
    broker=_get_broker_url(),
    backend=os.getenv("CELERY_RESULT_BACKEND", _get_broker_url()),
)
celery_app.conf.beat_schedule = {
    "vision-sweep": {"task": "scopegen.tasks.process_photos_task", "schedule": 15.0},
    "draft-sweep": {"task": "scopegen.tasks.process_drafts_task", "schedule": 10.0},
}


@celery_app.task(name="scopegen.tasks.process_photos_task")
def process_photos_task(limit: int = 10) -> int:
    return asyncio.run(process_pending_photos(limit))


@celery_app.task(name="scopegen.tasks.process_drafts_task")
def process_drafts_task(limit: int = 5) -> int:
    return asyncio.run(process_pending_drafts(limit))


@celery_app.task(name="scopegen.tasks.analyze_job_task")
def analyze_job_task(job_id: int, max_to_process: int = 10) -> int:
    return asyncio.run(advance_analysis(job_id, max_to_process))


@celery_app.task(name="scopegen.tasks.run_draft_task")
def run_draft_task(draft_id: int) -> None:
    asyncio.run(advance_draft(draft_id))
