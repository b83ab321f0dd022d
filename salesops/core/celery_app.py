from celery import Celery

from salesops.core.config import get_settings
from salesops.core.database import SessionLocal
from salesops.sales.jobs import sweep_runner

settings = get_settings()

celery_app = Celery("salesops", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "sales-auto-return-sweep": {
        "task": "salesops.tasks.auto_return_sweep",
        "schedule": float(settings.auto_return_sweep_seconds),
    },
    "sales-mrr-advance-sweep": {
        "task": "salesops.tasks.mrr_advance_sweep",
        "schedule": float(settings.mrr_sweep_seconds),
    },
    "sales-reschedule-reconcile-sweep": {
        "task": "salesops.tasks.reschedule_reconcile_sweep",
        "schedule": float(settings.reschedule_poll_seconds),
    },
}


def _run_sweep(job_type: str) -> dict[str, int | str]:
    session = SessionLocal()
    try:
        result = sweep_runner.run(session, job_type)
        return result.model_dump()
    finally:
        session.close()


@celery_app.task(name="salesops.tasks.auto_return_sweep")
def auto_return_sweep_task() -> dict[str, int | str]:
    return _run_sweep("auto_return")


@celery_app.task(name="salesops.tasks.mrr_advance_sweep")
def mrr_advance_sweep_task() -> dict[str, int | str]:
    return _run_sweep("mrr_advance")


@celery_app.task(name="salesops.tasks.reschedule_reconcile_sweep")
def reschedule_reconcile_sweep_task() -> dict[str, int | str]:
    return _run_sweep("reschedule_reconcile")


@celery_app.task(name="salesops.tasks.ping")
def ping_task() -> str:
    return "pong"
