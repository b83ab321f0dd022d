from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from fastapi import HTTPException, status
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from salesops.context import get_correlation_id, reset_correlation_id, set_correlation_id
from salesops.metrics import observe_job
from salesops.otel import sales_span
from salesops.sales.mrr import MRRScheduler, mrr_scheduler
from salesops.sales.schemas import SweepResultRead
from salesops.sales.tasks import TaskAssignmentEngine, task_engine


logger = logging.getLogger("salesops.jobs")

JOB_TYPES = ("auto_return", "mrr_advance", "reschedule_reconcile")


@dataclass(slots=True)
class SweepJobRunner:
    tasks: TaskAssignmentEngine = field(default_factory=lambda: task_engine)
    mrr: MRRScheduler = field(default_factory=lambda: mrr_scheduler)

    def run(self, session: Session, job_type: str, *, now: datetime | None = None) -> SweepResultRead:
        handler = self._handlers(now).get(job_type)
        if handler is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid job type")

        correlation_id = get_correlation_id() or str(uuid.uuid4())
        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        final_status = "Failed"

        with sales_span("sales.job.run", correlation_id=correlation_id, job_type=job_type) as job_span:
            logger.info("job.started", extra={"job_type": job_type, "status": "Running", "duration_ms": 0.0})
            try:
                result = handler(session)
                final_status = "Succeeded" if result.failed == 0 else "PartiallySucceeded"
                job_span.set_attribute("processed", result.processed)
                job_span.set_attribute("failed", result.failed)
                logger.info(
                    "job.finished",
                    extra={
                        "job_type": job_type,
                        "status": final_status,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "processed": result.processed,
                        "changed": result.changed,
                        "failed": result.failed,
                    },
                )
                return result
            except Exception as exc:
                session.rollback()
                job_span.record_exception(exc)
                job_span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.info(
                    "job.finished",
                    extra={
                        "job_type": job_type,
                        "status": "Failed",
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "error": str(exc)[:500],
                    },
                )
                raise
            finally:
                observe_job(job_type=job_type, status=final_status, duration=time.perf_counter() - started)
                reset_correlation_id(token)

    def _handlers(self, now: datetime | None) -> dict[str, Callable[[Session], SweepResultRead]]:
        return {
            "auto_return": lambda session: self.tasks.run_auto_return_sweep(session, now=now),
            "mrr_advance": lambda session: self.mrr.run_due_advancement_sweep(session, today=now.date() if now else None),
            "reschedule_reconcile": lambda session: self.tasks.run_reschedule_reconcile_sweep(session, now=now),
        }


sweep_runner = SweepJobRunner()
