"""Durable job queue with compare-and-set claims and exponential backoff.

Job lifecycle::

    pending -> running -> succeeded
                       -> failed (next_retry_at) -> running -> ...
                       -> abandoned (after max_retries attempts)

A worker owns a job only after flipping it to ``running`` with a conditional
UPDATE that matched exactly one row, so two workers never run the same job.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatcommerce.database import ensure_utc
from chatcommerce.logging_config import get_logger
from chatcommerce.models import Job, RecurringJob
from chatcommerce.services.rate_limiter import CallerContext, RateLimiter
from chatcommerce.services.result import Result

logger = get_logger("job_queue")

BACKOFF_SECONDS = (60, 300, 900)
DEFAULT_MAX_RETRIES = 3
DEFAULT_BATCH_SIZE = 50


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


# Handlers receive the job args. They either raise, return a failed Result,
# or return anything else (stored as the result summary).
JobHandler = Callable[[dict[str, Any]], Any]


class UnknownHookError(Exception):
    pass


class JobNotFound(Exception):
    pass


class InvalidJobState(Exception):
    pass


def backoff_for(retry_count: int) -> int:
    """Delay before the next attempt after ``retry_count`` failures (1-based)."""
    index = min(max(retry_count, 1), len(BACKOFF_SECONDS)) - 1
    return BACKOFF_SECONDS[index]


def _summarize(value: Any) -> Any:
    if isinstance(value, Result):
        return value.summary()
    if value is None or isinstance(value, (dict, list, str, int, float, bool)):
        return {"ok": True, "value": value}
    return {"ok": True, "value": str(value)}


def _owned_claim(job: Job) -> tuple:
    """Row filter matching only the running claim ``job`` was handed out under."""
    return (
        Job.id == job.id,
        Job.status == JobStatus.RUNNING.value,
        Job.claim_token == job.claim_token,
    )


class JobQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        rate_limiter: Optional[RateLimiter] = None,
        alert: Optional[Callable[[str, dict], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self._session_factory = session_factory
        self._rate_limiter = rate_limiter
        self._alert = alert
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: dict[str, JobHandler] = {}
        self.default_max_retries = default_max_retries

    # --- registration -------------------------------------------------

    def register_handler(self, hook: str, handler: JobHandler) -> None:
        if hook in self._handlers:
            raise ValueError(f"Handler already registered for hook {hook!r}")
        self._handlers[hook] = handler

    def now(self) -> datetime:
        return self._clock()

    # --- enqueueing ---------------------------------------------------

    def _check_dispatch(self, hook: str, caller: CallerContext) -> None:
        if hook not in self._handlers:
            raise UnknownHookError(f"No handler registered for hook {hook!r}")
        if self._rate_limiter is not None:
            self._rate_limiter.check(caller)

    def enqueue(
        self,
        db: Session,
        hook: str,
        args: Optional[dict[str, Any]] = None,
        *,
        at: Optional[datetime] = None,
        caller: CallerContext = CallerContext.INTERNAL,
        max_retries: Optional[int] = None,
        recurring_id: Optional[str] = None,
    ) -> str:
        """Add a job inside the caller's transaction. Does not commit."""
        if hook not in self._handlers:
            raise UnknownHookError(f"No handler registered for hook {hook!r}")
        now = self.now()
        job = Job(
            hook=hook,
            args=dict(args or {}),
            caller=CallerContext(caller).value,
            status=JobStatus.PENDING.value,
            retry_count=0,
            max_retries=max_retries if max_retries is not None else self.default_max_retries,
            scheduled_at=at or now,
            recurring_id=recurring_id,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        db.flush()
        return job.id

    def dispatch(
        self,
        hook: str,
        args: Optional[dict[str, Any]] = None,
        *,
        caller: CallerContext = CallerContext.INTERNAL,
        max_retries: Optional[int] = None,
    ) -> str:
        """Enqueue for immediate execution. Returns the job id."""
        return self.schedule(hook, args, None, caller=caller, max_retries=max_retries)

    def schedule(
        self,
        hook: str,
        args: Optional[dict[str, Any]],
        at: Optional[datetime],
        *,
        caller: CallerContext = CallerContext.INTERNAL,
        max_retries: Optional[int] = None,
    ) -> str:
        """Enqueue for execution at or after ``at``."""
        self._check_dispatch(hook, caller)
        db = self._session_factory()
        try:
            job_id = self.enqueue(db, hook, args, at=at, caller=caller, max_retries=max_retries)
            db.commit()
        finally:
            db.close()
        logger.info(
            "Job dispatched",
            extra={"context": {"job_id": job_id, "hook": hook, "caller": CallerContext(caller).value, "at": at}},
        )
        return job_id

    def dispatch_batch(
        self,
        hook: str,
        items: Iterable[Any],
        batch_size: int = DEFAULT_BATCH_SIZE,
        *,
        args: Optional[dict[str, Any]] = None,
        caller: CallerContext = CallerContext.INTERNAL,
    ) -> list[str]:
        """Split ``items`` into fixed-size sub-jobs, all committed together."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        items = list(items)
        if not items:
            return []
        self._check_dispatch(hook, caller)

        chunks = [items[i : i + batch_size] for i in range(0, len(items), batch_size)]
        job_ids = []
        db = self._session_factory()
        try:
            for batch_num, chunk in enumerate(chunks, start=1):
                job_args = dict(args or {})
                job_args.update({"batch": chunk, "batch_num": batch_num, "batch_total": len(chunks)})
                job_ids.append(self.enqueue(db, hook, job_args, caller=caller))
            db.commit()
        finally:
            db.close()

        logger.info(
            "Batch dispatched",
            extra={"context": {"hook": hook, "items": len(items), "batches": len(chunks), "batch_size": batch_size}},
        )
        return job_ids

    # --- recurring triggers ---------------------------------------------

    def schedule_recurring(
        self,
        name: str,
        hook: str,
        args: Optional[dict[str, Any]],
        interval_seconds: int,
        *,
        first_run_at: Optional[datetime] = None,
    ) -> None:
        """Register (or update) a standing periodic trigger."""
        if hook not in self._handlers:
            raise UnknownHookError(f"No handler registered for hook {hook!r}")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        db = self._session_factory()
        try:
            recurring = db.get(RecurringJob, name)
            if recurring is None:
                recurring = RecurringJob(
                    name=name,
                    hook=hook,
                    args=dict(args or {}),
                    interval_seconds=interval_seconds,
                    next_run_at=first_run_at or self.now(),
                    enabled=True,
                )
                db.add(recurring)
            else:
                recurring.hook = hook
                recurring.args = dict(args or {})
                recurring.interval_seconds = interval_seconds
                recurring.enabled = True
            try:
                db.commit()
            except IntegrityError:
                # Another process registered it first.
                db.rollback()
        finally:
            db.close()

    def fire_recurring(self) -> list[str]:
        """Enqueue one job for every recurring trigger that is due."""
        now = self.now()
        fired = []
        db = self._session_factory()
        try:
            due = (
                db.query(RecurringJob)
                .filter(RecurringJob.enabled.is_(True), RecurringJob.next_run_at <= now)
                .all()
            )
            for recurring in due:
                if recurring.hook not in self._handlers:
                    logger.warning("Recurring job has no handler", extra={"context": {"name": recurring.name}})
                    continue

                in_flight = (
                    db.query(Job.id)
                    .filter(
                        Job.recurring_id == recurring.name,
                        Job.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value, JobStatus.FAILED.value]),
                    )
                    .first()
                )
                next_run_at = now + timedelta(seconds=recurring.interval_seconds)
                advanced = (
                    db.query(RecurringJob)
                    .filter(RecurringJob.name == recurring.name, RecurringJob.next_run_at == recurring.next_run_at)
                    .update(
                        {RecurringJob.next_run_at: next_run_at, RecurringJob.last_run_at: now},
                        synchronize_session=False,
                    )
                )
                if advanced != 1 or in_flight is not None:
                    continue
                fired.append(self.enqueue(db, recurring.hook, recurring.args, recurring_id=recurring.name))
            db.commit()
        finally:
            db.close()

        if fired:
            logger.info("Recurring jobs fired", extra={"context": {"count": len(fired)}})
        return fired

    # --- execution ----------------------------------------------------

    def _due_filter(self, now: datetime):
        return or_(
            and_(Job.status == JobStatus.PENDING.value, Job.scheduled_at <= now),
            and_(Job.status == JobStatus.FAILED.value, Job.next_retry_at <= now),
        )

    def claim(self, db: Session, job_id: str, now: datetime) -> bool:
        """Compare-and-set a due job to running. True if this caller owns it."""
        claimed = (
            db.query(Job)
            .filter(Job.id == job_id, self._due_filter(now))
            .update(
                {
                    Job.status: JobStatus.RUNNING.value,
                    Job.started_at: now,
                    Job.claim_token: uuid.uuid4().hex,
                    Job.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return claimed == 1

    def claim_due(self, limit: int = 10) -> list[Job]:
        now = self.now()
        db = self._session_factory()
        try:
            candidate_ids = [
                row.id
                for row in db.query(Job.id).filter(self._due_filter(now)).order_by(Job.scheduled_at).limit(limit).all()
            ]
            claimed_ids = [job_id for job_id in candidate_ids if self.claim(db, job_id, now)]
            if not claimed_ids:
                return []
            jobs = db.query(Job).filter(Job.id.in_(claimed_ids)).order_by(Job.scheduled_at).all()
            for job in jobs:
                db.expunge(job)
            return jobs
        finally:
            db.close()

    def run_job(self, job: Job) -> JobStatus:
        """Execute a job this worker has claimed and record the outcome."""
        handler = self._handlers.get(job.hook)
        error: Optional[str] = None
        summary: Any = None

        if handler is None:
            error = f"No handler registered for hook {job.hook!r}"
        else:
            try:
                outcome = handler(dict(job.args or {}))
            except Exception as exc:
                logger.warning(
                    "Job handler raised",
                    exc_info=True,
                    extra={"context": {"job_id": job.id, "hook": job.hook, "error": str(exc)}},
                )
                error = f"{type(exc).__name__}: {exc}"
            else:
                if isinstance(outcome, Result) and not outcome.ok:
                    error = outcome.error or outcome.error_code or "failed"
                else:
                    summary = _summarize(outcome)

        db = self._session_factory()
        try:
            if error is None:
                return self._mark_succeeded(db, job, summary)
            return self._record_failure(db, job, error)
        finally:
            db.close()

    def run_due_jobs(self, limit: int = 10) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self.claim_due(limit):
            status = self.run_job(job)
            counts[status.value] = counts.get(status.value, 0) + 1
        return counts

    def _mark_succeeded(self, db: Session, job: Job, summary: Any) -> JobStatus:
        now = self.now()
        updated = db.query(Job).filter(*_owned_claim(job)).update(
            {
                Job.status: JobStatus.SUCCEEDED.value,
                Job.result: summary,
                Job.finished_at: now,
                Job.next_retry_at: None,
                Job.last_error: None,
                Job.updated_at: now,
            },
            synchronize_session=False,
        )
        db.commit()
        if updated != 1:
            logger.warning(
                "Job outcome lost, claim no longer held",
                extra={"context": {"job_id": job.id, "hook": job.hook, "outcome": JobStatus.SUCCEEDED.value}},
            )
            current = db.get(Job, job.id, populate_existing=True)
            return JobStatus(current.status) if current is not None else JobStatus.SUCCEEDED
        logger.info("Job succeeded", extra={"context": {"job_id": job.id, "hook": job.hook}})
        return JobStatus.SUCCEEDED

    def _record_failure(self, db: Session, job: Job, error: str) -> JobStatus:
        now = self.now()
        retry_count = (job.retry_count or 0) + 1
        max_retries = job.max_retries if job.max_retries is not None else self.default_max_retries
        context = {
            "job_id": job.id,
            "hook": job.hook,
            "retry_count": retry_count,
            "max_retries": max_retries,
            "error": error[:500],
        }

        if retry_count < max_retries:
            delay = backoff_for(retry_count)
            values = {
                Job.status: JobStatus.FAILED.value,
                Job.retry_count: retry_count,
                Job.next_retry_at: now + timedelta(seconds=delay),
                Job.last_error: error,
                Job.updated_at: now,
            }
            status = JobStatus.FAILED
        else:
            values = {
                Job.status: JobStatus.ABANDONED.value,
                Job.retry_count: retry_count,
                Job.next_retry_at: None,
                Job.last_error: error,
                Job.finished_at: now,
                Job.updated_at: now,
            }
            status = JobStatus.ABANDONED

        updated = (
            db.query(Job)
            .filter(*_owned_claim(job))
            .update(values, synchronize_session=False)
        )
        db.commit()
        if updated != 1:
            logger.warning("Job outcome lost, claim no longer held", extra={"context": context})
            current = db.get(Job, job.id, populate_existing=True)
            return JobStatus(current.status) if current is not None else status

        if status == JobStatus.FAILED:
            logger.warning("Job failed, retry scheduled", extra={"context": {**context, "retry_in_seconds": delay}})
        else:
            logger.error("Job abandoned", extra={"context": context})
            if self._alert is not None:
                try:
                    self._alert("Job abandoned", context)
                except Exception as exc:
                    logger.error("Abandoned-job alert failed", extra={"context": {"job_id": job.id, "error": str(exc)}})
        return status

    def requeue_stale(self, older_than_seconds: int) -> int:
        """Treat jobs stuck in ``running`` (crashed worker) as failed attempts."""
        cutoff = self.now() - timedelta(seconds=older_than_seconds)
        db = self._session_factory()
        try:
            stale = (
                db.query(Job)
                .filter(Job.status == JobStatus.RUNNING.value, Job.started_at < cutoff)
                .all()
            )
            for job in stale:
                self._record_failure(db, job, "stale: worker did not finish the job")
        finally:
            db.close()
        if stale:
            logger.warning("Stale jobs requeued", extra={"context": {"count": len(stale)}})
        return len(stale)

    # --- inspection and admin -------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        db = self._session_factory()
        try:
            job = db.get(Job, job_id)
            if job is not None:
                db.expunge(job)
            return job
        finally:
            db.close()

    def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> list[Job]:
        db = self._session_factory()
        try:
            query = db.query(Job)
            if status:
                query = query.filter(Job.status == JobStatus(status).value)
            jobs = query.order_by(Job.created_at.desc(), Job.scheduled_at.desc()).limit(limit).all()
            for job in jobs:
                db.expunge(job)
            return jobs
        finally:
            db.close()

    def pending_counts(self) -> dict[str, int]:
        db = self._session_factory()
        try:
            rows = db.query(Job.status, func.count(Job.id)).group_by(Job.status).all()
        finally:
            db.close()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def retry_job(self, job_id: str) -> Job:
        """Put an abandoned or failed job back in the queue with a fresh retry budget."""
        now = self.now()
        db = self._session_factory()
        try:
            job = db.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            revived = (
                db.query(Job)
                .filter(
                    Job.id == job_id,
                    Job.status.in_([JobStatus.ABANDONED.value, JobStatus.FAILED.value]),
                )
                .update(
                    {
                        Job.status: JobStatus.PENDING.value,
                        Job.retry_count: 0,
                        Job.next_retry_at: None,
                        Job.finished_at: None,
                        Job.scheduled_at: now,
                        Job.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if revived != 1:
                raise InvalidJobState(f"Job {job_id} is {job.status}, only failed or abandoned jobs can be retried")
            db.commit()
            db.refresh(job)
            db.expunge(job)
        finally:
            db.close()
        logger.info("Job manually retried", extra={"context": {"job_id": job_id, "hook": job.hook}})
        return job


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "hook": job.hook,
        "args": job.args,
        "caller": job.caller,
        "status": job.status,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "scheduled_at": ensure_utc(job.scheduled_at),
        "next_retry_at": ensure_utc(job.next_retry_at),
        "started_at": ensure_utc(job.started_at),
        "finished_at": ensure_utc(job.finished_at),
        "last_error": job.last_error,
        "result": job.result,
    }
