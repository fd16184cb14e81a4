"""
Job Run Tracking

Status lifecycle of a pipeline run:

    PENDING -> RUNNING -> SUCCESS
                       -> FAILED -> RETRYING -> RUNNING

Any other move raises ``InvalidJobTransition``.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from growth_marts.database.connection import Database
from growth_marts.database.models import JobRun, JobStatus

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCESS, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.RETRYING}),
    JobStatus.RETRYING: frozenset({JobStatus.RUNNING}),
    JobStatus.SUCCESS: frozenset(),
}


class InvalidJobTransition(Exception):
    """Raised when a job is moved to a status its lifecycle does not allow"""

    def __init__(self, current: JobStatus, target: JobStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move job from {current.value} to {target.value}")


class JobNotFound(LookupError):
    """Raised when a job id does not exist"""


def check_transition(current: JobStatus, target: JobStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidJobTransition(current, target)


async def create_job(session: AsyncSession, job_name: str) -> JobRun:
    """Insert a PENDING job run"""
    job = JobRun(job_name=job_name, status=JobStatus.PENDING, rows_loaded=0)
    session.add(job)
    await session.flush()
    return job


async def transition(
    session: AsyncSession,
    job_id: uuid.UUID,
    target: JobStatus,
    **fields: Any,
) -> JobRun:
    """
    Move a job to ``target`` and set any extra columns.

    Entering RUNNING stamps ``started_at`` and clears the previous outcome;
    entering SUCCESS or FAILED stamps ``finished_at``.

    Raises:
        JobNotFound: unknown job id
        InvalidJobTransition: move not allowed from the current status
    """
    job = await session.get(JobRun, job_id)
    if job is None:
        raise JobNotFound(str(job_id))

    check_transition(job.status, target)
    previous = job.status
    job.status = target

    now = datetime.utcnow()
    if target is JobStatus.RUNNING:
        job.started_at = now
        job.finished_at = None
        job.duration_ms = None
        job.error_detail = None
    elif target in (JobStatus.SUCCESS, JobStatus.FAILED):
        job.finished_at = now

    for name, value in fields.items():
        setattr(job, name, value)

    await session.flush()
    logger.info(
        "Job status changed",
        job_id=str(job_id),
        job_name=job.job_name,
        previous=previous.value,
        status=target.value,
    )
    return job


async def mark_retrying(db: Database, job_id: uuid.UUID) -> JobRun:
    """Flag a FAILED run for another attempt; the next run_pipeline call resumes it"""
    async with db.session() as session:
        return await transition(session, job_id, JobStatus.RETRYING)


async def get_job(db: Database, job_id: uuid.UUID) -> Optional[JobRun]:
    async with db.session() as session:
        return await session.get(JobRun, job_id)
