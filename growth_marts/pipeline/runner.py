"""
Pipeline Runner

Runs one batch end to end:

    capture -> normalize -> marts -> cohorts -> validate

Each stage runs in its own transaction, so a failing stage rolls back on its
own and the run can simply be re-invoked from the top. The outcome is
recorded in ``job_runs``:

- every check passes        -> SUCCESS
- a validation check fails  -> FAILED, marts stay queryable
- a stage raises            -> FAILED, exception re-raised
"""

from dataclasses import dataclass, field
import time
from typing import Any, Dict, Iterable, List, Optional
import uuid

import structlog

from growth_marts.analytics.cohorts import build_cohorts
from growth_marts.config.settings import PipelineSettings
from growth_marts.config import get_settings
from growth_marts.database.connection import Database
from growth_marts.database.models import JobStatus
from growth_marts.ingestion.raw_capture import ingest_raw
from growth_marts.quality.validators import CheckResult, validate_marts
from growth_marts.transformation.marts import MartCounts, build_marts
from growth_marts.transformation.staging import StagingCounts, normalize_staging
from .jobs import create_job, transition

logger = structlog.get_logger(__name__)

DEFAULT_JOB_NAME = "growth_etl"


@dataclass
class PipelineResult:
    """Outcome of one pipeline run"""
    job_id: uuid.UUID
    job_name: str
    status: JobStatus
    rows_loaded: int = 0
    duration_ms: int = 0
    staging: StagingCounts = field(default_factory=StagingCounts)
    marts: MartCounts = field(default_factory=MartCounts)
    cohorts: int = 0
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if not c.passed]

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCESS


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def _start_job(db: Database, job_name: str, retry_of: Optional[uuid.UUID]) -> uuid.UUID:
    async with db.session() as session:
        if retry_of is None:
            job = await create_job(session, job_name)
            job_id = job.id
        else:
            job_id = retry_of
        await transition(session, job_id, JobStatus.RUNNING)
    return job_id


async def _finish_job(db: Database, job_id: uuid.UUID, status: JobStatus, **fields: Any) -> None:
    async with db.session() as session:
        await transition(session, job_id, status, **fields)


async def run_pipeline(
    db: Database,
    records: Iterable[Dict[str, Any]],
    job_name: str = DEFAULT_JOB_NAME,
    settings: Optional[PipelineSettings] = None,
    retry_of: Optional[uuid.UUID] = None,
) -> PipelineResult:
    """
    Run every stage over a batch of raw records and record the job outcome.

    Args:
        db: Database handle; each stage opens its own session
        records: Inbound raw records
        job_name: Name stored on the job run
        settings: Business constants (default: application settings)
        retry_of: Resume a job previously marked RETRYING instead of
            creating a new one

    Returns:
        PipelineResult with stage counts and validation checks

    Raises:
        Any stage exception, after the job has been marked FAILED
    """
    settings = settings or get_settings().pipeline
    job_id = await _start_job(db, job_name, retry_of)
    log = logger.bind(job_id=str(job_id), job_name=job_name)
    result = PipelineResult(job_id=job_id, job_name=job_name, status=JobStatus.RUNNING)

    started = time.perf_counter()
    log.info("Pipeline started")

    try:
        async with db.session() as session:
            result.rows_loaded = await ingest_raw(session, records, settings.ingest_batch_size)

        async with db.session() as session:
            result.staging = await normalize_staging(session, settings)

        async with db.session() as session:
            result.marts = await build_marts(session, settings)

        async with db.session() as session:
            result.cohorts = await build_cohorts(session, settings)

        async with db.session() as session:
            result.checks = await validate_marts(session)

    except Exception as e:
        result.duration_ms = _elapsed_ms(started)
        result.status = JobStatus.FAILED
        await _finish_job(
            db,
            job_id,
            JobStatus.FAILED,
            rows_loaded=result.rows_loaded,
            duration_ms=result.duration_ms,
            error_detail={"message": str(e), "error_type": type(e).__name__},
        )
        log.error("Pipeline failed", error=str(e), error_type=type(e).__name__)
        raise

    result.duration_ms = _elapsed_ms(started)
    failed = result.failed_checks
    result.status = JobStatus.FAILED if failed else JobStatus.SUCCESS

    await _finish_job(
        db,
        job_id,
        result.status,
        rows_loaded=result.rows_loaded,
        duration_ms=result.duration_ms,
        error_detail={"failed_checks": [c.as_dict() for c in failed]} if failed else None,
    )

    log.info(
        "Pipeline finished",
        status=result.status.value,
        rows_loaded=result.rows_loaded,
        orders=result.marts.orders,
        cohorts=result.cohorts,
        failed_checks=[c.check for c in failed],
        duration_ms=result.duration_ms,
    )
    return result
