"""
Asynchronous log ingestion using a PostgreSQL job table and LISTEN/NOTIFY.

Submissions are stored as jobs and drained by a worker that calls the
same append path as synchronous ingestion. The worker runs a bounded
number of jobs at once and starts no more than a configured number of
jobs per time window. This replaces the need for Redis/RabbitMQ.
"""

import asyncio
import json
import logging
import signal
import time
import uuid
from collections import deque
from typing import Any, Dict, Optional, Set

import asyncpg
from asyncpg.exceptions import PostgresConnectionError
from prometheus_client import Counter

from logchain.config import settings
from logchain.database import Database, database
from logchain.exceptions import ConfigurationError, LogValidationError, WriteConflictError
from logchain.models import JobStatus, LogJobInfo
from logchain.services.processor import append_log, validate_log_input

logger = logging.getLogger(__name__)

jobs_processed = Counter(
    'logchain_queue_jobs_total',
    'Queued log jobs by outcome',
    ['outcome']
)

INSERT_JOB_QUERY = """
    INSERT INTO log_jobs (
        id, application_id, log_type, payload, ip_address, user_agent,
        status, attempts, max_attempts, available_at
    ) VALUES ($1, $2, $3, $4, $5, $6, 'queued', 0, $7, now())
"""

NOTIFY_QUERY = "SELECT pg_notify($1, $2)"

GET_JOB_QUERY = """
    SELECT id, application_id, log_type, status, attempts, max_attempts,
           log_id, log_seq, last_error, created_at, updated_at
    FROM log_jobs
    WHERE id = $1 AND application_id = $2
"""

CLAIM_JOB_QUERY = """
    UPDATE log_jobs
    SET status = 'processing', attempts = attempts + 1, updated_at = now()
    WHERE id = (
        SELECT id FROM log_jobs
        WHERE status = 'queued' AND available_at <= now()
        ORDER BY created_at
        FOR UPDATE SKIP LOCKED
        LIMIT 1
    )
    RETURNING id, application_id, log_type, payload, ip_address, user_agent,
              attempts, max_attempts
"""

COMPLETE_JOB_QUERY = """
    UPDATE log_jobs
    SET status = 'completed', log_id = $2, log_seq = $3, last_error = NULL, updated_at = now()
    WHERE id = $1
"""

RETRY_JOB_QUERY = """
    UPDATE log_jobs
    SET status = 'queued', available_at = now() + make_interval(secs => $2),
        last_error = $3, updated_at = now()
    WHERE id = $1
"""

FAIL_JOB_QUERY = """
    UPDATE log_jobs
    SET status = 'failed', last_error = $2, updated_at = now()
    WHERE id = $1
"""

RECOVER_STALE_JOBS_QUERY = """
    UPDATE log_jobs
    SET status = 'queued', updated_at = now()
    WHERE status = 'processing' AND updated_at < now() - make_interval(secs => $1)
"""

RETRYABLE_ERRORS = (WriteConflictError, PostgresConnectionError, OSError)


# ============================================================================
# Producer side
# ============================================================================

async def enqueue_log(
    application_id: str,
    log_type: str,
    payload: Any,
    db: Database,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> str:
    """
    Queue a log for asynchronous appending.

    Input is validated here so invalid submissions are rejected
    synchronously instead of failing in the worker.

    Returns:
        The job ID

    Raises:
        LogValidationError: If log_type or payload is invalid
    """
    log_type = validate_log_input(log_type, payload)
    job_id = str(uuid.uuid4())

    async with db.transaction() as conn:
        await conn.execute(
            INSERT_JOB_QUERY,
            job_id,
            str(application_id),
            log_type,
            json.dumps(payload, ensure_ascii=False, allow_nan=False),
            ip_address,
            user_agent,
            settings.job_max_attempts
        )
        # Delivered on commit
        await conn.execute(NOTIFY_QUERY, settings.queue_channel, job_id)

    logger.info(f"Log queued: job={job_id}, application={application_id}, type={log_type}")
    return job_id


async def get_job(job_id: str, application_id: str, db: Database) -> Optional[LogJobInfo]:
    """Fetch a job's status, scoped to the owning application."""
    row = await db.fetchrow(GET_JOB_QUERY, job_id, str(application_id))
    if not row:
        return None

    return LogJobInfo(
        job_id=str(row['id']),
        status=JobStatus(row['status']),
        log_type=row['log_type'],
        attempts=row['attempts'],
        max_attempts=row['max_attempts'],
        log_id=str(row['log_id']) if row['log_id'] else None,
        log_seq=str(row['log_seq']) if row['log_seq'] is not None else None,
        last_error=row['last_error'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


# ============================================================================
# Worker side
# ============================================================================

class RateLimiter:
    """Sliding-window limiter: at most max_calls acquisitions per period seconds."""

    def __init__(self, max_calls: int, period: float, clock=time.monotonic):
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._calls: deque = deque()

    async def acquire(self) -> None:
        while True:
            now = self._clock()
            while self._calls and now - self._calls[0] >= self.period:
                self._calls.popleft()

            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                return

            await asyncio.sleep(self.period - (now - self._calls[0]))


def retry_delay(attempts: int) -> float:
    """Exponential backoff before the next attempt of a job."""
    return settings.job_backoff_seconds * (2 ** (attempts - 1))


class LogWorker:
    """
    Drains the log job queue.

    Wakes up on NOTIFY from enqueue_log and also polls, so jobs queued
    while the worker was down (or delayed for retry) are picked up.
    """

    def __init__(
        self,
        db: Database,
        database_url: Optional[str] = None,
        concurrency: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.db = db
        self.database_url = database_url or settings.asyncpg_dsn
        self.concurrency = concurrency or settings.worker_concurrency
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.worker_rate_limit_max,
            settings.worker_rate_limit_window_seconds
        )
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._listener: Optional[asyncpg.Connection] = None
        self._wakeup = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    async def connect(self):
        """Open the dedicated LISTEN connection."""
        self._listener = await asyncpg.connect(self.database_url)
        await self._listener.add_listener(settings.queue_channel, self._notification_handler)
        logger.info(f"Log worker listening on channel: {settings.queue_channel}")

    async def disconnect(self):
        if self._listener:
            await self._listener.close()
            self._listener = None
            logger.info("Log worker disconnected")

    def _notification_handler(
        self,
        connection: asyncpg.Connection,
        pid: int,
        channel: str,
        payload: str
    ):
        logger.debug(f"Job notification: {payload}")
        self._wakeup.set()

    async def claim_job(self) -> Optional[Dict[str, Any]]:
        """Atomically take the oldest runnable job, if any."""
        row = await self.db.fetchrow(CLAIM_JOB_QUERY)
        return dict(row) if row else None

    async def process_job(self, job: Dict[str, Any]) -> str:
        """
        Append one claimed job's log and record the outcome.

        Returns:
            The job's new status
        """
        job_id = str(job['id'])
        payload = job['payload']
        if isinstance(payload, str):
            payload = json.loads(payload)

        try:
            record = await append_log(
                application_id=str(job['application_id']),
                log_type=job['log_type'],
                payload=payload,
                secret_key=settings.log_hash_key,
                db=self.db,
                ip_address=job.get('ip_address'),
                user_agent=job.get('user_agent')
            )
        except (ConfigurationError, LogValidationError) as e:
            logger.error(f"Job {job_id} failed permanently: {e}")
            await self.db.execute(FAIL_JOB_QUERY, job_id, str(e))
            jobs_processed.labels(outcome="failed").inc()
            return JobStatus.FAILED.value
        except RETRYABLE_ERRORS as e:
            return await self._retry_or_fail(job, e)
        except Exception as e:
            logger.exception(f"Job {job_id} raised unexpectedly: {e}")
            return await self._retry_or_fail(job, e)

        await self.db.execute(COMPLETE_JOB_QUERY, job_id, record.id, record.seq)
        jobs_processed.labels(outcome="completed").inc()
        logger.info(f"Job {job_id} completed: seq={record.seq}, log={record.id}")
        return JobStatus.COMPLETED.value

    async def _retry_or_fail(self, job: Dict[str, Any], error: Exception) -> str:
        job_id = str(job['id'])
        attempts = job['attempts']

        if attempts >= job['max_attempts']:
            logger.error(f"Job {job_id} failed after {attempts} attempts: {error}")
            await self.db.execute(FAIL_JOB_QUERY, job_id, str(error))
            jobs_processed.labels(outcome="failed").inc()
            return JobStatus.FAILED.value

        delay = retry_delay(attempts)
        logger.warning(f"Job {job_id} attempt {attempts} failed, retrying in {delay}s: {error}")
        await self.db.execute(RETRY_JOB_QUERY, job_id, delay, str(error))
        jobs_processed.labels(outcome="retried").inc()
        return JobStatus.QUEUED.value

    async def _run(self, job: Dict[str, Any]):
        try:
            await self.process_job(job)
        except Exception as e:
            # Outcome could not be recorded; the stale-job sweep requeues it
            logger.exception(f"Could not record outcome of job {job['id']}: {e}")
        finally:
            self._semaphore.release()

    async def dispatch_available(self) -> int:
        """Start jobs until the queue is empty. Returns the number started."""
        started = 0
        while self._running:
            await self._semaphore.acquire()
            try:
                job = await self.claim_job()
            except Exception:
                self._semaphore.release()
                raise

            if job is None:
                self._semaphore.release()
                break

            await self.rate_limiter.acquire()
            task = asyncio.create_task(self._run(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1

        return started

    async def recover_stale_jobs(self, older_than_seconds: float = 300.0) -> None:
        """Requeue jobs left in 'processing' by a worker that died."""
        status = await self.db.execute(RECOVER_STALE_JOBS_QUERY, older_than_seconds)
        logger.info(f"Stale job recovery: {status}")

    async def start(self):
        """Run until stop() is called."""
        if not self._listener:
            await self.connect()

        self._running = True
        await self.recover_stale_jobs()

        while self._running:
            try:
                started = await self.dispatch_available()
            except (PostgresConnectionError, OSError) as e:
                logger.error(f"Job dispatch failed: {e}")
                started = 0

            if started == 0:
                try:
                    await asyncio.wait_for(
                        self._wakeup.wait(),
                        timeout=settings.worker_poll_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight jobs...")
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self):
        """Stop dispatching; in-flight jobs finish."""
        self._running = False
        self._wakeup.set()


# ============================================================================
# Worker Runner
# ============================================================================

async def run_worker():
    """Run the log worker until SIGINT/SIGTERM."""
    if not settings.log_hash_key:
        raise ConfigurationError("LOG_HASH_KEY missing")

    await database.connect()
    worker = LogWorker(database)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))

    logger.info(
        f"Log worker started: concurrency={worker.concurrency}, "
        f"rate={settings.worker_rate_limit_max}/{settings.worker_rate_limit_window_seconds}s"
    )

    try:
        await worker.start()
    finally:
        await worker.disconnect()
        await database.disconnect()
        logger.info("Log worker stopped")


def main():
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(run_worker())

