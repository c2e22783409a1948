"""
Log endpoints - append, queue, read back and verify an application's chain.

All endpoints authenticate the calling application with its API key and
only ever see that application's chain.
"""

import logging
import math
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from prometheus_client import Counter, Histogram

from logchain.auth import get_current_application
from logchain.config import settings
from logchain.database import Database, get_db
from logchain.exceptions import LogValidationError
from logchain.models import (
    ApplicationInfo,
    ChainVerificationResponse,
    ChainVerificationResult,
    LogDetail,
    LogJobResponse,
    LogListResponse,
    LogQueued,
    LogQueuedResponse,
    LogStored,
    LogStoredResponse,
    LogSubmission,
    Pagination,
)
from logchain.services.log_queue import enqueue_log, get_job
from logchain.services.processor import append_log, get_log_by_id, list_logs, parse_seq_bounds
from logchain.services.verifier import verify_chain

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["logs"])

# Prometheus metrics
logs_received = Counter(
    'logchain_logs_received_total',
    'Total log submissions received',
    ['mode']
)
logs_rejected = Counter(
    'logchain_logs_rejected_total',
    'Total log submissions rejected',
    ['reason']
)
append_duration = Histogram(
    'logchain_append_seconds',
    'Synchronous append duration'
)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


@router.post("", response_model=LogStoredResponse, status_code=status.HTTP_201_CREATED)
async def submit_log(
    submission: LogSubmission,
    request: Request,
    application: ApplicationInfo = Depends(get_current_application),
    db: Database = Depends(get_db)
):
    """
    Append a log to the calling application's chain.

    The log is assigned the next sequence number and chained to the
    previous record's hash before the response is sent.

    **Request Body:**
    - `log_type`: One of the allowed log types (case-insensitive)
    - `payload`: JSON object or array

    **Returns:**
    - `id`, `seq`, `created_at` and `log_type` of the stored record
    """
    logs_received.labels(mode="sync").inc()

    try:
        with append_duration.time():
            record = await append_log(
                application_id=application.id,
                log_type=submission.log_type,
                payload=submission.payload,
                secret_key=settings.log_hash_key,
                db=db,
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent")
            )
    except LogValidationError:
        logs_rejected.labels(reason="validation").inc()
        raise

    return LogStoredResponse(
        data=LogStored(
            id=record.id,
            seq=str(record.seq),
            created_at=record.created_at,
            log_type=record.log_type,
        )
    )


@router.post("/queue", response_model=LogQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def queue_log(
    submission: LogSubmission,
    request: Request,
    application: ApplicationInfo = Depends(get_current_application),
    db: Database = Depends(get_db)
):
    """
    Queue a log for asynchronous appending.

    Input is validated immediately; the append itself is done by the
    log worker. Poll `GET /logs/queue/{job_id}` for the outcome.
    """
    logs_received.labels(mode="queued").inc()

    try:
        job_id = await enqueue_log(
            application_id=application.id,
            log_type=submission.log_type,
            payload=submission.payload,
            db=db,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent")
        )
    except LogValidationError:
        logs_rejected.labels(reason="validation").inc()
        raise

    return LogQueuedResponse(
        data=LogQueued(job_id=job_id, log_type=submission.log_type.upper())
    )


@router.get("/queue/{job_id}", response_model=LogJobResponse)
async def get_queued_log(
    job_id: str,
    application: ApplicationInfo = Depends(get_current_application),
    db: Database = Depends(get_db)
):
    """Get the status of a queued log."""
    job = await get_job(job_id, application.id, db) if _is_uuid(job_id) else None
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    return LogJobResponse(data=job)


@router.get("", response_model=LogListResponse)
async def list_application_logs(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    log_type: Optional[str] = Query(default=None),
    start_seq: Optional[str] = Query(default=None),
    end_seq: Optional[str] = Query(default=None),
    application: ApplicationInfo = Depends(get_current_application),
    db: Database = Depends(get_db)
):
    """
    List the calling application's logs, newest first.

    **Query Parameters:**
    - `page`, `limit`: Pagination (limit 1-100)
    - `log_type`: Filter by log type
    - `start_seq`, `end_seq`: Inclusive sequence range
    """
    start, end = parse_seq_bounds(start_seq, end_seq)

    records, total = await list_logs(
        application_id=application.id,
        db=db,
        log_type=log_type,
        start_seq=start,
        end_seq=end,
        limit=limit,
        offset=(page - 1) * limit
    )

    return LogListResponse(
        data=[LogDetail.from_record(r) for r in records],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        )
    )


@router.get("/verify-chain", response_model=ChainVerificationResponse)
async def verify_application_chain(
    start_seq: Optional[str] = Query(default=None),
    end_seq: Optional[str] = Query(default=None),
    application: ApplicationInfo = Depends(get_current_application),
    db: Database = Depends(get_db)
):
    """
    Verify the integrity of the calling application's hash chain.

    Replays the chain (or the inclusive `start_seq`..`end_seq` range) and
    reports every sequence gap, broken link and hash mismatch found.
    An invalid chain is still a 200 response with `valid: false`.
    """
    start, end = parse_seq_bounds(start_seq, end_seq)

    report = await verify_chain(
        application_id=application.id,
        secret_key=settings.log_hash_key,
        db=db,
        start_seq=start,
        end_seq=end
    )

    return ChainVerificationResponse(
        data=ChainVerificationResult(
            application_id=application.id,
            application_name=application.name,
            valid=report.valid,
            total_logs=report.total_logs,
            first_invalid_seq=(
                str(report.first_invalid_seq) if report.first_invalid_seq is not None else None
            ),
            errors=report.errors,
        )
    )


@router.get("/{log_id}")
async def get_log(
    log_id: str,
    application: ApplicationInfo = Depends(get_current_application),
    db: Database = Depends(get_db)
):
    """Retrieve a single log of the calling application by ID."""
    record = await get_log_by_id(log_id, application.id, db) if _is_uuid(log_id) else None
    if record is None:
        raise HTTPException(status_code=404, detail="Log not found")

    return {"success": True, "data": LogDetail.from_record(record)}
