"""
Log processing service.

Appends records to an application's hash chain and reads them back.
"""

import json
import logging
import re
import uuid
from typing import Any, List, Mapping, Optional, Tuple

from asyncpg.exceptions import (
    DeadlockDetectedError,
    SerializationError,
    UniqueViolationError,
)
from prometheus_client import Counter

from logchain.config import settings
from logchain.crypto import (
    ZERO_HASH,
    canonical_json,
    compute_log_hash,
    is_finite_json,
    normalize,
)
from logchain.database import Database
from logchain.exceptions import ConfigurationError, LogValidationError, WriteConflictError
from logchain.models import LogRecord, is_allowed_log_type

logger = logging.getLogger(__name__)

append_conflicts = Counter(
    'logchain_append_conflicts_total',
    'Append attempts aborted by a concurrent writer'
)

# Largest value a BIGINT seq column holds
MAX_SEQ = 2 ** 63 - 1

# Serializes appends per application; released at commit/rollback
LOCK_APPLICATION_QUERY = "SELECT pg_advisory_xact_lock(hashtextextended($1::text, 0))"

TAIL_QUERY = """
    SELECT seq, hash
    FROM unified_logs
    WHERE application_id = $1
    ORDER BY seq DESC
    LIMIT 1
"""

INSERT_LOG_QUERY = """
    INSERT INTO unified_logs (
        id, application_id, seq, log_type, payload,
        hash, prev_hash, ip_address, user_agent, created_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, now())
    RETURNING created_at
"""

LOG_COLUMNS = """
    id, application_id, seq, log_type, payload, hash, prev_hash,
    ip_address, user_agent, created_at
"""

GET_LOG_QUERY = f"""
    SELECT {LOG_COLUMNS}
    FROM unified_logs
    WHERE id = $1 AND application_id = $2
"""

CONFLICT_ERRORS = (UniqueViolationError, SerializationError, DeadlockDetectedError)


def require_secret_key(secret_key: Optional[str]) -> str:
    """Fail fast when the chain HMAC key is not configured."""
    if not secret_key:
        raise ConfigurationError("LOG_HASH_KEY missing")
    return secret_key


def validate_log_input(log_type: Optional[str], payload: Any) -> str:
    """
    Validate a log submission before it reaches storage.

    Args:
        log_type: Log type, case-insensitive
        payload: JSON object or array

    Returns:
        The upper-cased log type

    Raises:
        LogValidationError: If the log type or payload is not acceptable
    """
    if not isinstance(log_type, str) or not is_allowed_log_type(log_type):
        raise LogValidationError(
            "Validation failed",
            {"log_type": ["Invalid log_type"]}
        )

    if payload is None or not isinstance(payload, (Mapping, list, tuple)):
        raise LogValidationError(
            "Validation failed",
            {"payload": ["payload must be object/array"]}
        )

    if not is_finite_json(payload):
        raise LogValidationError(
            "Validation failed",
            {"payload": ["payload must not contain NaN or Infinity"]}
        )

    try:
        normalize(payload)
    except TypeError as e:
        raise LogValidationError("Validation failed", {"payload": [str(e)]})

    return log_type.upper()


def row_to_record(row: Mapping[str, Any]) -> LogRecord:
    """Build a LogRecord from a unified_logs row."""
    payload = row['payload']
    if isinstance(payload, str):
        payload = json.loads(payload)

    return LogRecord(
        id=str(row['id']),
        application_id=str(row['application_id']),
        seq=int(row['seq']),
        log_type=row['log_type'],
        payload=payload,
        hash=row['hash'],
        prev_hash=row['prev_hash'],
        ip_address=row.get('ip_address'),
        user_agent=row.get('user_agent'),
        created_at=row.get('created_at'),
    )


async def _append_once(
    application_id: str,
    log_type: str,
    payload: Any,
    secret_key: str,
    db: Database,
    ip_address: Optional[str],
    user_agent: Optional[str]
) -> LogRecord:
    """One locked read-tail / compute / insert transaction."""
    try:
        async with db.transaction() as conn:
            await conn.execute(LOCK_APPLICATION_QUERY, application_id)

            tail = await conn.fetchrow(TAIL_QUERY, application_id)
            last_seq = int(tail['seq']) if tail else 0
            prev_hash = tail['hash'] if tail else ZERO_HASH
            next_seq = last_seq + 1

            payload_json = canonical_json(payload)
            log_hash = compute_log_hash(
                application_id=application_id,
                seq=next_seq,
                log_type=log_type,
                payload=payload,
                prev_hash=prev_hash,
                secret_key=secret_key
            )

            log_id = str(uuid.uuid4())
            created_at = await conn.fetchval(
                INSERT_LOG_QUERY,
                log_id,
                application_id,
                next_seq,
                log_type,
                payload_json,
                log_hash,
                prev_hash,
                ip_address,
                user_agent
            )
    except CONFLICT_ERRORS as e:
        raise WriteConflictError(
            f"Concurrent append for application {application_id}: {e}"
        ) from e

    return LogRecord(
        id=log_id,
        application_id=application_id,
        seq=next_seq,
        log_type=log_type,
        payload=json.loads(payload_json),
        hash=log_hash,
        prev_hash=prev_hash,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=created_at,
    )


async def append_log(
    application_id: str,
    log_type: str,
    payload: Any,
    secret_key: Optional[str],
    db: Database,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    max_attempts: Optional[int] = None
) -> LogRecord:
    """
    Append a log to the end of an application's hash chain.

    The tail read, hash computation and insert run in one transaction
    holding the application's advisory lock, so concurrent appends to the
    same application get consecutive sequence numbers. Appends to other
    applications are not blocked. An attempt aborted by a concurrent
    writer is retried from the tail read.

    Args:
        application_id: Owning application (tenant) ID
        log_type: Log type, case-insensitive
        payload: JSON object or array
        secret_key: HMAC key for the chain
        db: Database connection
        ip_address: Optional client address (not hashed)
        user_agent: Optional client user agent (not hashed)
        max_attempts: Override settings.append_max_attempts

    Returns:
        The stored record

    Raises:
        ConfigurationError: If secret_key is missing
        LogValidationError: If log_type or payload is invalid
        WriteConflictError: If every attempt lost a write race
    """
    secret_key = require_secret_key(secret_key)
    log_type = validate_log_input(log_type, payload)
    application_id = str(application_id)
    attempts = max_attempts or settings.append_max_attempts

    for attempt in range(1, attempts + 1):
        try:
            record = await _append_once(
                application_id, log_type, payload, secret_key, db,
                ip_address, user_agent
            )
        except WriteConflictError:
            append_conflicts.inc()
            if attempt >= attempts:
                logger.error(
                    f"Append failed after {attempt} attempts: application={application_id}"
                )
                raise
            logger.warning(
                f"Append conflict, retrying: application={application_id}, attempt={attempt}"
            )
            continue

        logger.info(
            f"Log stored: id={record.id}, application={application_id}, "
            f"seq={record.seq}, type={log_type}"
        )
        return record

    # attempts >= 1, the loop always returns or raises
    raise WriteConflictError(f"Append failed for application {application_id}")


async def get_log_by_id(
    log_id: str,
    application_id: str,
    db: Database
) -> Optional[LogRecord]:
    """
    Retrieve a single log of an application by ID.

    Args:
        log_id: The log ID
        application_id: The owning application
        db: Database connection

    Returns:
        The record or None if not found
    """
    row = await db.fetchrow(GET_LOG_QUERY, log_id, application_id)
    return row_to_record(row) if row else None


def parse_seq_bounds(
    start_seq: Optional[str],
    end_seq: Optional[str]
) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse optional sequence filter bounds given as decimal strings.

    Raises:
        LogValidationError: If a bound is not a positive integer or start > end
    """
    errors = {}
    bounds = []

    for name, raw in (("start_seq", start_seq), ("end_seq", end_seq)):
        if raw is None or raw == "":
            bounds.append(None)
            continue
        text = str(raw).strip()
        if not re.fullmatch(r"[0-9]+", text) or int(text) < 1:
            errors[name] = [f"{name} must be a positive integer"]
            bounds.append(None)
            continue
        if int(text) > MAX_SEQ:
            errors[name] = [f"{name} must not exceed {MAX_SEQ}"]
            bounds.append(None)
            continue
        bounds.append(int(text))

    start, end = bounds
    if start is not None and end is not None and end < start:
        errors["end_seq"] = ["end_seq must be greater than or equal to start_seq"]

    if errors:
        raise LogValidationError("Validation failed", errors)

    return start, end


def _log_filters(
    application_id: str,
    log_type: Optional[str],
    start_seq: Optional[int],
    end_seq: Optional[int]
) -> Tuple[str, list]:
    conditions = ["application_id = $1"]
    params: List[Any] = [application_id]

    if log_type:
        params.append(log_type.upper())
        conditions.append(f"log_type = ${len(params)}")

    if start_seq is not None:
        params.append(start_seq)
        conditions.append(f"seq >= ${len(params)}")

    if end_seq is not None:
        params.append(end_seq)
        conditions.append(f"seq <= ${len(params)}")

    return " AND ".join(conditions), params


async def list_logs(
    application_id: str,
    db: Database,
    log_type: Optional[str] = None,
    start_seq: Optional[int] = None,
    end_seq: Optional[int] = None,
    limit: int = 20,
    offset: int = 0
) -> Tuple[List[LogRecord], int]:
    """
    List an application's logs, newest first.

    Returns:
        Tuple of (records on this page, total matching count)
    """
    where_clause, params = _log_filters(application_id, log_type, start_seq, end_seq)

    total = await db.fetchval(
        f"SELECT COUNT(*) FROM unified_logs WHERE {where_clause}",
        *params
    )

    rows = await db.fetch(
        f"""
        SELECT {LOG_COLUMNS}
        FROM unified_logs
        WHERE {where_clause}
        ORDER BY seq DESC
        LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
        """,
        *params, limit, offset
    )

    return [row_to_record(r) for r in rows], int(total or 0)

