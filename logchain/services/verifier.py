"""
Chain verification service.

Replays an application's chain and reports every sequence gap, broken
link and hash mismatch it finds. Corruption is reported, never raised.
"""

import logging
from typing import Iterable, List, Optional

from prometheus_client import Counter

from logchain.config import settings
from logchain.crypto import ZERO_HASH, verify_log_record
from logchain.database import Database
from logchain.exceptions import LogValidationError
from logchain.models import ChainVerificationReport, LogRecord
from logchain.services.processor import MAX_SEQ, require_secret_key, row_to_record

logger = logging.getLogger(__name__)

chain_verifications = Counter(
    'logchain_chain_verifications_total',
    'Chain verifications run',
    ['result']
)

CHAIN_QUERY = """
    SELECT id, application_id, seq, log_type, payload, hash, prev_hash
    FROM unified_logs
    WHERE application_id = $1
      AND ($2::bigint IS NULL OR seq >= $2)
      AND ($3::bigint IS NULL OR seq <= $3)
    ORDER BY seq ASC
"""

ANCHOR_QUERY = """
    SELECT hash
    FROM unified_logs
    WHERE application_id = $1 AND seq = $2
"""


class ChainReplay:
    """
    Incremental chain check over records fed in ascending seq order.

    Every record gets all three checks (position, link, hash), so one kind
    of corruption never hides another later in the chain.
    """

    def __init__(
        self,
        application_id: str,
        secret_key: str,
        first_expected_seq: int = 1,
        anchor_hash: Optional[str] = None
    ):
        self.application_id = str(application_id)
        self.secret_key = secret_key
        self.first_expected_seq = first_expected_seq
        # hash of record first_expected_seq - 1 for a ranged replay
        self.anchor_hash = ZERO_HASH if first_expected_seq == 1 else anchor_hash
        self.total = 0
        self.errors: List[str] = []
        self.first_invalid_seq: Optional[int] = None
        self._prev_hash: Optional[str] = None

    def _fail(self, seq: int, message: str) -> None:
        self.errors.append(message)
        if self.first_invalid_seq is None:
            self.first_invalid_seq = seq

    def feed(self, record: LogRecord) -> None:
        expected_seq = self.first_expected_seq + self.total
        seq = record.seq

        if seq != expected_seq:
            self._fail(seq, f"Sequence gap at seq={seq}, expected={expected_seq}")

        if self.total == 0:
            if self.first_expected_seq == 1:
                if record.prev_hash != ZERO_HASH:
                    self._fail(seq, f"First log (seq={seq}) prevHash should be 64 zeros")
            elif record.prev_hash != self.anchor_hash:
                self._fail(seq, f"Hash chain broken at seq={seq}, prevHash mismatch")
        elif record.prev_hash != self._prev_hash:
            self._fail(seq, f"Hash chain broken at seq={seq}, prevHash mismatch")

        # Checked against the stored prev_hash even when the link is broken
        if not verify_log_record(
            record.model_copy(update={"application_id": self.application_id}),
            self.secret_key
        ):
            self._fail(seq, f"Invalid hash at seq={seq}")

        self._prev_hash = record.hash
        self.total += 1

    def report(self) -> ChainVerificationReport:
        return ChainVerificationReport(
            valid=not self.errors,
            total_logs=self.total,
            first_invalid_seq=self.first_invalid_seq,
            errors=list(self.errors),
        )


def verify_records(
    records: Iterable[LogRecord],
    application_id: str,
    secret_key: str
) -> ChainVerificationReport:
    """
    Verify a complete chain already loaded in ascending seq order.

    Args:
        records: All of the application's records, ordered by seq
        application_id: The owning application
        secret_key: HMAC key for the chain

    Returns:
        Verification report
    """
    replay = ChainReplay(application_id, require_secret_key(secret_key))
    for record in records:
        replay.feed(record)
    return replay.report()


def validate_bounds(start_seq: Optional[int], end_seq: Optional[int]) -> None:
    """Reject malformed verification bounds before touching storage."""
    errors = {}
    for name, value in (("start_seq", start_seq), ("end_seq", end_seq)):
        if value is None:
            continue
        if value < 1:
            errors[name] = [f"{name} must be a positive integer"]
        elif value > MAX_SEQ:
            errors[name] = [f"{name} must not exceed {MAX_SEQ}"]
    if not errors and start_seq is not None and end_seq is not None and end_seq < start_seq:
        errors["end_seq"] = ["end_seq must be greater than or equal to start_seq"]
    if errors:
        raise LogValidationError("Validation failed", errors)


async def verify_chain(
    application_id: str,
    secret_key: Optional[str],
    db: Database,
    start_seq: Optional[int] = None,
    end_seq: Optional[int] = None
) -> ChainVerificationReport:
    """
    Verify the hash chain integrity for an application.

    Records are streamed in ascending seq order from a single read-only
    snapshot, so the report describes one consistent prefix of the chain
    even while appends are running.

    Args:
        application_id: The application to verify
        secret_key: HMAC key for the chain
        db: Database connection
        start_seq: Optional first seq of a ranged verification
        end_seq: Optional last seq of a ranged verification

    Returns:
        Verification report (valid, total_logs, first_invalid_seq, errors)

    Raises:
        ConfigurationError: If secret_key is missing
        LogValidationError: If the bounds are malformed
    """
    secret_key = require_secret_key(secret_key)
    validate_bounds(start_seq, end_seq)
    application_id = str(application_id)
    first_expected = start_seq or 1

    async with db.transaction(isolation='repeatable_read', readonly=True) as conn:
        anchor_hash = None
        if first_expected > 1:
            anchor_hash = await conn.fetchval(ANCHOR_QUERY, application_id, first_expected - 1)

        replay = ChainReplay(application_id, secret_key, first_expected, anchor_hash)

        async for row in conn.cursor(
            CHAIN_QUERY,
            application_id,
            start_seq,
            end_seq,
            prefetch=settings.verify_batch_size
        ):
            replay.feed(row_to_record(row))

    report = replay.report()
    chain_verifications.labels(result="valid" if report.valid else "invalid").inc()

    if report.valid:
        logger.info(f"Chain verified: application={application_id}, logs={report.total_logs}")
    else:
        logger.warning(
            f"Chain integrity issues: application={application_id}, "
            f"first_invalid_seq={report.first_invalid_seq}, errors={len(report.errors)}"
        )

    return report
