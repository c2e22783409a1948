"""
Domain records and Pydantic models for request/response validation.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Log Types
# ============================================================================

class LogType(str, Enum):
    """Closed set of log categories accepted by the chain."""

    AUTH_LOGIN = "AUTH_LOGIN"
    AUTH_LOGOUT = "AUTH_LOGOUT"
    AUTH_LOGIN_FAILED = "AUTH_LOGIN_FAILED"

    ACCESS_ENDPOINT = "ACCESS_ENDPOINT"
    DOWNLOAD_DOCUMENT = "DOWNLOAD_DOCUMENT"
    SEND_EXTERNAL = "SEND_EXTERNAL"

    DATA_CREATE = "DATA_CREATE"
    DATA_UPDATE = "DATA_UPDATE"
    DATA_DELETE = "DATA_DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    BULK_IMPORT = "BULK_IMPORT"
    BULK_EXPORT = "BULK_EXPORT"

    SYSTEM_ERROR = "SYSTEM_ERROR"
    VALIDATION_FAILED = "VALIDATION_FAILED"

    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    PERMISSION_CHANGE = "PERMISSION_CHANGE"


ALLOWED_LOG_TYPES = tuple(t.value for t in LogType)


def is_allowed_log_type(value: Optional[str]) -> bool:
    """Check a (case-insensitive) log type against the allowed set."""
    return bool(value) and value.upper() in ALLOWED_LOG_TYPES


# ============================================================================
# Chain Records
# ============================================================================

class LogRecord(BaseModel):
    """One stored link of an application's hash chain. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str
    application_id: str
    seq: int
    log_type: str
    payload: Any
    hash: str
    prev_hash: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


class ChainVerificationReport(BaseModel):
    """Result of replaying an application's chain."""

    valid: bool
    total_logs: int
    first_invalid_seq: Optional[int] = None
    errors: List[str] = Field(default_factory=list)


# ============================================================================
# Log Models
# ============================================================================

class LogSubmission(BaseModel):
    """Request model for submitting a log."""

    # Checked by validate_log_input so every rejection has the same shape
    log_type: Optional[str] = Field(
        default=None,
        description="Log category (case-insensitive)",
        examples=["AUTH_LOGIN", "DATA_UPDATE"]
    )

    # Absent means {}; an explicit null is rejected by validate_log_input
    payload: Any = Field(
        default_factory=dict,
        description="Log payload, a JSON object or array",
        examples=[{"user_id": 123, "ip": "192.168.1.1"}]
    )


class LogStored(BaseModel):
    id: str
    seq: str
    created_at: Optional[datetime] = None
    log_type: str


class LogStoredResponse(BaseModel):
    """Response model for a synchronous log submission."""

    success: bool = True
    message: str = "Log stored"
    data: LogStored


class LogQueued(BaseModel):
    job_id: str
    log_type: str
    status: str = "queued"


class LogQueuedResponse(BaseModel):
    """Response model for a queued log submission."""

    success: bool = True
    message: str = "Log queued for processing"
    data: LogQueued


class LogDetail(BaseModel):
    """Detailed log information."""

    id: str
    seq: str
    log_type: str
    payload: Any
    hash: str
    prev_hash: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: LogRecord) -> "LogDetail":
        return cls(
            id=record.id,
            seq=str(record.seq),
            log_type=record.log_type,
            payload=record.payload,
            hash=record.hash,
            prev_hash=record.prev_hash,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=record.created_at,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class LogListResponse(BaseModel):
    success: bool = True
    data: List[LogDetail]
    pagination: Pagination


class ChainVerificationResult(BaseModel):
    """Chain verification result for one application."""

    application_id: str
    application_name: Optional[str] = None
    valid: bool
    total_logs: int
    first_invalid_seq: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class ChainVerificationResponse(BaseModel):
    success: bool = True
    data: ChainVerificationResult


# ============================================================================
# Queue Models
# ============================================================================

class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LogJobInfo(BaseModel):
    """Status of a queued log job."""

    job_id: str
    status: JobStatus
    log_type: str
    attempts: int
    max_attempts: int
    log_id: Optional[str] = None
    log_seq: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LogJobResponse(BaseModel):
    success: bool = True
    data: LogJobInfo


# ============================================================================
# Application Models
# ============================================================================

class ApplicationCreate(BaseModel):
    """Request to register a new application (tenant)."""

    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    domain: Optional[str] = Field(default=None, max_length=255)
    stack: str = Field(default="other", max_length=50)


class ApplicationUpdate(BaseModel):
    """Partial update of an application."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    domain: Optional[str] = Field(default=None, max_length=255)
    stack: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class ApplicationInfo(BaseModel):
    """Application information response."""

    id: str
    name: str
    slug: str
    domain: Optional[str] = None
    stack: str
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ApplicationWithKey(BaseModel):
    """Returned once, when an API key is issued."""

    id: str
    name: str
    slug: str
    api_key: str


class ApplicationKeyResponse(BaseModel):
    success: bool = True
    message: str
    data: ApplicationWithKey


class ApplicationResponse(BaseModel):
    success: bool = True
    data: ApplicationInfo


class ApplicationListResponse(BaseModel):
    success: bool = True
    data: List[ApplicationInfo]


# ============================================================================
# Health Check Models
# ============================================================================

class HealthStatus(BaseModel):
    """Health check response."""

    status: str = Field(..., examples=["healthy", "unhealthy"])
    version: str
    database: str = Field(..., examples=["connected", "disconnected"])
    hash_key_configured: bool
    uptime_seconds: float
    timestamp: datetime


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    errors: Optional[Dict[str, List[str]]] = None
