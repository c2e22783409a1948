"""
Application (tenant) management service.

Handles application registration, API key issuance and lifecycle.
Only a SHA-256 digest of each API key is stored.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from asyncpg.exceptions import UniqueViolationError

from logchain.crypto import generate_api_key, hash_api_key
from logchain.database import Database
from logchain.models import ApplicationCreate, ApplicationInfo, ApplicationUpdate

logger = logging.getLogger(__name__)

APPLICATION_COLUMNS = """
    id, name, slug, domain, stack, is_active, created_at, updated_at
"""

ACTIVE_BY_KEY_QUERY = f"""
    SELECT {APPLICATION_COLUMNS}
    FROM applications
    WHERE api_key_hash = $1 AND is_active AND deleted_at IS NULL
"""


class ApplicationNotFoundError(LookupError):
    """Raised when an application does not exist (or is deleted)."""
    pass


class ApplicationStateError(ValueError):
    """Raised when a request conflicts with an application's current state."""
    pass


def _require_uuid(application_id: str) -> str:
    try:
        return str(uuid.UUID(str(application_id)))
    except ValueError:
        raise ApplicationNotFoundError(application_id)


def _to_info(row) -> ApplicationInfo:
    return ApplicationInfo(
        id=str(row['id']),
        name=row['name'],
        slug=row['slug'],
        domain=row['domain'],
        stack=row['stack'],
        is_active=row['is_active'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


class ApplicationManager:
    """
    Service for managing applications.

    Handles:
    - Registration with a freshly issued API key
    - Updates and soft/hard deletion
    - API key regeneration and lookup
    """

    def __init__(self, db: Database):
        self.db = db

    async def create_application(self, request: ApplicationCreate) -> Tuple[ApplicationInfo, str]:
        """
        Register a new application.

        Returns:
            Tuple of (application info, plaintext API key); the key is not recoverable later

        Raises:
            ApplicationStateError: If the slug is already taken
        """
        api_key = generate_api_key()

        try:
            row = await self.db.fetchrow(
                f"""
                INSERT INTO applications (id, name, slug, domain, stack, api_key_hash, is_active)
                VALUES ($1, $2, $3, $4, $5, $6, true)
                RETURNING {APPLICATION_COLUMNS}
                """,
                str(uuid.uuid4()),
                request.name,
                request.slug,
                request.domain,
                request.stack,
                hash_api_key(api_key)
            )
        except UniqueViolationError:
            raise ApplicationStateError(f"Application slug '{request.slug}' is already taken")

        logger.info(f"Created application: id={row['id']}, slug={request.slug}")

        return _to_info(row), api_key

    async def list_applications(
        self,
        include_inactive: bool = True,
        include_deleted: bool = False
    ) -> List[ApplicationInfo]:
        """List applications, skipping soft-deleted ones unless asked for."""
        conditions = ["TRUE"]
        if not include_deleted:
            conditions.append("deleted_at IS NULL")
        if not include_inactive:
            conditions.append("is_active")
        where_clause = " AND ".join(conditions)
        rows = await self.db.fetch(
            f"""
            SELECT {APPLICATION_COLUMNS}
            FROM applications
            WHERE {where_clause}
            ORDER BY created_at DESC
            """
        )
        return [_to_info(r) for r in rows]

    async def get_application(
        self,
        application_id: str,
        include_deleted: bool = False
    ) -> ApplicationInfo:
        """
        Get an application by ID.

        Soft-deleted applications are only returned with include_deleted,
        which lets their chains still be verified offline.

        Raises:
            ApplicationNotFoundError: If missing, or deleted and not included
        """
        application_id = _require_uuid(application_id)
        condition = "" if include_deleted else "AND deleted_at IS NULL"
        row = await self.db.fetchrow(
            f"""
            SELECT {APPLICATION_COLUMNS}
            FROM applications
            WHERE id = $1 {condition}
            """,
            application_id
        )
        if not row:
            raise ApplicationNotFoundError(application_id)
        return _to_info(row)

    async def get_by_api_key(self, api_key: str) -> Optional[ApplicationInfo]:
        """Resolve an API key to its active application."""
        row = await self.db.fetchrow(ACTIVE_BY_KEY_QUERY, hash_api_key(api_key))
        return _to_info(row) if row else None

    async def update_application(
        self,
        application_id: str,
        update: ApplicationUpdate
    ) -> ApplicationInfo:
        """
        Apply a partial update.

        Raises:
            ApplicationNotFoundError: If missing or deleted
        """
        application_id = _require_uuid(application_id)
        changes: Dict[str, Any] = {
            column: value
            for column, value in update.model_dump(exclude_unset=True).items()
            if value is not None or column == "domain"
        }
        if not changes:
            return await self.get_application(application_id)

        assignments = []
        params: List[Any] = []
        for column, value in changes.items():
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")
        params.append(application_id)

        row = await self.db.fetchrow(
            f"""
            UPDATE applications
            SET {", ".join(assignments)}, updated_at = now()
            WHERE id = ${len(params)} AND deleted_at IS NULL
            RETURNING {APPLICATION_COLUMNS}
            """,
            *params
        )
        if not row:
            raise ApplicationNotFoundError(application_id)

        logger.info(f"Updated application {application_id}: {sorted(changes)}")
        return _to_info(row)

    async def soft_delete(self, application_id: str) -> None:
        """
        Deactivate and mark an application deleted. Its chain is kept.

        Raises:
            ApplicationNotFoundError: If missing or already deleted
        """
        application_id = _require_uuid(application_id)
        row = await self.db.fetchrow(
            """
            UPDATE applications
            SET is_active = false, deleted_at = now(), updated_at = now()
            WHERE id = $1 AND deleted_at IS NULL
            RETURNING id
            """,
            application_id
        )
        if not row:
            raise ApplicationNotFoundError(application_id)
        logger.info(f"Soft-deleted application {application_id}")

    async def hard_delete(self, application_id: str) -> None:
        """
        Permanently delete an application that has no logs.

        Raises:
            ApplicationNotFoundError: If missing
            ApplicationStateError: If the application has logs (the chain is append-only)
        """
        application_id = _require_uuid(application_id)
        async with self.db.transaction() as conn:
            exists = await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM applications WHERE id = $1)",
                application_id
            )
            if not exists:
                raise ApplicationNotFoundError(application_id)

            has_logs = await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM unified_logs WHERE application_id = $1)",
                application_id
            )
            if has_logs:
                raise ApplicationStateError("Cannot delete application with logs")

            await conn.execute("DELETE FROM log_jobs WHERE application_id = $1", application_id)
            await conn.execute("DELETE FROM applications WHERE id = $1", application_id)

        logger.info(f"Hard-deleted application {application_id}")

    async def regenerate_api_key(self, application_id: str) -> Tuple[ApplicationInfo, str]:
        """
        Issue a new API key, invalidating the old one.

        Raises:
            ApplicationNotFoundError: If missing or deleted
        """
        application_id = _require_uuid(application_id)
        api_key = generate_api_key()
        row = await self.db.fetchrow(
            f"""
            UPDATE applications
            SET api_key_hash = $1, updated_at = now()
            WHERE id = $2 AND deleted_at IS NULL
            RETURNING {APPLICATION_COLUMNS}
            """,
            hash_api_key(api_key),
            application_id
        )
        if not row:
            raise ApplicationNotFoundError(application_id)

        logger.info(f"Regenerated API key for application {application_id}")
        return _to_info(row), api_key
