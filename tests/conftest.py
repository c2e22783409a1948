"""
Test fixtures and configuration for pytest.
"""

import asyncio
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from asyncpg.exceptions import UniqueViolationError

from logchain.config import settings
from logchain.crypto import generate_api_key, hash_api_key
from logchain.services import log_queue, processor, verifier
from logchain.services.applications import ACTIVE_BY_KEY_QUERY

TEST_HASH_KEY = "test-log-hash-key"
TEST_ADMIN_TOKEN = "test-admin-token"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _same(query: str, expected: str) -> bool:
    return query.strip() == expected.strip()


class MockDatabase:
    """
    In-memory stand-in for the asyncpg Database.

    Answers the exact queries the services issue. The per-application
    advisory lock is held from LOCK_APPLICATION_QUERY until the enclosing
    transaction ends, and (application_id, seq) is unique, as in PostgreSQL.
    """

    def __init__(self):
        self.applications: Dict[str, dict] = {}
        self.logs: List[dict] = []
        self.jobs: Dict[str, dict] = {}
        self.notifications: List[tuple] = []
        self.fail_next_inserts = 0
        self._locks: Dict[str, asyncio.Lock] = {}

    # -- helpers for tests ---------------------------------------------------

    def add_application(
        self,
        name: str = "Test App",
        slug: Optional[str] = None,
        api_key: Optional[str] = None,
        is_active: bool = True
    ) -> dict:
        app_id = str(uuid.uuid4())
        row = {
            "id": app_id,
            "name": name,
            "slug": slug or f"app-{app_id[:8]}",
            "domain": None,
            "stack": "other",
            "api_key_hash": hash_api_key(api_key or generate_api_key()),
            "is_active": is_active,
            "created_at": _now(),
            "updated_at": _now(),
            "deleted_at": None,
        }
        self.applications[app_id] = row
        return row

    def logs_for(self, application_id: str) -> List[dict]:
        return sorted(
            (r for r in self.logs if r["application_id"] == str(application_id)),
            key=lambda r: r["seq"]
        )

    def replace_log(self, application_id: str, seq: int, **changes) -> None:
        """Tamper with a stored record, bypassing the service."""
        for i, row in enumerate(self.logs):
            if row["application_id"] == str(application_id) and row["seq"] == seq:
                self.logs[i] = {**row, **changes}
                return
        raise KeyError(seq)

    def delete_log(self, application_id: str, seq: int) -> None:
        self.logs = [
            r for r in self.logs
            if not (r["application_id"] == str(application_id) and r["seq"] == seq)
        ]

    # -- Database interface --------------------------------------------------

    def transaction(self, isolation: Optional[str] = None, readonly: bool = False):
        return MockTransaction(self)

    async def execute(self, query: str, *args):
        return await self._execute(None, query, args)

    async def fetch(self, query: str, *args):
        return await self._fetch(query, args)

    async def fetchrow(self, query: str, *args):
        return await self._fetchrow(None, query, args)

    async def fetchval(self, query: str, *args):
        return await self._fetchval(None, query, args)

    async def health_check(self) -> bool:
        return True

    # -- query emulation -----------------------------------------------------

    async def _execute(self, conn, query: str, args: tuple):
        if _same(query, processor.LOCK_APPLICATION_QUERY):
            lock = self._locks.setdefault(args[0], asyncio.Lock())
            await lock.acquire()
            conn.held_locks.append(lock)
            return "SELECT 1"

        if _same(query, log_queue.INSERT_JOB_QUERY):
            job_id, app_id, log_type, payload, ip, ua, max_attempts = args
            self.jobs[job_id] = {
                "id": job_id,
                "application_id": app_id,
                "log_type": log_type,
                "payload": payload,
                "ip_address": ip,
                "user_agent": ua,
                "status": "queued",
                "attempts": 0,
                "max_attempts": max_attempts,
                "available_at": _now(),
                "log_id": None,
                "log_seq": None,
                "last_error": None,
                "created_at": _now(),
                "updated_at": _now(),
            }
            return "INSERT 0 1"

        if _same(query, log_queue.NOTIFY_QUERY):
            self.notifications.append(args)
            return "SELECT 1"

        if _same(query, log_queue.COMPLETE_JOB_QUERY):
            job = self.jobs[args[0]]
            job.update(status="completed", log_id=args[1], log_seq=args[2],
                       last_error=None, updated_at=_now())
            return "UPDATE 1"

        if _same(query, log_queue.RETRY_JOB_QUERY):
            job = self.jobs[args[0]]
            job.update(status="queued", available_at=_now() + timedelta(seconds=args[1]),
                       last_error=args[2], updated_at=_now())
            return "UPDATE 1"

        if _same(query, log_queue.FAIL_JOB_QUERY):
            job = self.jobs[args[0]]
            job.update(status="failed", last_error=args[1], updated_at=_now())
            return "UPDATE 1"

        if _same(query, log_queue.RECOVER_STALE_JOBS_QUERY):
            cutoff = _now() - timedelta(seconds=args[0])
            stale = [j for j in self.jobs.values()
                     if j["status"] == "processing" and j["updated_at"] < cutoff]
            for job in stale:
                job.update(status="queued", updated_at=_now())
            return f"UPDATE {len(stale)}"

        if query.startswith("DELETE FROM log_jobs"):
            self.jobs = {k: j for k, j in self.jobs.items() if j["application_id"] != args[0]}
            return "DELETE"

        if query.startswith("DELETE FROM applications"):
            self.applications.pop(args[0], None)
            return "DELETE 1"

        raise AssertionError(f"Unexpected execute: {query}")

    async def _fetchval(self, conn, query: str, args: tuple):
        if _same(query, processor.INSERT_LOG_QUERY):
            return await self._insert_log(conn, args)

        if _same(query, verifier.ANCHOR_QUERY):
            row = self._find_log(args[0], args[1])
            return row["hash"] if row else None

        if query.startswith("SELECT COUNT(*) FROM unified_logs"):
            return len(self._filter_logs(query, args))

        if "SELECT EXISTS(SELECT 1 FROM applications" in query:
            return args[0] in self.applications

        if "SELECT EXISTS(SELECT 1 FROM unified_logs" in query:
            return bool(self.logs_for(args[0]))

        raise AssertionError(f"Unexpected fetchval: {query}")

    async def _fetchrow(self, conn, query: str, args: tuple):
        if _same(query, processor.TAIL_QUERY):
            # Yield so unsynchronized appends would interleave here
            await asyncio.sleep(0)
            rows = self.logs_for(args[0])
            return {"seq": rows[-1]["seq"], "hash": rows[-1]["hash"]} if rows else None

        if _same(query, processor.GET_LOG_QUERY):
            for row in self.logs:
                if row["id"] == args[0] and row["application_id"] == str(args[1]):
                    return dict(row)
            return None

        if _same(query, log_queue.GET_JOB_QUERY):
            job = self.jobs.get(args[0])
            if job and job["application_id"] == str(args[1]):
                return dict(job)
            return None

        if _same(query, log_queue.CLAIM_JOB_QUERY):
            now = _now()
            ready = sorted(
                (j for j in self.jobs.values()
                 if j["status"] == "queued" and j["available_at"] <= now),
                key=lambda j: j["created_at"]
            )
            if not ready:
                return None
            job = ready[0]
            job.update(status="processing", attempts=job["attempts"] + 1, updated_at=now)
            return dict(job)

        if _same(query, ACTIVE_BY_KEY_QUERY):
            for row in self.applications.values():
                if (row["api_key_hash"] == args[0] and row["is_active"]
                        and row["deleted_at"] is None):
                    return dict(row)
            return None

        if "INSERT INTO applications" in query:
            app_id, name, slug, domain, stack, key_hash = args
            if any(a["slug"] == slug for a in self.applications.values()):
                raise UniqueViolationError("duplicate key value violates unique constraint")
            row = {
                "id": app_id, "name": name, "slug": slug, "domain": domain,
                "stack": stack, "api_key_hash": key_hash, "is_active": True,
                "created_at": _now(), "updated_at": _now(), "deleted_at": None,
            }
            self.applications[app_id] = row
            return dict(row)

        if "UPDATE applications" in query:
            return self._update_application(query, args)

        if "FROM applications" in query and "WHERE id = $1" in query:
            row = self.applications.get(args[0])
            if row is None or ("deleted_at IS NULL" in query and row["deleted_at"] is not None):
                return None
            return dict(row)

        raise AssertionError(f"Unexpected fetchrow: {query}")

    async def _fetch(self, query: str, args: tuple):
        if "FROM unified_logs" in query and "ORDER BY seq DESC" in query:
            rows = self._filter_logs(query, args[:-2])
            limit, offset = args[-2], args[-1]
            rows = sorted(rows, key=lambda r: r["seq"], reverse=True)
            return [dict(r) for r in rows[offset:offset + limit]]

        if "FROM applications" in query:
            rows = list(self.applications.values())
            if "deleted_at IS NULL" in query:
                rows = [a for a in rows if a["deleted_at"] is None]
            if "AND is_active" in query:
                rows = [a for a in rows if a["is_active"]]
            return [dict(a) for a in sorted(rows, key=lambda a: a["created_at"], reverse=True)]

        raise AssertionError(f"Unexpected fetch: {query}")

    def cursor(self, conn, query: str, args: tuple):
        assert _same(query, verifier.CHAIN_QUERY), f"Unexpected cursor: {query}"
        app_id, start, end = args
        rows = [
            dict(r) for r in self.logs_for(app_id)
            if (start is None or r["seq"] >= start) and (end is None or r["seq"] <= end)
        ]
        return MockCursor(rows)

    # -- internals -----------------------------------------------------------

    async def _insert_log(self, conn, args: tuple):
        log_id, app_id, seq, log_type, payload, log_hash, prev_hash, ip, ua = args

        if self.fail_next_inserts:
            self.fail_next_inserts -= 1
            raise UniqueViolationError("duplicate key value violates unique constraint")
        if self._find_log(app_id, seq):
            raise UniqueViolationError("duplicate key value violates unique constraint")

        row = {
            "id": log_id,
            "application_id": app_id,
            "seq": seq,
            "log_type": log_type,
            # stored as text, like a JSON column
            "payload": payload,
            "hash": log_hash,
            "prev_hash": prev_hash,
            "ip_address": ip,
            "user_agent": ua,
            "created_at": _now(),
        }
        self.logs.append(row)
        if conn is not None:
            conn.inserted.append(row)
        return row["created_at"]

    def _find_log(self, application_id: str, seq: int) -> Optional[dict]:
        for row in self.logs:
            if row["application_id"] == str(application_id) and row["seq"] == seq:
                return row
        return None

    def _filter_logs(self, query: str, params: tuple) -> List[dict]:
        # Parameters follow _log_filters: application, log_type?, start?, end?
        params = list(params)
        rows = self.logs_for(params.pop(0))
        if "log_type = $" in query:
            log_type = params.pop(0)
            rows = [r for r in rows if r["log_type"] == log_type]
        if "seq >= $" in query:
            start = params.pop(0)
            rows = [r for r in rows if r["seq"] >= start]
        if "seq <= $" in query:
            end = params.pop(0)
            rows = [r for r in rows if r["seq"] <= end]
        return rows

    def _update_application(self, query: str, args: tuple) -> Optional[dict]:
        set_clause = re.search(r"SET (.*?)\s+WHERE", query, re.DOTALL).group(1)
        where_param = int(re.search(r"WHERE id = \$(\d+)", query).group(1))
        row = self.applications.get(args[where_param - 1])
        if row is None or row["deleted_at"] is not None:
            return None

        for assignment in set_clause.split(","):
            column, value = (part.strip() for part in assignment.split("="))
            if value.startswith("$"):
                row[column] = args[int(value[1:]) - 1]
            elif value == "now()":
                row[column] = _now()
            else:
                row[column] = value == "true"
        return dict(row)


class MockConnection:
    """Connection handed out by MockTransaction."""

    def __init__(self, db: MockDatabase):
        self.db = db
        self.held_locks: List[asyncio.Lock] = []
        self.inserted: List[dict] = []

    async def execute(self, query: str, *args):
        return await self.db._execute(self, query, args)

    async def fetchrow(self, query: str, *args):
        return await self.db._fetchrow(self, query, args)

    async def fetchval(self, query: str, *args):
        return await self.db._fetchval(self, query, args)

    async def fetch(self, query: str, *args):
        return await self.db._fetch(query, args)

    def cursor(self, query: str, *args, prefetch: Optional[int] = None):
        return self.db.cursor(self, query, args)


class MockTransaction:
    """Async context manager; rolls back inserted logs on error and releases locks."""

    def __init__(self, db: MockDatabase):
        self.db = db
        self.conn = MockConnection(db)

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            inserted = {id(r) for r in self.conn.inserted}
            self.db.logs = [r for r in self.db.logs if id(r) not in inserted]
        for lock in self.conn.held_locks:
            lock.release()
        return False


class MockCursor:
    def __init__(self, rows: List[dict]):
        self._rows = rows

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for row in self._rows:
            yield row


@pytest.fixture
def mock_db() -> MockDatabase:
    """Create a mock database for testing."""
    return MockDatabase()


@pytest.fixture
def hash_key(monkeypatch) -> str:
    """Configure the chain HMAC key."""
    monkeypatch.setattr(settings, "log_hash_key", TEST_HASH_KEY)
    return TEST_HASH_KEY


@pytest.fixture
def application(mock_db: MockDatabase) -> dict:
    """A registered, active application."""
    return mock_db.add_application(name="Billing", slug="billing")


@pytest.fixture
def sample_payload() -> Dict[str, Any]:
    return {
        "user_id": 123,
        "ip": "192.168.1.1",
        "details": {"method": "password", "mfa": True},
    }
