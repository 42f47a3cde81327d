"""Persistence for reusable job definitions."""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import string
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Protocol

import httpx
from pydantic import ValidationError

from batchprompt.schemas import JobDefinition, JobListResponse, JobStatus, JobStatusUpdate, JobTrigger

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".batchprompt" / "jobs.db"
JOBS_ENDPOINT = "/api/jobs"
DEFAULT_TIMEOUT = 10.0


class PersistenceError(Exception):
    """Raised when the job store is unreachable or rejects an operation."""

    pass


class JobStore(Protocol):
    """Boundary the dispatcher depends on."""

    def create(self, definition: JobDefinition) -> str:
        """Store a definition and return its id."""
        ...

    def list(self) -> list[JobDefinition]:
        """Return every stored definition."""
        ...

    def update_run_status(
        self, job_id: str, status: JobStatus, result_url: str | None = None
    ) -> JobDefinition | None:
        """Record a run's status and time on a job. None if the job is gone."""
        ...

    def mark_skipped(self, job_id: str) -> JobDefinition | None:
        """Record that a run skipped every project of a job."""
        ...


def generate_job_id() -> str:
    """Generate an id of the form ``job_<millis>_<7 random chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"job_{int(time.time() * 1000)}_{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteJobStore:
    """Job store backed by a local SQLite database."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file

        Raises:
            PersistenceError: if the database cannot be created
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._lock = threading.Lock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Cannot open job store at {self.db_path}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    project_paths TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    backend TEXT NOT NULL,
                    pre_check TEXT,
                    max_parallel INTEGER,
                    status TEXT,
                    last_run TEXT,
                    last_skipped TEXT,
                    last_result_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_trigger ON jobs (trigger)")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @staticmethod
    def _row_to_definition(row: sqlite3.Row) -> JobDefinition:
        return JobDefinition(
            id=row["id"],
            name=row["name"],
            prompt=row["prompt"],
            project_paths=json.loads(row["project_paths"]),
            trigger=row["trigger"],
            backend=row["backend"],
            pre_check=json.loads(row["pre_check"]) if row["pre_check"] else None,
            max_parallel=row["max_parallel"],
            status=row["status"],
            last_run=row["last_run"],
            last_skipped=row["last_skipped"],
            last_result_url=row["last_result_url"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def save(self, definition: JobDefinition) -> JobDefinition:
        """Insert a definition, or replace the one with the same id.

        Replacing keeps the creation time and the last run state.

        Returns:
            The stored definition with id and timestamps filled in
        """
        now = _utcnow().isoformat()
        job_id = definition.id or generate_job_id()
        pre_check = (
            definition.pre_check.model_dump_json(by_alias=True, exclude_none=True)
            if definition.pre_check
            else None
        )

        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        id, name, prompt, project_paths, trigger, backend, pre_check, max_parallel,
                        status, last_run, last_skipped, last_result_url, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        prompt = excluded.prompt,
                        project_paths = excluded.project_paths,
                        trigger = excluded.trigger,
                        backend = excluded.backend,
                        pre_check = excluded.pre_check,
                        max_parallel = excluded.max_parallel,
                        updated_at = excluded.updated_at
                    """,
                    (
                        job_id,
                        definition.name,
                        definition.prompt,
                        json.dumps(definition.project_paths),
                        definition.trigger.value,
                        definition.backend.value,
                        pre_check,
                        definition.max_parallel,
                        definition.status.value if definition.status else None,
                        _iso(definition.last_run),
                        _iso(definition.last_skipped),
                        definition.last_result_url,
                        now,
                        now,
                    ),
                )
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to save job '{definition.name}': {e}")
            raise PersistenceError(f"Failed to save job: {e}") from e

        stored = self._row_to_definition(row)
        logger.info(f"Saved job {stored.id} ({stored.name})")
        return stored

    def _update(self, job_id: str, assignments: str, params: tuple) -> JobDefinition | None:
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE jobs SET {assignments}, updated_at = ? WHERE id = ?",
                    (*params, _utcnow().isoformat(), job_id),
                )
                if cursor.rowcount == 0:
                    return None
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update job {job_id}: {e}") from e
        return self._row_to_definition(row)

    def update_run_status(
        self, job_id: str, status: JobStatus | str, result_url: str | None = None
    ) -> JobDefinition | None:
        """Set the job's status and stamp its last run time.

        The result URL is replaced, so a run without one clears the previous.
        """
        status = JobStatus(status)
        updated = self._update(
            job_id,
            "status = ?, last_run = ?, last_result_url = ?",
            (status.value, _utcnow().isoformat(), result_url),
        )
        if updated is not None:
            logger.info(f"Job {job_id} status: {status.value}")
        return updated

    def mark_skipped(self, job_id: str) -> JobDefinition | None:
        return self._update(job_id, "last_skipped = ?", (_utcnow().isoformat(),))

    def create(self, definition: JobDefinition) -> str:
        return self.save(definition).id  # type: ignore[return-value]

    def get(self, job_id: str) -> JobDefinition | None:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read job {job_id}: {e}") from e
        return self._row_to_definition(row) if row else None

    def list(self, trigger: JobTrigger | str | None = None) -> list[JobDefinition]:
        """Return stored definitions in insertion order, optionally filtered by trigger."""
        query = "SELECT * FROM jobs"
        params: tuple[str, ...] = ()
        if trigger is not None:
            query += " WHERE trigger = ?"
            params = (JobTrigger(trigger).value,)
        query += " ORDER BY rowid"

        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list jobs: {e}") from e
        return [self._row_to_definition(row) for row in rows]

    def delete(self, job_id: str) -> bool:
        """Delete a definition. Returns False if no such id exists."""
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete job {job_id}: {e}") from e

        deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted job {job_id}")
        return deleted


class RemoteJobStore:
    """Job store reached through the jobs HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _request(self, method: str, path: str = "", **kwargs) -> httpx.Response:
        url = f"{self.base_url}{JOBS_ENDPOINT}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.request(method, url, **kwargs)
                if response.status_code != 404:
                    response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            logger.error(f"Job store returned error: {e}")
            raise PersistenceError(f"Job store returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to reach job store at {self.base_url}: {e}")
            raise PersistenceError(f"Job store unavailable: {e}") from e

    def create(self, definition: JobDefinition) -> str:
        payload = definition.model_dump(mode="json", by_alias=True, exclude_none=True)
        response = self._request("POST", json=payload)
        if response.status_code == 404:
            raise PersistenceError("Job store endpoint not found")
        try:
            stored = JobDefinition.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PersistenceError(f"Job store returned an invalid record: {e}") from e
        if not stored.id:
            raise PersistenceError("Job store did not assign an id")
        return stored.id

    def get(self, job_id: str) -> JobDefinition | None:
        response = self._request("GET", f"/{job_id}")
        if response.status_code == 404:
            return None
        return JobDefinition.model_validate(response.json())

    def list(self, trigger: JobTrigger | str | None = None) -> list[JobDefinition]:
        params = {"trigger": JobTrigger(trigger).value} if trigger is not None else None
        response = self._request("GET", params=params)
        try:
            return JobListResponse.model_validate(response.json()).jobs
        except (ValueError, ValidationError) as e:
            raise PersistenceError(f"Job store returned an invalid listing: {e}") from e

    def delete(self, job_id: str) -> bool:
        response = self._request("DELETE", f"/{job_id}")
        return response.status_code != 404

    def _updated(self, response: httpx.Response) -> JobDefinition | None:
        if response.status_code == 404:
            return None
        try:
            return JobDefinition.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PersistenceError(f"Job store returned an invalid record: {e}") from e

    def update_run_status(
        self, job_id: str, status: JobStatus | str, result_url: str | None = None
    ) -> JobDefinition | None:
        update = JobStatusUpdate(status=status, last_result_url=result_url)
        response = self._request(
            "POST",
            f"/{job_id}/status",
            json=update.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        return self._updated(response)

    def mark_skipped(self, job_id: str) -> JobDefinition | None:
        return self._updated(self._request("POST", f"/{job_id}/skipped"))


# Global store instance
_store_instance: SQLiteJobStore | None = None


def get_store(db_path: Path | str | None = None) -> SQLiteJobStore:
    """Get or create the process-wide job store."""
    global _store_instance
    if _store_instance is None:
        _store_instance = SQLiteJobStore(db_path=db_path)
    return _store_instance
