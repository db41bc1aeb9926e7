"""
Repository pattern for data access.

Handles the append-only spend ledger and single-row updates of generation
job records.
"""

import json
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import GenerationJob, JobStatus, SpendRecord


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize as fixed-width UTC ISO text so string order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger and job tables if they don't exist.

    ``spend_ledger`` is append-only: no UPDATE or DELETE is ever issued
    against it, and holds at most one row per ``generation_id``.
    ``generation_job`` rows are only changed one row at a time.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS spend_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                principal TEXT NOT NULL,
                amount_usd REAL NOT NULL,
                timestamp TEXT NOT NULL,
                category TEXT,
                model TEXT,
                operation TEXT,
                generation_id TEXT,
                request_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_spend_ledger_principal_time
                ON spend_ledger (principal, timestamp);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_spend_ledger_generation
                ON spend_ledger (generation_id)
                WHERE generation_id IS NOT NULL;

            CREATE TABLE IF NOT EXISTS generation_job (
                id TEXT PRIMARY KEY,
                principal TEXT NOT NULL,
                status TEXT NOT NULL,
                input_spec TEXT NOT NULL,
                operation_handle TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                output_metadata TEXT,
                estimated_cost_usd REAL NOT NULL DEFAULT 0,
                updated_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_generation_job_principal
                ON generation_job (principal, status);
        """)
        conn.commit()
    finally:
        conn.close()


class SpendLedgerRepository:
    """Append-only access to the spend ledger.

    Reads aggregate by principal and time; writes only ever insert.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def append(self, record: SpendRecord) -> None:
        """Insert a single spend record.

        Args:
            record: The billed call to record
        """
        self.append_many([record])

    def append_many(self, records: Iterable[SpendRecord]) -> None:
        """Insert several spend records in one transaction.

        Args:
            records: Billed calls to record
        """
        records = list(records)
        if not records:
            return

        conn = get_connection(self.db_path)
        try:
            conn.executemany("""
                INSERT INTO spend_ledger
                (principal, amount_usd, timestamp, category, model,
                 operation, generation_id, request_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    r.principal,
                    r.amount_usd,
                    _to_db_time(r.timestamp),
                    r.category,
                    r.model,
                    r.operation,
                    r.generation_id,
                    r.request_id,
                )
                for r in records
            ])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def total_since(self, principal: str, since: datetime) -> float:
        """Sum of ``amount_usd`` for a principal from ``since`` (inclusive) onward.

        Raises:
            sqlite3.Error: If the ledger cannot be read
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT COALESCE(SUM(amount_usd), 0)
                FROM spend_ledger
                WHERE principal = ? AND timestamp >= ?
            """, (principal, _to_db_time(since))).fetchone()
            return float(row[0])
        finally:
            conn.close()

    def has_generation(self, generation_id: str) -> bool:
        """Whether a generation job has already been billed.

        Raises:
            sqlite3.Error: If the ledger cannot be read
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM spend_ledger WHERE generation_id = ? LIMIT 1",
                (generation_id,),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def recent(self, principal: Optional[str] = None, limit: int = 100) -> List[SpendRecord]:
        """Most recent spend records, newest first."""
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT principal, amount_usd, timestamp, category, model,
                       operation, generation_id, request_id
                FROM spend_ledger
            """
            params: list = []
            if principal:
                query += " WHERE principal = ?"
                params.append(principal)
            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

            return [
                SpendRecord(
                    principal=row["principal"],
                    amount_usd=row["amount_usd"],
                    timestamp=_from_db_time(row["timestamp"]),
                    category=row["category"],
                    model=row["model"],
                    operation=row["operation"],
                    generation_id=row["generation_id"],
                    request_id=row["request_id"],
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()


class JobRepository:
    """Point reads and conditional single-row writes of generation jobs."""

    _COLUMNS = (
        "id, principal, status, input_spec, operation_handle, retry_count, "
        "error_message, started_at, completed_at, output_metadata, "
        "estimated_cost_usd, updated_at"
    )

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, job: GenerationJob) -> None:
        """Insert a new job row.

        Raises:
            sqlite3.IntegrityError: If a job with the same id exists
        """
        job.updated_at = datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO generation_job ({self._COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.principal,
                    job.status.value,
                    json.dumps(job.input_spec, sort_keys=True),
                    job.operation_handle,
                    job.retry_count,
                    job.error_message,
                    _to_db_time(job.started_at),
                    _to_db_time(job.completed_at),
                    json.dumps(job.output_metadata) if job.output_metadata is not None else None,
                    job.estimated_cost_usd,
                    _to_db_time(job.updated_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, job_id: str) -> Optional[GenerationJob]:
        """Fetch a job by id, or None if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM generation_job WHERE id = ?",
                (job_id,),
            ).fetchone()
            return self._row_to_job(row) if row is not None else None
        finally:
            conn.close()

    def update(self, job: GenerationJob, expected_status: JobStatus) -> bool:
        """Write every mutable field of ``job`` if the stored status still matches.

        The status guard makes each transition a single-row compare-and-set.

        Args:
            job: Job carrying the new field values
            expected_status: Status the stored row must have for the write to apply

        Returns:
            True if the row was updated, False if it was missing or had moved on
        """
        job.updated_at = datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE generation_job
                SET status = ?, operation_handle = ?, retry_count = ?,
                    error_message = ?, started_at = ?, completed_at = ?,
                    output_metadata = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (
                job.status.value,
                job.operation_handle,
                job.retry_count,
                job.error_message,
                _to_db_time(job.started_at),
                _to_db_time(job.completed_at),
                json.dumps(job.output_metadata) if job.output_metadata is not None else None,
                _to_db_time(job.updated_at),
                job.id,
                expected_status.value,
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def list_jobs(
        self,
        principal: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> List[GenerationJob]:
        """List jobs, most recently started first."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {self._COLUMNS} FROM generation_job"
            conditions = []
            params: list = []
            if principal:
                conditions.append("principal = ?")
                params.append(principal)
            if status is not None:
                conditions.append("status = ?")
                params.append(status.value)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY started_at DESC LIMIT ?"
            params.append(limit)

            return [self._row_to_job(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    @staticmethod
    def _row_to_job(row) -> GenerationJob:
        return GenerationJob(
            id=row["id"],
            principal=row["principal"],
            status=JobStatus(row["status"]),
            input_spec=json.loads(row["input_spec"]),
            operation_handle=row["operation_handle"],
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            started_at=_from_db_time(row["started_at"]),
            completed_at=_from_db_time(row["completed_at"]),
            output_metadata=json.loads(row["output_metadata"]) if row["output_metadata"] else None,
            estimated_cost_usd=row["estimated_cost_usd"],
            updated_at=_from_db_time(row["updated_at"]),
        )
