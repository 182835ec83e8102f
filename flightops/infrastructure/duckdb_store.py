"""DuckDB-backed plan repository.

Each operation runs on its own cursor (DuckDB connections are not shared
between threads) and every state-changing write is an ``UPDATE ... WHERE
<expected prior state> RETURNING`` inside a transaction. DuckDB resolves
concurrent writers optimistically: the loser receives a
``TransactionException``. Reservations treat that as a lost race; release
paths retry so a worker is never left busy because of an unrelated write.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, TypeVar

import duckdb
import structlog

from flightops.domain import (
    Assignment,
    AssignmentRecord,
    AuthorizationStatus,
    FlightPlan,
    PlanResult,
    PlanStatus,
    Worker,
    WorkerAvailability,
)
from flightops.domain.plans import utcnow

from .plans import REQUEUEABLE_STATUSES, payload_size

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS flight_plans_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS flight_plans (
        id BIGINT PRIMARY KEY DEFAULT nextval('flight_plans_id_seq'),
        custom_name VARCHAR NOT NULL,
        file_content VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        assigned_worker_id BIGINT,
        result_id BIGINT,
        authorization_status VARCHAR NOT NULL DEFAULT 'none',
        authorization_message VARCHAR,
        external_response_number VARCHAR,
        error_message VARCHAR,
        user_id BIGINT,
        folder_id BIGINT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS workers_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS workers (
        id BIGINT PRIMARY KEY DEFAULT nextval('workers_id_seq'),
        name VARCHAR NOT NULL UNIQUE,
        address VARCHAR NOT NULL,
        availability VARCHAR NOT NULL DEFAULT 'available'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plan_results (
        id BIGINT PRIMARY KEY,
        payload VARCHAR NOT NULL,
        size_bytes BIGINT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plan_assignments (
        plan_id BIGINT NOT NULL,
        worker_id BIGINT NOT NULL,
        worker_name VARCHAR NOT NULL,
        assigned_at TIMESTAMP NOT NULL
    )
    """,
)

PLAN_COLUMNS = (
    "id, custom_name, file_content, status, assigned_worker_id, result_id, "
    "authorization_status, authorization_message, external_response_number, "
    "error_message, user_id, folder_id, created_at, updated_at"
)
WORKER_COLUMNS = "id, name, address, availability"

REQUEUE_SET = (
    "status = 'queued', assigned_worker_id = NULL, result_id = NULL, "
    "error_message = NULL, updated_at = ?"
)


class _Rollback(Exception):
    """Abort the current transaction without surfacing an error."""


def _to_db_time(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _now() -> datetime:
    return _to_db_time(utcnow())


def _marks(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


def _plan_from_row(row: tuple) -> FlightPlan:
    return FlightPlan(
        id=row[0],
        custom_name=row[1],
        file_content=row[2],
        status=PlanStatus(row[3]),
        assigned_worker_id=row[4],
        result_id=row[5],
        authorization_status=AuthorizationStatus(row[6]),
        authorization_message=row[7],
        external_response_number=row[8],
        error_message=row[9],
        user_id=row[10],
        folder_id=row[11],
        created_at=_from_db_time(row[12]),
        updated_at=_from_db_time(row[13]),
    )


def _worker_from_row(row: tuple) -> Worker:
    return Worker(id=row[0], name=row[1], address=row[2], availability=WorkerAvailability(row[3]))


class DuckDBPlanRepository:
    """Durable repository on a DuckDB database file (or ``:memory:``)."""

    def __init__(self, database: str | Path = ":memory:", *, conflict_retries: int = 5) -> None:
        self._database = str(database)
        self._connection = duckdb.connect(self._database)
        self._connect_lock = threading.Lock()
        self._conflict_retries = max(1, conflict_retries)
        with self._cursor() as cursor:
            for statement in SCHEMA:
                cursor.execute(statement)

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._connect_lock:
            cursor = self._connection.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._cursor() as cursor:
            cursor.begin()
            try:
                yield cursor
            except _Rollback:
                cursor.rollback()
                return
            except BaseException:
                self._abort(cursor)
                raise
            try:
                cursor.commit()
            except BaseException:
                self._abort(cursor)
                raise

    @staticmethod
    def _abort(cursor: duckdb.DuckDBPyConnection) -> None:
        try:
            cursor.rollback()
        except duckdb.TransactionException:
            # a failed commit has already discarded the transaction
            logger.debug("store.rollback_without_transaction")

    def _retrying(self, operation: Callable[[], T]) -> T:
        for attempt in range(1, self._conflict_retries + 1):
            try:
                return operation()
            except duckdb.TransactionException:
                if attempt == self._conflict_retries:
                    raise
                logger.debug("store.write_conflict_retry", attempt=attempt)
                time.sleep(0.01 * attempt)
        raise AssertionError("unreachable")

    def close(self) -> None:
        self._connection.close()

    # ------------------------------------------------------------------
    # plans
    # ------------------------------------------------------------------
    def create_plan(
        self,
        custom_name: str,
        file_content: str,
        *,
        status: PlanStatus = PlanStatus.UNPROCESSED,
        user_id: int | None = None,
        folder_id: int | None = None,
        created_at: datetime | None = None,
    ) -> FlightPlan:
        now = _now()
        with self._cursor() as cursor:
            row = cursor.execute(
                f"""
                INSERT INTO flight_plans (custom_name, file_content, status, user_id, folder_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING {PLAN_COLUMNS}
                """,
                [
                    custom_name,
                    file_content,
                    status.value,
                    user_id,
                    folder_id,
                    _to_db_time(created_at) if created_at else now,
                    now,
                ],
            ).fetchone()
        return _plan_from_row(row)

    def get_plan(self, plan_id: int) -> FlightPlan | None:
        with self._cursor() as cursor:
            row = cursor.execute(f"SELECT {PLAN_COLUMNS} FROM flight_plans WHERE id = ?", [plan_id]).fetchone()
        return _plan_from_row(row) if row else None

    def list_plans(self, status: PlanStatus | None = None) -> list[FlightPlan]:
        query = f"SELECT {PLAN_COLUMNS} FROM flight_plans"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at, id"
        with self._cursor() as cursor:
            rows = cursor.execute(query, params or None).fetchall()
        return [_plan_from_row(row) for row in rows]

    def enqueue_plan(self, plan_id: int) -> bool:
        allowed = [status.value for status in sorted(REQUEUEABLE_STATUSES, key=lambda item: item.value)]

        def operation() -> bool:
            changed = False
            with self._transaction() as cursor:
                row = cursor.execute(
                    f"UPDATE flight_plans SET {REQUEUE_SET} WHERE id = ? AND status IN ({_marks(allowed)}) RETURNING id",
                    [_now(), plan_id, *allowed],
                ).fetchone()
                if row is None:
                    raise _Rollback
                cursor.execute("DELETE FROM plan_results WHERE id = ?", [plan_id])
                changed = True
            return changed

        return self._retrying(operation)

    def reset_plan(self, plan_id: int) -> bool:
        def operation() -> bool:
            changed = False
            with self._transaction() as cursor:
                current = cursor.execute(
                    "SELECT status, assigned_worker_id FROM flight_plans WHERE id = ?", [plan_id]
                ).fetchone()
                if current is None:
                    raise _Rollback
                status, worker_id = current
                if status == PlanStatus.IN_PROGRESS.value and worker_id is not None:
                    cursor.execute("UPDATE workers SET availability = 'available' WHERE id = ?", [worker_id])
                cursor.execute("DELETE FROM plan_results WHERE id = ?", [plan_id])
                cursor.execute(
                    """
                    UPDATE flight_plans
                    SET status = 'unprocessed', assigned_worker_id = NULL, result_id = NULL,
                        error_message = NULL, authorization_status = 'none', authorization_message = NULL,
                        external_response_number = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    [_now(), plan_id],
                )
                changed = True
            return changed

        return self._retrying(operation)

    def set_external_response_number(self, plan_id: int, number: str) -> bool:
        def operation() -> bool:
            changed = False
            with self._transaction() as cursor:
                taken = cursor.execute(
                    "SELECT id FROM flight_plans WHERE external_response_number = ? AND id <> ?",
                    [number, plan_id],
                ).fetchone()
                if taken is not None:
                    raise _Rollback
                row = cursor.execute(
                    "UPDATE flight_plans SET external_response_number = ?, updated_at = ? WHERE id = ? RETURNING id",
                    [number, _now(), plan_id],
                ).fetchone()
                if row is None:
                    raise _Rollback
                changed = True
            return changed

        return self._retrying(operation)

    def find_plan_by_external_number(self, number: str) -> FlightPlan | None:
        with self._cursor() as cursor:
            row = cursor.execute(
                f"SELECT {PLAN_COLUMNS} FROM flight_plans WHERE external_response_number = ? ORDER BY id LIMIT 1",
                [number],
            ).fetchone()
        return _plan_from_row(row) if row else None

    def update_authorization(self, plan_id: int, status: AuthorizationStatus, message: str | None) -> bool:
        def operation() -> bool:
            with self._cursor() as cursor:
                row = cursor.execute(
                    """
                    UPDATE flight_plans
                    SET authorization_status = ?, authorization_message = ?
                    WHERE id = ?
                    RETURNING id
                    """,
                    [status.value, message, plan_id],
                ).fetchone()
            return row is not None

        return self._retrying(operation)

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------
    def register_worker(
        self,
        name: str,
        address: str,
        availability: WorkerAvailability = WorkerAvailability.AVAILABLE,
    ) -> Worker:
        def operation() -> Worker:
            with self._transaction() as cursor:
                row = cursor.execute(
                    f"UPDATE workers SET address = ? WHERE name = ? RETURNING {WORKER_COLUMNS}",
                    [address, name],
                ).fetchone()
                if row is None:
                    row = cursor.execute(
                        f"INSERT INTO workers (name, address, availability) VALUES (?, ?, ?) RETURNING {WORKER_COLUMNS}",
                        [name, address, availability.value],
                    ).fetchone()
            return _worker_from_row(row)

        return self._retrying(operation)

    def get_worker(self, worker_id: int) -> Worker | None:
        with self._cursor() as cursor:
            row = cursor.execute(f"SELECT {WORKER_COLUMNS} FROM workers WHERE id = ?", [worker_id]).fetchone()
        return _worker_from_row(row) if row else None

    def list_workers(self, availability: WorkerAvailability | None = None) -> list[Worker]:
        query = f"SELECT {WORKER_COLUMNS} FROM workers"
        params: list[Any] = []
        if availability is not None:
            query += " WHERE availability = ?"
            params.append(availability.value)
        query += " ORDER BY id"
        with self._cursor() as cursor:
            rows = cursor.execute(query, params or None).fetchall()
        return [_worker_from_row(row) for row in rows]

    def find_available_worker(self) -> Worker | None:
        with self._cursor() as cursor:
            row = cursor.execute(
                f"SELECT {WORKER_COLUMNS} FROM workers WHERE availability = 'available' ORDER BY id LIMIT 1"
            ).fetchone()
        return _worker_from_row(row) if row else None

    def set_worker_availability(self, worker_id: int, availability: WorkerAvailability) -> bool:
        def operation() -> bool:
            changed = False
            with self._transaction() as cursor:
                if availability == WorkerAvailability.AVAILABLE:
                    running = cursor.execute(
                        "SELECT id FROM flight_plans WHERE status = 'in_progress' AND assigned_worker_id = ? LIMIT 1",
                        [worker_id],
                    ).fetchone()
                    if running is not None:
                        raise _Rollback
                row = cursor.execute(
                    "UPDATE workers SET availability = ? WHERE id = ? RETURNING id",
                    [availability.value, worker_id],
                ).fetchone()
                if row is None:
                    raise _Rollback
                changed = True
            return changed

        return self._retrying(operation)

    def remove_worker(self, worker_id: int) -> bool:
        def operation() -> bool:
            removed = False
            with self._transaction() as cursor:
                exists = cursor.execute("SELECT id FROM workers WHERE id = ?", [worker_id]).fetchone()
                if exists is None:
                    raise _Rollback
                stuck = cursor.execute(
                    f"UPDATE flight_plans SET {REQUEUE_SET} "
                    "WHERE status = 'in_progress' AND assigned_worker_id = ? RETURNING id",
                    [_now(), worker_id],
                ).fetchall()
                stuck_ids = [row[0] for row in stuck]
                if stuck_ids:
                    cursor.execute(f"DELETE FROM plan_results WHERE id IN ({_marks(stuck_ids)})", stuck_ids)
                cursor.execute("DELETE FROM workers WHERE id = ?", [worker_id])
                removed = True
            return removed

        return self._retrying(operation)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def find_oldest_queued_plan(self) -> FlightPlan | None:
        with self._cursor() as cursor:
            row = cursor.execute(
                f"SELECT {PLAN_COLUMNS} FROM flight_plans WHERE status = 'queued' ORDER BY created_at, id LIMIT 1"
            ).fetchone()
        return _plan_from_row(row) if row else None

    def reserve(self, plan_id: int, worker_id: int) -> Assignment | None:
        assignment: Assignment | None = None
        try:
            with self._transaction() as cursor:
                worker_row = cursor.execute(
                    f"""
                    UPDATE workers SET availability = 'busy'
                    WHERE id = ? AND availability = 'available'
                    RETURNING {WORKER_COLUMNS}
                    """,
                    [worker_id],
                ).fetchone()
                if worker_row is None:
                    raise _Rollback
                plan_row = cursor.execute(
                    f"""
                    UPDATE flight_plans
                    SET status = 'in_progress', assigned_worker_id = ?, error_message = NULL, updated_at = ?
                    WHERE id = ? AND status = 'queued'
                    RETURNING {PLAN_COLUMNS}
                    """,
                    [worker_id, _now(), plan_id],
                ).fetchone()
                if plan_row is None:
                    raise _Rollback
                assignment = Assignment(plan=_plan_from_row(plan_row), worker=_worker_from_row(worker_row))
        except duckdb.TransactionException:
            logger.debug("store.reservation_conflict", plan_id=plan_id, worker_id=worker_id)
            return None
        return assignment

    def _finish(self, plan_id: int, worker_id: int, assignments: str, params: list[Any], payload: str | None) -> bool:
        def operation() -> bool:
            finished = False
            with self._transaction() as cursor:
                row = cursor.execute(
                    f"""
                    UPDATE flight_plans SET {assignments}, assigned_worker_id = NULL, updated_at = ?
                    WHERE id = ? AND status = 'in_progress' AND assigned_worker_id = ?
                    RETURNING id
                    """,
                    [*params, _now(), plan_id, worker_id],
                ).fetchone()
                if row is None:
                    raise _Rollback
                if payload is not None:
                    cursor.execute(
                        "INSERT OR REPLACE INTO plan_results (id, payload, size_bytes, created_at) VALUES (?, ?, ?, ?)",
                        [plan_id, payload, payload_size(payload), _now()],
                    )
                cursor.execute("UPDATE workers SET availability = 'available' WHERE id = ?", [worker_id])
                finished = True
            return finished

        return self._retrying(operation)

    def complete_plan(self, plan_id: int, worker_id: int, payload: str) -> bool:
        return self._finish(
            plan_id,
            worker_id,
            "status = 'done', result_id = ?, error_message = NULL",
            [plan_id],
            payload,
        )

    def fail_plan(self, plan_id: int, worker_id: int, reason: str) -> bool:
        return self._finish(plan_id, worker_id, "status = 'error', error_message = ?", [reason], None)

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------
    def get_result(self, result_id: int) -> PlanResult | None:
        results = self.get_results([result_id])
        return results[0] if results else None

    def get_results(self, result_ids: Iterable[int]) -> list[PlanResult]:
        ids = list(dict.fromkeys(result_ids))
        if not ids:
            return []
        with self._cursor() as cursor:
            rows = cursor.execute(
                f"SELECT id, payload, size_bytes, created_at FROM plan_results WHERE id IN ({_marks(ids)})",
                ids,
            ).fetchall()
        by_id = {
            row[0]: PlanResult(id=row[0], payload=row[1], size_bytes=row[2], created_at=_from_db_time(row[3]))
            for row in rows
        }
        return [by_id[item] for item in ids if item in by_id]

    def delete_results(self, result_ids: Iterable[int]) -> int:
        ids = sorted(set(result_ids))
        if not ids:
            return 0

        def operation() -> int:
            with self._transaction() as cursor:
                deleted = cursor.execute(
                    f"DELETE FROM plan_results WHERE id IN ({_marks(ids)}) RETURNING id", ids
                ).fetchall()
                deleted_ids = [row[0] for row in deleted]
                if deleted_ids:
                    cursor.execute(
                        f"UPDATE flight_plans SET {REQUEUE_SET} WHERE result_id IN ({_marks(deleted_ids)})",
                        [_now(), *deleted_ids],
                    )
            return len(deleted_ids)

        return self._retrying(operation)

    def list_undersized_results(self, min_bytes: int) -> list[int]:
        with self._cursor() as cursor:
            rows = cursor.execute(
                "SELECT id FROM plan_results WHERE size_bytes < ? ORDER BY id", [min_bytes]
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------
    def release_all_workers(self) -> int:
        def operation() -> int:
            with self._cursor() as cursor:
                rows = cursor.execute(
                    "UPDATE workers SET availability = 'available' WHERE availability = 'busy' RETURNING id"
                ).fetchall()
            return len(rows)

        return self._retrying(operation)

    def requeue_in_progress_plans(self) -> list[int]:
        def operation() -> list[int]:
            with self._transaction() as cursor:
                rows = cursor.execute(
                    f"UPDATE flight_plans SET {REQUEUE_SET} WHERE status = 'in_progress' RETURNING id",
                    [_now()],
                ).fetchall()
                ids = sorted(row[0] for row in rows)
                if ids:
                    cursor.execute(f"DELETE FROM plan_results WHERE id IN ({_marks(ids)})", ids)
            return ids

        return self._retrying(operation)

    def requeue_plans(self, plan_ids: Iterable[int]) -> list[int]:
        ids = sorted(set(plan_ids))
        if not ids:
            return []

        def operation() -> list[int]:
            with self._transaction() as cursor:
                cursor.execute(f"DELETE FROM plan_results WHERE id IN ({_marks(ids)})", ids)
                rows = cursor.execute(
                    f"UPDATE flight_plans SET {REQUEUE_SET} WHERE id IN ({_marks(ids)}) RETURNING id",
                    [_now(), *ids],
                ).fetchall()
            return sorted(row[0] for row in rows)

        return self._retrying(operation)

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------
    def record_assignment(self, record: AssignmentRecord) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO plan_assignments (plan_id, worker_id, worker_name, assigned_at) VALUES (?, ?, ?, ?)",
                [record.plan_id, record.worker_id, record.worker_name, _to_db_time(record.assigned_at)],
            )

    def list_assignments(self, plan_id: int | None = None) -> list[AssignmentRecord]:
        query = "SELECT plan_id, worker_id, worker_name, assigned_at FROM plan_assignments"
        params: list[Any] = []
        if plan_id is not None:
            query += " WHERE plan_id = ?"
            params.append(plan_id)
        query += " ORDER BY assigned_at, plan_id"
        with self._cursor() as cursor:
            rows = cursor.execute(query, params or None).fetchall()
        return [
            AssignmentRecord(plan_id=row[0], worker_id=row[1], worker_name=row[2], assigned_at=_from_db_time(row[3]))
            for row in rows
        ]

    def reset(self) -> None:
        with self._transaction() as cursor:
            for table in ("plan_assignments", "plan_results", "flight_plans", "workers"):
                cursor.execute(f"DELETE FROM {table}")
