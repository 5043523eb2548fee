from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..accrual import ShiftIncrement
from ..errors import OperationNotFound, OperatorBusy, StoreError, ZaraError
from ..models import Machine, Notification, Operation, ShiftAggregate, ShiftArchive, StatusChange
from ..shifts import ShiftWindow
from .base import ProductionStore, new_aggregate

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS machines (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        code TEXT NOT NULL,
        status TEXT NOT NULL,
        production_speed REAL NOT NULL DEFAULT 0,
        target_production REAL NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS operations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        machine_id INTEGER NOT NULL,
        operator_id INTEGER NOT NULL,
        operator_name TEXT NOT NULL DEFAULT '',
        start_time TEXT NOT NULL,
        end_time TEXT,
        status TEXT NOT NULL,
        notes TEXT,
        FOREIGN KEY (machine_id) REFERENCES machines(id)
    )
    """,
    # an operator runs at most one machine at a time
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_operations_active_operator
    ON operations (operator_id) WHERE status = 'ACTIVE' AND end_time IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS shift_aggregates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        machine_id INTEGER NOT NULL,
        operator_id INTEGER NOT NULL,
        shift_date TEXT NOT NULL,
        shift_type TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        total_production REAL NOT NULL DEFAULT 0,
        running_seconds REAL NOT NULL DEFAULT 0,
        target_production REAL NOT NULL DEFAULT 0,
        last_accrued_at TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        is_archived INTEGER NOT NULL DEFAULT 0,
        UNIQUE (machine_id, operator_id, shift_date, shift_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS status_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        machine_id INTEGER NOT NULL,
        previous_status TEXT,
        new_status TEXT NOT NULL,
        reason TEXT,
        notes TEXT,
        user_name TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        priority TEXT NOT NULL,
        machine_id INTEGER,
        target_roles TEXT NOT NULL DEFAULT '[]',
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shift_archives (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shift_aggregate_id INTEGER NOT NULL UNIQUE,
        machine_id INTEGER NOT NULL,
        operator_id INTEGER NOT NULL,
        payload TEXT NOT NULL,
        data_size INTEGER NOT NULL,
        checksum TEXT NOT NULL,
        archived_at TEXT NOT NULL
    )
    """,
]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SqliteStore(ProductionStore):
    """
    Single-file store. One shared connection guarded by a lock; every write
    runs inside `with self.conn:` so it commits or rolls back as a unit.
    """

    def __init__(self, path: str = "zara.db"):
        self.path = path
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self._create_tables()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store at {path}: {e}") from e

    def _create_tables(self) -> None:
        with self.conn:
            for statement in SCHEMA:
                self.conn.execute(statement)

    def close(self) -> None:
        self.conn.close()

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Store read failed: {e}") from e

    # ---- machine registry ----
    def list_machines(self) -> List[Machine]:
        return [Machine.model_validate(dict(r)) for r in self._query("SELECT * FROM machines ORDER BY id")]

    def get_machine(self, machine_id: int) -> Optional[Machine]:
        rows = self._query("SELECT * FROM machines WHERE id = ?", (machine_id,))
        return Machine.model_validate(dict(rows[0])) if rows else None

    def save_machine(self, machine: Machine) -> Machine:
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    """
                    INSERT INTO machines (id, name, code, status, production_speed, target_production, is_active)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        code = excluded.code,
                        status = excluded.status,
                        production_speed = excluded.production_speed,
                        target_production = excluded.target_production,
                        is_active = excluded.is_active
                    """,
                    (
                        machine.id,
                        machine.name,
                        machine.code,
                        machine.status,
                        machine.production_speed,
                        machine.target_production,
                        int(machine.is_active),
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not save machine {machine.id}: {e}") from e
        return machine.model_copy()

    # ---- operation log ----
    def create_operation(self, operation: Operation) -> Operation:
        try:
            with self._lock, self.conn:
                if operation.status == "ACTIVE" and operation.end_time is None:
                    busy = self.conn.execute(
                        """
                        SELECT machine_id FROM operations
                        WHERE operator_id = ? AND status = 'ACTIVE' AND end_time IS NULL
                        """,
                        (operation.operator_id,),
                    ).fetchone()
                    if busy is not None:
                        raise OperatorBusy(
                            f"Operator {operation.operator_id} is already running machine {busy['machine_id']}"
                        )
                cur = self.conn.execute(
                    """
                    INSERT INTO operations (machine_id, operator_id, operator_name, start_time, end_time, status, notes)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        operation.machine_id,
                        operation.operator_id,
                        operation.operator_name,
                        _ts(operation.start_time),
                        _ts(operation.end_time),
                        operation.status,
                        operation.notes,
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not create operation: {e}") from e
        return operation.model_copy(update={"id": cur.lastrowid})

    def update_operation(self, operation: Operation) -> Operation:
        try:
            with self._lock, self.conn:
                cur = self.conn.execute(
                    "UPDATE operations SET end_time = ?, status = ?, notes = ? WHERE id = ?",
                    (_ts(operation.end_time), operation.status, operation.notes, operation.id),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not update operation {operation.id}: {e}") from e
        if cur.rowcount == 0:
            raise OperationNotFound(f"Operation {operation.id} does not exist")
        return operation.model_copy()

    def get_open_operation(self, machine_id: int) -> Optional[Operation]:
        rows = self._query(
            """
            SELECT * FROM operations
            WHERE machine_id = ? AND status = 'ACTIVE' AND end_time IS NULL
            ORDER BY start_time DESC LIMIT 1
            """,
            (machine_id,),
        )
        return Operation.model_validate(dict(rows[0])) if rows else None

    def find_open_operation_for_operator(self, operator_id: int) -> Optional[Operation]:
        rows = self._query(
            """
            SELECT * FROM operations
            WHERE operator_id = ? AND status = 'ACTIVE' AND end_time IS NULL
            ORDER BY start_time DESC LIMIT 1
            """,
            (operator_id,),
        )
        return Operation.model_validate(dict(rows[0])) if rows else None

    # ---- shift aggregates ----
    def get_aggregate(self, machine_id: int, operator_id: int, shift_date: date, shift_type: str) -> Optional[ShiftAggregate]:
        rows = self._query(
            """
            SELECT * FROM shift_aggregates
            WHERE machine_id = ? AND operator_id = ? AND shift_date = ? AND shift_type = ?
            """,
            (machine_id, operator_id, shift_date.isoformat(), shift_type),
        )
        return ShiftAggregate.model_validate(dict(rows[0])) if rows else None

    def get_aggregate_by_id(self, aggregate_id: int) -> Optional[ShiftAggregate]:
        rows = self._query("SELECT * FROM shift_aggregates WHERE id = ?", (aggregate_id,))
        return ShiftAggregate.model_validate(dict(rows[0])) if rows else None

    def list_aggregates(
        self,
        machine_id: Optional[int] = None,
        shift_date: Optional[date] = None,
        shift_type: Optional[str] = None,
    ) -> List[ShiftAggregate]:
        clauses, params = [], []
        if machine_id is not None:
            clauses.append("machine_id = ?")
            params.append(machine_id)
        if shift_date is not None:
            clauses.append("shift_date = ?")
            params.append(shift_date.isoformat())
        if shift_type is not None:
            clauses.append("shift_type = ?")
            params.append(shift_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(f"SELECT * FROM shift_aggregates {where} ORDER BY id", tuple(params))
        return [ShiftAggregate.model_validate(dict(r)) for r in rows]

    def _upsert_aggregate(
        self,
        machine_id: int,
        operator_id: int,
        window: ShiftWindow,
        units: float,
        running_seconds: float,
        checkpoint: datetime,
        target_production: float,
    ) -> int:
        key = (machine_id, operator_id, window.shift_date.isoformat(), window.type)
        row = self.conn.execute(
            """
            SELECT id, is_archived FROM shift_aggregates
            WHERE machine_id = ? AND operator_id = ? AND shift_date = ? AND shift_type = ?
            """,
            key,
        ).fetchone()

        if row is None:
            agg = new_aggregate(machine_id, operator_id, window, target_production)
            cur = self.conn.execute(
                """
                INSERT INTO shift_aggregates (
                    machine_id, operator_id, shift_date, shift_type, start_time, end_time,
                    total_production, running_seconds, target_production, last_accrued_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    *key,
                    _ts(agg.start_time),
                    _ts(agg.end_time),
                    units,
                    running_seconds,
                    agg.target_production,
                    _ts(checkpoint),
                ),
            )
            return cur.lastrowid

        if row["is_archived"] and units:
            logger.warning(
                "Late accrual of %.3f units into archived shift aggregate %s (machine %s)", units, row["id"], machine_id
            )
        self.conn.execute(
            """
            UPDATE shift_aggregates
            SET total_production = total_production + ?,
                running_seconds = running_seconds + ?,
                last_accrued_at = ?
            WHERE id = ?
            """,
            (units, running_seconds, _ts(checkpoint), row["id"]),
        )
        return row["id"]

    def apply_accrual(
        self,
        machine_id: int,
        operator_id: int,
        increments: List[ShiftIncrement],
        checkpoint: datetime,
        current_window: Optional[ShiftWindow] = None,
        target_production: float = 0.0,
    ) -> Optional[ShiftAggregate]:
        last_id = None
        row = None
        try:
            with self._lock, self.conn:
                for inc in increments:
                    last_id = self._upsert_aggregate(
                        machine_id, operator_id, inc.window, inc.units, inc.running_seconds, checkpoint, target_production
                    )
                if current_window is not None:
                    last_id = self._upsert_aggregate(
                        machine_id, operator_id, current_window, 0.0, 0.0, checkpoint, target_production
                    )
                if last_id is not None:
                    # read back before the commit; nothing may raise once it is durable
                    row = self.conn.execute("SELECT * FROM shift_aggregates WHERE id = ?", (last_id,)).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Could not commit accrual for machine {machine_id}: {e}") from e
        return ShiftAggregate.model_validate(dict(row)) if row is not None else None

    def archive_aggregate(self, aggregate_id: int, archive: ShiftArchive) -> ShiftArchive:
        try:
            with self._lock, self.conn:
                row = self.conn.execute(
                    "SELECT is_archived FROM shift_aggregates WHERE id = ?", (aggregate_id,)
                ).fetchone()
                if row is None:
                    raise ZaraError(f"Shift aggregate {aggregate_id} not found", status_code=404, code="SHIFT_NOT_FOUND")
                if row["is_archived"]:
                    raise ZaraError(f"Shift aggregate {aggregate_id} is already archived", code="ALREADY_ARCHIVED")

                cur = self.conn.execute(
                    """
                    INSERT INTO shift_archives (
                        shift_aggregate_id, machine_id, operator_id, payload, data_size, checksum, archived_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        aggregate_id,
                        archive.machine_id,
                        archive.operator_id,
                        json.dumps(archive.payload, ensure_ascii=False),
                        archive.data_size,
                        archive.checksum,
                        _ts(archive.archived_at),
                    ),
                )
                self.conn.execute(
                    "UPDATE shift_aggregates SET is_active = 0, is_archived = 1 WHERE id = ?", (aggregate_id,)
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not archive shift aggregate {aggregate_id}: {e}") from e
        return archive.model_copy(update={"id": cur.lastrowid})

    def list_archives(self, machine_id: Optional[int] = None, operator_id: Optional[int] = None) -> List[ShiftArchive]:
        clauses, params = [], []
        if machine_id is not None:
            clauses.append("machine_id = ?")
            params.append(machine_id)
        if operator_id is not None:
            clauses.append("operator_id = ?")
            params.append(operator_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(f"SELECT * FROM shift_archives {where} ORDER BY archived_at DESC, id DESC", tuple(params))
        return [ShiftArchive.model_validate(self._decode(r, "payload")) for r in rows]

    # ---- status history ----
    def add_status_change(self, change: StatusChange) -> StatusChange:
        try:
            with self._lock, self.conn:
                cur = self.conn.execute(
                    """
                    INSERT INTO status_history (machine_id, previous_status, new_status, reason, notes, user_name, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        change.machine_id,
                        change.previous_status,
                        change.new_status,
                        change.reason,
                        change.notes,
                        change.user_name,
                        _ts(change.created_at),
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not record status change: {e}") from e
        return change.model_copy(update={"id": cur.lastrowid})

    def list_status_changes(self, machine_id: int) -> List[StatusChange]:
        rows = self._query(
            "SELECT * FROM status_history WHERE machine_id = ? ORDER BY created_at, id", (machine_id,)
        )
        return [StatusChange.model_validate(dict(r)) for r in rows]

    # ---- notifications ----
    def add_notification(self, notification: Notification) -> Notification:
        try:
            with self._lock, self.conn:
                cur = self.conn.execute(
                    """
                    INSERT INTO notifications (type, title, message, priority, machine_id, target_roles, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        notification.type,
                        notification.title,
                        notification.message,
                        notification.priority,
                        notification.machine_id,
                        json.dumps(notification.target_roles),
                        json.dumps(notification.metadata, default=str),
                        _ts(notification.created_at),
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not save notification: {e}") from e
        return notification.model_copy(update={"id": cur.lastrowid})

    def list_notifications(self, role: Optional[str] = None, limit: int = 50) -> List[Notification]:
        rows = self._query("SELECT * FROM notifications ORDER BY created_at DESC, id DESC")
        out = []
        for r in rows:
            n = Notification.model_validate(self._decode(r, "target_roles", "metadata"))
            if role is None or role in n.target_roles:
                out.append(n)
            if len(out) >= limit:
                break
        return out

    def prune_notifications(self, before: datetime) -> int:
        try:
            with self._lock, self.conn:
                cur = self.conn.execute("DELETE FROM notifications WHERE created_at < ?", (_ts(before),))
        except sqlite3.Error as e:
            raise StoreError(f"Could not prune notifications: {e}") from e
        return cur.rowcount

    @staticmethod
    def _decode(row: sqlite3.Row, *json_columns: str) -> Dict[str, Any]:
        data = dict(row)
        for col in json_columns:
            data[col] = json.loads(data[col]) if data[col] else None
        return data
