from __future__ import annotations

import itertools
import logging
import threading
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from ..accrual import ShiftIncrement
from ..errors import OperationNotFound, OperatorBusy, ZaraError
from ..models import Machine, Notification, Operation, ShiftAggregate, ShiftArchive, StatusChange
from ..shifts import ShiftWindow
from .base import ProductionStore, new_aggregate

logger = logging.getLogger(__name__)

AggregateKey = Tuple[int, int, date, str]  # machine, operator, shift date, shift type


class MemoryStore(ProductionStore):
    """Process-local store. Hands out copies so callers never mutate stored rows."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

        self._machines: Dict[int, Machine] = {}
        self._operations: Dict[int, Operation] = {}
        self._aggregates: Dict[AggregateKey, ShiftAggregate] = {}
        self._history: List[StatusChange] = []
        self._notifications: List[Notification] = []
        self._archives: List[ShiftArchive] = []

    # ---- machine registry ----
    def list_machines(self) -> List[Machine]:
        with self._lock:
            return [m.model_copy() for _, m in sorted(self._machines.items())]

    def get_machine(self, machine_id: int) -> Optional[Machine]:
        with self._lock:
            m = self._machines.get(machine_id)
            return m.model_copy() if m else None

    def save_machine(self, machine: Machine) -> Machine:
        with self._lock:
            self._machines[machine.id] = machine.model_copy()
            return machine.model_copy()

    # ---- operation log ----
    def create_operation(self, operation: Operation) -> Operation:
        with self._lock:
            if operation.status == "ACTIVE" and operation.end_time is None:
                busy = next((o for o in self._open_operations() if o.operator_id == operation.operator_id), None)
                if busy is not None:
                    raise OperatorBusy(f"Operator {operation.operator_id} is already running machine {busy.machine_id}")
            op = operation.model_copy(update={"id": next(self._ids)})
            self._operations[op.id] = op
            return op.model_copy()

    def update_operation(self, operation: Operation) -> Operation:
        with self._lock:
            if operation.id not in self._operations:
                raise OperationNotFound(f"Operation {operation.id} does not exist")
            self._operations[operation.id] = operation.model_copy()
            return operation.model_copy()

    def _open_operations(self) -> List[Operation]:
        ops = [o for o in self._operations.values() if o.status == "ACTIVE" and o.end_time is None]
        return sorted(ops, key=lambda o: o.start_time, reverse=True)

    def get_open_operation(self, machine_id: int) -> Optional[Operation]:
        with self._lock:
            op = next((o for o in self._open_operations() if o.machine_id == machine_id), None)
            return op.model_copy() if op else None

    def find_open_operation_for_operator(self, operator_id: int) -> Optional[Operation]:
        with self._lock:
            op = next((o for o in self._open_operations() if o.operator_id == operator_id), None)
            return op.model_copy() if op else None

    # ---- shift aggregates ----
    def get_aggregate(self, machine_id: int, operator_id: int, shift_date: date, shift_type: str) -> Optional[ShiftAggregate]:
        with self._lock:
            agg = self._aggregates.get((machine_id, operator_id, shift_date, shift_type))
            return agg.model_copy() if agg else None

    def get_aggregate_by_id(self, aggregate_id: int) -> Optional[ShiftAggregate]:
        with self._lock:
            agg = next((a for a in self._aggregates.values() if a.id == aggregate_id), None)
            return agg.model_copy() if agg else None

    def list_aggregates(
        self,
        machine_id: Optional[int] = None,
        shift_date: Optional[date] = None,
        shift_type: Optional[str] = None,
    ) -> List[ShiftAggregate]:
        with self._lock:
            rows = [
                a.model_copy()
                for a in self._aggregates.values()
                if (machine_id is None or a.machine_id == machine_id)
                and (shift_date is None or a.shift_date == shift_date)
                and (shift_type is None or a.shift_type == shift_type)
            ]
        return sorted(rows, key=lambda a: a.id)

    def apply_accrual(
        self,
        machine_id: int,
        operator_id: int,
        increments: List[ShiftIncrement],
        checkpoint: datetime,
        current_window: Optional[ShiftWindow] = None,
        target_production: float = 0.0,
    ) -> Optional[ShiftAggregate]:
        with self._lock:
            staged: Dict[AggregateKey, ShiftAggregate] = {}

            def stage(window: ShiftWindow) -> ShiftAggregate:
                key = (machine_id, operator_id, window.shift_date, window.type)
                if key not in staged:
                    existing = self._aggregates.get(key)
                    staged[key] = existing.model_copy() if existing else new_aggregate(
                        machine_id, operator_id, window, target_production
                    )
                return staged[key]

            last = None
            for inc in increments:
                last = stage(inc.window)
                if last.is_archived and inc.units:
                    logger.warning(
                        "Late accrual of %.3f units into archived shift aggregate %s (machine %s)",
                        inc.units,
                        last.id,
                        machine_id,
                    )
                last.total_production += inc.units
                last.running_seconds += inc.running_seconds
                last.last_accrued_at = checkpoint

            if current_window is not None:
                last = stage(current_window)
                last.last_accrued_at = checkpoint

            # commit
            for key, agg in staged.items():
                if agg.id is None:
                    agg.id = next(self._ids)
                self._aggregates[key] = agg

            return last.model_copy() if last else None

    def archive_aggregate(self, aggregate_id: int, archive: ShiftArchive) -> ShiftArchive:
        with self._lock:
            key = next((k for k, a in self._aggregates.items() if a.id == aggregate_id), None)
            if key is None:
                raise ZaraError(f"Shift aggregate {aggregate_id} not found", status_code=404, code="SHIFT_NOT_FOUND")
            if self._aggregates[key].is_archived:
                raise ZaraError(f"Shift aggregate {aggregate_id} is already archived", code="ALREADY_ARCHIVED")

            saved = archive.model_copy(update={"id": next(self._ids)})
            self._archives.append(saved)
            self._aggregates[key] = self._aggregates[key].model_copy(update={"is_active": False, "is_archived": True})
            return saved.model_copy()

    def list_archives(self, machine_id: Optional[int] = None, operator_id: Optional[int] = None) -> List[ShiftArchive]:
        with self._lock:
            rows = [
                a.model_copy()
                for a in self._archives
                if (machine_id is None or a.machine_id == machine_id)
                and (operator_id is None or a.operator_id == operator_id)
            ]
        return sorted(rows, key=lambda a: a.archived_at, reverse=True)

    # ---- status history ----
    def add_status_change(self, change: StatusChange) -> StatusChange:
        with self._lock:
            saved = change.model_copy(update={"id": next(self._ids)})
            self._history.append(saved)
            return saved.model_copy()

    def list_status_changes(self, machine_id: int) -> List[StatusChange]:
        with self._lock:
            rows = [c.model_copy() for c in self._history if c.machine_id == machine_id]
        return sorted(rows, key=lambda c: (c.created_at, c.id))

    # ---- notifications ----
    def add_notification(self, notification: Notification) -> Notification:
        with self._lock:
            saved = notification.model_copy(update={"id": next(self._ids)})
            self._notifications.append(saved)
            return saved.model_copy()

    def list_notifications(self, role: Optional[str] = None, limit: int = 50) -> List[Notification]:
        with self._lock:
            rows = [n.model_copy() for n in self._notifications if role is None or role in n.target_roles]
        rows.sort(key=lambda n: (n.created_at, n.id), reverse=True)
        return rows[:limit]

    def prune_notifications(self, before: datetime) -> int:
        with self._lock:
            kept = [n for n in self._notifications if n.created_at >= before]
            removed = len(self._notifications) - len(kept)
            self._notifications = kept
        return removed
