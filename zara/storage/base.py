from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import List, Optional

from ..accrual import ShiftIncrement
from ..models import (
    Machine,
    Notification,
    Operation,
    ShiftAggregate,
    ShiftArchive,
    StatusChange,
)
from ..shifts import ShiftWindow


class ProductionStore(ABC):
    # ---- machine registry ----
    @abstractmethod
    def list_machines(self) -> List[Machine]:
        ...

    @abstractmethod
    def get_machine(self, machine_id: int) -> Optional[Machine]:
        ...

    @abstractmethod
    def save_machine(self, machine: Machine) -> Machine:
        ...

    # ---- operation log ----
    @abstractmethod
    def create_operation(self, operation: Operation) -> Operation:
        """Raises OperatorBusy if the operator already has an open operation."""

    @abstractmethod
    def update_operation(self, operation: Operation) -> Operation:
        ...

    @abstractmethod
    def get_open_operation(self, machine_id: int) -> Optional[Operation]:
        ...

    @abstractmethod
    def find_open_operation_for_operator(self, operator_id: int) -> Optional[Operation]:
        ...

    # ---- shift aggregates ----
    @abstractmethod
    def get_aggregate(self, machine_id: int, operator_id: int, shift_date: date, shift_type: str) -> Optional[ShiftAggregate]:
        ...

    @abstractmethod
    def get_aggregate_by_id(self, aggregate_id: int) -> Optional[ShiftAggregate]:
        ...

    @abstractmethod
    def list_aggregates(
        self,
        machine_id: Optional[int] = None,
        shift_date: Optional[date] = None,
        shift_type: Optional[str] = None,
    ) -> List[ShiftAggregate]:
        ...

    @abstractmethod
    def apply_accrual(
        self,
        machine_id: int,
        operator_id: int,
        increments: List[ShiftIncrement],
        checkpoint: datetime,
        current_window: Optional[ShiftWindow] = None,
        target_production: float = 0.0,
    ) -> Optional[ShiftAggregate]:
        """
        Add every increment to its (machine, shift, operator) aggregate and
        move their checkpoint, all or nothing. Missing aggregates start at zero.
        `current_window`'s aggregate is created even without increments.
        Returns the current window's aggregate (or the last one touched).
        Raises StoreError if nothing could be committed.
        """

    @abstractmethod
    def archive_aggregate(self, aggregate_id: int, archive: ShiftArchive) -> ShiftArchive:
        ...

    @abstractmethod
    def list_archives(self, machine_id: Optional[int] = None, operator_id: Optional[int] = None) -> List[ShiftArchive]:
        ...

    # ---- status history ----
    @abstractmethod
    def add_status_change(self, change: StatusChange) -> StatusChange:
        ...

    @abstractmethod
    def list_status_changes(self, machine_id: int) -> List[StatusChange]:
        """Oldest first."""

    # ---- notifications ----
    @abstractmethod
    def add_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    def list_notifications(self, role: Optional[str] = None, limit: int = 50) -> List[Notification]:
        """Newest first."""

    @abstractmethod
    def prune_notifications(self, before: datetime) -> int:
        """Delete notifications created before `before`; returns how many went."""


def new_aggregate(machine_id: int, operator_id: int, window: ShiftWindow, target_production: float) -> ShiftAggregate:
    return ShiftAggregate(
        machine_id=machine_id,
        operator_id=operator_id,
        shift_date=window.shift_date,
        shift_type=window.type,
        start_time=window.start,
        end_time=window.end,
        target_production=target_production,
    )
