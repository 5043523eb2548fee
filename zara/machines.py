from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .errors import MachineInactive, MachineInUse, MachineNotFound, OperationNotFound, OperatorBusy
from .estimator import ProductionEstimator
from .events import (
    OPERATION_ENDED,
    OPERATION_STARTED,
    PRODUCTION_UPDATE,
    SPEED_UPDATED,
    STATUS_CHANGED,
    EventHub,
)
from .models import (
    Machine,
    MachineStatus,
    Operation,
    OperationEndIn,
    OperationStartIn,
    SpeedUpdateIn,
    StatusChange,
    StatusUpdateIn,
)
from .notifications import Notifier

logger = logging.getLogger(__name__)


def seed_machines(store, raw: Optional[List[Dict]]) -> int:
    """Insert configured machines that the store does not know yet."""
    added = 0
    for item in raw or []:
        if store.get_machine(int(item["id"])) is not None:
            continue
        store.save_machine(Machine.model_validate(item))
        added += 1
    if added:
        logger.info("Seeded %d machines", added)
    return added


class MachineService:
    """
    Machine actions. Each one runs under the machine's estimator lock so it is
    linearized with ticks; events and notifications go out after the lock is
    released.
    """

    def __init__(
        self,
        store,
        estimator: ProductionEstimator,
        hub: EventHub,
        notifier: Notifier,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.estimator = estimator
        self.hub = hub
        self.notifier = notifier
        self.clock = clock

    def get(self, machine_id: int) -> Machine:
        machine = self.store.get_machine(machine_id)
        if machine is None:
            raise MachineNotFound(machine_id)
        return machine

    def list_machines(self) -> List[Machine]:
        return self.store.list_machines()

    def detail(self, machine_id: int) -> Tuple[Machine, Optional[Operation]]:
        machine = self.get(machine_id)
        return machine, self.store.get_open_operation(machine_id)

    def _record_status(self, machine: Machine, previous: Optional[str], now: datetime, **extra) -> StatusChange:
        return self.store.add_status_change(
            StatusChange(
                machine_id=machine.id,
                previous_status=previous,
                new_status=machine.status,
                created_at=now,
                **extra,
            )
        )

    # ---- operations ----
    def start_operation(self, machine_id: int, body: OperationStartIn) -> Operation:
        with self.estimator.lock_for(machine_id):
            now = self.clock()
            machine = self.get(machine_id)
            if not machine.is_active:
                raise MachineInactive(f"Machine {machine.name} is not active")
            if self.store.get_open_operation(machine_id) is not None:
                raise MachineInUse(f"Machine {machine.name} already has an active operation")
            busy = self.store.find_open_operation_for_operator(body.operator_id)
            if busy is not None:
                raise OperatorBusy(f"Operator {body.operator_id} is already running machine {busy.machine_id}")

            operation = self.store.create_operation(
                Operation(
                    machine_id=machine_id,
                    operator_id=body.operator_id,
                    operator_name=body.operator_name,
                    start_time=now,
                    notes=body.notes,
                )
            )
            previous = machine.status
            machine.status = "RUNNING"
            self.store.save_machine(machine)
            self._record_status(machine, previous, now, reason="Operation started", user_name=body.operator_name or None)
            self.estimator.begin_operation(machine, operation, now)

        logger.info("Operation %s started on machine %s by operator %s", operation.id, machine_id, body.operator_id)
        self.hub.publish(OPERATION_STARTED, {"machine": machine.to_api(), "operation": operation.to_api()})
        self.hub.publish(PRODUCTION_UPDATE, self.estimator.current_shift(machine_id).to_api())
        self.notifier.operation_started(machine, operation)
        return operation

    def end_operation(self, machine_id: int, body: OperationEndIn) -> Operation:
        with self.estimator.lock_for(machine_id):
            now = self.clock()
            machine = self.get(machine_id)
            operation = self.store.get_open_operation(machine_id)
            if operation is None or (body.operator_id is not None and operation.operator_id != body.operator_id):
                raise OperationNotFound(f"No active operation on machine {machine.name}")

            self.estimator.end_operation(machine_id, now)
            operation.end_time = now
            operation.status = "COMPLETED"
            if body.notes:
                operation.notes = body.notes
            self.store.update_operation(operation)

            previous = machine.status
            machine.status = "STOPPED"
            self.store.save_machine(machine)
            self._record_status(machine, previous, now, reason="Operation ended", user_name=operation.operator_name or None)

        logger.info("Operation %s ended on machine %s", operation.id, machine_id)
        self.hub.publish(OPERATION_ENDED, {"machine": machine.to_api(), "operation": operation.to_api()})
        self.notifier.operation_ended(machine, operation)
        return operation

    # ---- status / speed ----
    def set_status(self, machine_id: int, body: StatusUpdateIn) -> Machine:
        with self.estimator.lock_for(machine_id):
            now = self.clock()
            machine = self.get(machine_id)
            previous: MachineStatus = machine.status
            if previous == body.status:
                return machine

            if previous == "RUNNING":
                self.estimator.stop(machine_id, now)
            machine.status = body.status
            self.store.save_machine(machine)
            if body.status == "RUNNING":
                self.estimator.resume(machine, self.store.get_open_operation(machine_id), now)
            change = self._record_status(
                machine, previous, now, reason=body.reason, notes=body.notes, user_name=body.user_name
            )

        logger.info("Machine %s status %s -> %s", machine_id, previous, body.status)
        self.hub.publish(
            STATUS_CHANGED,
            {"machine": machine.to_api(), "previousStatus": previous, "change": change.to_api()},
        )
        self.notifier.machine_status_changed(machine, previous, body.reason)
        return machine

    def set_production_speed(self, machine_id: int, body: SpeedUpdateIn) -> Machine:
        with self.estimator.lock_for(machine_id):
            now = self.clock()
            machine = self.get(machine_id)
            previous_speed = machine.production_speed

            self.estimator.change_speed(machine_id, body.production_speed, now, target=body.target_production)
            machine.production_speed = body.production_speed
            if body.target_production is not None:
                machine.target_production = body.target_production
            self.store.save_machine(machine)

        self.hub.publish(
            SPEED_UPDATED,
            {
                "machineId": machine.id,
                "previousSpeed": previous_speed,
                "productionSpeed": machine.production_speed,
                "targetProduction": machine.target_production,
                "updatedAt": now,
            },
        )
        return machine
