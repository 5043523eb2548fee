"""
Real-time production estimator.

Each machine with an open operation has a `MachineAccrual` record: the speed
in effect, the instant the open interval started, and any closed intervals
that have not been persisted yet. A commit turns those intervals into
per-shift increments, writes them in one store call and only then advances
the in-memory checkpoint. If the write fails, nothing moves and the next
tick retries the same intervals.

Every mutation of a machine's record, and every read of its committed
figures, happens under that machine's lock.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .accrual import AccrualInterval, group_by_operator, increments_by_shift
from .errors import MachineNotFound, StoreError
from .events import PRODUCTION_UPDATED, EventHub
from .models import CurrentShiftProduction, Machine, Operation, ShiftAggregate
from .shifts import ShiftCalendar, archive_completed_shifts

logger = logging.getLogger(__name__)


@dataclass
class MachineAccrual:
    machine_id: int
    machine_name: str
    operation_id: Optional[int]
    operator_id: Optional[int]
    operator_name: str
    speed: float
    running: bool
    open_since: Optional[datetime]
    checkpoint: datetime
    target_production: float = 0.0
    pending: List[AccrualInterval] = field(default_factory=list)

    def open_interval(self, now: datetime) -> Optional[AccrualInterval]:
        if not self.running or self.open_since is None:
            return None
        return AccrualInterval(self.speed, self.open_since, max(now, self.open_since), self.operator_id)

    def intervals_until(self, now: datetime) -> List[AccrualInterval]:
        intervals = list(self.pending)
        current = self.open_interval(now)
        if current is not None:
            intervals.append(current)
        return intervals

    def close_open_interval(self, now: datetime) -> None:
        current = self.open_interval(now)
        if current is None:
            return
        if current.seconds > 0:
            self.pending.append(current)
        self.open_since = current.end


class ProductionEstimator:
    def __init__(
        self,
        store,
        calendar: Optional[ShiftCalendar] = None,
        hub: Optional[EventHub] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.calendar = calendar or ShiftCalendar()
        self.hub = hub
        self.clock = clock

        self._states: Dict[int, MachineAccrual] = {}
        self._locks: Dict[int, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Locks / state
    # ------------------------------------------------------------------ #

    def lock_for(self, machine_id: int) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(machine_id)
            if lock is None:
                lock = self._locks[machine_id] = threading.RLock()
            return lock

    def state(self, machine_id: int) -> Optional[MachineAccrual]:
        return self._states.get(machine_id)

    def _set_state(self, state: MachineAccrual) -> None:
        with self._registry_lock:
            self._states[state.machine_id] = state

    def _drop_state(self, machine_id: int) -> None:
        with self._registry_lock:
            self._states.pop(machine_id, None)

    # ------------------------------------------------------------------ #
    # Commit
    # ------------------------------------------------------------------ #

    def _commit_locked(self, state: MachineAccrual, now: datetime, ensure_current: bool = False) -> Optional[ShiftAggregate]:
        """
        Persist everything accrued up to `now`. Caller holds the machine lock.
        Returns the current-shift aggregate, or None when a write failed.
        """
        checkpoint = max(now, state.checkpoint)
        open_interval = state.open_interval(now)
        groups = group_by_operator(state.intervals_until(now))
        if ensure_current and state.operator_id not in groups:
            groups[state.operator_id] = []

        result = None
        units_added = 0.0
        for operator_id, intervals in groups.items():
            if operator_id is None:
                # an interval with no operator cannot be keyed to an aggregate
                state.pending = [i for i in state.pending if i.operator_id is not None]
                continue

            increments = increments_by_shift(intervals, self.calendar)
            owns_open = operator_id == state.operator_id and (open_interval is not None or ensure_current)
            current_window = self.calendar.window_for(checkpoint) if owns_open else None
            try:
                aggregate = self.store.apply_accrual(
                    state.machine_id,
                    operator_id,
                    increments,
                    checkpoint,
                    current_window=current_window,
                    target_production=state.target_production,
                )
            except StoreError as e:
                logger.warning(
                    "Accrual for machine %s not persisted, keeping checkpoint %s: %s",
                    state.machine_id,
                    state.checkpoint.isoformat(),
                    e.message,
                )
                return None

            state.pending = [i for i in state.pending if i.operator_id != operator_id]
            if operator_id == state.operator_id:
                if open_interval is not None:
                    state.open_since = open_interval.end
                result = aggregate
            units_added += sum(inc.units for inc in increments)

        state.checkpoint = checkpoint
        if result is not None:
            logger.info(
                "Machine %s accrued %.3f units at %.2f/min, shift total %.3f",
                state.machine_id,
                units_added,
                state.speed,
                result.total_production,
            )
            self._publish_update(state, result)
        return result

    def _publish_update(self, state: MachineAccrual, aggregate: ShiftAggregate) -> None:
        if self.hub is None:
            return
        self.hub.publish(
            PRODUCTION_UPDATED,
            {
                "machineId": state.machine_id,
                "machineName": state.machine_name,
                "operatorId": state.operator_id,
                "totalProduction": math.floor(aggregate.total_production),
                "productionSpeed": state.speed,
                "runningMinutes": int(aggregate.running_seconds // 60),
                "shiftType": aggregate.shift_type,
                "shiftDate": aggregate.shift_date.isoformat(),
                "lastUpdate": aggregate.last_accrued_at,
            },
        )

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    def tick(self, now: Optional[datetime] = None) -> List[int]:
        """Accrue every machine that is running or has unpersisted intervals."""
        now = now or self.clock()
        with self._registry_lock:
            machine_ids = [mid for mid, s in self._states.items() if s.running or s.pending]

        updated = []
        for machine_id in machine_ids:
            with self.lock_for(machine_id):
                state = self._states.get(machine_id)
                if state is None:
                    continue
                if self._commit_locked(state, now) is not None:
                    updated.append(machine_id)
                if not state.running and not state.pending and state.operation_id is None:
                    self._drop_state(machine_id)
        return updated

    def flush(self, machine_id: int, now: Optional[datetime] = None) -> Optional[ShiftAggregate]:
        now = now or self.clock()
        with self.lock_for(machine_id):
            state = self._states.get(machine_id)
            if state is None:
                return None
            return self._commit_locked(state, now)

    def begin_operation(self, machine: Machine, operation: Operation, now: Optional[datetime] = None) -> Optional[ShiftAggregate]:
        """Open an interval for a new run and make sure its shift aggregate exists."""
        now = now or self.clock()
        with self.lock_for(machine.id):
            previous = self._states.get(machine.id)
            state = MachineAccrual(
                machine_id=machine.id,
                machine_name=machine.name,
                operation_id=operation.id,
                operator_id=operation.operator_id,
                operator_name=operation.operator_name,
                speed=machine.production_speed,
                running=True,
                open_since=now,
                checkpoint=max(now, previous.checkpoint) if previous else now,
                target_production=machine.target_production,
                pending=list(previous.pending) if previous else [],
            )
            self._set_state(state)
            return self._commit_locked(state, now, ensure_current=True)

    def end_operation(self, machine_id: int, now: Optional[datetime] = None) -> Optional[ShiftAggregate]:
        now = now or self.clock()
        with self.lock_for(machine_id):
            state = self._states.get(machine_id)
            if state is None:
                return None
            state.close_open_interval(now)
            state.running = False
            state.open_since = None
            result = self._commit_locked(state, now)
            state.operation_id = None
            if not state.pending:
                self._drop_state(machine_id)
            return result

    def stop(self, machine_id: int, now: Optional[datetime] = None) -> Optional[ShiftAggregate]:
        """Close the open interval and persist immediately. Accrual pauses until `resume`."""
        now = now or self.clock()
        with self.lock_for(machine_id):
            state = self._states.get(machine_id)
            if state is None or not state.running:
                return None
            state.close_open_interval(now)
            state.running = False
            state.open_since = None
            return self._commit_locked(state, now)

    def resume(self, machine: Machine, operation: Optional[Operation], now: Optional[datetime] = None) -> Optional[ShiftAggregate]:
        """Open a fresh interval at `now`. The stopped span is not backfilled."""
        if operation is None:
            return None
        now = now or self.clock()
        with self.lock_for(machine.id):
            state = self._states.get(machine.id)
            if state is None:
                state = MachineAccrual(
                    machine_id=machine.id,
                    machine_name=machine.name,
                    operation_id=operation.id,
                    operator_id=operation.operator_id,
                    operator_name=operation.operator_name,
                    speed=machine.production_speed,
                    running=False,
                    open_since=None,
                    checkpoint=now,
                    target_production=machine.target_production,
                )
                self._set_state(state)
            if state.running:
                return None
            state.running = True
            state.speed = machine.production_speed
            state.open_since = max(now, state.checkpoint)
            return self._commit_locked(state, now, ensure_current=True)

    def change_speed(
        self,
        machine_id: int,
        new_speed: float,
        now: Optional[datetime] = None,
        target: Optional[float] = None,
    ) -> Optional[ShiftAggregate]:
        """Close the open interval at the old speed and continue at the new one."""
        now = now or self.clock()
        with self.lock_for(machine_id):
            state = self._states.get(machine_id)
            if state is None:
                return None
            old_speed = state.speed
            state.close_open_interval(now)
            state.speed = new_speed
            if target is not None:
                state.target_production = target
            logger.info("Machine %s speed %.2f -> %.2f/min", machine_id, old_speed, new_speed)
            return self._commit_locked(state, now)

    def settled(self, aggregate: ShiftAggregate) -> bool:
        """False while this machine still holds uncommitted time inside the aggregate's window."""
        with self.lock_for(aggregate.machine_id):
            state = self._states.get(aggregate.machine_id)
            if state is None:
                return True
            if any(i.operator_id == aggregate.operator_id and i.start < aggregate.end_time for i in state.pending):
                return False
            open_interval = state.open_interval(state.checkpoint)
            return not (
                open_interval is not None
                and state.operator_id == aggregate.operator_id
                and open_interval.start < aggregate.end_time
            )

    def archive_completed(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Flush accrual up to `now`, then archive the finished shifts it has settled."""
        now = now or self.clock()
        self.tick(now)
        return archive_completed_shifts(self.store, now, settled=self.settled)

    def restore(self) -> int:
        """
        Rebuild accrual state after a restart from open operations of RUNNING
        machines. Accrual resumes from the last persisted checkpoint.
        """
        restored = 0
        for machine in self.store.list_machines():
            if machine.status != "RUNNING":
                continue
            operation = self.store.get_open_operation(machine.id)
            if operation is None:
                continue

            checkpoints = [
                a.last_accrued_at
                for a in self.store.list_aggregates(machine_id=machine.id)
                if a.operator_id == operation.operator_id
                and a.last_accrued_at is not None
                and a.last_accrued_at >= operation.start_time
            ]
            anchor = max(checkpoints) if checkpoints else operation.start_time

            self._set_state(
                MachineAccrual(
                    machine_id=machine.id,
                    machine_name=machine.name,
                    operation_id=operation.id,
                    operator_id=operation.operator_id,
                    operator_name=operation.operator_name,
                    speed=machine.production_speed,
                    running=True,
                    open_since=anchor,
                    checkpoint=anchor,
                    target_production=machine.target_production,
                )
            )
            restored += 1
            logger.info("Restored accrual for machine %s from %s", machine.id, anchor.isoformat())
        return restored

    # ------------------------------------------------------------------ #
    # Read model
    # ------------------------------------------------------------------ #

    def current_shift(self, machine_id: int, now: Optional[datetime] = None) -> CurrentShiftProduction:
        machine = self.store.get_machine(machine_id)
        if machine is None:
            raise MachineNotFound(machine_id)

        window = self.calendar.window_for(now or self.clock())
        with self.lock_for(machine_id):
            aggregates = self.store.list_aggregates(
                machine_id=machine_id, shift_date=window.shift_date, shift_type=window.type
            )
            operation = self.store.get_open_operation(machine_id)

        total = sum(a.total_production for a in aggregates)
        running_seconds = sum(a.running_seconds for a in aggregates)
        checkpoints = [a.last_accrued_at for a in aggregates if a.last_accrued_at is not None]
        last_update = max(checkpoints) if checkpoints else None

        efficiency = 0
        if last_update is not None:
            elapsed = (min(last_update, window.end) - window.start).total_seconds()
            if elapsed > 0:
                efficiency = min(100, round(running_seconds / elapsed * 100))

        return CurrentShiftProduction(
            machine_id=machine.id,
            machine_name=machine.name,
            estimated_production=math.floor(total),
            running_minutes=int(running_seconds // 60),
            production_speed=machine.production_speed,
            efficiency=efficiency,
            is_currently_running=machine.status == "RUNNING" and operation is not None,
            current_status=machine.status,
            target_production=machine.target_production,
            shift=window.to_info(),
            last_update=last_update,
        )


MIN_TICK_SECONDS = 1.0
MAX_TICK_SECONDS = 30.0


class ProductionTicker:
    """
    Background thread that ticks the estimator, archives finished shifts and
    prunes old notifications. The first pass runs as soon as the thread starts.
    """

    def __init__(
        self,
        estimator: ProductionEstimator,
        tick_seconds: float = 30.0,
        on_tick: Optional[Callable[[List[int]], None]] = None,
        notification_retention_days: Optional[float] = 30,
    ):
        self.estimator = estimator
        self.tick_seconds = min(MAX_TICK_SECONDS, max(MIN_TICK_SECONDS, float(tick_seconds)))
        if self.tick_seconds != float(tick_seconds):
            logger.warning("tick_seconds %s out of range, using %.1fs", tick_seconds, self.tick_seconds)
        self.on_tick = on_tick
        self.notification_retention = (
            timedelta(days=notification_retention_days) if notification_retention_days else None
        )

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="zara-ticker", daemon=True)
        self._thread.start()
        logger.info("Production ticker started (every %.1fs)", self.tick_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self.tick_seconds + 1.0)
        self._thread = None
        logger.info("Production ticker stopped")

    def run_once(self) -> List[int]:
        now = self.estimator.clock()
        updated = self.estimator.tick(now)
        archive_completed_shifts(self.estimator.store, now, settled=self.estimator.settled)
        if self.notification_retention is not None:
            pruned = self.estimator.store.prune_notifications(now - self.notification_retention)
            if pruned:
                logger.info("Pruned %d notifications older than %s", pruned, self.notification_retention)
        if self.on_tick is not None:
            self.on_tick(updated)
        return updated

    def _loop(self) -> None:
        while True:
            try:
                self.run_once()
            except Exception:
                # keep ticking; the next pass retries from the same checkpoints
                logger.exception("Production tick failed")
            if self._stop.wait(self.tick_seconds):
                break
