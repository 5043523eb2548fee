import sqlite3
import threading
import time
from datetime import datetime, timedelta

import pytest

from conftest import MACHINES, T0, FailingStore
from zara.errors import MachineNotFound, OperatorBusy, StoreError
from zara.estimator import ProductionEstimator, ProductionTicker
from zara.machines import MachineService, seed_machines
from zara.models import Notification, OperationEndIn, OperationStartIn, SpeedUpdateIn, StatusUpdateIn
from zara.notifications import Notifier
from zara.shifts import ShiftCalendar
from zara.storage import SqliteStore


def total(store, machine_id=1):
    return sum(a.total_production for a in store.list_aggregates(machine_id=machine_id))


def set_speed(service, speed, machine_id=1):
    service.set_production_speed(machine_id, SpeedUpdateIn(production_speed=speed))


def set_status(service, status, machine_id=1):
    service.set_status(machine_id, StatusUpdateIn(status=status))


def test_start_creates_zero_baseline_aggregate(store, start_run):
    start_run()
    [agg] = store.list_aggregates(machine_id=1)
    assert agg.total_production == 0.0
    assert agg.shift_type == "MORNING"
    assert agg.operator_id == 7
    assert agg.last_accrued_at == T0


def test_accrual_is_proportional_to_elapsed_time(store, estimator, clock, start_run):
    start_run(machine_id=2)  # 10/min
    clock.advance(seconds=90)
    assert estimator.tick() == [2]
    assert total(store, 2) == pytest.approx(15.0)


def test_one_unit_per_minute_for_a_minute(estimator, clock, start_run):
    start_run()
    clock.advance(seconds=60)
    estimator.tick()

    cs = estimator.current_shift(1)
    assert cs.estimated_production == 1
    assert cs.running_minutes == 1
    assert cs.is_currently_running is True


def test_speed_change_does_not_jump(service, estimator, clock, start_run):
    start_run()
    clock.advance(seconds=60)
    estimator.tick()
    before = estimator.current_shift(1).estimated_production

    set_speed(service, 10.0)
    after = estimator.current_shift(1).estimated_production
    assert before == 1
    assert after - before <= 1  # not +600

    clock.advance(seconds=60)
    estimator.tick()
    assert estimator.current_shift(1).estimated_production == 11


def test_speed_change_between_ticks_keeps_old_rate_for_elapsed_span(store, service, estimator, clock, start_run):
    start_run()
    clock.advance(seconds=30)
    set_speed(service, 10.0)
    clock.advance(seconds=30)
    estimator.tick()

    assert total(store) == pytest.approx(0.5 + 5.0)
    assert estimator.current_shift(1).estimated_production == 5


def test_total_never_decreases(store, service, estimator, clock, start_run):
    start_run()
    seen = [total(store)]
    steps = [
        ("speed", 5.0),
        ("tick", None),
        ("status", "STOPPED"),
        ("tick", None),
        ("speed", 0.0),
        ("status", "RUNNING"),
        ("tick", None),
        ("speed", 20.0),
        ("status", "MAINTENANCE"),
        ("status", "RUNNING"),
        ("speed", 2.5),
        ("tick", None),
    ]
    for kind, value in steps:
        clock.advance(seconds=45)
        if kind == "speed":
            set_speed(service, value)
        elif kind == "status":
            set_status(service, value)
        else:
            estimator.tick()
        seen.append(total(store))

    assert seen == sorted(seen)
    assert seen[-1] > 0


def test_stop_and_restart_does_not_backfill(store, service, estimator, clock, start_run):
    set_speed(service, 6.0)
    start_run()
    clock.advance(seconds=60)
    set_status(service, "STOPPED")
    assert total(store) == pytest.approx(6.0)

    clock.advance(minutes=10)
    assert estimator.tick() == []
    assert total(store) == pytest.approx(6.0)
    assert estimator.current_shift(1).is_currently_running is False

    set_status(service, "RUNNING")
    clock.advance(seconds=60)
    estimator.tick()
    assert total(store) == pytest.approx(12.0)


def test_failed_write_keeps_checkpoint_and_retries_once(store, service, estimator, clock, start_run):
    start_run()
    clock.advance(seconds=60)
    store.fail = True
    assert estimator.tick() == []
    assert estimator.state(1).checkpoint == T0
    assert total(store) == 0.0

    # the interval closed by the speed change stays pending
    clock.advance(seconds=60)
    set_speed(service, 2.0)
    assert len(estimator.state(1).pending) == 1

    store.fail = False
    clock.advance(seconds=60)
    assert estimator.tick() == [1]
    assert total(store) == pytest.approx(2.0 + 2.0)
    assert estimator.state(1).pending == []

    estimator.tick()
    assert total(store) == pytest.approx(4.0)


def test_backwards_clock_accrues_nothing_and_keeps_checkpoint(store, estimator, clock, start_run):
    start_run()
    clock.set(T0 - timedelta(seconds=30))
    estimator.tick()
    assert total(store) == 0.0
    assert estimator.state(1).checkpoint == T0

    clock.set(T0 + timedelta(seconds=60))
    estimator.tick()
    assert total(store) == pytest.approx(1.0)


def test_repeated_reads_are_identical(estimator, clock, start_run):
    start_run()
    clock.advance(seconds=150)
    estimator.tick()

    first = estimator.current_shift(1)
    clock.advance(seconds=20)
    assert estimator.current_shift(1) == first


def test_overlapping_ticks_do_not_double_count(store, estimator, clock, start_run):
    start_run(machine_id=2)
    clock.advance(seconds=60)
    now = clock()

    threads = [threading.Thread(target=estimator.tick, args=(now,)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert total(store, 2) == pytest.approx(10.0)


def test_interval_across_shift_boundary_is_split(store, hub, clock):
    clock.set(datetime(2026, 3, 10, 18, 59))
    est = ProductionEstimator(store, ShiftCalendar(), hub=hub, clock=clock)

    svc = MachineService(store, est, hub, Notifier(store, hub, clock=clock), clock=clock)
    svc.set_production_speed(1, SpeedUpdateIn(production_speed=60.0))
    svc.start_operation(1, OperationStartIn(operator_id=7))
    clock.advance(seconds=120)
    est.tick()

    by_type = {a.shift_type: a for a in store.list_aggregates(machine_id=1)}
    assert by_type["MORNING"].total_production == pytest.approx(60.0)
    assert by_type["NIGHT"].total_production == pytest.approx(60.0)

    cs = est.current_shift(1)
    assert cs.shift.type == "NIGHT"
    assert cs.estimated_production == 60


def test_current_shift_sums_operators(service, estimator, clock, start_run):
    start_run(operator_id=7)
    clock.advance(seconds=60)
    service.end_operation(1, OperationEndIn())

    start_run(operator_id=8, operator_name="Bruno")
    clock.advance(seconds=60)
    estimator.tick()

    assert estimator.current_shift(1).estimated_production == 2


def test_end_operation_persists_final_total(store, service, estimator, clock, start_run):
    start_run()
    clock.advance(seconds=180)
    service.end_operation(1, OperationEndIn(notes="fim"))

    assert total(store) == pytest.approx(3.0)
    assert estimator.state(1) is None
    assert store.get_machine(1).status == "STOPPED"


def test_efficiency_against_committed_checkpoint(estimator, clock, start_run):
    # shift started 07:00; one hour of running up to 09:00
    start_run()
    clock.advance(minutes=60)
    estimator.tick()
    assert estimator.current_shift(1).efficiency == 50


def test_read_without_operation_reports_zeros(estimator):
    cs = estimator.current_shift(2)
    assert cs.estimated_production == 0
    assert cs.efficiency == 0
    assert cs.is_currently_running is False
    assert cs.last_update is None


def test_unknown_machine(estimator):
    with pytest.raises(MachineNotFound):
        estimator.current_shift(99)


def test_restore_resumes_from_persisted_checkpoint(store, hub, clock, start_run, estimator):
    start_run()
    clock.advance(seconds=120)
    estimator.tick()

    # process restart
    clock.advance(seconds=60)
    fresh = ProductionEstimator(store, ShiftCalendar(), hub=hub, clock=clock)
    assert fresh.restore() == 1
    fresh.tick()
    assert total(store) == pytest.approx(3.0)


def test_commit_publishes_production_update(recorder, estimator, clock, start_run):
    start_run()
    clock.advance(seconds=60)
    estimator.tick()

    update = recorder.named("machine:production:updated")[-1]
    assert update["machineId"] == 1
    assert update["totalProduction"] == 1
    assert update["operatorId"] == 7


def test_ticker_run_once_ticks_and_archives(store, estimator, clock, start_run):
    start_run()
    ticker = ProductionTicker(estimator, tick_seconds=1)
    clock.set(datetime(2026, 3, 10, 19, 30))
    assert ticker.run_once() == [1]
    assert any(a.is_archived and a.shift_type == "MORNING" for a in store.list_aggregates())


def test_ticker_runs_first_pass_immediately(estimator):
    passed = threading.Event()
    ticker = ProductionTicker(estimator, tick_seconds=30, on_tick=lambda updated: passed.set())
    ticker.start()
    try:
        assert ticker.running
        assert passed.wait(timeout=5)
    finally:
        ticker.stop()
    assert not ticker.running


@pytest.mark.parametrize("configured, used", [(0, 1.0), (0.05, 1.0), (10, 10.0), (300, 30.0)])
def test_ticker_interval_is_clamped(estimator, configured, used):
    assert ProductionTicker(estimator, tick_seconds=configured).tick_seconds == used


def test_ticker_prunes_old_notifications(store, estimator, clock):
    for age in (40, 2):
        store.add_notification(Notification(title=f"{age}d", message="m", created_at=clock() - timedelta(days=age)))

    ProductionTicker(estimator, notification_retention_days=30).run_once()
    assert [n.title for n in store.list_notifications()] == ["2d"]


# ---- failure and retry paths ----


def test_failed_flush_on_stop_is_retried_by_next_tick(store, service, estimator, clock, start_run):
    start_run()
    clock.advance(seconds=120)
    store.fail = True
    set_status(service, "STOPPED")
    assert total(store) == 0.0
    assert len(estimator.state(1).pending) == 1

    clock.advance(minutes=5)
    store.fail = False
    assert estimator.tick() == [1]
    assert total(store) == pytest.approx(2.0)
    assert estimator.state(1).pending == []

    # stopped span stays unaccrued
    clock.advance(minutes=5)
    estimator.tick()
    assert total(store) == pytest.approx(2.0)


def test_failed_flush_on_end_operation_is_retried_by_next_tick(store, service, estimator, clock, start_run):
    start_run()
    clock.advance(seconds=180)
    store.fail = True
    service.end_operation(1, OperationEndIn())
    assert store.get_open_operation(1) is None
    assert total(store) == 0.0

    store.fail = False
    clock.advance(seconds=30)
    estimator.tick()
    assert total(store) == pytest.approx(3.0)
    assert estimator.state(1) is None


class SlowLookupStore(FailingStore):
    """Widens the gap between the operator lookup and the insert."""

    def find_open_operation_for_operator(self, operator_id):
        found = super().find_open_operation_for_operator(operator_id)
        time.sleep(0.05)
        return found


def test_concurrent_starts_for_one_operator_open_one_operation(hub, clock):
    store = SlowLookupStore()
    seed_machines(store, MACHINES)
    est = ProductionEstimator(store, ShiftCalendar(), hub=hub, clock=clock)
    svc = MachineService(store, est, hub, Notifier(store, hub, clock=clock), clock=clock)

    started, errors = [], []

    def start(machine_id):
        try:
            started.append(svc.start_operation(machine_id, OperationStartIn(operator_id=7)))
        except OperatorBusy as e:
            errors.append(e)

    threads = [threading.Thread(target=start, args=(mid,)) for mid in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(started) == 1
    assert len(errors) == 1
    loser = 2 if started[0].machine_id == 1 else 1
    assert store.get_open_operation(loser) is None
    assert store.get_machine(loser).status == "STOPPED"
    assert est.state(loser) is None


# ---- SQLite-backed estimator ----


@pytest.fixture
def sqlite_estimator(tmp_path, hub, clock):
    def _build(store_cls=SqliteStore):
        store = store_cls(str(tmp_path / "zara.db"))
        seed_machines(store, MACHINES)
        est = ProductionEstimator(store, ShiftCalendar(), hub=hub, clock=clock)
        svc = MachineService(store, est, hub, Notifier(store, hub, clock=clock), clock=clock)
        return store, est, svc

    return _build


class ReadFailingSqliteStore(SqliteStore):
    """SqliteStore whose plain reads fail while `fail_reads` is set."""

    fail_reads = False

    def _query(self, sql, params=()):
        if self.fail_reads:
            raise StoreError("Store read failed: disk I/O error")
        return super()._query(sql, params)


def test_sqlite_commit_is_not_undone_by_a_failed_read(sqlite_estimator, clock):
    store, est, svc = sqlite_estimator(ReadFailingSqliteStore)
    svc.start_operation(2, OperationStartIn(operator_id=7))  # 10/min

    store.fail_reads = True
    clock.advance(seconds=60)
    assert est.tick() == [2]
    assert est.state(2).checkpoint == clock()

    store.fail_reads = False
    clock.advance(seconds=60)
    est.tick()
    assert total(store, 2) == pytest.approx(20.0)
    store.close()


class ShiftFailingSqliteStore(SqliteStore):
    """Raises mid-transaction when an upsert reaches `fail_shift`."""

    fail_shift = None

    def _upsert_aggregate(self, machine_id, operator_id, window, *args):
        if window.type == self.fail_shift:
            raise sqlite3.OperationalError("database is locked")
        return super()._upsert_aggregate(machine_id, operator_id, window, *args)


def test_sqlite_failed_accrual_rolls_back_every_shift(sqlite_estimator, clock):
    clock.set(datetime(2026, 3, 10, 18, 59))
    store, est, svc = sqlite_estimator(ShiftFailingSqliteStore)
    svc.set_production_speed(1, SpeedUpdateIn(production_speed=60.0))
    svc.start_operation(1, OperationStartIn(operator_id=7))

    store.fail_shift = "NIGHT"
    clock.advance(seconds=120)
    assert est.tick() == []
    assert total(store) == 0.0
    assert est.state(1).checkpoint == datetime(2026, 3, 10, 18, 59)

    store.fail_shift = None
    est.tick()
    by_type = {a.shift_type: a.total_production for a in store.list_aggregates(machine_id=1)}
    assert by_type == pytest.approx({"MORNING": 60.0, "NIGHT": 60.0})
    store.close()


# ---- archiving at the shift boundary ----


def test_archive_flushes_the_last_seconds_of_the_shift(store, service, estimator, clock, start_run):
    clock.set(datetime(2026, 3, 10, 18, 59))
    set_speed(service, 60.0)
    start_run()
    clock.set(datetime(2026, 3, 10, 18, 59, 50))
    estimator.tick()

    clock.set(datetime(2026, 3, 10, 19, 0, 5))
    assert estimator.archive_completed()["archived"] == 1
    clock.set(datetime(2026, 3, 10, 19, 0, 20))
    estimator.tick()

    morning = next(a for a in store.list_aggregates(machine_id=1) if a.shift_type == "MORNING")
    [archive] = store.list_archives(machine_id=1)
    assert morning.is_archived
    assert morning.total_production == pytest.approx(60.0)
    assert archive.payload["productionMetrics"]["totalProduction"] == pytest.approx(60.0)


def test_archive_waits_for_unpersisted_accrual(store, service, estimator, clock, start_run):
    clock.set(datetime(2026, 3, 10, 18, 59))
    set_speed(service, 60.0)
    start_run()

    store.fail = True
    clock.set(datetime(2026, 3, 10, 19, 0, 5))
    result = estimator.archive_completed()
    assert result["processed"] == 0
    assert store.list_archives() == []

    store.fail = False
    clock.advance(seconds=10)
    assert estimator.archive_completed()["archived"] == 1
    [archive] = store.list_archives(machine_id=1)
    assert archive.payload["productionMetrics"]["totalProduction"] == pytest.approx(60.0)
