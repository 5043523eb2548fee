from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from zara.api import create_app
from zara.errors import StoreError
from zara.estimator import ProductionEstimator
from zara.events import EventHub
from zara.machines import MachineService, seed_machines
from zara.models import OperationStartIn
from zara.notifications import Notifier
from zara.shifts import ShiftCalendar
from zara.storage import MemoryStore

T0 = datetime(2026, 3, 10, 8, 0, 0)  # inside the MORNING shift

MACHINES = [
    {"id": 1, "name": "Extrusora 01", "code": "EXT-01", "production_speed": 1.0, "target_production": 500},
    {"id": 2, "name": "Extrusora 02", "code": "EXT-02", "production_speed": 10.0, "target_production": 4000},
    {"id": 3, "name": "Injetora 01", "code": "INJ-01", "production_speed": 4.0, "is_active": False},
]


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, minutes=minutes)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


class FailingStore(MemoryStore):
    """MemoryStore whose accrual writes can be switched off."""

    def __init__(self):
        super().__init__()
        self.fail = False
        self.attempts = 0

    def apply_accrual(self, *args, **kwargs):
        self.attempts += 1
        if self.fail:
            raise StoreError("database is locked")
        return super().apply_accrual(*args, **kwargs)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event, data, room):
        self.events.append((event, data, room))

    def named(self, event):
        return [data for name, data, _ in self.events if name == event]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = FailingStore()
    seed_machines(s, MACHINES)
    return s


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def hub(recorder):
    h = EventHub()
    h.add_listener(recorder)
    return h


@pytest.fixture
def estimator(store, hub, clock):
    return ProductionEstimator(store, ShiftCalendar(), hub=hub, clock=clock)


@pytest.fixture
def service(store, estimator, hub, clock):
    return MachineService(store, estimator, hub, Notifier(store, hub, clock=clock), clock=clock)


@pytest.fixture
def start_run(service):
    def _start(machine_id: int = 1, operator_id: int = 7, operator_name: str = "Ana"):
        return service.start_operation(
            machine_id, OperationStartIn(operator_id=operator_id, operator_name=operator_name)
        )

    return _start


@pytest.fixture
def app(clock):
    return create_app({"machines": MACHINES}, store=MemoryStore(), clock=clock, start_ticker=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
