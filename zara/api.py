from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import ZaraError
from .estimator import ProductionEstimator, ProductionTicker
from .events import CONNECTION_ESTABLISHED, EventHub, make_frame
from .machines import MachineService, seed_machines
from .models import OperationEndIn, OperationStartIn, SpeedUpdateIn, StatusUpdateIn
from .notifications import Notifier
from .reports import daily_production, period_production, production_aggregate
from .shifts import ShiftCalendar, parse_shifts
from .storage import ProductionStore, get_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    cfg: dict
    store: ProductionStore
    hub: EventHub
    calendar: ShiftCalendar
    estimator: ProductionEstimator
    machines: MachineService
    ticker: ProductionTicker
    clock: Callable[[], datetime]


def build_services(
    cfg: dict,
    store: Optional[ProductionStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    clock = clock or datetime.now
    if store is None:
        store_cfg = cfg.get("store", {}) or {}
        store = get_store(store_cfg.get("kind", "memory"), path=store_cfg.get("path"))
    seed_machines(store, cfg.get("machines"))

    hub = EventHub()
    calendar = ShiftCalendar(parse_shifts(cfg.get("shifts")))
    estimator = ProductionEstimator(store, calendar, hub=hub, clock=clock)
    notifier = Notifier(store, hub, clock=clock)
    estimator_cfg = cfg.get("estimator", {}) or {}
    retention_days = (cfg.get("notifications", {}) or {}).get("retention_days", 30)

    return Services(
        cfg=cfg,
        store=store,
        hub=hub,
        calendar=calendar,
        estimator=estimator,
        machines=MachineService(store, estimator, hub, notifier, clock=clock),
        ticker=ProductionTicker(
            estimator,
            tick_seconds=estimator_cfg.get("tick_seconds", 30),
            notification_retention_days=retention_days,
        ),
        clock=clock,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def ok(data: Any = None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


def parse_when(value: str, name: str) -> datetime:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} is not an ISO-8601 timestamp")
    if ts.tzinfo is not None:
        # stored timestamps are naive local time
        ts = ts.astimezone().replace(tzinfo=None)
    return ts


router = APIRouter(prefix="/api")


# ---- machines ----
@router.get("/machines")
def list_machines(svc: Services = Depends(get_services)):
    return ok([m.to_api() for m in svc.machines.list_machines()])


@router.get("/machines/{machine_id}")
def get_machine(machine_id: int, svc: Services = Depends(get_services)):
    machine, operation = svc.machines.detail(machine_id)
    return ok({**machine.to_api(), "currentOperation": operation.to_api() if operation else None})


@router.post("/machines/{machine_id}/start-operation", status_code=201)
def start_operation(machine_id: int, body: OperationStartIn, svc: Services = Depends(get_services)):
    operation = svc.machines.start_operation(machine_id, body)
    return ok(operation.to_api(), "Operation started")


@router.post("/machines/{machine_id}/end-operation")
def end_operation(machine_id: int, body: Optional[OperationEndIn] = None, svc: Services = Depends(get_services)):
    operation = svc.machines.end_operation(machine_id, body or OperationEndIn())
    return ok(operation.to_api(), "Operation ended")


@router.put("/machines/{machine_id}/status")
def update_status(machine_id: int, body: StatusUpdateIn, svc: Services = Depends(get_services)):
    machine = svc.machines.set_status(machine_id, body)
    return ok(machine.to_api(), "Status updated")


@router.put("/machines/{machine_id}/production-speed")
def update_production_speed(machine_id: int, body: SpeedUpdateIn, svc: Services = Depends(get_services)):
    machine = svc.machines.set_production_speed(machine_id, body)
    return ok(machine.to_api(), "Production speed updated")


# ---- production ----
@router.get("/machines/{machine_id}/production/current-shift")
def current_shift_production(machine_id: int, svc: Services = Depends(get_services)):
    return ok(svc.estimator.current_shift(machine_id).to_api())


@router.get("/machines/{machine_id}/production")
def production_for_period(
    machine_id: int,
    start_time: str = Query(..., alias="startTime"),
    end_time: str = Query(..., alias="endTime"),
    svc: Services = Depends(get_services),
):
    machine = svc.machines.get(machine_id)
    start = parse_when(start_time, "startTime")
    end = parse_when(end_time, "endTime")
    return ok(period_production(svc.store, machine, start, end, svc.clock()).to_api())


@router.get("/machines/{machine_id}/production/daily")
def production_for_day(
    machine_id: int,
    day: Optional[str] = Query(None, alias="date"),
    svc: Services = Depends(get_services),
):
    machine = svc.machines.get(machine_id)
    now = svc.clock()
    if day:
        try:
            target = date.fromisoformat(day)
        except ValueError:
            raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
    else:
        target = now.date()
    return ok(daily_production(svc.store, machine, target, now).to_api())


@router.get("/machines/{machine_id}/status-history")
def status_history(
    machine_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    svc: Services = Depends(get_services),
):
    svc.machines.get(machine_id)
    changes = list(reversed(svc.store.list_status_changes(machine_id)))
    offset = (page - 1) * limit
    return ok(
        {
            "items": [c.to_api() for c in changes[offset : offset + limit]],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": len(changes),
                "pages": (len(changes) + limit - 1) // limit,
            },
        }
    )


@router.get("/production/aggregate")
def aggregate(svc: Services = Depends(get_services)):
    return ok(production_aggregate(svc.store, svc.estimator, svc.clock()).to_api())


@router.post("/production/tick")
def tick(svc: Services = Depends(get_services)):
    updated = svc.estimator.tick()
    return ok({"updated": updated, "count": len(updated)}, "Tick completed")


# ---- shifts ----
@router.get("/shifts/current")
def current_shift(svc: Services = Depends(get_services)):
    return ok(svc.calendar.window_for(svc.clock()).to_info().to_api())


@router.post("/shifts/archive")
def archive_shifts(svc: Services = Depends(get_services)):
    result = svc.estimator.archive_completed(svc.clock())
    return ok(result, f"{result['archived']} shifts archived")


@router.get("/shifts/archives")
def list_archives(
    machine_id: Optional[int] = Query(None, alias="machineId"),
    operator_id: Optional[int] = Query(None, alias="operatorId"),
    svc: Services = Depends(get_services),
):
    return ok([a.to_api() for a in svc.store.list_archives(machine_id=machine_id, operator_id=operator_id)])


# ---- notifications ----
@router.get("/notifications")
def notifications(
    role: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    svc: Services = Depends(get_services),
):
    rows = svc.store.list_notifications(role=role.upper() if role else None, limit=limit)
    return ok([n.to_api() for n in rows])


def error_envelope(status_code: int, message: str, code: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, "code": code, **extra})


async def zara_error_handler(request: Request, exc: ZaraError):
    return error_envelope(exc.status_code, exc.message, exc.code)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "NOT_FOUND" if exc.status_code == 404 else "BAD_REQUEST"
    return error_envelope(exc.status_code, str(exc.detail), code)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    message = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in errors)
    return error_envelope(422, message or "Invalid request", "VALIDATION_ERROR", errors=errors)


def create_app(
    cfg: Optional[dict] = None,
    *,
    store: Optional[ProductionStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
    start_ticker: bool = True,
) -> FastAPI:
    services = build_services(cfg or {}, store=store, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.hub.bind_loop(asyncio.get_running_loop())
        services.estimator.restore()
        if start_ticker:
            services.ticker.start()
        yield
        if start_ticker:
            services.ticker.stop()

    app = FastAPI(title="ZARA Production API", version="1.0", lifespan=lifespan)
    app.state.services = services
    app.add_exception_handler(ZaraError, zara_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    @app.get("/health")
    def health():
        return {"ok": True, "ts": services.clock().isoformat(timespec="seconds")}

    @app.websocket("/ws")
    async def events(
        websocket: WebSocket,
        role: Optional[str] = None,
        user_id: Optional[str] = Query(None, alias="userId"),
    ):
        await websocket.accept()
        rooms = services.hub.connect(websocket, role, user_id)
        await websocket.send_json(
            make_frame(CONNECTION_ESTABLISHED, {"rooms": sorted(rooms), "role": role, "userId": user_id})
        )
        try:
            while True:
                message = await websocket.receive_text()
                if message == "ping":
                    await websocket.send_json(make_frame("pong", {}))
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected")
        finally:
            services.hub.disconnect(websocket)

    return app
