from __future__ import annotations
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MachineStatus = Literal["RUNNING", "STOPPED", "MAINTENANCE", "OFF_SHIFT", "ERROR"]
OperationStatus = Literal["ACTIVE", "COMPLETED"]
Priority = Literal["LOW", "MEDIUM", "HIGH"]
Role = Literal["OPERATOR", "LEADER", "MANAGER", "ADMIN"]


class ApiModel(BaseModel):
    # camelCase on the wire, snake_case in code
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Machine(ApiModel):
    id: int
    name: str
    code: str
    status: MachineStatus = "STOPPED"
    production_speed: float = 0.0  # units/minute
    target_production: float = 0.0  # units per shift
    is_active: bool = True


class Operation(ApiModel):
    id: Optional[int] = None
    machine_id: int
    operator_id: int
    operator_name: str = ""
    start_time: datetime
    end_time: Optional[datetime] = None
    status: OperationStatus = "ACTIVE"
    notes: Optional[str] = None


class ShiftAggregate(ApiModel):
    id: Optional[int] = None
    machine_id: int
    operator_id: int
    shift_date: date
    shift_type: str
    start_time: datetime
    end_time: datetime
    total_production: float = 0.0
    running_seconds: float = 0.0
    target_production: float = 0.0
    last_accrued_at: Optional[datetime] = None  # persisted checkpoint
    is_active: bool = True
    is_archived: bool = False


class StatusChange(ApiModel):
    id: Optional[int] = None
    machine_id: int
    previous_status: Optional[MachineStatus] = None
    new_status: MachineStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    user_name: Optional[str] = None
    created_at: datetime


class Notification(ApiModel):
    id: Optional[int] = None
    type: str = "MACHINE_STATUS"
    title: str
    message: str
    priority: Priority = "MEDIUM"
    machine_id: Optional[int] = None
    target_roles: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ShiftArchive(ApiModel):
    id: Optional[int] = None
    shift_aggregate_id: int
    machine_id: int
    operator_id: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    data_size: int = 0
    checksum: str
    archived_at: datetime


# ---- read models ----

class ShiftInfo(ApiModel):
    type: str
    shift_date: date
    start: datetime
    end: datetime


class CurrentShiftProduction(ApiModel):
    machine_id: int
    machine_name: str
    estimated_production: int = 0
    running_minutes: int = 0
    production_speed: float = 0.0
    efficiency: int = 0
    is_currently_running: bool = False
    current_status: MachineStatus
    target_production: float = 0.0
    shift: ShiftInfo
    last_update: Optional[datetime] = None


class StatusShare(ApiModel):
    status: str
    minutes: int
    percentage: int


class PeriodProduction(ApiModel):
    machine_id: int
    start_time: datetime
    end_time: datetime
    production_speed: float = 0.0
    total_minutes: int = 0
    running_minutes: int = 0
    stopped_minutes: int = 0
    maintenance_minutes: int = 0
    estimated_production: int = 0
    efficiency: int = 0
    status_breakdown: List[StatusShare] = Field(default_factory=list)


class ProductionAggregate(ApiModel):
    total_production: int = 0
    total_running_time: int = 0
    average_efficiency: int = 0
    total_downtime: int = 0
    running_machines: int = 0
    total_machines: int = 0
    last_updated: datetime


# ---- request bodies ----

class OperationStartIn(ApiModel):
    operator_id: int
    operator_name: str = ""
    notes: Optional[str] = None


class OperationEndIn(ApiModel):
    operator_id: Optional[int] = None
    notes: Optional[str] = None


class StatusUpdateIn(ApiModel):
    status: MachineStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    user_name: Optional[str] = None


class SpeedUpdateIn(ApiModel):
    production_speed: float = Field(..., ge=0, strict=True, allow_inf_nan=False)
    target_production: Optional[float] = Field(None, ge=0, strict=True, allow_inf_nan=False)
