from __future__ import annotations


class ZaraError(Exception):
    """Domain error carrying the HTTP status and a machine-readable code."""

    status_code = 400
    code = "ZARA_ERROR"

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code


class MachineNotFound(ZaraError):
    status_code = 404
    code = "MACHINE_NOT_FOUND"

    def __init__(self, machine_id: int):
        super().__init__(f"Machine {machine_id} not found")
        self.machine_id = machine_id


class OperationNotFound(ZaraError):
    status_code = 404
    code = "OPERATION_NOT_FOUND"


class MachineInactive(ZaraError):
    code = "MACHINE_INACTIVE"


class MachineInUse(ZaraError):
    code = "MACHINE_IN_USE"


class OperatorBusy(ZaraError):
    code = "OPERATOR_BUSY"


class InvalidPeriod(ZaraError):
    code = "INVALID_PERIOD"


class StoreError(ZaraError):
    """Raised by storage backends when a write could not be committed."""

    status_code = 503
    code = "STORE_UNAVAILABLE"
