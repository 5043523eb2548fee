from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .events import LEADERSHIP_ROLES, NOTIFICATION, EventHub
from .models import Machine, Notification, Operation

logger = logging.getLogger(__name__)

HIGH_PRIORITY_STATUSES = ("STOPPED", "ERROR")


class Notifier:
    """Persists leadership notifications and pushes them to the `leadership` room."""

    def __init__(self, store, hub: EventHub, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.hub = hub
        self.clock = clock

    def machine_status_changed(self, machine: Machine, previous: Optional[str], reason: Optional[str] = None):
        priority = "HIGH" if machine.status in HIGH_PRIORITY_STATUSES else "MEDIUM"
        message = f"{machine.name} changed from {previous or 'UNKNOWN'} to {machine.status}"
        if reason:
            message += f": {reason}"
        return self._send(
            type="MACHINE_STATUS",
            title=f"Machine status: {machine.name}",
            message=message,
            priority=priority,
            machine_id=machine.id,
            metadata={"previousStatus": previous, "newStatus": machine.status, "reason": reason},
        )

    def operation_started(self, machine: Machine, operation: Operation):
        return self._send(
            type="OPERATION_STARTED",
            title=f"Operation started: {machine.name}",
            message=f"{operation.operator_name or operation.operator_id} started work on {machine.name}",
            priority="LOW",
            machine_id=machine.id,
            metadata={"operationId": operation.id, "operatorId": operation.operator_id},
        )

    def operation_ended(self, machine: Machine, operation: Operation):
        return self._send(
            type="OPERATION_ENDED",
            title=f"Operation ended: {machine.name}",
            message=f"{operation.operator_name or operation.operator_id} finished work on {machine.name}",
            priority="LOW",
            machine_id=machine.id,
            metadata={"operationId": operation.id, "operatorId": operation.operator_id},
        )

    def _send(self, **fields) -> Optional[Notification]:
        # a failed notification never fails the action that triggered it
        try:
            saved = self.store.add_notification(
                Notification(target_roles=list(LEADERSHIP_ROLES), created_at=self.clock(), **fields)
            )
            self.hub.publish(NOTIFICATION, saved.to_api(), room="leadership")
            return saved
        except Exception as e:
            logger.warning("Notification %r not delivered: %s", fields.get("title"), e)
            return None
