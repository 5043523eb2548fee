"""
HTTP client for the production API and the operator speed-change check.

    python -m zara.client --base-url http://127.0.0.1:8000 --machine 1 --from-speed 1 --to-speed 10
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8000"


class ZaraClient:
    def __init__(self, base_url: Optional[str] = None, session: Optional[requests.Session] = None, timeout: float = 8):
        self.base_url = (base_url or os.environ.get("ZARA_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> Any:
        r = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        r.raise_for_status()
        return r.json().get("data")

    def machines(self) -> list:
        return self._request("GET", "/api/machines")

    def current_shift(self, machine_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/api/machines/{machine_id}/production/current-shift")

    def set_production_speed(self, machine_id: int, speed: float, target: Optional[float] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"productionSpeed": speed}
        if target is not None:
            body["targetProduction"] = target
        return self._request("PUT", f"/api/machines/{machine_id}/production-speed", json=body)

    def set_status(self, machine_id: int, status: str, reason: Optional[str] = None, user_name: Optional[str] = None) -> Dict[str, Any]:
        body = {"status": status, "reason": reason, "userName": user_name}
        return self._request("PUT", f"/api/machines/{machine_id}/status", json=body)

    def start_operation(self, machine_id: int, operator_id: int, operator_name: str = "", notes: Optional[str] = None) -> Dict[str, Any]:
        body = {"operatorId": operator_id, "operatorName": operator_name, "notes": notes}
        return self._request("POST", f"/api/machines/{machine_id}/start-operation", json=body)

    def end_operation(self, machine_id: int, operator_id: Optional[int] = None, notes: Optional[str] = None) -> Dict[str, Any]:
        body = {"operatorId": operator_id, "notes": notes}
        return self._request("POST", f"/api/machines/{machine_id}/end-operation", json=body)

    def tick(self) -> Dict[str, Any]:
        return self._request("POST", "/api/production/tick")

    def aggregate(self) -> Dict[str, Any]:
        return self._request("GET", "/api/production/aggregate")


@dataclass
class SpeedChangeReport:
    machine_id: int
    from_speed: float
    to_speed: float
    before: int       # estimate after running at from_speed
    after: int        # estimate read right after switching to to_speed
    accrued: int      # before - baseline
    jump: int         # after - before
    allowed: float    # no-jump bound
    within_bound: bool


def check_speed_change(
    client: ZaraClient,
    machine_id: int,
    from_speed: float,
    to_speed: float,
    wait_seconds: float = 60,
    sleep: Callable[[float], None] = time.sleep,
    slack_seconds: float = 5,
) -> SpeedChangeReport:
    """
    Run at `from_speed` for `wait_seconds`, switch to `to_speed` and re-read at
    once. The estimate must not jump by more than what `slack_seconds` at the
    faster speed could produce.
    """
    client.set_production_speed(machine_id, from_speed)
    baseline = client.current_shift(machine_id)["estimatedProduction"]

    sleep(wait_seconds)
    client.tick()
    before = client.current_shift(machine_id)["estimatedProduction"]

    client.set_production_speed(machine_id, to_speed)
    after = client.current_shift(machine_id)["estimatedProduction"]

    # +1 covers flooring of the reported total
    allowed = slack_seconds / 60.0 * max(from_speed, to_speed) + 1
    jump = after - before
    report = SpeedChangeReport(
        machine_id=machine_id,
        from_speed=from_speed,
        to_speed=to_speed,
        before=before,
        after=after,
        accrued=before - baseline,
        jump=jump,
        allowed=allowed,
        within_bound=0 <= jump <= allowed,
    )
    logger.info("Speed change check on machine %s: %s", machine_id, report)
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Check that a speed change does not make the estimate jump")
    parser.add_argument("--base-url", default=None)
    parser.add_argument("--machine", type=int, required=True)
    parser.add_argument("--from-speed", type=float, default=1.0)
    parser.add_argument("--to-speed", type=float, default=10.0)
    parser.add_argument("--wait", type=float, default=60.0)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    report = check_speed_change(
        ZaraClient(args.base_url), args.machine, args.from_speed, args.to_speed, wait_seconds=args.wait
    )
    print(json.dumps(asdict(report), indent=2))
    return 0 if report.within_bound else 1


if __name__ == "__main__":
    raise SystemExit(main())
