"""
Dashboard API Routes

Endpoints:
- GET  /api/dashboard/snapshot?clinic=all&start=YYYY-MM-DD&end=YYYY-MM-DD
- POST /api/dashboard/refresh   {"clinic": "<id>"} (optional body)
- POST /api/dashboard/connect   start the history bootstrap in the background
- GET  /api/dashboard/status

This is a THIN route handler - all logic is in services/sync_coordinator.py
and services/aggregation/.
"""

import logging
import threading
from datetime import date
from typing import Optional

from flask import Blueprint, current_app, jsonify, request
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from constants import ALL_TENANTS, is_valid_tenant_selection
from services.aggregation import DateRange

logger = logging.getLogger(__name__)

dashboard_bp = Blueprint('dashboard', __name__)

COORDINATOR_EXTENSION = 'sync_coordinator'


# =============================================================================
# Param Models
# =============================================================================

class DashboardParamsModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        populate_by_name=True,
        extra='ignore',
    )

    @field_validator('clinic', mode='before', check_fields=False)
    @classmethod
    def normalize_clinic(cls, v):
        if v is None or (isinstance(v, str) and v.strip() == ''):
            return None
        if isinstance(v, str):
            v = v.strip().lower()
            if not is_valid_tenant_selection(v):
                raise ValueError(f"unknown clinic '{v}'")
        return v


class SnapshotParams(DashboardParamsModel):
    clinic: Optional[str] = ALL_TENANTS
    start: Optional[date] = None
    end: Optional[date] = None

    @model_validator(mode='after')
    def check_range(self):
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must be on or before end")
        return self

    def to_date_range(self, today: date) -> DateRange:
        return DateRange.resolve(self.start, self.end, today)


class RefreshParams(DashboardParamsModel):
    clinic: Optional[str] = None


# =============================================================================
# Helpers
# =============================================================================

def get_coordinator():
    """Coordinator attached by create_app(), built from env on first use."""
    coordinator = current_app.extensions.get(COORDINATOR_EXTENSION)
    if coordinator is None:
        from services.sync_coordinator import build_coordinator_from_env
        coordinator = build_coordinator_from_env()
        current_app.extensions[COORDINATOR_EXTENSION] = coordinator
    return coordinator


# =============================================================================
# Routes
# =============================================================================

@dashboard_bp.route("/snapshot", methods=["GET"])
def get_snapshot():
    """Metric snapshot for a clinic selection and date range."""
    params = SnapshotParams.model_validate(request.args.to_dict())
    coordinator = get_coordinator()
    date_range = params.to_date_range(coordinator.today())
    snapshot = coordinator.get_snapshot(params.clinic or ALL_TENANTS, date_range)

    return jsonify({
        "data": snapshot.to_dict(),
        "meta": {
            "state": coordinator.state.value,
            "dataset_version": coordinator.version,
            "degraded_tenants": coordinator.degraded_tenants,
        },
    })


@dashboard_bp.route("/refresh", methods=["POST"])
def refresh():
    """Re-fetch the recent window now (one clinic or all)."""
    params = RefreshParams.model_validate(request.get_json(silent=True) or {})
    result = get_coordinator().refresh_now(params.clinic)
    return jsonify({"data": result.to_dict()})


@dashboard_bp.route("/connect", methods=["POST"])
def connect():
    """Start bootstrap + scheduled refresh in a background thread."""
    coordinator = get_coordinator()
    from services.sync_coordinator import SyncState

    if coordinator.state in (SyncState.BOOTSTRAPPING, SyncState.READY, SyncState.REFRESHING_RECENT):
        return jsonify({"data": coordinator.status()})

    start_background_connect(coordinator)
    response = jsonify({"data": coordinator.status()})
    response.status_code = 202
    return response


@dashboard_bp.route("/status", methods=["GET"])
def status():
    return jsonify({"data": get_coordinator().status()})


def start_background_connect(coordinator) -> threading.Thread:
    """Run connect(schedule=True) off the request thread."""
    def _do_connect():
        try:
            coordinator.connect(
                progress=lambda i, n, t: logger.info(f"Bootstrap progress {i}/{n} ({t})"),
                schedule=True,
            )
        except Exception as e:
            logger.exception(f"Background connect failed: {e}")

    thread = threading.Thread(target=_do_connect, name="mf-bootstrap", daemon=True)
    thread.start()
    return thread
