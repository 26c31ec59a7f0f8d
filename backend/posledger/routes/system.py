# backend/posledger/routes/system.py
"""
System health endpoint.

Reports database connectivity and a few stock counters for deployment checks.
"""

import time

from flask import Blueprint, current_app, jsonify

from ..extensions import db
from ..models import LedgerEntry, Order, StockBatch
from posledger.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        batch_count = db.session.query(StockBatch).count()
        ledger_count = db.session.query(LedgerEntry).count()
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "batches": batch_count,
                "ledger_entries": ledger_count,
                "orders": order_count,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }), (200 if healthy else 503)
