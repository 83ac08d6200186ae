# backend/stockledger/routes/system.py
"""
System health endpoint.

Reports database connectivity plus row counts for the ledger tables, which
is enough to tell an empty-but-working deployment from a broken one.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import StockMovement, SaleTransaction, Variant
from stockledger.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        variant_count = db.session.query(Variant).count()
        movement_count = db.session.query(StockMovement).count()
        sale_count = db.session.query(SaleTransaction).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "variants": variant_count,
                "movements": movement_count,
                "sale_transactions": sale_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable
    - 503: database check failed
    """
    database_health = check_database_health()
    healthy = database_health["status"] == "healthy"

    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {"database": database_health},
    }, 200 if healthy else 503
