from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from sqlalchemy import text
import time
import psutil
import logging
from datetime import datetime, timedelta, timezone

from ..db import get_db, utcnow
from ..models import Account, CreditBatch, PendingGrant, PaymentEventLog
from ..services.usage import usage_logger

router = APIRouter()
logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def basic_health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "timestamp": _timestamp()}


@router.get("/readyz")
def readiness_check(db: Session = Depends(get_db)):
    """Ready when the ledger database answers."""
    checks = {}
    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = int((time.time() - start_time) * 1000)
        checks["database"] = {"status": "healthy", "latency_ms": latency_ms}
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks, "timestamp": _timestamp()},
        )

    return {"status": "ready", "checks": checks, "timestamp": _timestamp()}


@router.get("/livez")
async def liveness_check():
    """
    Liveness check for Kubernetes.
    Should only fail if the application is in an unrecoverable state.
    """
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')
    disk_percent = (disk.used / disk.total) * 100

    problems = []
    if memory.percent > 95:
        problems.append(f"Critical memory usage: {memory.percent}%")
    if disk_percent > 95:
        problems.append(f"Critical disk usage: {disk_percent:.1f}%")
    if problems:
        logger.critical(f"Liveness check failed: {'; '.join(problems)}")
        raise HTTPException(status_code=503, detail=f"Application not alive: {'; '.join(problems)}")

    return {
        "status": "alive",
        "memory_percent": memory.percent,
        "disk_percent": round(disk_percent, 1),
        "timestamp": _timestamp(),
    }


@router.get("/metrics")
def prometheus_metrics(db: Session = Depends(get_db)):
    """Prometheus-style ledger metrics."""
    now = utcnow()
    day_ago = now - timedelta(hours=24)

    total_accounts = db.query(Account).count()
    live_batches = db.query(CreditBatch).filter(
        CreditBatch.credits_remaining > 0,
        (CreditBatch.expires_at.is_(None)) | (CreditBatch.expires_at > now),
    ).count()
    pending_grants = db.query(PendingGrant).filter(PendingGrant.applied_at.is_(None)).count()

    events_processed_24h = db.query(PaymentEventLog).filter(
        PaymentEventLog.created_at >= day_ago,
        PaymentEventLog.processed.is_(True),
    ).count()
    events_dead_letter = db.query(PaymentEventLog).filter(
        PaymentEventLog.dead_letter.is_(True),
        PaymentEventLog.processed.is_(False),
    ).count()
    events_pending = db.query(PaymentEventLog).filter(
        PaymentEventLog.processed.is_(False),
        PaymentEventLog.dead_letter.is_(False),
    ).count()

    metrics = f"""# HELP credit_ledger_accounts_total Ledger accounts
# TYPE credit_ledger_accounts_total gauge
credit_ledger_accounts_total {total_accounts}

# HELP credit_ledger_live_batches Credit batches with unexpired remaining credits
# TYPE credit_ledger_live_batches gauge
credit_ledger_live_batches {live_batches}

# HELP credit_ledger_pending_grants Paid grants waiting for their payer to sign up
# TYPE credit_ledger_pending_grants gauge
credit_ledger_pending_grants {pending_grants}

# HELP credit_ledger_payment_events_processed Payment events processed in last 24h
# TYPE credit_ledger_payment_events_processed gauge
credit_ledger_payment_events_processed {events_processed_24h}

# HELP credit_ledger_payment_events_dead_letter Payment events that exhausted their attempts
# TYPE credit_ledger_payment_events_dead_letter gauge
credit_ledger_payment_events_dead_letter {events_dead_letter}

# HELP credit_ledger_payment_events_pending Payment events awaiting redelivery
# TYPE credit_ledger_payment_events_pending gauge
credit_ledger_payment_events_pending {events_pending}

# HELP credit_ledger_usage_log_failures_total Usage records that could not be written
# TYPE credit_ledger_usage_log_failures_total counter
credit_ledger_usage_log_failures_total {usage_logger.failure_count}
"""
    return Response(content=metrics, media_type="text/plain")
