"""
Sync, alert and statistics endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .dependencies import get_as_of, get_engine, parse_role
from .schemas import money_fields
from ..engine import LoanEngine


router = APIRouter()


@router.post("/sync")
async def sync_now(engine: LoanEngine = Depends(get_engine)):
    """Sweep unsynced rows and drain the offline queue"""
    outcome = await engine.connectivity_restored()
    return {
        **outcome.to_dict(),
        "queued": len(engine.queue),
        "clean": outcome.is_clean,
    }


@router.post("/sync/refresh")
async def refresh(loan_id: Optional[str] = None, engine: LoanEngine = Depends(get_engine)):
    """Pull remote loans and merge them into the local book"""
    loans = await engine.refresh(loan_id)
    return {"refreshed": [loan.loan_id for loan in loans]}


@router.get("/sync/failed")
async def failed_operations(engine: LoanEngine = Depends(get_engine)):
    """Operations that need user attention"""
    return {"operations": [op.to_dict() for op in engine.queue.failed_terminal()]}


@router.post("/sync/operations/{op_id}/retry")
async def retry_operation(op_id: str, engine: LoanEngine = Depends(get_engine)):
    try:
        op = engine.queue.retry(op_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Operation not found")
    return op.to_dict()


@router.delete("/sync/operations/{op_id}")
async def discard_operation(op_id: str, engine: LoanEngine = Depends(get_engine)):
    """Remove a queued operation; a discarded payment is rolled back on the next sync"""
    if not engine.discard_operation(op_id):
        raise HTTPException(status_code=404, detail="Operation not found")
    return {"op_id": op_id, "discarded": True}


@router.get("/alerts")
async def list_alerts(
    role: Optional[str] = None,
    as_of: date = Depends(get_as_of),
    engine: LoanEngine = Depends(get_engine)
):
    """Re-derive alerts and return those visible to ``role``"""
    engine.refresh_alerts(as_of)
    if role:
        parsed = parse_role(role)
        alerts = engine.alerts_for(parsed)
        unread = engine.alerts.unread_count(parsed)
    else:
        alerts = engine.alerts.alerts()
        unread = engine.alerts.unread_count()
    return {"alerts": [alert.to_dict() for alert in alerts], "unread": unread}


@router.post("/alerts/{alert_id}/read")
async def mark_alert_read(alert_id: str, engine: LoanEngine = Depends(get_engine)):
    if not engine.alerts.mark_read(alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"alert_id": alert_id, "read": True}


@router.get("/statistics")
async def statistics(
    as_of: date = Depends(get_as_of),
    engine: LoanEngine = Depends(get_engine)
):
    """Loan counts per derived status and penalty totals"""
    return money_fields(engine.statistics(as_of))
