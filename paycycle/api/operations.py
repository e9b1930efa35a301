# coding: utf-8
"""
Operational controls for the payment lifecycle

Admin-token protected endpoints:
- monitoring start/stop, status, manual check, metrics reset
- manual retry and manual allocation of a payment
- failure registry listing
- background job status and manual runs
- open admin tasks
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from paycycle.api.admin_auth import verify_admin_token
from paycycle.core.enums import AdminTaskCategory, FailureCategory
from paycycle.orchestrator import Orchestrator, get_orchestrator
from paycycle.services.admin_task_service import AdminTaskService

router = APIRouter(prefix="/admin", tags=["admin-payments"])


class PaymentCheckRequest(BaseModel):
    payment_id: Optional[str] = Field(None, description="Check one payment; omit for a full tick")


class ManualAllocationRequest(BaseModel):
    credit_amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=3, max_length=500)


@router.get("/payments/monitoring/status")
async def monitoring_status(
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Monitoring health plus allocation and failure counters"""
    return {
        "health": await orchestrator.monitoring.health_check(),
        "monitoring": orchestrator.monitoring.get_metrics(),
        "allocation": orchestrator.allocation.get_metrics(),
        "failures": orchestrator.failures.get_metrics(),
    }


@router.post("/payments/monitoring/start")
async def start_monitoring(
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Resume monitoring everywhere; shared=False means Redis was unreachable"""
    shared = await orchestrator.monitoring.start()
    return {"enabled": True, "shared": shared}


@router.post("/payments/monitoring/stop")
async def stop_monitoring(
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    shared = await orchestrator.monitoring.stop()
    return {"enabled": False, "shared": shared}


@router.post("/payments/monitoring/check")
async def trigger_check(
    request: PaymentCheckRequest,
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.monitoring.trigger_payment_check(request.payment_id)


@router.post("/payments/metrics/reset")
async def reset_metrics(
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    orchestrator.monitoring.reset_metrics()
    orchestrator.allocation.reset_metrics()
    orchestrator.failures.reset_metrics()
    return {"status": "ok"}


@router.post("/payments/{payment_id}/retry")
async def retry_payment(
    payment_id: str,
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Put a parked payment back under monitoring"""
    if not await orchestrator.monitoring.retry_failed_payment(payment_id, admin=admin):
        raise HTTPException(status_code=409, detail="Payment cannot be retried")
    return {"status": "requeued", "payment_id": payment_id}


@router.post("/payments/{payment_id}/allocate")
async def allocate_manually(
    payment_id: str,
    request: ManualAllocationRequest,
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Credit a payment by hand (e.g. an accepted underpayment)"""
    result = await orchestrator.allocation.manual_allocation(
        payment_id, request.credit_amount, admin=admin, reason=request.reason
    )
    return {
        "outcome": result.outcome.value,
        "confirmed": result.confirmed,
        "transaction_id": result.transaction_id,
        "amount": str(result.amount) if result.amount is not None else None,
        "balance_after": str(result.balance_after) if result.balance_after is not None else None,
        "reason": result.reason,
    }


@router.get("/payments/failures")
async def list_failures(
    category: Optional[FailureCategory] = None,
    retryable_only: bool = False,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    records = await orchestrator.failures.list_active(
        category=category, retryable_only=retryable_only, limit=limit, offset=offset
    )
    return {"failures": [record.to_dict() for record in records], "count": len(records)}


@router.get("/jobs")
async def jobs_status(
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Jobs known to this process; run counters are per process"""
    return orchestrator.scheduler.get_status()


@router.post("/jobs/{job_name}/run")
async def run_job(
    job_name: str,
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Run a job here now, under the same lock the worker takes"""
    try:
        result = await orchestrator.scheduler.run_job_now(job_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
    return {"job": job_name, "result": result}


@router.get("/tasks")
async def open_tasks(
    category: Optional[AdminTaskCategory] = None,
    limit: int = Query(100, ge=1, le=500),
    admin: str = Depends(verify_admin_token),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    async with orchestrator.session_maker() as session:
        tasks = await AdminTaskService.list_open(session, category=category, limit=limit)
    return {
        "tasks": [
            {
                "id": task.id,
                "category": task.category,
                "priority": task.priority,
                "entity": task.entity_key,
                "title": task.title,
                "notes": task.notes,
                "due_at": task.due_at.isoformat() if task.due_at else None,
                "created_at": task.created_at.isoformat() if task.created_at else None,
            }
            for task in tasks
        ],
        "count": len(tasks),
    }
