"""
Admin endpoints (scheduled jobs, audit integrity)
"""

from fastapi import APIRouter, Depends
from typing import Dict, Any

from .auth import LedgerSystem, get_ledger_system, require_admin
from ..loans import Caller


router = APIRouter()


@router.get("/jobs")
async def list_jobs(
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(require_admin)
) -> Dict[str, Any]:
    return {
        "scheduler_running": system.scheduler.is_running(),
        "jobs": [job.to_dict() for job in system.scheduler.list_jobs()],
    }


@router.post("/jobs/{job_name}/run")
async def run_job(
    job_name: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(require_admin)
) -> Dict[str, Any]:
    """Run a scheduled job immediately"""
    job = system.scheduler.run_job(job_name)
    return {"job": job.to_dict()}


@router.get("/audit/verify")
async def verify_audit_trail(
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(require_admin)
) -> Dict[str, Any]:
    """Verify the audit hash chain"""
    return system.audit_trail.verify_integrity()


@router.get("/audit/{entity_type}/{entity_id}")
async def get_entity_audit(
    entity_type: str,
    entity_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(require_admin)
) -> Dict[str, Any]:
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id)
    return {"events": [event.to_dict() for event in events]}
