"""
Admin endpoints (overdue sweep, audit verification)
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, to_http_error
from .schemas import SweepRequest
from ..errors import LendingError


router = APIRouter()


@router.post("/sweep-overdue")
async def sweep_overdue(
    request: SweepRequest,
    system: LendingSystem = Depends(get_lending_system)
) -> Dict[str, Any]:
    """Run the overdue sweep now"""
    try:
        swept = system.engine.sweep_overdue(request.as_of)
        return {
            "swept": swept,
            "message": f"{swept} installments marked overdue"
        }

    except LendingError as e:
        raise to_http_error(e)


@router.get("/scheduler/status")
async def get_scheduler_status(system: LendingSystem = Depends(get_lending_system)) -> Dict[str, Any]:
    """Get overdue sweep scheduler status"""
    scheduler = system.scheduler
    return {
        "running": scheduler.is_running(),
        "hour": scheduler.hour,
        "timezone": scheduler.tz.key,
        "last_result": scheduler.last_result
    }


@router.get("/audit/verify")
async def verify_audit_trail(system: LendingSystem = Depends(get_lending_system)) -> Dict[str, Any]:
    """Verify the audit hash chain"""
    return system.audit_trail.verify_integrity()
