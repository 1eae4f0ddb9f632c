"""
Client endpoints
"""

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, to_http_error
from ..errors import LendingError


router = APIRouter()


@router.get("/{client_id}/credits")
async def get_client_credits(
    client_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List a client's credits"""
    credits = system.engine.get_client_credits(client_id)
    return {"credits": [c.to_dict() for c in credits]}


@router.get("/{client_id}/score")
async def get_client_score(
    client_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the client's credit score"""
    try:
        return system.engine.get_client_score(client_id)

    except LendingError as e:
        raise to_http_error(e)
