"""
Installment endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system, get_actor_role, to_http_error
from .schemas import PaymentRequest
from ..errors import LendingError
from ..roles import Role


router = APIRouter()


@router.get("/{installment_id}")
async def get_installment(
    installment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get installment details, re-derived as of business today"""
    try:
        installment = system.engine.get_installment(installment_id)
        system.engine.refresh_credit(installment.credit_id)
        return system.engine.get_installment(installment_id).to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.post("/{installment_id}/payments", status_code=status.HTTP_201_CREATED)
async def apply_payment(
    installment_id: str,
    request: PaymentRequest,
    system: LendingSystem = Depends(get_lending_system),
    role: Optional[Role] = Depends(get_actor_role)
):
    """Apply a payment to an installment and issue its receipt"""
    try:
        result = system.engine.apply_payment(
            installment_id,
            amount=request.amount,
            discount=request.discount,
            discount_scope=request.discount_scope,
            method=request.method,
            note=request.note,
            actor_role=role,
            as_of=request.as_of
        )
        return result.to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.get("/{installment_id}/payments")
async def get_installment_payments(
    installment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List payments made against an installment"""
    try:
        system.engine.get_installment(installment_id)
        payments = system.engine.get_installment_payments(installment_id)
        return {"payments": [p.to_dict() for p in payments]}

    except LendingError as e:
        raise to_http_error(e)
