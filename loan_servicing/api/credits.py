"""
Credit endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system, get_actor_role, to_http_error
from .schemas import (
    CreateCreditRequest, UpdateCreditRequest, SimulatePlanRequest,
    CancelCreditRequest, RefinanceRequest
)
from ..errors import LendingError
from ..roles import Role


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_credit(
    request: CreateCreditRequest,
    system: LendingSystem = Depends(get_lending_system),
    role: Optional[Role] = Depends(get_actor_role)
):
    """Originate a credit and its installments"""
    try:
        credit = system.engine.create_credit(
            client_id=request.client_id,
            capital=request.capital,
            modality=request.modality,
            cadence=request.cadence,
            installment_count=request.installment_count,
            rate=request.rate,
            disbursement_date=request.disbursement_date,
            commitment_date=request.commitment_date,
            is_legacy=request.is_legacy,
            discount_pct=request.discount_pct,
            actor_role=role
        )

        return {
            "credit_id": credit.id,
            "state": credit.state.value,
            "total_to_repay": str(credit.total_to_repay),
            "message": "Credit created successfully"
        }

    except LendingError as e:
        raise to_http_error(e)


@router.post("/simulate")
async def simulate_plan(
    request: SimulatePlanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Quote a plan without creating anything"""
    try:
        return system.engine.simulate_plan(
            capital=request.capital,
            modality=request.modality,
            cadence=request.cadence,
            installment_count=request.installment_count,
            rate=request.rate,
            discount_pct=request.discount_pct,
            commitment_date=request.commitment_date
        )

    except LendingError as e:
        raise to_http_error(e)


@router.get("/{credit_id}")
async def get_credit(
    credit_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get credit details, re-derived as of business today"""
    try:
        return system.engine.refresh_credit(credit_id).to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.patch("/{credit_id}")
async def update_credit(
    credit_id: str,
    request: UpdateCreditRequest,
    system: LendingSystem = Depends(get_lending_system),
    role: Optional[Role] = Depends(get_actor_role)
):
    """Edit credit terms before any payment"""
    try:
        credit = system.engine.update_credit(
            credit_id,
            capital=request.capital,
            modality=request.modality,
            cadence=request.cadence,
            installment_count=request.installment_count,
            rate=request.rate,
            commitment_date=request.commitment_date,
            discount_pct=request.discount_pct,
            actor_role=role
        )
        return credit.to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.get("/{credit_id}/snapshot")
async def get_credit_snapshot(
    credit_id: str,
    as_of: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Debt position as of a date (defaults to business today)"""
    try:
        return system.engine.get_credit_snapshot(credit_id, as_of).to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.post("/{credit_id}/refresh")
async def refresh_credit(
    credit_id: str,
    as_of: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Persist derived states and penalty caches"""
    try:
        return system.engine.refresh_credit(credit_id, as_of).to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.get("/{credit_id}/installments")
async def get_installments(
    credit_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List a credit's installments"""
    try:
        system.engine.refresh_credit(credit_id)
        installments = system.engine.get_installments(credit_id)
        return {"installments": [i.to_dict() for i in installments]}

    except LendingError as e:
        raise to_http_error(e)


@router.get("/{credit_id}/payments")
async def get_payments(
    credit_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List a credit's payments"""
    try:
        system.engine.get_credit(credit_id)
        payments = system.engine.get_payments(credit_id)
        return {"payments": [p.to_dict() for p in payments]}

    except LendingError as e:
        raise to_http_error(e)


@router.get("/{credit_id}/receipts")
async def get_receipts(
    credit_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List a credit's receipts in number order"""
    try:
        system.engine.get_credit(credit_id)
        receipts = system.engine.get_receipts(credit_id)
        return {"receipts": [r.to_dict() for r in receipts]}

    except LendingError as e:
        raise to_http_error(e)


@router.post("/{credit_id}/cancel")
async def cancel_credit(
    credit_id: str,
    request: CancelCreditRequest,
    system: LendingSystem = Depends(get_lending_system),
    role: Optional[Role] = Depends(get_actor_role)
):
    """Settle the whole credit at once"""
    try:
        result = system.engine.cancel_credit(
            credit_id,
            discount=request.discount,
            discount_scope=request.discount_scope,
            method=request.method,
            actor_role=role,
            note=request.note,
            as_of=request.as_of
        )
        return result.to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.post("/{credit_id}/refinance", status_code=status.HTTP_201_CREATED)
async def refinance_credit(
    credit_id: str,
    request: RefinanceRequest,
    system: LendingSystem = Depends(get_lending_system),
    role: Optional[Role] = Depends(get_actor_role)
):
    """Replace a credit with a new fixed plan over its payoff base"""
    try:
        result = system.engine.refinance_credit(
            credit_id,
            rate_option=request.rate_option,
            new_cadence=request.new_cadence,
            new_installment_count=request.new_installment_count,
            actor_role=role,
            manual_rate=request.manual_rate,
            as_of=request.as_of
        )
        return result.to_dict()

    except LendingError as e:
        raise to_http_error(e)


@router.post("/{credit_id}/void")
async def void_credit(
    credit_id: str,
    system: LendingSystem = Depends(get_lending_system),
    role: Optional[Role] = Depends(get_actor_role)
):
    """Annul a credit that has no payments"""
    try:
        credit = system.engine.void_credit(credit_id, actor_role=role)
        return {
            "credit_id": credit.id,
            "state": credit.state.value,
            "message": "Credit voided successfully"
        }

    except LendingError as e:
        raise to_http_error(e)
