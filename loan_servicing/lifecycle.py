"""
Lifecycle State Machine

Derives installment and credit states from the accrual position, guards
every state change with an explicit transition table, and owns the due-date
roll applied after qualifying partial payments.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Set

from .accrual import InstallmentAccrual
from .allocation import AllocationResult
from .cycles import OpenEndedSummary
from .errors import StateConflictError
from .models import (
    Cadence, Credit, CreditState, Installment, InstallmentState
)
from .money import ZERO, fix2, normalize_rate, to_decimal


_ACTIVE_EXITS = {InstallmentState.REFINANCED, InstallmentState.VOIDED}

INSTALLMENT_TRANSITIONS: Dict[InstallmentState, Set[InstallmentState]] = {
    InstallmentState.PENDING: {InstallmentState.PARTIAL, InstallmentState.OVERDUE,
                               InstallmentState.PAID} | _ACTIVE_EXITS,
    InstallmentState.PARTIAL: {InstallmentState.OVERDUE, InstallmentState.PAID,
                               InstallmentState.PENDING} | _ACTIVE_EXITS,
    InstallmentState.OVERDUE: {InstallmentState.PARTIAL, InstallmentState.PAID,
                               InstallmentState.PENDING} | _ACTIVE_EXITS,
    InstallmentState.PAID: set(),
    InstallmentState.REFINANCED: set(),
    InstallmentState.VOIDED: set(),
}

# Reverting to pending is reserved for the due-date roll
_ROLL_ONLY = {
    (InstallmentState.PARTIAL, InstallmentState.PENDING),
    (InstallmentState.OVERDUE, InstallmentState.PENDING),
}

CREDIT_TRANSITIONS: Dict[CreditState, Set[CreditState]] = {
    CreditState.PENDING: {CreditState.OVERDUE, CreditState.PAID, CreditState.REFINANCED, CreditState.VOIDED},
    CreditState.OVERDUE: {CreditState.PENDING, CreditState.PAID, CreditState.REFINANCED, CreditState.VOIDED},
    CreditState.PAID: set(),
    CreditState.REFINANCED: set(),
    CreditState.VOIDED: set(),
}


class LifecycleStateMachine:
    """Installment and credit state rules"""

    def can_transition(self, current: InstallmentState, target: InstallmentState,
                       via_roll: bool = False) -> bool:
        if current is target:
            return True
        if target not in INSTALLMENT_TRANSITIONS[current]:
            return False
        if (current, target) in _ROLL_ONLY and not via_roll:
            return False
        return True

    def transition(self, installment: Installment, target: InstallmentState,
                   via_roll: bool = False) -> bool:
        """
        Move an installment to a new state

        Returns:
            True when the state changed
        """
        current = installment.state
        if not self.can_transition(current, target, via_roll):
            raise StateConflictError(
                f"Installment {installment.number} cannot move from {current.value} to {target.value}",
                code="INVALID_TRANSITION",
                details={"installment_id": installment.id, "from": current.value, "to": target.value}
            )
        if current is target:
            return False
        installment.state = target
        installment.touch()
        return True

    def transition_credit(self, credit: Credit, target: CreditState) -> bool:
        """Move a credit to a new state; frozen credits never move"""
        current = credit.state
        if current is target:
            return False
        if target not in CREDIT_TRANSITIONS[current]:
            raise StateConflictError(
                f"Credit {credit.id} cannot move from {current.value} to {target.value}",
                code="INVALID_TRANSITION",
                details={"credit_id": credit.id, "from": current.value, "to": target.value}
            )
        credit.state = target
        credit.touch()
        return True

    def derive_fixed(self, installment: Installment, accrual: InstallmentAccrual,
                     as_of: date) -> InstallmentState:
        """State implied by a fixed installment's replay"""
        if accrual.principal_pending <= 0 and accrual.penalty_owed <= 0:
            return InstallmentState.PAID
        if as_of > installment.due_date:
            return InstallmentState.OVERDUE
        # principal paid since the last due-date roll
        if fix2(accrual.principal_paid - installment.carried_principal) > 0:
            return InstallmentState.PARTIAL
        return InstallmentState.PENDING

    def derive_open_ended(self, summary: OpenEndedSummary) -> InstallmentState:
        """State implied by an open-ended credit's cycle position"""
        if summary.outstanding_capital <= 0 and summary.total_owed_today <= 0:
            return InstallmentState.PAID
        if summary.cycle_cap_exceeded:
            return InstallmentState.OVERDUE
        oldest = summary.oldest_open_cycle
        if oldest and summary.as_of > oldest.due_date:
            return InstallmentState.OVERDUE
        return InstallmentState.PENDING

    def aggregate_credit(self, credit: Credit, installments: Iterable[Installment]) -> CreditState:
        """Credit state implied by its installments"""
        if credit.is_frozen:
            return credit.state
        states = [i.state for i in installments]
        if not states:
            return credit.state
        open_states = [s for s in states if s is not InstallmentState.PAID]
        if not open_states:
            return CreditState.PAID
        if all(s is InstallmentState.OVERDUE for s in open_states):
            return CreditState.OVERDUE
        return CreditState.PENDING


class DueDateRollPolicy:
    """
    Pushes a fixed installment's due date one cadence forward

    Applies after a partial payment whose principal portion covers at least
    the interest embedded in the installment, provided no penalty is left.
    The replay history is folded into carried totals so the rolled
    installment starts a fresh penalty clock.
    """

    @staticmethod
    def embedded_interest(installment_amount: Decimal, rate: Decimal) -> Decimal:
        """Interest portion of amount = principal * (1 + rate)"""
        amount = to_decimal(installment_amount)
        return fix2(amount - amount / (1 + normalize_rate(rate)))

    def should_roll(self, credit: Credit, installment: Installment,
                    allocation: AllocationResult, accrual_after: InstallmentAccrual) -> bool:
        if credit.is_open_ended:
            return False
        if accrual_after.principal_pending <= 0:
            return False
        if accrual_after.penalty_owed > 0:
            return False
        if allocation.principal_paid <= 0:
            return False
        return allocation.principal_paid >= self.embedded_interest(installment.amount, credit.rate)

    @staticmethod
    def roll(installment: Installment, accrual_after: InstallmentAccrual,
             payment_ids: List[str], cadence: Cadence) -> date:
        """Fold history and move the due date; returns the new due date"""
        installment.due_date = installment.due_date + timedelta(days=cadence.period_days)
        installment.carried_principal = accrual_after.principal_paid
        installment.carried_discount = accrual_after.principal_discounted
        installment.folded_payment_ids = list(payment_ids)
        installment.waivers = []
        installment.penalty_accrued = ZERO
        installment.touch()
        return installment.due_date
