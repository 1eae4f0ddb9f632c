"""
Penalty Accrual Module

Day-by-day replay of a fixed-schedule installment. Penalty ("mora") accrues
on the unpaid principal every day after the due date; each day's waivers and
payments are applied after that day's accrual, payments settling penalty
before principal.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Optional

from .config import get_config
from .dates import iter_days
from .models import Installment, Payment
from .money import ZERO, fix2, max0, to_decimal


@dataclass
class InstallmentAccrual:
    """Result of replaying one installment up to a date"""
    penalty_owed: Decimal
    principal_paid: Decimal
    principal_discounted: Decimal
    principal_pending: Decimal
    penalty_generated: Decimal
    penalty_paid: Decimal
    penalty_waived: Decimal = ZERO

    @property
    def total_owed(self) -> Decimal:
        return fix2(self.penalty_owed + self.principal_pending)

    def to_dict(self) -> Dict[str, str]:
        return {
            'penalty_owed': str(self.penalty_owed),
            'principal_paid': str(self.principal_paid),
            'principal_discounted': str(self.principal_discounted),
            'principal_pending': str(self.principal_pending),
            'penalty_generated': str(self.penalty_generated),
            'penalty_paid': str(self.penalty_paid),
            'penalty_waived': str(self.penalty_waived),
            'total_owed': str(self.total_owed),
        }


class AccrualSimulator:
    """
    Replays payments and waivers against an installment

    The replay is pure: it never touches storage and gives the same result
    for the same inputs.
    """

    def __init__(self, daily_rate: Optional[Decimal] = None):
        if daily_rate is None:
            daily_rate = get_config().daily_penalty_rate
        self.daily_rate = to_decimal(daily_rate)

    def simulate(self, installment: Installment, payments: Iterable[Payment],
                 as_of: date) -> InstallmentAccrual:
        """
        Replay an installment up to and including as_of

        Args:
            installment: Installment to replay
            payments: Payments recorded against the installment
            as_of: Last day of the replay

        Returns:
            InstallmentAccrual with penalty and principal position
        """
        amount = fix2(installment.amount)
        due = installment.due_date
        folded = set(installment.folded_payment_ids)
        live = [
            p for p in payments
            if p.id not in folded and p.payment_date <= as_of
        ]

        principal_paid = fix2(installment.carried_principal)
        principal_discounted = fix2(installment.carried_discount)

        cutoff = min(as_of, due)
        for payment in live:
            if payment.payment_date <= cutoff:
                principal_paid = fix2(principal_paid + payment.amount)
        for waiver in installment.waivers:
            if waiver.waiver_date <= cutoff:
                principal_discounted = fix2(principal_discounted + waiver.principal)

        if as_of <= due:
            return InstallmentAccrual(
                penalty_owed=ZERO,
                principal_paid=principal_paid,
                principal_discounted=principal_discounted,
                principal_pending=max0(amount - principal_paid - principal_discounted),
                penalty_generated=ZERO,
                penalty_paid=ZERO
            )

        paid_by_day: Dict[date, Decimal] = defaultdict(lambda: ZERO)
        for payment in live:
            if payment.payment_date > due:
                paid_by_day[payment.payment_date] = fix2(paid_by_day[payment.payment_date] + payment.amount)

        waivers_by_day = defaultdict(list)
        for waiver in installment.waivers:
            if due < waiver.waiver_date <= as_of:
                waivers_by_day[waiver.waiver_date].append(waiver)

        penalty = ZERO
        generated = ZERO
        penalty_paid = ZERO
        waived = ZERO

        for day in iter_days(due + timedelta(days=1), as_of):
            base = fix2(amount - principal_paid - principal_discounted)
            if base > 0:
                accrued = fix2(base * self.daily_rate)
                penalty = fix2(penalty + accrued)
                generated = fix2(generated + accrued)

            for waiver in waivers_by_day.get(day, ()):
                penalty_cut = min(fix2(waiver.penalty), penalty)
                penalty = fix2(penalty - penalty_cut)
                waived = fix2(waived + penalty_cut)
                principal_discounted = fix2(principal_discounted + waiver.principal)

            paid_today = paid_by_day.get(day)
            if paid_today:
                to_penalty = min(paid_today, penalty)
                penalty = fix2(penalty - to_penalty)
                penalty_paid = fix2(penalty_paid + to_penalty)
                principal_paid = fix2(principal_paid + paid_today - to_penalty)

        return InstallmentAccrual(
            penalty_owed=max0(penalty),
            principal_paid=principal_paid,
            principal_discounted=principal_discounted,
            principal_pending=max0(amount - principal_paid - principal_discounted),
            penalty_generated=generated,
            penalty_paid=penalty_paid,
            penalty_waived=waived
        )
