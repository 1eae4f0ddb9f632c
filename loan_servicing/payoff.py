"""
Payoff Calculators

Pure computations behind early cancellation and refinancing. Nothing here
touches storage: the servicing engine validates, asks for a plan and then
writes the plan inside one transaction.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .accrual import InstallmentAccrual
from .allocation import DiscountSpec, distribute_proportional
from .config import get_config
from .cycles import OpenEndedSummary
from .errors import StateConflictError, ValidationError
from .models import (
    Cadence, CycleAllocation, Credit, CreditState, DiscountScope, Installment, RateOption
)
from .money import ZERO, clamp_percent, fix2, normalize_rate, percent_of, to_decimal
from .roles import Permission, Role, require_permission


@dataclass
class PayoffLine:
    """Cancellation amounts for one installment or one cycle"""
    reference: str          # installment id or cycle number
    penalty: Decimal = ZERO
    interest: Decimal = ZERO
    principal: Decimal = ZERO
    penalty_discount: Decimal = ZERO
    interest_discount: Decimal = ZERO
    principal_discount: Decimal = ZERO

    @property
    def discount_total(self) -> Decimal:
        return fix2(self.penalty_discount + self.interest_discount + self.principal_discount)

    @property
    def net(self) -> Decimal:
        return fix2(self.penalty + self.interest + self.principal
                    - self.penalty_discount - self.interest_discount - self.principal_discount)


@dataclass
class CancellationPlan:
    """Debt settled by a cancellation and the discount granted on it"""
    lines: List[PayoffLine] = field(default_factory=list)
    capital: Decimal = ZERO  # open-ended outstanding capital
    capital_discount: Decimal = ZERO

    def _total(self, name: str) -> Decimal:
        return fix2(sum((getattr(line, name) for line in self.lines), ZERO))

    @property
    def penalty(self) -> Decimal:
        return self._total('penalty')

    @property
    def interest(self) -> Decimal:
        return self._total('interest')

    @property
    def principal(self) -> Decimal:
        return fix2(self._total('principal') + self.capital)

    @property
    def penalty_discount(self) -> Decimal:
        return self._total('penalty_discount')

    @property
    def interest_discount(self) -> Decimal:
        return self._total('interest_discount')

    @property
    def principal_discount(self) -> Decimal:
        return fix2(self._total('principal_discount') + self.capital_discount)

    @property
    def total_debt(self) -> Decimal:
        return fix2(self.penalty + self.interest + self.principal)

    @property
    def discount_applied(self) -> Decimal:
        return fix2(self.penalty_discount + self.interest_discount + self.principal_discount)

    @property
    def net_payable(self) -> Decimal:
        return fix2(self.total_debt - self.discount_applied)

    def cycle_allocations(self) -> List[CycleAllocation]:
        """Per-cycle receipt tags (open-ended plans only)"""
        return [
            CycleAllocation(
                cycle=int(line.reference),
                penalty=fix2(line.penalty - line.penalty_discount),
                interest=fix2(line.interest - line.interest_discount),
                penalty_discount=line.penalty_discount,
                interest_discount=line.interest_discount
            )
            for line in self.lines
            if line.penalty > 0 or line.interest > 0
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'penalty': str(self.penalty),
            'interest': str(self.interest),
            'principal': str(self.principal),
            'total_debt': str(self.total_debt),
            'penalty_discount': str(self.penalty_discount),
            'interest_discount': str(self.interest_discount),
            'principal_discount': str(self.principal_discount),
            'discount_applied': str(self.discount_applied),
            'net_payable': str(self.net_payable),
        }


def resolve_cancellation_discount(role: Union[Role, int, str, None], percent: Any = None,
                                  scope: Union[DiscountScope, str, None] = None) -> DiscountSpec:
    """Any cancelling role may cancel; only SUPERADMIN may discount it"""
    role = Role.parse(role)
    require_permission(role, Permission.CANCEL_CREDIT)

    pct = clamp_percent(to_decimal(percent))
    if pct <= 0:
        return DiscountSpec()
    require_permission(role, Permission.DISCOUNT_CANCELLATION)

    if scope is not None and not isinstance(scope, DiscountScope):
        try:
            scope = DiscountScope(str(scope).lower())
        except ValueError:
            raise ValidationError(f"Invalid discount scope: {scope}")
    return DiscountSpec(scope or DiscountScope.PENALTY, pct)


class CancellationCalculator:
    """Total payoff of a credit with an optional discount"""

    def plan_fixed(self, positions: Sequence[Tuple[Installment, InstallmentAccrual]],
                   discount: Optional[DiscountSpec] = None) -> CancellationPlan:
        """
        Cancellation of open fixed-schedule installments

        Penalty discounts are split proportionally to each installment's
        penalty; a total-scope remainder is split proportionally to principal.
        """
        discount = discount or DiscountSpec()
        lines = [
            PayoffLine(reference=installment.id, penalty=accrual.penalty_owed,
                       principal=accrual.principal_pending)
            for installment, accrual in positions
        ]
        penalties = [line.penalty for line in lines]
        principals = [line.principal for line in lines]
        total_penalty = fix2(sum(penalties, ZERO))
        total_principal = fix2(sum(principals, ZERO))

        if discount.scope is DiscountScope.TOTAL:
            discount_amount = percent_of(total_penalty + total_principal, discount.percent)
        else:
            discount_amount = percent_of(total_penalty, discount.percent)

        penalty_discount = min(discount_amount, total_penalty)
        principal_discount = min(fix2(discount_amount - penalty_discount), total_principal)

        for line, share in zip(lines, distribute_proportional(penalty_discount, penalties, penalties)):
            line.penalty_discount = share
        for line, share in zip(lines, distribute_proportional(principal_discount, principals, principals)):
            line.principal_discount = share

        return CancellationPlan(lines=lines)

    def plan_open_ended(self, summary: OpenEndedSummary,
                        discount: Optional[DiscountSpec] = None) -> CancellationPlan:
        """
        Cancellation of an open-ended credit

        The discount is absorbed penalty first, then interest, then capital.
        """
        discount = discount or DiscountSpec()
        lines = [
            PayoffLine(reference=str(c.cycle), penalty=c.penalty_pending, interest=c.interest_pending)
            for c in summary.cycles
        ]
        penalties = [line.penalty for line in lines]
        interests = [line.interest for line in lines]
        total_penalty = fix2(sum(penalties, ZERO))
        total_interest = fix2(sum(interests, ZERO))
        capital = summary.outstanding_capital

        if discount.scope is DiscountScope.TOTAL:
            discount_amount = percent_of(total_penalty + total_interest + capital, discount.percent)
        else:
            discount_amount = percent_of(total_penalty, discount.percent)

        penalty_discount = min(discount_amount, total_penalty)
        remaining = fix2(discount_amount - penalty_discount)
        interest_discount = min(remaining, total_interest)
        capital_discount = min(fix2(remaining - interest_discount), capital)

        for line, share in zip(lines, distribute_proportional(penalty_discount, penalties, penalties)):
            line.penalty_discount = share
        for line, share in zip(lines, distribute_proportional(interest_discount, interests, interests)):
            line.interest_discount = share

        return CancellationPlan(lines=lines, capital=capital, capital_discount=capital_discount)


@dataclass
class RefinanceQuote:
    """Terms of the credit that replaces a refinanced one"""
    option: RateOption
    monthly_rate: Decimal   # fraction per month
    period_rate: Decimal    # fraction per installment period
    cadence: Cadence
    installment_count: int
    payoff_base: Decimal
    interest: Decimal

    @property
    def new_total(self) -> Decimal:
        return fix2(self.payoff_base + self.interest)

    @property
    def rate_pct(self) -> Decimal:
        """Plan interest as a percent of the base"""
        return fix2(self.period_rate * self.installment_count * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'option': self.option.value,
            'monthly_rate': str(self.monthly_rate),
            'period_rate': str(self.period_rate),
            'cadence': self.cadence.value,
            'installment_count': self.installment_count,
            'payoff_base': str(self.payoff_base),
            'interest': str(self.interest),
            'new_total': str(self.new_total),
        }


class RefinanceCalculator:
    """Payoff base and new-plan pricing for refinancing"""

    def check_allowed(self, credit: Credit, role: Union[Role, int, str, None],
                      option: RateOption) -> None:
        """Raise unless the credit and role allow refinancing with option"""
        role = Role.parse(role)
        require_permission(role, Permission.REFINANCE_CREDIT)
        if option is RateOption.MANUAL:
            require_permission(role, Permission.REFINANCE_MANUAL_RATE,
                               "Only SUPERADMIN may refinance at a manual rate")

        if credit.state is CreditState.VOIDED:
            raise StateConflictError(f"Credit {credit.id} is voided", code="CREDIT_VOIDED")
        if credit.state is CreditState.REFINANCED:
            raise StateConflictError(f"Credit {credit.id} is already refinanced",
                                     code="CREDIT_ALREADY_REFINANCED")

    def monthly_rate(self, option: RateOption, manual_rate: Optional[Any] = None) -> Decimal:
        """Monthly rate as a fraction"""
        cfg = get_config()
        if option is RateOption.P1:
            return normalize_rate(cfg.refinance_rate_p1)
        if option is RateOption.P2:
            return normalize_rate(cfg.refinance_rate_p2)
        rate = to_decimal(manual_rate)
        if rate <= 0:
            raise ValidationError("A manual refinance needs a positive monthly rate",
                                  code="INVALID_RATE_OPTION")
        return normalize_rate(rate)

    @staticmethod
    def payoff_base_fixed(positions: Sequence[Tuple[Installment, InstallmentAccrual]]) -> Decimal:
        """Principal plus penalty pending over open installments"""
        return fix2(sum((fix2(a.principal_pending + a.penalty_owed) for _, a in positions), ZERO))

    @staticmethod
    def payoff_base_open_ended(summary: OpenEndedSummary) -> Decimal:
        """Capital plus what the oldest open cycle still owes"""
        oldest = summary.oldest_open_cycle
        pending = oldest.total_pending if oldest else ZERO
        return fix2(summary.outstanding_capital + pending)

    def quote(self, payoff_base: Decimal, option: RateOption, cadence: Cadence,
              installment_count: int, manual_rate: Optional[Any] = None) -> RefinanceQuote:
        payoff_base = fix2(payoff_base)
        if payoff_base <= 0:
            raise ValidationError("Credit has no balance to refinance", code="NO_BALANCE")
        if installment_count < 1:
            raise ValidationError("Installment count must be at least 1")

        monthly = self.monthly_rate(option, manual_rate)
        period_rate = monthly / cadence.periods_per_month
        return RefinanceQuote(
            option=option,
            monthly_rate=monthly,
            period_rate=period_rate,
            cadence=cadence,
            installment_count=installment_count,
            payoff_base=payoff_base,
            interest=fix2(payoff_base * period_rate * installment_count)
        )
