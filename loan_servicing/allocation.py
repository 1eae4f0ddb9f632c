"""
Payment Allocation Module

Resolves the discount a requester may grant and splits a payment across
penalty, interest and principal buckets in a fixed priority order. Every
allocation's buckets sum exactly to the amount received.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from .accrual import InstallmentAccrual
from .config import get_config
from .cycles import OpenEndedSummary
from .errors import OverpaymentError, PermissionDeniedError, StateConflictError, ValidationError
from .models import CycleAllocation, DiscountScope
from .money import ZERO, clamp_percent, fix2, max0, percent_of, to_decimal
from .roles import Permission, Role, has_permission


@dataclass
class DiscountSpec:
    """A resolved discount: what it reduces and by how much"""
    scope: DiscountScope = DiscountScope.PENALTY
    percent: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return self.percent <= 0

    def to_dict(self) -> Dict[str, str]:
        return {'scope': self.scope.value, 'percent': str(self.percent)}


def resolve_discount(role: Union[Role, int, str, None],
                     percent: Any = None,
                     scope: Union[DiscountScope, str, None] = None) -> DiscountSpec:
    """
    Build the discount a role is allowed to apply

    SUPERADMIN may use either scope, ADMIN is forced to penalty-only and
    COLLECTOR may not discount at all.
    """
    pct = clamp_percent(to_decimal(percent))
    if pct <= 0:
        return DiscountSpec()

    role = Role.parse(role)
    if not has_permission(role, Permission.DISCOUNT_PENALTY):
        role_name = role.name if role else "anonymous"
        raise PermissionDeniedError(
            f"Role {role_name} is not allowed to apply discounts",
            details={"percent": str(pct)}
        )

    if scope is not None and not isinstance(scope, DiscountScope):
        try:
            scope = DiscountScope(str(scope).lower())
        except ValueError:
            raise ValidationError(f"Invalid discount scope: {scope}")

    if scope is DiscountScope.TOTAL and has_permission(role, Permission.DISCOUNT_TOTAL):
        return DiscountSpec(DiscountScope.TOTAL, pct)
    return DiscountSpec(DiscountScope.PENALTY, pct)


def distribute_proportional(total: Decimal, weights: Sequence[Decimal],
                            caps: Optional[Sequence[Decimal]] = None) -> List[Decimal]:
    """
    Split total proportionally to weights

    Shares are rounded to cents and the last positive weight absorbs the
    rounding delta. With caps, no share exceeds its cap and any overflow
    moves to the next share with room.
    """
    total = fix2(total)
    weights = [max0(w) for w in weights]
    shares = [ZERO] * len(weights)
    weight_sum = fix2(sum(weights, ZERO))
    if total <= 0 or weight_sum <= 0:
        return shares

    last = max(i for i, w in enumerate(weights) if w > 0)
    assigned = ZERO
    for i, weight in enumerate(weights):
        if weight <= 0:
            continue
        if i == last:
            shares[i] = fix2(total - assigned)
        else:
            shares[i] = fix2(total * weight / weight_sum)
            assigned = fix2(assigned + shares[i])

    if caps is not None:
        overflow = ZERO
        for i, cap in enumerate(caps):
            if shares[i] > cap:
                overflow = fix2(overflow + shares[i] - cap)
                shares[i] = fix2(cap)
        for i, cap in enumerate(caps):
            if overflow <= 0:
                break
            room = fix2(cap - shares[i])
            if room > 0:
                moved = min(room, overflow)
                shares[i] = fix2(shares[i] + moved)
                overflow = fix2(overflow - moved)

    return shares


def waterfall(amount: Decimal, buckets: Sequence[Decimal]) -> List[Decimal]:
    """Fill buckets in order; whatever is left lands in the last bucket"""
    remaining = fix2(amount)
    filled = []
    for position, bucket in enumerate(buckets):
        if position == len(buckets) - 1:
            filled.append(remaining)
            break
        take = min(remaining, max0(bucket))
        filled.append(take)
        remaining = fix2(remaining - take)
    return filled


@dataclass
class AllocationResult:
    """How one payment was split"""
    amount: Decimal
    penalty_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO
    penalty_discount: Decimal = ZERO
    interest_discount: Decimal = ZERO
    principal_discount: Decimal = ZERO
    total_before: Decimal = ZERO    # gross debt before the discount
    total_payable: Decimal = ZERO   # net debt after the discount
    cycle_allocations: List[CycleAllocation] = field(default_factory=list)

    @property
    def discount_applied(self) -> Decimal:
        return fix2(self.penalty_discount + self.interest_discount + self.principal_discount)

    @property
    def remaining_after(self) -> Decimal:
        return max0(self.total_payable - self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'penalty_paid': str(self.penalty_paid),
            'interest_paid': str(self.interest_paid),
            'principal_paid': str(self.principal_paid),
            'penalty_discount': str(self.penalty_discount),
            'interest_discount': str(self.interest_discount),
            'principal_discount': str(self.principal_discount),
            'discount_applied': str(self.discount_applied),
            'total_before': str(self.total_before),
            'total_payable': str(self.total_payable),
            'remaining_after': str(self.remaining_after),
            'cycle_allocations': [a.to_dict() for a in self.cycle_allocations],
        }


class PaymentAllocator:
    """Splits payments across debt buckets"""

    def __init__(self, tolerance: Optional[Decimal] = None):
        if tolerance is None:
            tolerance = get_config().overpayment_tolerance
        self.tolerance = to_decimal(tolerance)

    def _check_amount(self, amount: Decimal, payable: Decimal) -> Decimal:
        amount = fix2(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", code="INVALID_AMOUNT",
                                  details={"amount": str(amount)})
        if amount > fix2(payable + self.tolerance):
            raise OverpaymentError(
                f"Payment {amount} exceeds the total payable {payable}",
                details={"amount": str(amount), "total_payable": str(payable)}
            )
        # an excess within tolerance is clamped to the payable amount
        amount = min(amount, fix2(payable))
        if amount <= 0:
            raise OverpaymentError("Nothing is payable on this installment",
                                   details={"total_payable": str(payable)})
        return amount

    def allocate_fixed(self, accrual: InstallmentAccrual, amount: Optional[Decimal] = None,
                       discount: Optional[DiscountSpec] = None) -> AllocationResult:
        """
        Allocate a payment to a fixed-schedule installment

        The discount is computed on the penalty (scope penalty) or on
        penalty plus principal (scope total) and absorbed penalty first.
        The payment then settles penalty before principal.
        """
        discount = discount or DiscountSpec()
        penalty = accrual.penalty_owed
        principal = accrual.principal_pending

        base = penalty if discount.scope is DiscountScope.PENALTY else fix2(penalty + principal)
        discount_amount = percent_of(base, discount.percent)
        penalty_discount = min(discount_amount, penalty)
        principal_discount = min(fix2(discount_amount - penalty_discount), principal)

        net_penalty = fix2(penalty - penalty_discount)
        net_principal = fix2(principal - principal_discount)
        payable = fix2(net_penalty + net_principal)

        amount = self._check_amount(payable if amount is None else amount, payable)
        to_penalty, to_principal = waterfall(amount, [net_penalty, net_principal])

        return AllocationResult(
            amount=amount,
            penalty_paid=to_penalty,
            principal_paid=to_principal,
            penalty_discount=penalty_discount,
            principal_discount=principal_discount,
            total_before=fix2(penalty + principal),
            total_payable=payable
        )

    def allocate_open_ended(self, summary: OpenEndedSummary, amount: Optional[Decimal] = None,
                            discount: Optional[DiscountSpec] = None,
                            require_full_liquidation: bool = False) -> AllocationResult:
        """
        Allocate a payment to an open-ended credit

        Open cycles are settled oldest first, penalty then interest, and only
        then capital. The discount reduces the oldest open cycle's penalty.
        """
        discount = discount or DiscountSpec()
        oldest = summary.oldest_open_cycle

        penalty_discount = percent_of(oldest.penalty_pending, discount.percent) if oldest else ZERO
        payable = fix2(summary.total_owed_today - penalty_discount)

        if amount is None:
            if require_full_liquidation:
                amount = payable
            else:
                amount = ZERO
                if oldest:
                    amount = fix2(oldest.penalty_pending - penalty_discount + oldest.interest_pending)
                if amount <= 0:
                    raise ValidationError("No interest or penalty is due on this credit",
                                          code="NOTHING_TO_PAY")

        amount = self._check_amount(amount, payable)
        if require_full_liquidation and amount < fix2(payable - self.tolerance):
            raise StateConflictError(
                f"Credit is in its last cycle: only full liquidation of {payable} is accepted",
                code="OPEN_ENDED_CYCLE_CAP",
                details={"total_payable": str(payable), "amount": str(amount)}
            )

        open_cycles = summary.open_cycles
        buckets = []
        for breakdown in open_cycles:
            cycle_discount = penalty_discount if breakdown is oldest else ZERO
            buckets.append(fix2(breakdown.penalty_pending - cycle_discount))
            buckets.append(breakdown.interest_pending)
        buckets.append(summary.outstanding_capital)
        filled = waterfall(amount, buckets)

        allocations = []
        penalty_paid = ZERO
        interest_paid = ZERO
        for position, breakdown in enumerate(open_cycles):
            to_penalty = filled[2 * position]
            to_interest = filled[2 * position + 1]
            cycle_discount = penalty_discount if breakdown is oldest else ZERO
            if to_penalty > 0 or to_interest > 0 or cycle_discount > 0:
                allocations.append(CycleAllocation(
                    cycle=breakdown.cycle,
                    penalty=to_penalty,
                    interest=to_interest,
                    penalty_discount=cycle_discount
                ))
            penalty_paid = fix2(penalty_paid + to_penalty)
            interest_paid = fix2(interest_paid + to_interest)

        return AllocationResult(
            amount=amount,
            penalty_paid=penalty_paid,
            interest_paid=interest_paid,
            principal_paid=filled[-1],
            penalty_discount=penalty_discount,
            total_before=summary.total_owed_today,
            total_payable=payable,
            cycle_allocations=allocations
        )
