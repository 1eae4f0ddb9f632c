"""
Schedule Generation Module

Builds the installment set of a credit, prices origination interest and
normalizes origination dates. Also produces non-persisted plan quotes.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .config import get_config
from .dates import OPEN_ENDED_DUE_SENTINEL, add_months, business_today
from .errors import ValidationError
from .models import (
    Cadence, Credit, CreditModality, Installment, InstallmentState
)
from .money import ZERO, clamp_percent, fix2, percent_of, to_decimal


@dataclass
class OriginationTerms:
    """Priced origination of a fixed-schedule credit"""
    rate_pct: Decimal        # interest percent over the whole plan
    gross_interest: Decimal
    interest_discount: Decimal
    total: Decimal           # capital + interest - discount

    @property
    def net_interest(self) -> Decimal:
        return fix2(self.gross_interest - self.interest_discount)


def origination_rate_pct(cadence: Cadence, installment_count: int,
                         explicit_rate: Optional[Decimal] = None) -> Decimal:
    """
    Interest percent for a fixed plan

    Proportional to the plan length in months with a floor:
    max(min_pct, min_pct * n / periods_per_month). An explicit rate
    (financed sales) overrides the rule.
    """
    if explicit_rate is not None and to_decimal(explicit_rate) > 0:
        rate = to_decimal(explicit_rate)
        # fractions are accepted too
        return rate * 100 if rate <= 1 else rate

    min_pct = to_decimal(get_config().min_interest_pct)
    proportional = min_pct * Decimal(installment_count) / Decimal(cadence.periods_per_month)
    return fix2(max(min_pct, proportional))


def price_origination(capital: Decimal, cadence: Cadence, installment_count: int,
                      explicit_rate: Optional[Decimal] = None,
                      discount_pct: Decimal = ZERO) -> OriginationTerms:
    """Price interest and total to repay for a fixed plan"""
    rate_pct = origination_rate_pct(cadence, installment_count, explicit_rate)
    gross_interest = percent_of(capital, rate_pct)
    interest_discount = percent_of(gross_interest, clamp_percent(discount_pct))
    return OriginationTerms(
        rate_pct=rate_pct,
        gross_interest=gross_interest,
        interest_discount=interest_discount,
        total=fix2(to_decimal(capital) + gross_interest - interest_discount)
    )


def normalize_origination_dates(
    disbursement_date: Optional[date],
    commitment_date: Optional[date],
    is_legacy: bool = False,
    today: Optional[date] = None
) -> Tuple[date, date, bool]:
    """
    Resolve disbursement and commitment dates for a new credit

    Returns:
        (disbursement_date, commitment_date, is_legacy)
    """
    today = today or business_today()

    if is_legacy:
        if commitment_date is None:
            raise ValidationError(
                "Legacy credits require a commitment date",
                code="LEGACY_COMMITMENT_REQUIRED"
            )
        disbursement_date = disbursement_date or commitment_date
    elif disbursement_date is None and commitment_date is not None and commitment_date < today:
        # Loaded after the fact: the money left on the commitment date
        is_legacy = True
        disbursement_date = commitment_date
    else:
        disbursement_date = disbursement_date or today

    commitment_date = commitment_date or disbursement_date

    if commitment_date < disbursement_date:
        raise ValidationError(
            f"Commitment date {commitment_date} is before disbursement date {disbursement_date}",
            code="INCONSISTENT_DATES"
        )

    return disbursement_date, commitment_date, is_legacy


class ScheduleGenerator:
    """Generates installments for fixed-schedule and open-ended credits"""

    @staticmethod
    def equal_amounts(total: Decimal, count: int) -> List[Decimal]:
        """n equal installments, the last one absorbs rounding"""
        total = fix2(total)
        share = fix2(total / count)
        amounts = [share] * (count - 1)
        amounts.append(fix2(total - share * (count - 1)))
        return amounts

    @staticmethod
    def progressive_amounts(total: Decimal, count: int) -> List[Decimal]:
        """Installment i weighted by i, the last one absorbs rounding"""
        total = fix2(total)
        weight_sum = Decimal(count * (count + 1) // 2)
        amounts = [fix2(total * Decimal(i) / weight_sum) for i in range(1, count)]
        amounts.append(fix2(total - sum(amounts, ZERO)))
        return amounts

    @staticmethod
    def due_date(commitment_date: date, cadence: Cadence, number: int) -> date:
        """Due date of installment `number`; the first falls on the commitment date"""
        if cadence is Cadence.MONTHLY:
            return add_months(commitment_date, number - 1)
        return commitment_date + timedelta(days=cadence.period_days * (number - 1))

    def plan(self, modality: CreditModality, total: Decimal, count: int,
             cadence: Cadence, commitment_date: date) -> List[Tuple[int, Decimal, date]]:
        """(number, amount, due_date) rows for a fixed plan"""
        if count < 1:
            raise ValidationError("Installment count must be at least 1")
        if modality is CreditModality.FIXED_PROGRESSIVE:
            amounts = self.progressive_amounts(total, count)
        elif modality is CreditModality.FIXED_EQUAL:
            amounts = self.equal_amounts(total, count)
        else:
            raise ValidationError(f"No fixed plan for modality {modality.value}")
        return [
            (number, amount, self.due_date(commitment_date, cadence, number))
            for number, amount in enumerate(amounts, start=1)
        ]

    def generate(self, credit: Credit) -> List[Installment]:
        """Build the installment records for a credit"""
        now = datetime.now(timezone.utc)

        if credit.is_open_ended:
            return [Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                credit_id=credit.id,
                number=1,
                amount=fix2(credit.outstanding_principal),
                due_date=OPEN_ENDED_DUE_SENTINEL,
                state=InstallmentState.PENDING
            )]

        rows = self.plan(credit.modality, credit.total_to_repay, credit.installment_count,
                         credit.cadence, credit.commitment_date)
        return [
            Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                credit_id=credit.id,
                number=number,
                amount=amount,
                due_date=due_date,
                state=InstallmentState.PENDING
            )
            for number, amount, due_date in rows
        ]

    def quote(
        self,
        capital: Decimal,
        modality: CreditModality,
        cadence: Cadence,
        installment_count: int,
        commitment_date: date,
        explicit_rate: Optional[Decimal] = None,
        discount_pct: Decimal = ZERO
    ) -> Dict[str, Any]:
        """Quote a fixed plan without persisting anything"""
        if not modality.is_fixed:
            raise ValidationError("Plan quotes are only available for fixed modalities")
        capital = fix2(capital)
        if capital <= 0:
            raise ValidationError("Capital must be positive", code="INVALID_AMOUNT")

        terms = price_origination(capital, cadence, installment_count, explicit_rate, discount_pct)
        rows = self.plan(modality, terms.total, installment_count, cadence, commitment_date)

        return {
            'modality': modality.value,
            'cadence': cadence.value,
            'installment_count': installment_count,
            'capital': str(capital),
            'rate_pct': str(terms.rate_pct),
            'interest': str(terms.gross_interest),
            'interest_discount': str(terms.interest_discount),
            'total_to_repay': str(terms.total),
            'installments': [
                {'number': number, 'amount': str(amount), 'due_date': due_date.isoformat()}
                for number, amount, due_date in rows
            ],
        }
