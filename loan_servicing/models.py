"""
Servicing Data Model

Credits are a tagged variant: FixedScheduleCredit (equal or progressive
installments on a weekly/biweekly/monthly cadence) or OpenEndedCredit (one
container installment, interest charged per monthly cycle). Installments,
payments and receipts hang off a credit; payments are append-only.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .money import ZERO, fix2, max0, normalize_rate, to_decimal
from .storage import StorageRecord
from .errors import ValidationError


class CreditModality(Enum):
    """How a credit is repaid"""
    FIXED_EQUAL = "fixed_equal"              # n equal installments
    FIXED_PROGRESSIVE = "fixed_progressive"  # installment i weighted by i
    OPEN_ENDED = "open_ended"                # monthly cycles, capital at will

    @property
    def is_fixed(self) -> bool:
        return self is not CreditModality.OPEN_ENDED


class Cadence(Enum):
    """Installment cadence for fixed schedules"""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @property
    def period_days(self) -> int:
        """Days per period used by the due-date roll"""
        return {Cadence.WEEKLY: 7, Cadence.BIWEEKLY: 15, Cadence.MONTHLY: 30}[self]

    @property
    def periods_per_month(self) -> int:
        return {Cadence.WEEKLY: 4, Cadence.BIWEEKLY: 2, Cadence.MONTHLY: 1}[self]


class CreditState(Enum):
    """Credit lifecycle states"""
    PENDING = "pending"        # being repaid, not fully overdue
    OVERDUE = "overdue"        # every open installment is overdue
    PAID = "paid"              # fully repaid or cancelled
    REFINANCED = "refinanced"  # replaced by a refinancing credit (frozen)
    VOIDED = "voided"          # annulled (frozen)


class InstallmentState(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    PAID = "paid"
    REFINANCED = "refinanced"
    VOIDED = "voided"

    @property
    def is_active(self) -> bool:
        return self in (InstallmentState.PENDING, InstallmentState.PARTIAL, InstallmentState.OVERDUE)


class DiscountScope(Enum):
    """What a discount may reduce"""
    PENALTY = "penalty"
    TOTAL = "total"


class RateOption(Enum):
    """Refinancing rate menu"""
    P1 = "P1"
    P2 = "P2"
    MANUAL = "MANUAL"

    @classmethod
    def parse(cls, value: Union['RateOption', str]) -> 'RateOption':
        if isinstance(value, RateOption):
            return value
        option = str(value or "").strip().upper()
        if option == "P3":
            return cls.MANUAL
        try:
            return cls(option)
        except ValueError:
            raise ValidationError(f"Invalid rate option: {value}", code="INVALID_RATE_OPTION")


def _plain(value: Any) -> Any:
    """Convert a value tree to JSON-friendly primitives"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, CycleAllocation):
        return value.to_dict()
    return value


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _timestamps(data: Dict[str, Any]) -> Dict[str, datetime]:
    return {
        'id': data['id'],
        'created_at': datetime.fromisoformat(data['created_at']),
        'updated_at': datetime.fromisoformat(data['updated_at']),
    }


@dataclass
class Credit(StorageRecord):
    """Fields shared by every credit variant"""
    client_id: str
    capital: Decimal                  # amount disbursed
    rate: Decimal                     # percent (60) or fraction (0.60), see normalized_rate
    disbursement_date: date           # cash-ledger date
    commitment_date: date             # anchor for due dates and cycles
    outstanding_principal: Decimal
    total_to_repay: Decimal
    state: CreditState = CreditState.PENDING
    discount_pct: Decimal = ZERO      # origination discount on interest
    origin_credit_id: Optional[str] = None
    refinance_rate: Optional[Decimal] = None
    refinance_option: Optional[RateOption] = None

    def __post_init__(self):
        if self.commitment_date < self.disbursement_date:
            raise ValidationError(
                f"Commitment date {self.commitment_date} is before disbursement date {self.disbursement_date}",
                code="INCONSISTENT_DATES"
            )
        if self.outstanding_principal < 0:
            self.outstanding_principal = ZERO

    @property
    def normalized_rate(self) -> Decimal:
        return normalize_rate(self.rate)

    @property
    def is_frozen(self) -> bool:
        """Refinanced and voided credits never change again"""
        return self.state in (CreditState.REFINANCED, CreditState.VOIDED)

    @property
    def is_open_ended(self) -> bool:
        return self.modality is CreditModality.OPEN_ENDED

    def to_dict(self) -> Dict[str, Any]:
        result = {k: _plain(v) for k, v in self.__dict__.items()}
        result['modality'] = self.modality.value
        return result


@dataclass
class FixedScheduleCredit(Credit):
    """Credit repaid through a fixed installment schedule"""
    modality: CreditModality = CreditModality.FIXED_EQUAL
    cadence: Cadence = Cadence.MONTHLY
    installment_count: int = 1

    def __post_init__(self):
        super().__post_init__()
        if not self.modality.is_fixed:
            raise ValidationError("Fixed-schedule credit needs a fixed modality")
        if self.installment_count < 1:
            raise ValidationError("Installment count must be at least 1")


@dataclass
class OpenEndedCredit(Credit):
    """Credit charged per monthly cycle with a single container installment"""

    @property
    def modality(self) -> CreditModality:
        return CreditModality.OPEN_ENDED


def credit_from_dict(data: Dict[str, Any]) -> Credit:
    """Rebuild the right credit variant from storage"""
    common = dict(
        _timestamps(data),
        client_id=data['client_id'],
        capital=Decimal(data['capital']),
        rate=Decimal(data['rate']),
        disbursement_date=_date(data['disbursement_date']),
        commitment_date=_date(data['commitment_date']),
        outstanding_principal=Decimal(data['outstanding_principal']),
        total_to_repay=Decimal(data['total_to_repay']),
        state=CreditState(data['state']),
        discount_pct=Decimal(data.get('discount_pct', '0')),
        origin_credit_id=data.get('origin_credit_id'),
        refinance_rate=_dec(data.get('refinance_rate')),
        refinance_option=RateOption(data['refinance_option']) if data.get('refinance_option') else None,
    )
    modality = CreditModality(data['modality'])
    if modality is CreditModality.OPEN_ENDED:
        return OpenEndedCredit(**common)
    return FixedScheduleCredit(
        **common,
        modality=modality,
        cadence=Cadence(data['cadence']),
        installment_count=int(data['installment_count']),
    )


@dataclass
class Waiver:
    """Dated discount applied to an installment"""
    waiver_date: date
    penalty: Decimal = ZERO
    principal: Decimal = ZERO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Waiver':
        return cls(
            waiver_date=_date(data['waiver_date']),
            penalty=Decimal(data['penalty']),
            principal=Decimal(data['principal'])
        )


@dataclass
class Installment(StorageRecord):
    """One scheduled installment (or the open-ended container)"""
    credit_id: str
    number: int
    amount: Decimal
    due_date: date
    state: InstallmentState = InstallmentState.PENDING
    discount: Decimal = ZERO           # accumulated principal discount
    paid_principal: Decimal = ZERO     # accumulated principal paid
    penalty_accrued: Decimal = ZERO    # pending penalty as of last recompute
    carried_principal: Decimal = ZERO  # principal paid before the last due-date roll
    carried_discount: Decimal = ZERO   # principal discount before the last due-date roll
    folded_payment_ids: List[str] = field(default_factory=list)
    waivers: List[Waiver] = field(default_factory=list)
    paid_date: Optional[date] = None

    @property
    def principal_pending(self) -> Decimal:
        return max0(self.amount - self.discount - self.paid_principal)

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    def to_dict(self) -> Dict[str, Any]:
        return {k: _plain(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            **_timestamps(data),
            credit_id=data['credit_id'],
            number=int(data['number']),
            amount=Decimal(data['amount']),
            due_date=_date(data['due_date']),
            state=InstallmentState(data['state']),
            discount=Decimal(data['discount']),
            paid_principal=Decimal(data['paid_principal']),
            penalty_accrued=Decimal(data['penalty_accrued']),
            carried_principal=Decimal(data.get('carried_principal', '0')),
            carried_discount=Decimal(data.get('carried_discount', '0')),
            folded_payment_ids=list(data.get('folded_payment_ids', [])),
            waivers=[Waiver.from_dict(w) for w in data.get('waivers', [])],
            paid_date=_date(data.get('paid_date')),
        )


@dataclass
class Payment(StorageRecord):
    """Immutable record of money received"""
    credit_id: str
    installment_id: str
    amount: Decimal
    payment_date: date
    method: str
    note: Optional[str] = None
    kind: str = "payment"  # payment or cancellation

    def to_dict(self) -> Dict[str, Any]:
        return {k: _plain(v) for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            **_timestamps(data),
            credit_id=data['credit_id'],
            installment_id=data['installment_id'],
            amount=Decimal(data['amount']),
            payment_date=_date(data['payment_date']),
            method=data['method'],
            note=data.get('note'),
            kind=data.get('kind', 'payment'),
        )


@dataclass
class CycleAllocation:
    """Share of a receipt attributed to one open-ended cycle"""
    cycle: int
    penalty: Decimal = ZERO
    interest: Decimal = ZERO
    penalty_discount: Decimal = ZERO
    interest_discount: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cycle': self.cycle,
            'penalty': str(self.penalty),
            'interest': str(self.interest),
            'penalty_discount': str(self.penalty_discount),
            'interest_discount': str(self.interest_discount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CycleAllocation':
        return cls(
            cycle=int(data['cycle']),
            penalty=Decimal(data['penalty']),
            interest=Decimal(data['interest']),
            penalty_discount=Decimal(data.get('penalty_discount', '0')),
            interest_discount=Decimal(data.get('interest_discount', '0')),
        )


@dataclass
class Receipt(StorageRecord):
    """Allocation breakdown handed to receipt and cash-ledger collaborators"""
    receipt_number: int
    payment_id: str
    credit_id: str
    installment_id: str
    receipt_date: date
    concept: str
    method: str
    amount_paid: Decimal
    penalty_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO
    penalty_discount: Decimal = ZERO
    interest_discount: Decimal = ZERO
    principal_discount: Decimal = ZERO
    balance_before: Decimal = ZERO
    balance_after: Decimal = ZERO
    cycle_allocations: List[CycleAllocation] = field(default_factory=list)

    @property
    def discount_applied(self) -> Decimal:
        return fix2(self.penalty_discount + self.interest_discount + self.principal_discount)

    def to_dict(self) -> Dict[str, Any]:
        result = {k: _plain(v) for k, v in self.__dict__.items()}
        result['discount_applied'] = str(self.discount_applied)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Receipt':
        amounts = {
            name: to_decimal(data.get(name, '0'))
            for name in ('penalty_paid', 'interest_paid', 'principal_paid', 'penalty_discount',
                         'interest_discount', 'principal_discount', 'balance_before', 'balance_after')
        }
        return cls(
            **_timestamps(data),
            receipt_number=int(data['receipt_number']),
            payment_id=data['payment_id'],
            credit_id=data['credit_id'],
            installment_id=data['installment_id'],
            receipt_date=_date(data['receipt_date']),
            concept=data['concept'],
            method=data['method'],
            amount_paid=Decimal(data['amount_paid']),
            cycle_allocations=[CycleAllocation.from_dict(a) for a in data.get('cycle_allocations', [])],
            **amounts
        )
