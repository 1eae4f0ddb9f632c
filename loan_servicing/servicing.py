"""
Loan Servicing Engine

Transactional facade over the calculation components. Every mutating
operation validates and computes first, then writes inside one
storage.atomic() block while holding the credit's lock; audit events are
chained inside the same transaction and domain events are published after
it commits.
"""

import logging
import threading
import uuid
import weakref
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .accrual import AccrualSimulator, InstallmentAccrual
from .allocation import AllocationResult, DiscountSpec, PaymentAllocator, resolve_discount
from .audit import AuditEventType, AuditTrail
from .config import get_config
from .cycles import CycleAccrualEngine, OpenEndedSummary
from .dates import business_today, parse_date
from .errors import NotFoundError, StateConflictError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPayload
from .lifecycle import DueDateRollPolicy, LifecycleStateMachine
from .logging_config import log_action
from .models import (
    Cadence, Credit, CreditModality, CreditState, FixedScheduleCredit, Installment,
    InstallmentState, OpenEndedCredit, Payment, RateOption, Receipt, Waiver, credit_from_dict
)
from .money import ZERO, fix2, to_decimal
from .payoff import (
    CancellationCalculator, CancellationPlan, RefinanceCalculator, RefinanceQuote,
    resolve_cancellation_discount
)
from .roles import Permission, Role, require_permission
from .schedule import ScheduleGenerator, normalize_origination_dates, price_origination
from .scoring import CreditScorer
from .storage import StorageInterface


Position = Tuple[Installment, InstallmentAccrual]


@dataclass
class CreditSnapshot:
    """Debt position of a credit as of a date (never persisted)"""
    credit_id: str
    modality: CreditModality
    as_of: date
    state: CreditState
    outstanding_principal: Decimal
    pending_interest: Decimal
    pending_penalty: Decimal
    cycle_breakdown: Optional[Dict[str, Any]] = None
    installment_breakdown: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_owed_today(self) -> Decimal:
        return fix2(self.outstanding_principal + self.pending_interest + self.pending_penalty)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'credit_id': self.credit_id,
            'modality': self.modality.value,
            'as_of': self.as_of.isoformat(),
            'state': self.state.value,
            'outstanding_principal': str(self.outstanding_principal),
            'pending_interest': str(self.pending_interest),
            'pending_penalty': str(self.pending_penalty),
            'total_owed_today': str(self.total_owed_today),
            'cycle_breakdown': self.cycle_breakdown,
            'installment_breakdown': self.installment_breakdown,
        }


@dataclass
class PaymentResult:
    """Outcome of apply_payment"""
    payment: Payment
    allocation: AllocationResult
    new_state: InstallmentState
    credit_state: CreditState
    receipt: Receipt
    rolled_due_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment': self.payment.to_dict(),
            'allocation': self.allocation.to_dict(),
            'new_state': self.new_state.value,
            'credit_state': self.credit_state.value,
            'receipt': self.receipt.to_dict(),
            'rolled_due_date': self.rolled_due_date.isoformat() if self.rolled_due_date else None,
        }


@dataclass
class CancellationResult:
    """Outcome of cancel_credit"""
    credit: Credit
    payoff_breakdown: CancellationPlan
    payment: Payment
    receipt: Receipt

    def to_dict(self) -> Dict[str, Any]:
        return {
            'credit_id': self.credit.id,
            'state': self.credit.state.value,
            'payoff_breakdown': self.payoff_breakdown.to_dict(),
            'payment': self.payment.to_dict(),
            'receipt': self.receipt.to_dict(),
        }


@dataclass
class RefinanceResult:
    """Outcome of refinance_credit"""
    original_credit_id: str
    new_credit_id: str
    payoff_base: Decimal
    new_total: Decimal
    quote: RefinanceQuote

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original_credit_id': self.original_credit_id,
            'new_credit_id': self.new_credit_id,
            'payoff_base': str(self.payoff_base),
            'new_total': str(self.new_total),
            'quote': self.quote.to_dict(),
        }


def _parse_cadence(value: Union[Cadence, str, None], default: Optional[Cadence] = None) -> Cadence:
    if value is None:
        if default is None:
            raise ValidationError("Cadence is required")
        return default
    if isinstance(value, Cadence):
        return value
    try:
        return Cadence(str(value).lower())
    except ValueError:
        raise ValidationError(f"Invalid cadence: {value}")


def _parse_modality(value: Union[CreditModality, str]) -> CreditModality:
    if isinstance(value, CreditModality):
        return value
    try:
        return CreditModality(str(value).lower())
    except ValueError:
        raise ValidationError(f"Invalid modality: {value}")


def _role_name(role: Optional[Role]) -> Optional[str]:
    return role.name if role else None


class LoanServicingEngine:
    """
    Loan servicing facade

    Owns the per-credit locks and wires the pure calculators to storage,
    audit and event publication.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        dispatcher: Optional[EventDispatcher] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.dispatcher = dispatcher or EventDispatcher()
        self.today = today or business_today
        self.logger = logging.getLogger("loan_servicing.servicing")

        self.schedule = ScheduleGenerator()
        self.accrual = AccrualSimulator()
        self.cycles = CycleAccrualEngine()
        self.allocator = PaymentAllocator()
        self.lifecycle = LifecycleStateMachine()
        self.roll_policy = DueDateRollPolicy()
        self.cancellation = CancellationCalculator()
        self.refinance = RefinanceCalculator()

        self.credits_table = "credits"
        self.installments_table = "installments"
        self.payments_table = "payments"
        self.receipts_table = "receipts"

        # a credit's lock lives only while some caller holds it
        self._locks: 'weakref.WeakValueDictionary[str, threading.RLock]' = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

        self.scorer = CreditScorer(self)
        if get_config().enable_scoring:
            self.scorer.subscribe(self.dispatcher)

    # Plumbing

    def _credit_lock(self, credit_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(credit_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[credit_id] = lock
            return lock

    def _as_of(self, as_of: Union[date, str, None]) -> date:
        return parse_date(as_of, "as_of") or self.today()

    def _audit(self, event_type: AuditEventType, entity_id: str, metadata: Dict[str, Any],
               role: Optional[Role] = None, entity_type: str = "credit") -> None:
        if not get_config().enable_audit_logging:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            actor_role=_role_name(role)
        )

    def _publish(self, event_type: DomainEvent, credit: Credit, data: Dict[str, Any]) -> None:
        payload = dict(data)
        payload.setdefault('client_id', credit.client_id)
        self.dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type="credit",
            entity_id=credit.id,
            data=payload
        ))

    def _save_credit(self, credit: Credit) -> None:
        self.storage.save(self.credits_table, credit.id, credit.to_dict())

    def _save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def _save_receipt(self, receipt: Receipt) -> None:
        self.storage.save(self.receipts_table, receipt.id, receipt.to_dict())

    def _next_receipt_number(self) -> int:
        return self.storage.count(self.receipts_table) + 1

    @staticmethod
    def _new_ids() -> Tuple[str, datetime]:
        return str(uuid.uuid4()), datetime.now(timezone.utc)

    # Reads

    def get_credit(self, credit_id: str) -> Credit:
        data = self.storage.load(self.credits_table, credit_id)
        if not data:
            raise NotFoundError(f"Credit {credit_id} not found")
        return credit_from_dict(data)

    def get_client_credits(self, client_id: str) -> List[Credit]:
        credits = [credit_from_dict(d) for d in self.storage.find(self.credits_table, {'client_id': client_id})]
        return sorted(credits, key=lambda c: (c.disbursement_date, c.created_at))

    def get_installment(self, installment_id: str) -> Installment:
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            raise NotFoundError(f"Installment {installment_id} not found")
        return Installment.from_dict(data)

    def get_installments(self, credit_id: str) -> List[Installment]:
        self.get_credit(credit_id)
        installments = [
            Installment.from_dict(d)
            for d in self.storage.find(self.installments_table, {'credit_id': credit_id})
        ]
        return sorted(installments, key=lambda i: i.number)

    def get_payments(self, credit_id: str) -> List[Payment]:
        payments = [
            Payment.from_dict(d)
            for d in self.storage.find(self.payments_table, {'credit_id': credit_id})
        ]
        return sorted(payments, key=lambda p: (p.payment_date, p.created_at))

    def get_installment_payments(self, installment_id: str) -> List[Payment]:
        payments = [
            Payment.from_dict(d)
            for d in self.storage.find(self.payments_table, {'installment_id': installment_id})
        ]
        return sorted(payments, key=lambda p: (p.payment_date, p.created_at))

    def get_receipts(self, credit_id: str) -> List[Receipt]:
        receipts = [
            Receipt.from_dict(d)
            for d in self.storage.find(self.receipts_table, {'credit_id': credit_id})
        ]
        return sorted(receipts, key=lambda r: r.receipt_number)

    def _positions(self, installments: List[Installment], payments: List[Payment],
                   as_of: date) -> List[Position]:
        """Replay every active installment"""
        by_installment: Dict[str, List[Payment]] = {}
        for payment in payments:
            by_installment.setdefault(payment.installment_id, []).append(payment)
        return [
            (installment, self.accrual.simulate(installment, by_installment.get(installment.id, []), as_of))
            for installment in installments
            if installment.is_active
        ]

    def _open_ended_summary(self, credit: Credit, as_of: date) -> OpenEndedSummary:
        return self.cycles.summarize(credit, self.get_receipts(credit.id), as_of)

    @staticmethod
    def _guard_not_frozen(credit: Credit) -> None:
        if credit.state is CreditState.REFINANCED:
            raise StateConflictError(f"Credit {credit.id} has been refinanced", code="CREDIT_REFINANCED")
        if credit.state is CreditState.VOIDED:
            raise StateConflictError(f"Credit {credit.id} is voided", code="CREDIT_VOIDED")

    # Origination

    def _build_credit(
        self,
        client_id: str,
        capital: Decimal,
        modality: CreditModality,
        cadence: Optional[Cadence],
        installment_count: Optional[int],
        rate: Optional[Decimal],
        discount_pct: Decimal,
        disbursement_date: date,
        commitment_date: date,
        credit_id: Optional[str] = None
    ) -> Credit:
        record_id, now = self._new_ids()
        common = dict(
            id=credit_id or record_id,
            created_at=now,
            updated_at=now,
            client_id=client_id,
            capital=capital,
            disbursement_date=disbursement_date,
            commitment_date=commitment_date,
            discount_pct=discount_pct,
        )

        if modality is CreditModality.OPEN_ENDED:
            cycle_rate = to_decimal(rate) if rate is not None and to_decimal(rate) > 0 \
                else to_decimal(get_config().open_ended_default_rate)
            return OpenEndedCredit(
                rate=cycle_rate,
                outstanding_principal=capital,
                total_to_repay=capital,
                **common
            )

        if not installment_count or int(installment_count) < 1:
            raise ValidationError("Installment count must be at least 1")
        terms = price_origination(capital, cadence, int(installment_count), rate, discount_pct)
        return FixedScheduleCredit(
            rate=terms.rate_pct,
            outstanding_principal=terms.total,
            total_to_repay=terms.total,
            modality=modality,
            cadence=cadence,
            installment_count=int(installment_count),
            **common
        )

    def create_credit(
        self,
        client_id: str,
        capital: Any,
        modality: Union[CreditModality, str] = CreditModality.FIXED_EQUAL,
        cadence: Union[Cadence, str, None] = None,
        installment_count: Optional[int] = None,
        rate: Any = None,
        disbursement_date: Union[date, str, None] = None,
        commitment_date: Union[date, str, None] = None,
        is_legacy: bool = False,
        discount_pct: Any = None,
        actor_role: Union[Role, int, str, None] = None
    ) -> Credit:
        """
        Originate a credit and its installments

        Args:
            client_id: Borrower
            capital: Amount disbursed
            modality: fixed_equal, fixed_progressive or open_ended
            cadence: Installment cadence (fixed modalities)
            installment_count: Number of installments (fixed modalities)
            rate: Explicit rate; fixed credits otherwise use the proportional rule
            disbursement_date: Cash-ledger date
            commitment_date: First due date / cycle anchor
            is_legacy: Credit loaded after the fact
            discount_pct: Origination discount on interest (SUPERADMIN only)
            actor_role: Requester's role

        Returns:
            Created credit
        """
        role = Role.parse(actor_role)
        if role is not None:
            require_permission(role, Permission.CREATE_CREDIT)

        discount = fix2(to_decimal(discount_pct))
        if discount > 0:
            require_permission(role, Permission.DISCOUNT_ORIGINATION_INTEREST,
                               "Only SUPERADMIN may discount origination interest")

        capital = fix2(to_decimal(capital))
        if capital <= 0:
            raise ValidationError("Capital must be positive", code="INVALID_AMOUNT")

        modality = _parse_modality(modality)
        cadence = None if modality is CreditModality.OPEN_ENDED else _parse_cadence(cadence, Cadence.MONTHLY)
        disbursement, commitment, legacy = normalize_origination_dates(
            parse_date(disbursement_date, "disbursement_date"),
            parse_date(commitment_date, "commitment_date"),
            is_legacy=is_legacy,
            today=self.today()
        )

        credit = self._build_credit(
            client_id, capital, modality, cadence, installment_count,
            None if rate is None else to_decimal(rate), discount, disbursement, commitment
        )
        installments = self.schedule.generate(credit)

        with self._credit_lock(credit.id), self.storage.atomic():
            self._save_credit(credit)
            for installment in installments:
                self._save_installment(installment)
            self._audit(AuditEventType.CREDIT_CREATED, credit.id, {
                'client_id': client_id,
                'modality': modality.value,
                'capital': str(capital),
                'total_to_repay': str(credit.total_to_repay),
                'installments': len(installments),
                'legacy': legacy,
            }, role)

        log_action(self.logger, "info", f"Credit created for client {client_id}",
                   credit_id=credit.id, action="create_credit", actor_role=_role_name(role),
                   extra={'modality': modality.value, 'capital': str(capital)})
        self._publish(DomainEvent.CREDIT_CREATED, credit, {'modality': modality.value})
        return credit

    def update_credit(
        self,
        credit_id: str,
        capital: Any = None,
        modality: Union[CreditModality, str, None] = None,
        cadence: Union[Cadence, str, None] = None,
        installment_count: Optional[int] = None,
        rate: Any = None,
        commitment_date: Union[date, str, None] = None,
        discount_pct: Any = None,
        actor_role: Union[Role, int, str, None] = None
    ) -> Credit:
        """Edit a credit's terms and regenerate its installments (only before any payment)"""
        role = Role.parse(actor_role)
        require_permission(role, Permission.EDIT_CREDIT)

        with self._credit_lock(credit_id):
            credit = self.get_credit(credit_id)
            self._guard_not_frozen(credit)
            if credit.state is CreditState.PAID:
                raise StateConflictError(f"Credit {credit_id} is paid", code="CREDIT_PAID")
            if self.get_payments(credit_id):
                raise StateConflictError(
                    f"Credit {credit_id} has payments and can no longer be edited",
                    code="CREDIT_HAS_PAYMENTS"
                )

            new_modality = _parse_modality(modality) if modality is not None else credit.modality
            if new_modality.is_fixed != credit.modality.is_fixed:
                raise ValidationError("A credit cannot switch between fixed and open-ended modalities")

            discount = credit.discount_pct if discount_pct is None else fix2(to_decimal(discount_pct))
            if discount > 0 and discount != credit.discount_pct:
                require_permission(role, Permission.DISCOUNT_ORIGINATION_INTEREST,
                                   "Only SUPERADMIN may discount origination interest")

            new_capital = credit.capital if capital is None else fix2(to_decimal(capital))
            if new_capital <= 0:
                raise ValidationError("Capital must be positive", code="INVALID_AMOUNT")

            commitment = parse_date(commitment_date, "commitment_date") or credit.commitment_date
            if new_modality.is_fixed:
                new_cadence = _parse_cadence(cadence, credit.cadence)
                new_count = installment_count or credit.installment_count
                # an explicit new rate wins; otherwise re-price with the rule
                new_rate = None if rate is None else to_decimal(rate)
            else:
                new_cadence, new_count = None, None
                new_rate = credit.rate if rate is None else to_decimal(rate)

            updated = self._build_credit(
                credit.client_id, new_capital, new_modality, new_cadence, new_count, new_rate,
                discount, credit.disbursement_date, commitment, credit_id=credit.id
            )
            updated.created_at = credit.created_at
            updated.origin_credit_id = credit.origin_credit_id
            updated.refinance_option = credit.refinance_option
            updated.refinance_rate = credit.refinance_rate

            old_installments = self.get_installments(credit_id)
            new_installments = self.schedule.generate(updated)

            with self.storage.atomic():
                for installment in old_installments:
                    self.storage.delete(self.installments_table, installment.id)
                for installment in new_installments:
                    self._save_installment(installment)
                self._save_credit(updated)
                self._audit(AuditEventType.CREDIT_UPDATED, credit_id, {
                    'previous_total': str(credit.total_to_repay),
                    'total_to_repay': str(updated.total_to_repay),
                    'installments': len(new_installments),
                }, role)

        log_action(self.logger, "info", "Credit terms updated", credit_id=credit_id,
                   action="update_credit", actor_role=_role_name(role))
        self._publish(DomainEvent.CREDIT_UPDATED, updated, {'total_to_repay': str(updated.total_to_repay)})
        return updated

    def simulate_plan(
        self,
        capital: Any,
        modality: Union[CreditModality, str] = CreditModality.FIXED_EQUAL,
        cadence: Union[Cadence, str, None] = None,
        installment_count: int = 1,
        rate: Any = None,
        discount_pct: Any = None,
        commitment_date: Union[date, str, None] = None
    ) -> Dict[str, Any]:
        """Quote a fixed plan without persisting anything"""
        return self.schedule.quote(
            capital=to_decimal(capital),
            modality=_parse_modality(modality),
            cadence=_parse_cadence(cadence, Cadence.MONTHLY),
            installment_count=int(installment_count),
            commitment_date=parse_date(commitment_date, "commitment_date") or self.today(),
            explicit_rate=None if rate is None else to_decimal(rate),
            discount_pct=to_decimal(discount_pct)
        )

    # Recompute

    def get_credit_snapshot(self, credit_id: str, as_of: Union[date, str, None] = None) -> CreditSnapshot:
        """Debt position as of a date; pure, repeated calls return identical numbers"""
        as_of = self._as_of(as_of)
        credit = self.get_credit(credit_id)
        installments = self.get_installments(credit_id)

        if credit.is_open_ended:
            summary = self._open_ended_summary(credit, as_of)
            state = credit.state
            if not credit.is_frozen and credit.state is not CreditState.PAID:
                derived = self.lifecycle.derive_open_ended(summary)
                state = CreditState.PAID if derived is InstallmentState.PAID else (
                    CreditState.OVERDUE if derived is InstallmentState.OVERDUE else CreditState.PENDING)
            active = any(i.is_active for i in installments)
            return CreditSnapshot(
                credit_id=credit.id,
                modality=credit.modality,
                as_of=as_of,
                state=state,
                outstanding_principal=summary.outstanding_capital if active else ZERO,
                pending_interest=summary.pending_interest if active else ZERO,
                pending_penalty=summary.pending_penalty if active else ZERO,
                cycle_breakdown=summary.to_dict()
            )

        positions = self._positions(installments, self.get_payments(credit_id), as_of)
        derived_states = {}
        breakdown = []
        for installment, accrual in positions:
            derived = self.lifecycle.derive_fixed(installment, accrual, as_of)
            if not self.lifecycle.can_transition(installment.state, derived):
                derived = installment.state
            derived_states[installment.id] = derived
            row = {'installment_id': installment.id, 'number': installment.number,
                   'amount': str(installment.amount), 'due_date': installment.due_date.isoformat(),
                   'state': derived.value}
            row.update(accrual.to_dict())
            breakdown.append(row)
        for installment in installments:
            if not installment.is_active:
                breakdown.append({'installment_id': installment.id, 'number': installment.number,
                                  'amount': str(installment.amount),
                                  'due_date': installment.due_date.isoformat(),
                                  'state': installment.state.value})
        breakdown.sort(key=lambda row: row['number'])

        view = [
            replace(i, state=derived_states.get(i.id, i.state))
            for i in installments
        ]
        return CreditSnapshot(
            credit_id=credit.id,
            modality=credit.modality,
            as_of=as_of,
            state=self.lifecycle.aggregate_credit(credit, view),
            outstanding_principal=fix2(sum((a.principal_pending for _, a in positions), ZERO)),
            pending_interest=ZERO,
            pending_penalty=fix2(sum((a.penalty_owed for _, a in positions), ZERO)),
            installment_breakdown=breakdown
        )

    def refresh_credit(self, credit_id: str, as_of: Union[date, str, None] = None) -> Credit:
        """
        Persist the derived penalty cache, installment states and credit state

        Idempotent: a second call with the same as_of writes the same values.
        """
        as_of = self._as_of(as_of)
        with self._credit_lock(credit_id):
            credit = self.get_credit(credit_id)
            if credit.is_frozen or credit.state is CreditState.PAID:
                return credit
            installments = self.get_installments(credit_id)

            if credit.is_open_ended:
                summary = self._open_ended_summary(credit, as_of)
                for installment in installments:
                    if installment.is_active:
                        self._sync_open_ended_installment(installment, summary)
                credit.outstanding_principal = summary.outstanding_capital
            else:
                for installment, accrual in self._positions(installments, self.get_payments(credit_id), as_of):
                    self._sync_fixed_installment(installment, accrual, as_of)
                credit.outstanding_principal = self._fixed_outstanding(installments)

            self.lifecycle.transition_credit(credit, self.lifecycle.aggregate_credit(credit, installments))

            with self.storage.atomic():
                for installment in installments:
                    self._save_installment(installment)
                self._save_credit(credit)
        return credit

    def _sync_fixed_installment(self, installment: Installment, accrual: InstallmentAccrual,
                                as_of: date) -> None:
        derived = self.lifecycle.derive_fixed(installment, accrual, as_of)
        # a historical as_of may imply a move the table forbids; keep the stored position then
        if not self.lifecycle.can_transition(installment.state, derived):
            return
        installment.paid_principal = accrual.principal_paid
        installment.penalty_accrued = accrual.penalty_owed
        self.lifecycle.transition(installment, derived)
        if derived is InstallmentState.PAID and installment.paid_date is None:
            installment.paid_date = as_of

    def _sync_open_ended_installment(self, installment: Installment, summary: OpenEndedSummary) -> None:
        installment.amount = summary.outstanding_capital
        installment.paid_principal = ZERO
        installment.discount = ZERO
        installment.penalty_accrued = summary.pending_penalty
        derived = self.lifecycle.derive_open_ended(summary)
        # settling the oldest cycle moves the due date to the next one
        if self.lifecycle.can_transition(installment.state, derived, via_roll=True):
            self.lifecycle.transition(installment, derived, via_roll=True)
            if derived is InstallmentState.PAID and installment.paid_date is None:
                installment.paid_date = summary.as_of

    @staticmethod
    def _fixed_outstanding(installments: List[Installment]) -> Decimal:
        return fix2(sum((i.principal_pending for i in installments if i.is_active), ZERO))

    # Payments

    def apply_payment(
        self,
        installment_id: str,
        amount: Any = None,
        discount: Any = None,
        discount_scope: Optional[str] = None,
        method: str = "cash",
        note: Optional[str] = None,
        actor_role: Union[Role, int, str, None] = None,
        as_of: Union[date, str, None] = None
    ) -> PaymentResult:
        """
        Apply a payment to an installment

        Args:
            installment_id: Installment being paid
            amount: Amount received; open-ended credits default to the
                oldest open cycle's penalty plus interest, fixed ones to
                the whole installment
            discount: Discount percent (0..100)
            discount_scope: penalty or total (SUPERADMIN only)
            method: Payment method
            note: Free-text note
            actor_role: Requester's role
            as_of: Payment date (defaults to business today)

        Returns:
            PaymentResult with allocation, new state and receipt
        """
        role = Role.parse(actor_role)
        require_permission(role, Permission.APPLY_PAYMENT)
        as_of = self._as_of(as_of)
        amount = None if amount is None or amount == "" else to_decimal(amount)
        spec = resolve_discount(role, discount, discount_scope)

        credit_id = self.get_installment(installment_id).credit_id
        with self._credit_lock(credit_id):
            installment = self.get_installment(installment_id)
            credit = self.get_credit(credit_id)
            self._guard_not_frozen(credit)
            if not installment.is_active:
                raise StateConflictError(
                    f"Installment {installment.number} is {installment.state.value}",
                    code="INSTALLMENT_CLOSED"
                )

            if credit.is_open_ended:
                payment, allocation, receipt, rolled = self._pay_open_ended(
                    credit, installment, amount, spec, as_of, method, note)
            else:
                payment, allocation, receipt, rolled = self._pay_fixed(
                    credit, installment, amount, spec, as_of, method, note)

            installments = [installment if i.id == installment.id else i
                            for i in self.get_installments(credit.id)]
            if not credit.is_open_ended:
                credit.outstanding_principal = self._fixed_outstanding(installments)
            self.lifecycle.transition_credit(credit, self.lifecycle.aggregate_credit(credit, installments))

            with self.storage.atomic():
                receipt.receipt_number = self._next_receipt_number()
                self._save_payment(payment)
                self._save_receipt(receipt)
                self._save_installment(installment)
                self._save_credit(credit)
                self._audit(AuditEventType.PAYMENT_APPLIED, credit.id, {
                    'installment_id': installment.id,
                    'payment_id': payment.id,
                    'receipt_number': receipt.receipt_number,
                    'amount': str(payment.amount),
                    'penalty_paid': str(allocation.penalty_paid),
                    'interest_paid': str(allocation.interest_paid),
                    'principal_paid': str(allocation.principal_paid),
                    'discount_applied': str(allocation.discount_applied),
                    'installment_state': installment.state.value,
                    'rolled_due_date': rolled.isoformat() if rolled else None,
                }, role)

        log_action(self.logger, "info", f"Payment of {payment.amount} applied",
                   credit_id=credit.id, installment_id=installment.id, action="apply_payment",
                   actor_role=_role_name(role),
                   extra={'receipt_number': receipt.receipt_number, 'state': installment.state.value})
        self._publish(DomainEvent.PAYMENT_APPLIED, credit, {
            'installment_id': installment.id,
            'payment_id': payment.id,
            'amount': str(payment.amount),
            'receipt': receipt.to_dict(),
        })

        return PaymentResult(
            payment=payment,
            allocation=allocation,
            new_state=installment.state,
            credit_state=credit.state,
            receipt=receipt,
            rolled_due_date=rolled
        )

    def _new_payment(self, credit: Credit, installment: Installment, amount: Decimal, as_of: date,
                     method: str, note: Optional[str], kind: str = "payment") -> Payment:
        payment_id, now = self._new_ids()
        return Payment(
            id=payment_id,
            created_at=now,
            updated_at=now,
            credit_id=credit.id,
            installment_id=installment.id,
            amount=amount,
            payment_date=as_of,
            method=method,
            note=note,
            kind=kind
        )

    def _pay_fixed(self, credit: Credit, installment: Installment, amount: Optional[Decimal],
                   spec: DiscountSpec, as_of: date, method: str, note: Optional[str]):
        payments = self.get_installment_payments(installment.id)
        accrual = self.accrual.simulate(installment, payments, as_of)
        allocation = self.allocator.allocate_fixed(accrual, amount, spec)
        payment = self._new_payment(credit, installment, allocation.amount, as_of, method, note)

        if allocation.discount_applied > 0:
            installment.waivers.append(Waiver(
                waiver_date=as_of,
                penalty=allocation.penalty_discount,
                principal=allocation.principal_discount
            ))
            installment.discount = fix2(installment.discount + allocation.principal_discount)

        replay = payments + [payment]
        after = self.accrual.simulate(installment, replay, as_of)
        installment.paid_principal = after.principal_paid
        installment.penalty_accrued = after.penalty_owed

        rolled = None
        if self.roll_policy.should_roll(credit, installment, allocation, after):
            rolled = self.roll_policy.roll(installment, after, [p.id for p in replay], credit.cadence)
            after = self.accrual.simulate(installment, replay, as_of)
            self.lifecycle.transition(installment, self.lifecycle.derive_fixed(installment, after, as_of),
                                      via_roll=True)
        else:
            self.lifecycle.transition(installment, self.lifecycle.derive_fixed(installment, after, as_of))

        if installment.state is InstallmentState.PAID:
            installment.paid_date = as_of

        receipt = self._build_receipt(payment, allocation, f"Installment {installment.number} payment",
                                      allocation.total_before, after.total_owed)
        return payment, allocation, receipt, rolled

    def _pay_open_ended(self, credit: Credit, installment: Installment, amount: Optional[Decimal],
                        spec: DiscountSpec, as_of: date, method: str, note: Optional[str]):
        receipts = self.get_receipts(credit.id)
        summary = self.cycles.summarize(credit, receipts, as_of)
        last_cycle = summary.current_cycle >= self.cycles.max_cycles
        allocation = self.allocator.allocate_open_ended(summary, amount, spec,
                                                        require_full_liquidation=last_cycle)
        payment = self._new_payment(credit, installment, allocation.amount, as_of, method, note)
        receipt = self._build_receipt(payment, allocation,
                                      f"Open-ended credit payment (cycle {summary.current_cycle})",
                                      summary.total_owed_today, ZERO, receipt_number=len(receipts) + 1)

        after = self.cycles.summarize(credit, receipts + [receipt], as_of)
        receipt.balance_after = after.total_owed_today
        self._sync_open_ended_installment(installment, after)
        credit.outstanding_principal = after.outstanding_capital
        return payment, allocation, receipt, None

    def _build_receipt(self, payment: Payment, allocation: AllocationResult, concept: str,
                       balance_before: Decimal, balance_after: Decimal,
                       receipt_number: int = 0) -> Receipt:
        """Receipt for a payment; the final number is assigned inside the write transaction"""
        receipt_id, now = self._new_ids()
        return Receipt(
            id=receipt_id,
            created_at=now,
            updated_at=now,
            receipt_number=receipt_number,
            payment_id=payment.id,
            credit_id=payment.credit_id,
            installment_id=payment.installment_id,
            receipt_date=payment.payment_date,
            concept=concept,
            method=payment.method,
            amount_paid=payment.amount,
            penalty_paid=allocation.penalty_paid,
            interest_paid=allocation.interest_paid,
            principal_paid=allocation.principal_paid,
            penalty_discount=allocation.penalty_discount,
            interest_discount=allocation.interest_discount,
            principal_discount=allocation.principal_discount,
            balance_before=balance_before,
            balance_after=balance_after,
            cycle_allocations=list(allocation.cycle_allocations)
        )

    # Payoff

    def cancel_credit(
        self,
        credit_id: str,
        discount: Any = None,
        discount_scope: Optional[str] = None,
        method: str = "cash",
        actor_role: Union[Role, int, str, None] = None,
        note: Optional[str] = None,
        as_of: Union[date, str, None] = None
    ) -> CancellationResult:
        """Settle the whole credit at once, optionally with a SUPERADMIN discount"""
        role = Role.parse(actor_role)
        spec = resolve_cancellation_discount(role, discount, discount_scope)
        as_of = self._as_of(as_of)

        with self._credit_lock(credit_id):
            credit = self.get_credit(credit_id)
            self._guard_not_frozen(credit)
            if credit.state is CreditState.PAID:
                raise StateConflictError(f"Credit {credit_id} is already paid", code="CREDIT_PAID")

            installments = self.get_installments(credit_id)
            active = [i for i in installments if i.is_active]
            if not active:
                raise ValidationError(f"Credit {credit_id} has no open installments", code="NO_BALANCE")

            if credit.is_open_ended:
                summary = self._open_ended_summary(credit, as_of)
                plan = self.cancellation.plan_open_ended(summary, spec)
                cycle_allocations = plan.cycle_allocations()
            else:
                positions = self._positions(installments, self.get_payments(credit_id), as_of)
                plan = self.cancellation.plan_fixed(positions, spec)
                cycle_allocations = []
            if plan.total_debt <= 0:
                raise ValidationError(f"Credit {credit_id} has nothing left to pay", code="NOTHING_TO_PAY")

            lines = {line.reference: line for line in plan.lines}
            for installment in active:
                line = lines.get(installment.id)
                if line is not None and line.discount_total > 0:
                    installment.waivers.append(Waiver(as_of, line.penalty_discount, line.principal_discount))
                    installment.discount = fix2(installment.discount + line.principal_discount)
                if credit.is_open_ended:
                    installment.amount = ZERO
                    installment.discount = ZERO
                    installment.paid_principal = ZERO
                else:
                    installment.paid_principal = fix2(installment.amount - installment.discount)
                installment.penalty_accrued = ZERO
                installment.paid_date = as_of
                self.lifecycle.transition(installment, InstallmentState.PAID)

            credit.outstanding_principal = ZERO
            self.lifecycle.transition_credit(credit, CreditState.PAID)

            payment = self._new_payment(credit, active[-1], plan.net_payable, as_of, method, note,
                                        kind="cancellation")
            allocation = AllocationResult(
                amount=plan.net_payable,
                penalty_paid=fix2(plan.penalty - plan.penalty_discount),
                interest_paid=fix2(plan.interest - plan.interest_discount),
                principal_paid=fix2(plan.principal - plan.principal_discount),
                penalty_discount=plan.penalty_discount,
                interest_discount=plan.interest_discount,
                principal_discount=plan.principal_discount,
                total_before=plan.total_debt,
                total_payable=plan.net_payable,
                cycle_allocations=cycle_allocations
            )

            receipt = self._build_receipt(payment, allocation, "Credit cancellation", plan.total_debt, ZERO)

            with self.storage.atomic():
                receipt.receipt_number = self._next_receipt_number()
                self._save_payment(payment)
                self._save_receipt(receipt)
                for installment in active:
                    self._save_installment(installment)
                self._save_credit(credit)
                self._audit(AuditEventType.CREDIT_CANCELLED, credit.id, {
                    'payment_id': payment.id,
                    'receipt_number': receipt.receipt_number,
                    'discount': spec.to_dict(),
                    **plan.to_dict(),
                }, role)

        log_action(self.logger, "info", f"Credit cancelled for {plan.net_payable}",
                   credit_id=credit.id, action="cancel_credit", actor_role=_role_name(role),
                   extra={'discount_applied': str(plan.discount_applied)})
        self._publish(DomainEvent.CREDIT_CANCELLED, credit, {
            'payment_id': payment.id,
            'amount': str(plan.net_payable),
            'receipt': receipt.to_dict(),
        })
        return CancellationResult(credit=credit, payoff_breakdown=plan, payment=payment, receipt=receipt)

    def refinance_credit(
        self,
        credit_id: str,
        rate_option: Union[RateOption, str],
        new_cadence: Union[Cadence, str],
        new_installment_count: int,
        actor_role: Union[Role, int, str, None] = None,
        manual_rate: Any = None,
        as_of: Union[date, str, None] = None
    ) -> RefinanceResult:
        """
        Replace a credit with a new fixed_equal credit over its payoff base

        The original becomes refinanced and the new credit is created in the
        same transaction.
        """
        role = Role.parse(actor_role)
        option = RateOption.parse(rate_option)
        cadence = _parse_cadence(new_cadence)
        as_of = self._as_of(as_of)

        with self._credit_lock(credit_id):
            credit = self.get_credit(credit_id)
            self.refinance.check_allowed(credit, role, option)

            installments = self.get_installments(credit_id)
            if credit.is_open_ended:
                base = self.refinance.payoff_base_open_ended(self._open_ended_summary(credit, as_of))
            else:
                positions = self._positions(installments, self.get_payments(credit_id), as_of)
                base = self.refinance.payoff_base_fixed(positions)
                for installment, accrual in positions:
                    installment.penalty_accrued = accrual.penalty_owed
            quote = self.refinance.quote(base, option, cadence, int(new_installment_count), manual_rate)

            record_id, now = self._new_ids()
            new_credit = FixedScheduleCredit(
                id=record_id,
                created_at=now,
                updated_at=now,
                client_id=credit.client_id,
                capital=quote.payoff_base,
                rate=quote.rate_pct,
                disbursement_date=as_of,
                commitment_date=as_of,
                outstanding_principal=quote.new_total,
                total_to_repay=quote.new_total,
                origin_credit_id=credit.id,
                refinance_rate=fix2(quote.monthly_rate * 100),
                refinance_option=option,
                modality=CreditModality.FIXED_EQUAL,
                cadence=cadence,
                installment_count=quote.installment_count
            )
            new_installments = self.schedule.generate(new_credit)

            closed = []
            for installment in installments:
                if installment.is_active:
                    self.lifecycle.transition(installment, InstallmentState.REFINANCED)
                    closed.append(installment)
            self.lifecycle.transition_credit(credit, CreditState.REFINANCED)
            credit.outstanding_principal = ZERO

            with self.storage.atomic():
                for installment in closed:
                    self._save_installment(installment)
                self._save_credit(credit)
                self._save_credit(new_credit)
                for installment in new_installments:
                    self._save_installment(installment)
                self._audit(AuditEventType.CREDIT_REFINANCED, credit.id, {
                    'new_credit_id': new_credit.id,
                    **quote.to_dict(),
                }, role)
                self._audit(AuditEventType.CREDIT_CREATED, new_credit.id, {
                    'client_id': new_credit.client_id,
                    'origin_credit_id': credit.id,
                    'total_to_repay': str(new_credit.total_to_repay),
                    'installments': len(new_installments),
                }, role)

        log_action(self.logger, "info", f"Credit refinanced into {new_credit.id}",
                   credit_id=credit.id, action="refinance_credit", actor_role=_role_name(role),
                   extra={'option': option.value, 'new_total': str(quote.new_total)})
        self._publish(DomainEvent.CREDIT_REFINANCED, credit, {
            'new_credit_id': new_credit.id,
            'payoff_base': str(quote.payoff_base),
            'new_total': str(quote.new_total),
        })
        return RefinanceResult(
            original_credit_id=credit.id,
            new_credit_id=new_credit.id,
            payoff_base=quote.payoff_base,
            new_total=quote.new_total,
            quote=quote
        )

    def void_credit(self, credit_id: str, actor_role: Union[Role, int, str, None] = None) -> Credit:
        """
        Annul a credit that never received a payment

        actor_role may be omitted when an approval workflow already checked it.
        """
        role = Role.parse(actor_role)
        if role is not None:
            require_permission(role, Permission.VOID_CREDIT)

        with self._credit_lock(credit_id):
            credit = self.get_credit(credit_id)
            if credit.state is CreditState.PAID:
                raise StateConflictError(f"Credit {credit_id} is paid", code="CREDIT_PAID")
            self._guard_not_frozen(credit)
            if self.get_payments(credit_id):
                raise StateConflictError(
                    f"Credit {credit_id} has payments and cannot be voided",
                    code="CREDIT_HAS_PAYMENTS"
                )

            installments = [i for i in self.get_installments(credit_id) if i.is_active]
            for installment in installments:
                self.lifecycle.transition(installment, InstallmentState.VOIDED)
            self.lifecycle.transition_credit(credit, CreditState.VOIDED)

            with self.storage.atomic():
                for installment in installments:
                    self._save_installment(installment)
                self._save_credit(credit)
                self._audit(AuditEventType.CREDIT_VOIDED, credit.id, {
                    'installments': len(installments),
                }, role)

        log_action(self.logger, "warning", "Credit voided", credit_id=credit.id,
                   action="void_credit", actor_role=_role_name(role))
        self._publish(DomainEvent.CREDIT_VOIDED, credit, {})
        return credit

    # Batch

    def sweep_overdue(self, as_of: Union[date, str, None] = None) -> int:
        """
        Mark past-due fixed installments overdue

        Returns:
            Number of installments reclassified
        """
        as_of = self._as_of(as_of)
        swept = 0
        for data in self.storage.load_all(self.credits_table):
            credit = credit_from_dict(data)
            if credit.is_open_ended or credit.is_frozen or credit.state is CreditState.PAID:
                continue
            try:
                swept += self._sweep_credit(credit.id, as_of)
            except Exception:
                # one broken credit must not stop the nightly batch
                self.logger.exception(f"Overdue sweep failed for credit {credit.id}")

        self.logger.info(f"Overdue sweep as of {as_of.isoformat()} reclassified {swept} installments")
        return swept

    def _sweep_credit(self, credit_id: str, as_of: date) -> int:
        with self._credit_lock(credit_id):
            credit = self.get_credit(credit_id)
            if credit.is_frozen or credit.state is CreditState.PAID:
                return 0
            installments = self.get_installments(credit_id)
            payments = self.get_payments(credit_id)

            changed = []
            for installment, accrual in self._positions(installments, payments, as_of):
                if installment.state not in (InstallmentState.PENDING, InstallmentState.PARTIAL):
                    continue
                if installment.due_date >= as_of:
                    continue
                installment.penalty_accrued = accrual.penalty_owed
                installment.paid_principal = accrual.principal_paid
                self.lifecycle.transition(installment, InstallmentState.OVERDUE)
                changed.append(installment)

            if not changed:
                return 0

            self.lifecycle.transition_credit(credit, self.lifecycle.aggregate_credit(credit, installments))
            with self.storage.atomic():
                for installment in changed:
                    self._save_installment(installment)
                self._save_credit(credit)
                self._audit(AuditEventType.INSTALLMENTS_SWEPT, credit.id, {
                    'as_of': as_of.isoformat(),
                    'installment_ids': [i.id for i in changed],
                })

        self._publish(DomainEvent.INSTALLMENTS_SWEPT, credit, {'count': len(changed)})
        return len(changed)

    # Scoring

    def get_client_score(self, client_id: str) -> Dict[str, Any]:
        """Stored client score, computed on first request"""
        return self.scorer.get_score(client_id)
