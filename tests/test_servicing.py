"""
Tests for the loan servicing engine
"""

import pytest
from datetime import date
from decimal import Decimal

from loan_servicing.errors import (
    NotFoundError, OverpaymentError, PermissionDeniedError, StateConflictError, ValidationError
)
from loan_servicing.events import DomainEvent
from loan_servicing.models import CreditModality, CreditState, InstallmentState
from loan_servicing.roles import Role
from loan_servicing.servicing import LoanServicingEngine
from loan_servicing.storage import InMemoryStorage, SQLiteStorage


def assert_balanced(installment):
    assert installment.paid_principal <= installment.amount
    assert installment.principal_pending + installment.paid_principal + installment.discount == installment.amount


class ServicingTestCase:
    """Engine over in-memory storage with a fixed business date"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.engine = LoanServicingEngine(self.storage, today=lambda: date(2024, 1, 1))

    def create_fixed(self, **kwargs):
        params = dict(
            client_id="CLIENT001",
            capital="1000",
            modality="fixed_equal",
            cadence="monthly",
            installment_count=2,
            rate="60",
            commitment_date="2024-01-10",
            actor_role=Role.ADMIN
        )
        params.update(kwargs)
        credit = self.engine.create_credit(**params)
        return credit, self.engine.get_installments(credit.id)

    def create_open_ended(self):
        credit = self.engine.create_credit(
            client_id="CLIENT002",
            capital="10000",
            modality="open_ended",
            rate="60",
            commitment_date="2024-01-01",
            actor_role=Role.ADMIN
        )
        return credit, self.engine.get_installments(credit.id)[0]


class TestOrigination(ServicingTestCase):
    """Test credit creation, edits and quotes"""

    def test_create_fixed_credit(self):
        """Test a fixed credit and its schedule"""
        credit, installments = self.create_fixed()

        assert credit.total_to_repay == Decimal('1600.00')
        assert credit.state is CreditState.PENDING
        assert credit.disbursement_date == date(2024, 1, 1)
        assert [i.amount for i in installments] == [Decimal('800.00'), Decimal('800.00')]
        assert [i.due_date for i in installments] == [date(2024, 1, 10), date(2024, 2, 10)]
        assert self.engine.get_credit(credit.id).total_to_repay == Decimal('1600.00')

    def test_create_open_ended_credit(self):
        """Test open-ended credits get one container installment"""
        credit, installment = self.create_open_ended()

        assert credit.modality is CreditModality.OPEN_ENDED
        assert credit.total_to_repay == Decimal('10000.00')
        assert installment.amount == Decimal('10000.00')
        assert len(self.engine.get_installments(credit.id)) == 1

    def test_create_validation(self):
        """Test bad origination input"""
        with pytest.raises(ValidationError, match="Capital must be positive"):
            self.create_fixed(capital="0")
        with pytest.raises(PermissionDeniedError):
            self.create_fixed(actor_role=Role.COLLECTOR)
        with pytest.raises(PermissionDeniedError):
            self.create_fixed(discount_pct="10")

    def test_create_with_origination_discount(self):
        """Test SUPERADMIN origination interest discount"""
        credit, _ = self.create_fixed(discount_pct="50", actor_role=Role.SUPERADMIN)
        assert credit.total_to_repay == Decimal('1300.00')

    def test_create_writes_audit_event(self):
        """Test origination is audited"""
        credit, _ = self.create_fixed()
        events = self.engine.audit_trail.get_events_for_entity("credit", credit.id)
        assert [e.event_type.value for e in events] == ["credit_created"]

    def test_update_credit_regenerates_schedule(self):
        """Test editing terms before any payment"""
        credit, _ = self.create_fixed()

        updated = self.engine.update_credit(credit.id, installment_count=4, actor_role=Role.ADMIN)
        installments = self.engine.get_installments(credit.id)

        assert updated.rate == Decimal('240.00')
        assert updated.total_to_repay == Decimal('3400.00')
        assert [i.amount for i in installments] == [Decimal('850.00')] * 4

    def test_update_credit_after_payment_rejected(self):
        """Test edits are locked once a payment exists"""
        credit, installments = self.create_fixed()
        self.engine.apply_payment(installments[0].id, "100", actor_role=Role.ADMIN, as_of="2024-01-05")

        with pytest.raises(StateConflictError) as exc_info:
            self.engine.update_credit(credit.id, installment_count=4, actor_role=Role.ADMIN)
        assert exc_info.value.code == "CREDIT_HAS_PAYMENTS"

    def test_simulate_plan(self):
        """Test quotes persist nothing"""
        quote = self.engine.simulate_plan("1000", cadence="weekly", installment_count=8,
                                          commitment_date="2024-01-10")
        assert quote['total_to_repay'] == "2200.00"
        assert len(quote['installments']) == 8
        assert self.storage.count("credits") == 0


class TestSnapshot(ServicingTestCase):
    """Test debt positions and persisted refresh"""

    def test_snapshot_before_due(self):
        """Test no penalty before the due date"""
        credit, _ = self.create_fixed()
        snapshot = self.engine.get_credit_snapshot(credit.id, "2024-01-05")

        assert snapshot.outstanding_principal == Decimal('1600.00')
        assert snapshot.pending_penalty == Decimal('0.00')
        assert snapshot.total_owed_today == Decimal('1600.00')

    def test_snapshot_with_penalty(self):
        """Test three days late at 2.5% a day"""
        credit, _ = self.create_fixed()
        snapshot = self.engine.get_credit_snapshot(credit.id, "2024-01-13")

        assert snapshot.pending_penalty == Decimal('60.00')
        assert snapshot.installment_breakdown[0]['state'] == "overdue"
        assert snapshot.installment_breakdown[1]['state'] == "pending"
        assert snapshot.state is CreditState.PENDING

    def test_snapshot_is_pure(self):
        """Test repeated snapshots agree and write nothing"""
        credit, installments = self.create_fixed()
        first = self.engine.get_credit_snapshot(credit.id, "2024-01-20").to_dict()
        second = self.engine.get_credit_snapshot(credit.id, "2024-01-20").to_dict()

        assert first == second
        assert self.engine.get_installment(installments[0].id).state is InstallmentState.PENDING

    def test_open_ended_snapshot(self):
        """Test cycle interest and penalty after the first cycle closes"""
        credit, _ = self.create_open_ended()
        snapshot = self.engine.get_credit_snapshot(credit.id, "2024-02-05")

        assert snapshot.outstanding_principal == Decimal('10000.00')
        assert snapshot.pending_interest == Decimal('12000.00')
        assert snapshot.pending_penalty == Decimal('750.00')
        assert snapshot.state is CreditState.OVERDUE
        assert snapshot.cycle_breakdown['current_cycle'] == 2

    def test_refresh_credit(self):
        """Test refresh persists states and is idempotent"""
        credit, installments = self.create_fixed()

        refreshed = self.engine.refresh_credit(credit.id, "2024-01-15")
        first = self.engine.get_installment(installments[0].id)
        assert first.state is InstallmentState.OVERDUE
        assert first.penalty_accrued == Decimal('100.00')
        assert refreshed.state is CreditState.PENDING

        self.engine.refresh_credit(credit.id, "2024-01-15")
        again = self.engine.get_installment(installments[0].id)
        assert again.state is InstallmentState.OVERDUE
        assert again.penalty_accrued == Decimal('100.00')

    def test_unknown_credit(self):
        """Test missing credits raise NotFoundError"""
        with pytest.raises(NotFoundError):
            self.engine.get_credit_snapshot("missing")


class TestPayments(ServicingTestCase):
    """Test apply_payment on fixed installments"""

    def test_full_payment(self):
        """Test paying an installment in full"""
        credit, installments = self.create_fixed()

        result = self.engine.apply_payment(installments[0].id, "800", actor_role=Role.COLLECTOR,
                                           as_of="2024-01-05")

        assert result.new_state is InstallmentState.PAID
        assert result.credit_state is CreditState.PENDING
        assert result.receipt.receipt_number == 1
        assert result.allocation.principal_paid == Decimal('800.00')
        assert result.rolled_due_date is None
        assert self.engine.get_credit(credit.id).outstanding_principal == Decimal('800.00')
        assert len(self.engine.get_receipts(credit.id)) == 1

    def test_receipt_numbers_increase(self):
        """Test receipt numbering across credits"""
        _, installments = self.create_fixed()
        _, other = self.create_fixed(client_id="CLIENT009")

        first = self.engine.apply_payment(installments[0].id, "100", actor_role=Role.ADMIN, as_of="2024-01-05")
        second = self.engine.apply_payment(other[0].id, "100", actor_role=Role.ADMIN, as_of="2024-01-05")

        assert first.receipt.receipt_number == 1
        assert second.receipt.receipt_number == 2

    def test_partial_payment(self):
        """Test a small payment leaves the installment partial"""
        _, installments = self.create_fixed()

        result = self.engine.apply_payment(installments[0].id, "100", actor_role=Role.ADMIN,
                                           as_of="2024-01-05")

        assert result.new_state is InstallmentState.PARTIAL
        assert result.rolled_due_date is None
        assert self.engine.get_installment(installments[0].id).due_date == date(2024, 1, 10)

    def test_due_date_roll(self):
        """Test a payment covering the embedded interest rolls the due date"""
        _, installments = self.create_fixed()

        result = self.engine.apply_payment(installments[0].id, "300", actor_role=Role.ADMIN,
                                           as_of="2024-01-05")
        stored = self.engine.get_installment(installments[0].id)

        assert result.rolled_due_date == date(2024, 2, 9)
        assert result.new_state is InstallmentState.PENDING
        assert stored.due_date == date(2024, 2, 9)
        assert stored.carried_principal == Decimal('300.00')

    def test_overpayment_rejected(self):
        """Test amounts above the debt are refused without writes"""
        credit, installments = self.create_fixed()

        with pytest.raises(OverpaymentError):
            self.engine.apply_payment(installments[0].id, "900", actor_role=Role.ADMIN, as_of="2024-01-05")
        assert self.engine.get_payments(credit.id) == []

    def test_collector_cannot_discount(self):
        """Test COLLECTOR discounts are refused"""
        _, installments = self.create_fixed()
        with pytest.raises(PermissionDeniedError):
            self.engine.apply_payment(installments[0].id, "100", discount="10",
                                      actor_role=Role.COLLECTOR, as_of="2024-01-05")

    def test_penalty_discount(self):
        """Test an ADMIN penalty discount on a late installment"""
        _, installments = self.create_fixed()

        result = self.engine.apply_payment(installments[0].id, discount="50", actor_role=Role.ADMIN,
                                           as_of="2024-01-13")

        assert result.allocation.penalty_discount == Decimal('30.00')
        assert result.payment.amount == Decimal('830.00')
        assert result.new_state is InstallmentState.PAID
        assert result.receipt.discount_applied == Decimal('30.00')

    def test_payment_requires_role(self):
        """Test anonymous payments are refused"""
        _, installments = self.create_fixed()
        with pytest.raises(PermissionDeniedError):
            self.engine.apply_payment(installments[0].id, "100", as_of="2024-01-05")

    def test_paid_installment_is_closed(self):
        """Test paying a paid installment"""
        _, installments = self.create_fixed()
        self.engine.apply_payment(installments[0].id, "800", actor_role=Role.ADMIN, as_of="2024-01-05")

        with pytest.raises(StateConflictError) as exc_info:
            self.engine.apply_payment(installments[0].id, "10", actor_role=Role.ADMIN, as_of="2024-01-06")
        assert exc_info.value.code == "INSTALLMENT_CLOSED"

    def test_paying_every_installment_pays_credit(self):
        """Test the credit becomes paid with its last installment"""
        credit, installments = self.create_fixed()
        self.engine.apply_payment(installments[0].id, "800", actor_role=Role.ADMIN, as_of="2024-01-05")
        result = self.engine.apply_payment(installments[1].id, "800", actor_role=Role.ADMIN, as_of="2024-01-05")

        assert result.credit_state is CreditState.PAID
        assert self.engine.get_credit(credit.id).outstanding_principal == Decimal('0.00')

    def test_failed_write_rolls_back(self, monkeypatch):
        """Test a failure inside the transaction leaves nothing behind"""
        credit, installments = self.create_fixed()

        def broken_audit(*args, **kwargs):
            raise RuntimeError("audit store down")

        monkeypatch.setattr(self.engine, "_audit", broken_audit)
        with pytest.raises(RuntimeError):
            self.engine.apply_payment(installments[0].id, "800", actor_role=Role.ADMIN, as_of="2024-01-05")

        assert self.engine.get_payments(credit.id) == []
        assert self.engine.get_receipts(credit.id) == []
        assert self.engine.get_installment(installments[0].id).state is InstallmentState.PENDING

    def test_payment_publishes_event(self):
        """Test payment events reach subscribers after commit"""
        seen = []
        self.engine.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, seen.append)
        _, installments = self.create_fixed()

        self.engine.apply_payment(installments[0].id, "100", actor_role=Role.ADMIN, as_of="2024-01-05")

        assert len(seen) == 1
        assert seen[0].data['amount'] == "100.00"
        assert seen[0].data['client_id'] == "CLIENT001"

    def test_one_cent_excess_is_clamped(self):
        """Test an excess within tolerance never lifts paid principal above the installment"""
        _, installments = self.create_fixed()

        result = self.engine.apply_payment(installments[0].id, "800.01", actor_role=Role.ADMIN,
                                           as_of="2024-01-05")
        stored = self.engine.get_installment(installments[0].id)

        assert result.payment.amount == Decimal('800.00')
        assert result.allocation.principal_paid == Decimal('800.00')
        assert result.receipt.amount_paid == Decimal('800.00')
        assert stored.paid_principal == Decimal('800.00')
        assert_balanced(stored)

        with pytest.raises(OverpaymentError):
            self.engine.apply_payment(installments[1].id, "800.02", actor_role=Role.ADMIN,
                                      as_of="2024-01-05")

    def test_installment_balance_holds(self):
        """Test pending, paid and discounted principal always add up to the installment"""
        _, installments = self.create_fixed()
        _, other = self.create_fixed(client_id="CLIENT009")

        self.engine.apply_payment(installments[0].id, "100", actor_role=Role.ADMIN, as_of="2024-01-05")
        assert_balanced(self.engine.get_installment(installments[0].id))

        self.engine.apply_payment(installments[1].id, "300", actor_role=Role.ADMIN, as_of="2024-01-05")
        rolled = self.engine.get_installment(installments[1].id)
        assert rolled.carried_principal == Decimal('300.00')
        assert_balanced(rolled)

        self.engine.apply_payment(other[0].id, "100", discount="10", discount_scope="total",
                                  actor_role=Role.SUPERADMIN, as_of="2024-01-13")
        discounted = self.engine.get_installment(other[0].id)
        assert discounted.discount == Decimal('26.00')
        assert discounted.paid_principal == Decimal('100.00')
        assert discounted.principal_pending == Decimal('674.00')
        assert_balanced(discounted)

        self.engine.refresh_credit(other[0].credit_id, "2024-01-20")
        assert_balanced(self.engine.get_installment(other[0].id))


class TestOpenEndedPayments(ServicingTestCase):
    """Test payments on open-ended credits"""

    def test_default_amount_settles_oldest_cycle(self):
        """Test the default payment covers the oldest cycle's penalty and interest"""
        credit, installment = self.create_open_ended()

        result = self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        assert result.payment.amount == Decimal('6750.00')
        assert result.allocation.penalty_paid == Decimal('750.00')
        assert result.allocation.interest_paid == Decimal('6000.00')
        assert result.allocation.principal_paid == Decimal('0.00')
        assert result.new_state is InstallmentState.PENDING
        assert [a.cycle for a in result.receipt.cycle_allocations] == [1]

        snapshot = self.engine.get_credit_snapshot(credit.id, "2024-02-05")
        assert snapshot.total_owed_today == Decimal('16000.00')

    def test_last_cycle_requires_full_liquidation(self):
        """Test partial payments are refused in the last allowed cycle"""
        _, installment = self.create_open_ended()

        with pytest.raises(StateConflictError) as exc_info:
            self.engine.apply_payment(installment.id, "100", actor_role=Role.ADMIN, as_of="2024-03-15")
        assert exc_info.value.code == "OPEN_ENDED_CYCLE_CAP"

    def test_interest_paid_late_freezes_penalty(self):
        """Test cycle-1 interest paid on day five keeps 750.00 penalty when read on day twenty"""
        credit, installment = self.create_open_ended()
        self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        snapshot = self.engine.get_credit_snapshot(credit.id, "2024-02-20")
        cycles = snapshot.cycle_breakdown['cycles']

        assert cycles[0]['penalty_accrued'] == "750.00"
        assert cycles[0]['penalty_pending'] == "0.00"
        assert cycles[0]['interest_pending'] == "0.00"
        assert snapshot.pending_penalty == Decimal('0.00')
        assert snapshot.pending_interest == Decimal('6000.00')
        assert snapshot.total_owed_today == Decimal('16000.00')
        assert snapshot.state is CreditState.PENDING

    def test_receipts_keep_cycle_tags(self):
        """Test stored receipts load back with their cycle allocations"""
        credit, installment = self.create_open_ended()
        self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        receipts = self.engine.get_receipts(credit.id)
        assert len(receipts) == 1
        allocation = receipts[0].cycle_allocations[0]
        assert allocation.cycle == 1
        assert allocation.penalty == Decimal('750.00')
        assert allocation.interest == Decimal('6000.00')

    def test_second_payment_settles_next_cycle(self):
        """Test a later default payment moves on to cycle 2"""
        credit, installment = self.create_open_ended()
        self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        result = self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-20")

        assert result.payment.amount == Decimal('6000.00')
        assert [a.cycle for a in result.receipt.cycle_allocations] == [2]
        assert result.receipt.receipt_number == 2

        snapshot = self.engine.get_credit_snapshot(credit.id, "2024-03-05")
        assert snapshot.pending_penalty == Decimal('0.00')
        assert snapshot.pending_interest == Decimal('6000.00')
        assert snapshot.cycle_breakdown['current_cycle'] == 3

    def test_refresh_after_payment(self):
        """Test refreshing an open-ended credit that has receipts"""
        credit, installment = self.create_open_ended()
        self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        refreshed = self.engine.refresh_credit(credit.id, "2024-02-20")

        assert refreshed.state is CreditState.PENDING
        assert refreshed.outstanding_principal == Decimal('10000.00')
        assert self.engine.get_installment(installment.id).penalty_accrued == Decimal('0.00')

    def test_cancel_after_payment(self):
        """Test cancelling an open-ended credit that already has a receipt"""
        credit, installment = self.create_open_ended()
        self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        result = self.engine.cancel_credit(credit.id, actor_role=Role.ADMIN, as_of="2024-02-20")

        assert result.payoff_breakdown.total_debt == Decimal('16000.00')
        assert result.payment.amount == Decimal('16000.00')
        assert result.credit.state is CreditState.PAID
        receipts = self.engine.get_receipts(credit.id)
        assert [r.receipt_number for r in receipts] == [1, 2]
        assert [a.cycle for a in receipts[1].cycle_allocations] == [2]
        assert self.engine.get_credit_snapshot(credit.id, "2024-02-21").total_owed_today == Decimal('0.00')

    def test_refinance_after_payment(self):
        """Test the payoff base after cycle 1 was settled"""
        credit, installment = self.create_open_ended()
        self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        result = self.engine.refinance_credit(credit.id, "P2", "monthly", 2, actor_role=Role.ADMIN,
                                              as_of="2024-02-20")

        assert result.payoff_base == Decimal('16000.00')
        assert result.new_total == Decimal('20800.00')
        assert self.engine.get_credit(credit.id).state is CreditState.REFINANCED


class TestCancellation(ServicingTestCase):
    """Test whole-credit settlement"""

    def test_cancel_fixed_credit(self):
        """Test cancellation pays every open installment"""
        credit, installments = self.create_fixed()

        result = self.engine.cancel_credit(credit.id, actor_role=Role.ADMIN, as_of="2024-01-13")

        assert result.payoff_breakdown.total_debt == Decimal('1660.00')
        assert result.payment.amount == Decimal('1660.00')
        assert result.payment.kind == "cancellation"
        assert result.credit.state is CreditState.PAID
        assert all(i.state is InstallmentState.PAID for i in self.engine.get_installments(credit.id))
        assert len(self.engine.get_receipts(credit.id)) == 1

    def test_cancel_discount_requires_superadmin(self):
        """Test ADMIN may cancel but not discount"""
        credit, _ = self.create_fixed()
        with pytest.raises(PermissionDeniedError):
            self.engine.cancel_credit(credit.id, discount="10", actor_role=Role.ADMIN, as_of="2024-01-13")

    def test_cancel_with_penalty_discount(self):
        """Test SUPERADMIN penalty discount on cancellation"""
        credit, _ = self.create_fixed()
        result = self.engine.cancel_credit(credit.id, discount="50", actor_role=Role.SUPERADMIN,
                                           as_of="2024-01-13")

        assert result.payoff_breakdown.penalty_discount == Decimal('30.00')
        assert result.payment.amount == Decimal('1630.00')

    def test_cancel_paid_credit(self):
        """Test cancelling twice"""
        credit, _ = self.create_fixed()
        self.engine.cancel_credit(credit.id, actor_role=Role.ADMIN, as_of="2024-01-05")

        with pytest.raises(StateConflictError) as exc_info:
            self.engine.cancel_credit(credit.id, actor_role=Role.ADMIN, as_of="2024-01-06")
        assert exc_info.value.code == "CREDIT_PAID"


class TestRefinance(ServicingTestCase):
    """Test refinancing into a new fixed plan"""

    def test_refinance_fixed_credit(self):
        """Test the payoff base and the new credit"""
        credit, _ = self.create_fixed()

        result = self.engine.refinance_credit(credit.id, "P2", "monthly", 2, actor_role=Role.ADMIN,
                                              as_of="2024-01-13")
        new_credit = self.engine.get_credit(result.new_credit_id)
        new_installments = self.engine.get_installments(new_credit.id)

        assert result.payoff_base == Decimal('1660.00')
        assert result.new_total == Decimal('2158.00')
        assert new_credit.origin_credit_id == credit.id
        assert new_credit.refinance_rate == Decimal('15.00')
        assert [i.amount for i in new_installments] == [Decimal('1079.00')] * 2
        assert self.engine.get_credit(credit.id).state is CreditState.REFINANCED
        assert all(i.state is InstallmentState.REFINANCED for i in self.engine.get_installments(credit.id))

    def test_refinanced_credit_is_frozen(self):
        """Test refinancing twice and paying a refinanced credit"""
        credit, installments = self.create_fixed()
        self.engine.refinance_credit(credit.id, "P2", "monthly", 2, actor_role=Role.ADMIN, as_of="2024-01-13")
        credits_before = self.storage.count("credits")

        with pytest.raises(StateConflictError) as exc_info:
            self.engine.refinance_credit(credit.id, "P1", "monthly", 2, actor_role=Role.ADMIN,
                                         as_of="2024-01-14")
        assert exc_info.value.code == "CREDIT_ALREADY_REFINANCED"
        assert self.storage.count("credits") == credits_before

        with pytest.raises(StateConflictError) as exc_info:
            self.engine.apply_payment(installments[1].id, "100", actor_role=Role.ADMIN, as_of="2024-01-14")
        assert exc_info.value.code == "CREDIT_REFINANCED"

    def test_manual_rate_requires_superadmin(self):
        """Test ADMIN cannot pick a manual rate"""
        credit, _ = self.create_fixed()
        with pytest.raises(PermissionDeniedError, match="manual rate"):
            self.engine.refinance_credit(credit.id, "MANUAL", "monthly", 2, actor_role=Role.ADMIN,
                                         manual_rate="12")


class TestVoid(ServicingTestCase):
    """Test voiding credits"""

    def test_void_credit(self):
        """Test voiding a credit without payments"""
        credit, _ = self.create_fixed()
        voided = self.engine.void_credit(credit.id, actor_role=Role.ADMIN)

        assert voided.state is CreditState.VOIDED
        assert all(i.state is InstallmentState.VOIDED for i in self.engine.get_installments(credit.id))

    def test_void_without_role(self):
        """Test voiding after an external approval"""
        credit, _ = self.create_fixed()
        assert self.engine.void_credit(credit.id).state is CreditState.VOIDED

    def test_void_with_payments_rejected(self):
        """Test credits with payments cannot be voided"""
        credit, installments = self.create_fixed()
        self.engine.apply_payment(installments[0].id, "100", actor_role=Role.ADMIN, as_of="2024-01-05")

        with pytest.raises(StateConflictError) as exc_info:
            self.engine.void_credit(credit.id, actor_role=Role.ADMIN)
        assert exc_info.value.code == "CREDIT_HAS_PAYMENTS"

    def test_collector_cannot_void(self):
        """Test COLLECTOR is denied"""
        credit, _ = self.create_fixed()
        with pytest.raises(PermissionDeniedError):
            self.engine.void_credit(credit.id, actor_role=Role.COLLECTOR)


class TestSweep(ServicingTestCase):
    """Test the overdue sweep"""

    def test_sweep_marks_overdue(self):
        """Test past-due installments are reclassified once"""
        credit, installments = self.create_fixed()

        assert self.engine.sweep_overdue("2024-01-15") == 1
        stored = self.engine.get_installment(installments[0].id)
        assert stored.state is InstallmentState.OVERDUE
        assert stored.penalty_accrued == Decimal('100.00')
        assert self.engine.get_installment(installments[1].id).state is InstallmentState.PENDING

        assert self.engine.sweep_overdue("2024-01-15") == 0

    def test_sweep_skips_voided_and_open_ended(self):
        """Test frozen and open-ended credits are left alone"""
        credit, _ = self.create_fixed()
        self.engine.void_credit(credit.id, actor_role=Role.ADMIN)
        self.create_open_ended()

        assert self.engine.sweep_overdue("2024-03-01") == 0

    def test_sweep_continues_after_failure(self, monkeypatch):
        """Test one failing credit does not stop the sweep"""
        first, _ = self.create_fixed()
        self.create_fixed(client_id="CLIENT009")
        original = self.engine._sweep_credit

        def flaky(credit_id, as_of):
            if credit_id == first.id:
                raise RuntimeError("boom")
            return original(credit_id, as_of)

        monkeypatch.setattr(self.engine, "_sweep_credit", flaky)
        assert self.engine.sweep_overdue("2024-01-15") == 1


class TestSQLiteOpenEnded(ServicingTestCase):
    """Test open-ended receipts survive the SQLite round trip"""

    def setup_method(self):
        self.storage = SQLiteStorage(":memory:")
        self.engine = LoanServicingEngine(self.storage, today=lambda: date(2024, 1, 1))

    def test_snapshot_and_cancel_after_payment(self):
        """Test reads and cancellation after a tagged receipt was stored"""
        credit, installment = self.create_open_ended()
        self.engine.apply_payment(installment.id, actor_role=Role.ADMIN, as_of="2024-02-05")

        snapshot = self.engine.get_credit_snapshot(credit.id, "2024-02-20")
        assert snapshot.total_owed_today == Decimal('16000.00')
        assert self.engine.get_receipts(credit.id)[0].cycle_allocations[0].interest == Decimal('6000.00')

        result = self.engine.cancel_credit(credit.id, actor_role=Role.ADMIN, as_of="2024-02-20")
        assert result.payment.amount == Decimal('16000.00')


class TestCreditLocks(ServicingTestCase):
    """Test the per-credit lock registry"""

    def test_lock_shared_while_held(self):
        """Test callers share one lock per credit until it is released"""
        lock = self.engine._credit_lock("CR001")
        assert self.engine._credit_lock("CR001") is lock
        assert self.engine._credit_lock("CR002") is not lock

        del lock
        assert "CR001" not in self.engine._locks

    def test_locks_released_after_operations(self):
        """Test finished operations leave no locks behind"""
        _, installments = self.create_fixed()
        self.engine.apply_payment(installments[0].id, "100", actor_role=Role.ADMIN, as_of="2024-01-05")
        self.engine.sweep_overdue("2024-01-15")

        assert len(self.engine._locks) == 0
