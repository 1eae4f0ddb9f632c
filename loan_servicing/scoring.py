"""
Client Credit Scoring

Best-effort 0..100 score recomputed after payments, cancellations and
refinancing. A scoring failure is logged and never affects the operation
that triggered it.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict

from .audit import AuditEventType
from .config import get_config
from .events import DomainEvent, EventDispatcher, EventPayload
from .models import CreditState, InstallmentState
from .money import ZERO, fix2

SCORE_MIN = 0
SCORE_MAX = 100
SENIORITY_DAYS = 365
SENIORITY_POINTS = 5
PAID_ON_TIME_POINTS = 10
PAID_LATE_POINTS = -5
OVERDUE_INSTALLMENT_POINTS = -15
CLEAN_ACTIVE_CREDIT_POINTS = 10
OVERDUE_CREDIT_POINTS = -30
HIGH_REPAYMENT_POINTS = 10
HIGH_REPAYMENT_THRESHOLD = Decimal('100000')


class CreditScorer:
    """Computes and stores client scores from the servicing history"""

    def __init__(self, engine, table_name: str = "client_scores"):
        self.engine = engine
        self.table_name = table_name
        self.logger = logging.getLogger("loan_servicing.scoring")

    def subscribe(self, dispatcher: EventDispatcher) -> None:
        for event_type in (DomainEvent.PAYMENT_APPLIED, DomainEvent.CREDIT_CANCELLED,
                           DomainEvent.CREDIT_REFINANCED):
            dispatcher.subscribe(event_type, self.on_event)

    def on_event(self, event: EventPayload) -> None:
        client_id = event.data.get('client_id')
        if not client_id:
            return
        try:
            self.update_score(client_id)
        except Exception as e:
            self.logger.warning(f"Score update failed for client {client_id}: {e}")

    def compute_score(self, client_id: str) -> Dict[str, Any]:
        """Score a client's whole history as of business today"""
        today = self.engine.today()
        credits = [c for c in self.engine.get_client_credits(client_id)
                   if c.state is not CreditState.VOIDED]

        breakdown = {'seniority': 0, 'installments': 0, 'credits': 0, 'repayment': 0}

        if credits and min(c.disbursement_date for c in credits) < today - timedelta(days=SENIORITY_DAYS):
            breakdown['seniority'] = SENIORITY_POINTS

        repaid = ZERO
        for credit in credits:
            installments = self.engine.get_installments(credit.id)
            any_overdue = False
            for installment in installments:
                if installment.state is InstallmentState.PAID:
                    on_time = installment.paid_date is not None and installment.paid_date <= installment.due_date
                    breakdown['installments'] += PAID_ON_TIME_POINTS if on_time else PAID_LATE_POINTS
                elif installment.state is InstallmentState.OVERDUE:
                    breakdown['installments'] += OVERDUE_INSTALLMENT_POINTS
                    any_overdue = True

            if credit.state in (CreditState.PENDING, CreditState.OVERDUE):
                if any_overdue or credit.state is CreditState.OVERDUE:
                    breakdown['credits'] += OVERDUE_CREDIT_POINTS
                else:
                    breakdown['credits'] += CLEAN_ACTIVE_CREDIT_POINTS

            for payment in self.engine.get_payments(credit.id):
                repaid = fix2(repaid + payment.amount)

        if repaid >= HIGH_REPAYMENT_THRESHOLD:
            breakdown['repayment'] = HIGH_REPAYMENT_POINTS

        points = sum(breakdown.values())
        return {
            'client_id': client_id,
            'score': max(SCORE_MIN, min(SCORE_MAX, points)),
            'raw_points': points,
            'breakdown': breakdown,
            'total_repaid': str(repaid),
            'credits': len(credits),
        }

    def update_score(self, client_id: str) -> Dict[str, Any]:
        """Recompute and persist a client's score"""
        result = self.compute_score(client_id)
        result['updated_at'] = datetime.now(timezone.utc).isoformat()

        storage = self.engine.storage
        with storage.atomic():
            previous = storage.load(self.table_name, client_id)
            storage.save(self.table_name, client_id, result)
            if get_config().enable_audit_logging:
                self.engine.audit_trail.log_event(
                    event_type=AuditEventType.SCORE_UPDATED,
                    entity_type="client",
                    entity_id=client_id,
                    metadata={
                        'score': result['score'],
                        'previous_score': previous['score'] if previous else None,
                    }
                )

        self.logger.debug(f"Client {client_id} scored {result['score']}")
        return result

    def get_score(self, client_id: str) -> Dict[str, Any]:
        """Stored score, computed and saved when the client has none yet"""
        stored = self.engine.storage.load(self.table_name, client_id)
        if stored:
            return stored
        return self.update_score(client_id)
