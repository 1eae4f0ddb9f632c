"""
Tests for the event dispatcher
"""

from datetime import datetime
from unittest.mock import Mock

from loan_servicing.events import DomainEvent, EventPayload, EventDispatcher, get_global_dispatcher


def make_event(event_type=DomainEvent.PAYMENT_APPLIED):
    return EventPayload(
        event_type=event_type,
        entity_type="credit",
        entity_id="CR001",
        data={"amount": "800.00", "client_id": "CLIENT001"}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = make_event()
        assert event.event_type == DomainEvent.PAYMENT_APPLIED
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        """Test payload to dict"""
        data = make_event(DomainEvent.CREDIT_CANCELLED).to_dict()
        assert data["event_type"] == "credit.cancelled"
        assert data["entity_id"] == "CR001"
        assert data["data"]["amount"] == "800.00"


class TestEventDispatcher:
    """Test publish/subscribe"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def test_subscribe_and_publish(self):
        """Test handlers receive only their event type"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, handler)

        event = make_event()
        self.dispatcher.publish(event)
        self.dispatcher.publish(make_event(DomainEvent.CREDIT_VOIDED))

        handler.assert_called_once_with(event)

    def test_subscribe_all(self):
        """Test global handlers receive everything"""
        handler = Mock()
        self.dispatcher.subscribe_all(handler)
        self.dispatcher.publish(make_event())
        self.dispatcher.publish(make_event(DomainEvent.CREDIT_CREATED))
        assert handler.call_count == 2

    def test_failing_handler_does_not_break_publish(self):
        """Test a raising subscriber is isolated"""
        failing = Mock(side_effect=RuntimeError("receipt printer offline"))
        failing.__name__ = "failing"
        healthy = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, failing)
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, healthy)

        self.dispatcher.publish(make_event())

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_unsubscribe_and_counts(self):
        """Test handler bookkeeping"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, handler)
        self.dispatcher.subscribe(DomainEvent.CREDIT_CREATED, handler)
        self.dispatcher.subscribe_all(handler)
        assert self.dispatcher.get_handler_count(DomainEvent.PAYMENT_APPLIED) == 1
        assert self.dispatcher.get_handler_count() == 3

        self.dispatcher.unsubscribe(DomainEvent.PAYMENT_APPLIED, handler)
        self.dispatcher.unsubscribe(DomainEvent.PAYMENT_APPLIED, handler)
        assert self.dispatcher.get_handler_count(DomainEvent.PAYMENT_APPLIED) == 0

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0

    def test_global_dispatcher_is_shared(self):
        """Test the module-level dispatcher is a singleton"""
        assert get_global_dispatcher() is get_global_dispatcher()
