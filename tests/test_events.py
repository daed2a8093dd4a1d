"""
Tests for the Event System (Observer Pattern)
"""

from datetime import datetime
from unittest.mock import Mock

from loan_servicing.events import DomainEvent, EventPayload, EventDispatcher


def make_event(event_type=DomainEvent.PAYMENT_PROCESSED):
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id="loan-1",
        data={"amount": "100000"}
    )


class TestEventPayload:

    def test_event_payload_creation(self):
        event = make_event()
        assert event.event_type == DomainEvent.PAYMENT_PROCESSED
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_to_dict(self):
        data = make_event().to_dict()
        assert data["event_type"] == "loan.payment_processed"
        assert data["data"] == {"amount": "100000"}


class TestEventDispatcher:

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.PAYMENT_PROCESSED, handler)

        event = make_event()
        dispatcher.publish(event)
        dispatcher.publish(make_event(DomainEvent.PAYMENT_REVERSED))

        handler.assert_called_once_with(event)

    def test_global_handlers_receive_everything(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(make_event(DomainEvent.LOAN_RECLASSIFIED))
        dispatcher.publish(make_event(DomainEvent.LOAN_PAID_OFF))

        assert handler.call_count == 2

    def test_handler_failure_does_not_propagate(self):
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("notification service down"))
        working = Mock()
        dispatcher.subscribe(DomainEvent.PAYMENT_PROCESSED, failing)
        dispatcher.subscribe(DomainEvent.PAYMENT_PROCESSED, working)

        dispatcher.publish(make_event())

        failing.assert_called_once()
        working.assert_called_once()

    def test_unsubscribe_and_counts(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.PAYMENT_PROCESSED, handler)
        dispatcher.subscribe_all(Mock())
        assert dispatcher.get_handler_count(DomainEvent.PAYMENT_PROCESSED) == 1
        assert dispatcher.get_handler_count() == 2

        dispatcher.unsubscribe(DomainEvent.PAYMENT_PROCESSED, handler)
        dispatcher.unsubscribe(DomainEvent.PAYMENT_PROCESSED, handler)
        dispatcher.publish(make_event())
        handler.assert_not_called()

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0
