"""
Gateway event envelope and categories.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from core.exceptions import PayloadValidationError


class EventCategory(str, Enum):
    CHECKOUT_COMPLETED = 'checkout.session.completed'
    CHECKOUT_EXPIRED = 'checkout.session.expired'
    ASYNC_PAYMENT_SUCCEEDED = 'checkout.session.async_payment_succeeded'
    ASYNC_PAYMENT_FAILED = 'checkout.session.async_payment_failed'
    PAYMENT_SUCCEEDED = 'payment_intent.succeeded'
    PAYMENT_FAILED = 'payment_intent.payment_failed'
    PAYMENT_CANCELED = 'payment_intent.canceled'
    CHARGE_REFUNDED = 'charge.refunded'
    REFUND_CREATED = 'refund.created'
    REFUND_UPDATED = 'refund.updated'
    REFUND_FAILED = 'refund.failed'
    DISPUTE_CREATED = 'charge.dispute.created'
    DISPUTE_CLOSED = 'charge.dispute.closed'
    UNKNOWN = 'unknown'

    @classmethod
    def from_type(cls, event_type: str) -> 'EventCategory':
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    created: int
    data_object: Dict[str, Any] = field(default_factory=dict)
    livemode: bool = False

    @property
    def category(self) -> EventCategory:
        return EventCategory.from_type(self.type)

    @classmethod
    def from_payload(cls, payload: Any) -> 'WebhookEvent':
        """
        Build an event from the decoded JSON body.

        Raises:
            PayloadValidationError: a required envelope field is missing
            or has the wrong type.
        """
        if not isinstance(payload, dict):
            raise PayloadValidationError("Event payload must be a JSON object")

        event_id = payload.get('id')
        event_type = payload.get('type')
        created = payload.get('created')
        data = payload.get('data')

        if not isinstance(event_id, str) or not event_id:
            raise PayloadValidationError("Event is missing 'id'")
        if not isinstance(event_type, str) or not event_type:
            raise PayloadValidationError(f"Event {event_id} is missing 'type'")
        if isinstance(created, bool) or not isinstance(created, int):
            raise PayloadValidationError(f"Event {event_id} is missing 'created'")
        if not isinstance(data, dict) or not isinstance(data.get('object'), dict):
            raise PayloadValidationError(f"Event {event_id} is missing 'data.object'")

        return cls(
            id=event_id,
            type=event_type,
            created=created,
            data_object=data['object'],
            livemode=bool(payload.get('livemode', False)),
        )
