"""
Stripe Event Payloads
=====================

Typed shapes for the webhook events keyledger reconciles. The raw event is
validated once, at the router, into ``ProviderEvent`` (a union discriminated
on ``type``); handlers only ever receive these models.

Only the fields reconciliation reads are declared. Unknown fields are
ignored, and references Stripe may send either as an id or as an expanded
object are normalized to the id.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _expandable_to_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _none_to_empty(value: Any) -> Any:
    return {} if value is None else value


ExpandableId = Annotated[Optional[str], BeforeValidator(_expandable_to_id)]
Metadata = Annotated[Dict[str, Any], BeforeValidator(_none_to_empty)]

SUBSCRIBER_METADATA_KEYS = ("userId", "user_id")


def subscriber_from_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    """Return the subscriber id carried in provider metadata, if any."""
    for key in SUBSCRIBER_METADATA_KEYS:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

class CheckoutSession(StripeObject):
    id: str
    mode: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent: ExpandableId = None
    subscription: ExpandableId = None
    customer: ExpandableId = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Metadata = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class Price(StripeObject):
    id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: Optional[str] = None


class SubscriptionItem(StripeObject):
    price: Optional[Price] = None
    quantity: Optional[int] = None
    # Newer API versions carry the billing period on the item
    current_period_end: Optional[int] = None


class SubscriptionItemList(StripeObject):
    data: List[SubscriptionItem] = Field(default_factory=list)


class Subscription(StripeObject):
    id: str
    status: str
    customer: ExpandableId = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    latest_invoice: ExpandableId = None
    items: Optional[SubscriptionItemList] = None
    metadata: Metadata = Field(default_factory=dict)

    def period_end(self) -> Optional[int]:
        """Current period end, falling back to the latest item-level period end."""
        if self.current_period_end:
            return self.current_period_end
        ends = [i.current_period_end for i in self.items.data if i.current_period_end] if self.items else []
        return max(ends) if ends else None

    def amount_and_currency(self) -> tuple[int, Optional[str]]:
        """Sum of unit_amount × quantity over the subscription's items."""
        amount = 0
        currency = None
        for item in self.items.data if self.items else []:
            if item.price is None or item.price.unit_amount is None:
                continue
            amount += item.price.unit_amount * (item.quantity or 1)
            currency = currency or item.price.currency
        return amount, currency


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class InvoicePeriod(StripeObject):
    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(StripeObject):
    period: Optional[InvoicePeriod] = None


class InvoiceLineList(StripeObject):
    data: List[InvoiceLine] = Field(default_factory=list)


class SubscriptionDetails(StripeObject):
    subscription: ExpandableId = None
    metadata: Metadata = Field(default_factory=dict)


class InvoiceParent(StripeObject):
    subscription_details: Optional[SubscriptionDetails] = None


class Invoice(StripeObject):
    id: str
    customer: ExpandableId = None
    subscription: ExpandableId = None
    payment_intent: ExpandableId = None
    amount_paid: Optional[int] = None
    amount_due: Optional[int] = None
    currency: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    lines: Optional[InvoiceLineList] = None
    metadata: Metadata = Field(default_factory=dict)
    subscription_details: Optional[SubscriptionDetails] = None
    parent: Optional[InvoiceParent] = None

    def _details(self) -> Optional[SubscriptionDetails]:
        if self.subscription_details is not None:
            return self.subscription_details
        if self.parent is not None:
            return self.parent.subscription_details
        return None

    def subscription_ref(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = self._details()
        return details.subscription if details else None

    def subscription_metadata(self) -> Dict[str, Any]:
        details = self._details()
        return details.metadata if details else {}

    def line_period(self) -> tuple[Optional[int], Optional[int]]:
        """Billing period of the first invoice line that has one."""
        for line in self.lines.data if self.lines else []:
            if line.period and line.period.end:
                return line.period.start, line.period.end
        return None, None


# ---------------------------------------------------------------------------
# Payment intents
# ---------------------------------------------------------------------------

class PaymentIntent(StripeObject):
    id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    amount_received: Optional[int] = None
    currency: Optional[str] = None
    customer: ExpandableId = None
    invoice: ExpandableId = None
    metadata: Metadata = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Event envelopes
# ---------------------------------------------------------------------------

T = TypeVar("T", bound=StripeObject)


class EventData(StripeObject, Generic[T]):
    object: T


class BaseEvent(StripeObject):
    id: str
    created: Optional[int] = None
    livemode: bool = False


class CheckoutSessionCompleted(BaseEvent):
    type: Literal["checkout.session.completed"]
    data: EventData[CheckoutSession]


class SubscriptionCreated(BaseEvent):
    type: Literal["customer.subscription.created"]
    data: EventData[Subscription]


class SubscriptionUpdated(BaseEvent):
    type: Literal["customer.subscription.updated"]
    data: EventData[Subscription]


class SubscriptionDeleted(BaseEvent):
    type: Literal["customer.subscription.deleted"]
    data: EventData[Subscription]


class InvoicePaid(BaseEvent):
    type: Literal["invoice.paid", "invoice.payment_succeeded"]
    data: EventData[Invoice]


class InvoicePaymentFailed(BaseEvent):
    type: Literal["invoice.payment_failed"]
    data: EventData[Invoice]


class PaymentIntentSucceeded(BaseEvent):
    type: Literal["payment_intent.succeeded"]
    data: EventData[PaymentIntent]


ProviderEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionDeleted,
        InvoicePaid,
        InvoicePaymentFailed,
        PaymentIntentSucceeded,
    ],
    Field(discriminator="type"),
]


class UnhandledEvent(StripeObject):
    """Well-formed event of a type keyledger does not reconcile."""

    id: str
    type: str


HANDLED_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.paid",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "payment_intent.succeeded",
    }
)
