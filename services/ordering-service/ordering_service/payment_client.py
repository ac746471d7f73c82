from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import stripe

from .repository import OrderRecord

logger = logging.getLogger(__name__)


class PaymentServiceError(Exception):
    """Represents downstream payment failures."""


class PaymentNotCompletedError(PaymentServiceError):
    """The checkout session exists but has not been paid."""


@dataclass(frozen=True)
class CheckoutLine:
    name: str
    unit_amount_cents: int
    quantity: int
    description: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]
    payment_status: str
    payment_reference: Optional[str]
    amount_total: Optional[int]
    metadata: Dict[str, str] = field(default_factory=dict)
    customer: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def reference(self) -> str:
        """Payment intent id when known, otherwise the session id."""
        return self.payment_reference or self.id


@dataclass(frozen=True)
class AdditionalCharge:
    checkout_url: str
    session_id: str
    amount_cents: int


@dataclass(frozen=True)
class RefundRecord:
    id: str
    amount_cents: int
    status: str
    payment_intent: str


class PaymentClient(Protocol):
    def create_checkout_session(
        self,
        lines: Sequence[CheckoutLine],
        metadata: Dict[str, str],
        customer_email: str | None,
    ) -> CheckoutSession: ...

    def retrieve_session(self, session_id: str) -> CheckoutSession: ...

    def create_additional_charge(
        self, order: OrderRecord, amount_cents: int, description: str
    ) -> AdditionalCharge: ...

    def create_refund(self, payment_reference: str, amount_cents: int, order_id: str) -> RefundRecord: ...


def _check_refund_reference(payment_reference: str) -> None:
    if not payment_reference.startswith(("pi_", "cs_")):
        raise PaymentServiceError(f"Unsupported payment ID format: {payment_reference}")


class StripePaymentClient:
    """Stripe Checkout for payments and additional charges, Stripe refunds for money back."""

    def __init__(self, api_key: str, site_url: str, currency: str = "usd"):
        self._api_key = api_key
        self._site_url = site_url.rstrip("/")
        self._currency = currency

    def create_checkout_session(
        self,
        lines: Sequence[CheckoutLine],
        metadata: Dict[str, str],
        customer_email: str | None,
    ) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                mode="payment",
                line_items=[self._line_item(line) for line in lines],
                customer_email=customer_email or None,
                success_url=f"{self._site_url}/order-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self._site_url}/cart",
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            raise PaymentServiceError(f"Checkout session could not be created: {exc}") from exc
        return self._to_session(session)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise PaymentServiceError(f"Checkout session {session_id} not found: {exc}") from exc
        return self._to_session(session)

    def create_additional_charge(
        self, order: OrderRecord, amount_cents: int, description: str
    ) -> AdditionalCharge:
        if amount_cents <= 0:
            raise PaymentServiceError("Additional charge must be a positive amount")
        customer_id = self._customer_for(order.stripe_payment_id)
        params = {
            "api_key": self._api_key,
            "mode": "payment",
            "line_items": [
                self._line_item(
                    CheckoutLine(
                        name=f"Additional Charge for Order #{order.id[:8]}",
                        description=description,
                        unit_amount_cents=amount_cents,
                        quantity=1,
                    )
                )
            ],
            "success_url": (
                f"{self._site_url}/order-success?session_id={{CHECKOUT_SESSION_ID}}"
                f"&additional_charge=true&order_id={order.id}"
            ),
            "cancel_url": f"{self._site_url}/",
            "metadata": {
                "order_id": order.id,
                "charge_type": "additional",
                "original_payment_id": order.stripe_payment_id or "",
                "description": description,
            },
        }
        if customer_id:
            params["customer"] = customer_id
        elif order.customer_email:
            params["customer_email"] = order.customer_email
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            raise PaymentServiceError(f"Additional charge failed: {exc}") from exc
        logger.info(
            "Additional charge session %s created for order %s amount=%d",
            session.id,
            order.id,
            amount_cents,
        )
        return AdditionalCharge(checkout_url=session.url, session_id=session.id, amount_cents=amount_cents)

    def create_refund(self, payment_reference: str, amount_cents: int, order_id: str) -> RefundRecord:
        _check_refund_reference(payment_reference)
        try:
            payment_intent = payment_reference
            if payment_reference.startswith("cs_"):
                session = stripe.checkout.Session.retrieve(payment_reference, api_key=self._api_key)
                payment_intent = _object_id(session.payment_intent)
                if not payment_intent:
                    raise PaymentServiceError("No payment_intent found in session")
            refund = stripe.Refund.create(
                api_key=self._api_key,
                payment_intent=payment_intent,
                amount=amount_cents,
                reason="requested_by_customer",
                metadata={"order_id": order_id, "refund_reason": "Order change"},
            )
        except stripe.StripeError as exc:
            raise PaymentServiceError(f"Stripe refund failed: {exc}") from exc
        logger.info("Refund %s processed for order %s amount=%d", refund.id, order_id, refund.amount)
        return RefundRecord(
            id=refund.id,
            amount_cents=refund.amount,
            status=refund.status,
            payment_intent=payment_intent,
        )

    def _customer_for(self, payment_reference: str | None) -> str | None:
        if not payment_reference:
            return None
        try:
            if payment_reference.startswith("cs_"):
                session = stripe.checkout.Session.retrieve(payment_reference, api_key=self._api_key)
                return _object_id(session.customer)
            if payment_reference.startswith("pi_"):
                intent = stripe.PaymentIntent.retrieve(payment_reference, api_key=self._api_key)
                return _object_id(intent.customer)
        except stripe.StripeError as exc:
            raise PaymentServiceError(f"Original payment {payment_reference} not found: {exc}") from exc
        return None

    def _line_item(self, line: CheckoutLine) -> dict:
        product = {"name": line.name}
        if line.description:
            product["description"] = line.description
        return {
            "price_data": {
                "currency": self._currency,
                "product_data": product,
                "unit_amount": line.unit_amount_cents,
            },
            "quantity": line.quantity,
        }

    @staticmethod
    def _to_session(session) -> CheckoutSession:
        metadata = session.metadata or {}
        return CheckoutSession(
            id=session.id,
            url=session.url,
            payment_status=session.payment_status,
            payment_reference=_object_id(session.payment_intent),
            amount_total=session.amount_total,
            metadata={key: str(metadata[key]) for key in metadata.keys()},
            customer=_object_id(session.customer),
        )


def _object_id(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return getattr(value, "id", None)


class MockPaymentClient:
    """In-process stand-in for Stripe, used for local runs and tests.

    With ``auto_pay`` every new session is reported as paid, so the checkout
    flow can be driven end to end without a hosted payment page.
    """

    def __init__(self, auto_pay: bool = False):
        self.auto_pay = auto_pay
        self.sessions: Dict[str, CheckoutSession] = {}
        self.charges: List[AdditionalCharge] = []
        self.refunds: List[RefundRecord] = []

    def create_checkout_session(
        self,
        lines: Sequence[CheckoutLine],
        metadata: Dict[str, str],
        customer_email: str | None,
    ) -> CheckoutSession:
        session_id = f"cs_mock_{uuid.uuid4().hex}"
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.mock/pay/{session_id}",
            payment_status="unpaid",
            payment_reference=None,
            amount_total=sum(line.unit_amount_cents * line.quantity for line in lines),
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        if self.auto_pay:
            return self.mark_paid(session_id)
        return session

    def mark_paid(self, session_id: str) -> CheckoutSession:
        session = self.retrieve_session(session_id)
        paid = CheckoutSession(
            id=session.id,
            url=session.url,
            payment_status="paid",
            payment_reference=f"pi_mock_{uuid.uuid4().hex}",
            amount_total=session.amount_total,
            metadata=session.metadata,
            customer=session.customer,
        )
        self.sessions[session_id] = paid
        return paid

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise PaymentServiceError(f"Checkout session {session_id} not found")
        return session

    def create_additional_charge(
        self, order: OrderRecord, amount_cents: int, description: str
    ) -> AdditionalCharge:
        if amount_cents <= 0:
            raise PaymentServiceError("Additional charge must be a positive amount")
        session = self.create_checkout_session(
            [CheckoutLine(name=f"Additional Charge for Order #{order.id[:8]}", unit_amount_cents=amount_cents, quantity=1)],
            {"order_id": order.id, "charge_type": "additional", "description": description},
            order.customer_email,
        )
        charge = AdditionalCharge(checkout_url=session.url, session_id=session.id, amount_cents=amount_cents)
        self.charges.append(charge)
        return charge

    def create_refund(self, payment_reference: str, amount_cents: int, order_id: str) -> RefundRecord:
        _check_refund_reference(payment_reference)
        refund = RefundRecord(
            id=f"re_mock_{uuid.uuid4().hex}",
            amount_cents=amount_cents,
            status="succeeded",
            payment_intent=payment_reference,
        )
        self.refunds.append(refund)
        return refund
