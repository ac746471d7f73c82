from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

import httpx
from jinja2 import DictLoader, Environment, select_autoescape

from .pricing import display_name, format_price
from .repository import NotificationRecord, NotificationRepository, OrderRecord

logger = logging.getLogger(__name__)

RESTAURANT_NAME = "Maki Express Ramen House"
RESTAURANT_PHONE = "(513) 721-6999"
RESTAURANT_ADDRESS = "209 W McMillan St, Cincinnati, OH 45219"

SUBSTITUTION_KINDS = (
    "item_swap",
    "variant_swap",
    "item_removed",
    "order_cancelled",
    "item_swap_payment_required",
)
ORDER_EMAIL_KINDS = ("confirmation", "cancellation", "status_update")


class MailerError(Exception):
    """Raised when the email provider rejects or cannot accept a message."""


class Mailer(Protocol):
    def send(self, to: Sequence[str], subject: str, html: str) -> str: ...


class ResendMailer:
    """Sends transactional email through the Resend REST API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        base_url: str = "https://api.resend.com",
        transport: httpx.BaseTransport | None = None,
    ):
        self._sender = sender
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            timeout=10.0,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    def send(self, to: Sequence[str], subject: str, html: str) -> str:
        try:
            response = self._client.post(
                f"{self._base_url}/emails",
                json={"from": self._sender, "to": list(to), "subject": subject, "html": html},
            )
        except httpx.HTTPError as exc:
            raise MailerError(f"Email provider unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise MailerError(f"Email rejected ({response.status_code}): {response.text}")
        try:
            body = response.json()
        except ValueError as exc:
            raise MailerError(f"Email provider sent an unreadable reply: {response.text[:200]}") from exc
        if not isinstance(body, dict):
            raise MailerError(f"Email provider sent an unexpected reply: {body!r}")
        return str(body.get("id", ""))


class LogMailer:
    """Logs messages instead of sending them; keeps them for inspection."""

    def __init__(self):
        self.sent: List[dict] = []

    def send(self, to: Sequence[str], subject: str, html: str) -> str:
        message_id = f"log-{len(self.sent) + 1}"
        self.sent.append({"id": message_id, "to": list(to), "subject": subject, "html": html})
        logger.info("Email %s to %s: %s", message_id, ", ".join(to), subject)
        return message_id


@dataclass(frozen=True)
class QuantityChange:
    from_quantity: int
    to_quantity: int


@dataclass(frozen=True)
class SubstitutionNotice:
    kind: str
    order_id: str
    customer_name: str
    original_item: str
    order_total: int
    new_item: Optional[str] = None
    price_difference: int = 0
    new_order_total: Optional[int] = None
    refund_amount: Optional[int] = None
    charge_amount: Optional[int] = None
    quantity_change: Optional[QuantityChange] = None
    payment_url: Optional[str] = None
    reason: Optional[str] = None


_BASE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{{ title }} - {{ restaurant }}</title></head>
<body style="margin:0;padding:0;background-color:#f8f9fa;font-family:Arial,sans-serif;">
  <div style="max-width:600px;margin:0 auto;background-color:white;">
    <div style="background-color:#dc2626;color:white;padding:30px;text-align:center;">
      <h1 style="margin:0;font-size:28px;">{{ restaurant }}</h1>
      <p style="margin:10px 0 0 0;font-size:16px;">{{ title }}</p>
    </div>
    {% block content %}{% endblock %}
    <div style="background-color:#f8f9fa;padding:30px;margin:20px 30px;border-radius:8px;">
      <h3 style="margin:0 0 15px 0;color:#dc2626;">Questions?</h3>
      <p style="margin:0 0 10px 0;">If you have any concerns about your order, please contact us:</p>
      <div><strong>Phone:</strong> {{ phone }}<br><strong>Location:</strong> {{ address }}</div>
    </div>
    <div style="background-color:#374151;color:white;padding:30px;text-align:center;">
      <p style="margin:0;font-weight:bold;">{{ restaurant }}</p>
    </div>
  </div>
</body>
</html>
"""

_SUBSTITUTION_TEMPLATE = """{% extends "base.html" %}
{% block content %}
<div style="padding:30px;text-align:center;">
  <h2 style="margin:0 0 15px 0;color:#333;">Order #{{ notice.order_id[:8] }} Updated</h2>
  <p style="margin:0;color:#666;font-size:16px;line-height:1.5;">
  {%- if notice.kind == "item_swap" %}
    We've substituted <strong>{{ notice.original_item }}</strong> with <strong>{{ notice.new_item }}</strong> in your order.
  {%- elif notice.kind == "variant_swap" %}
    We've changed <strong>{{ notice.original_item }}</strong> to <strong>{{ notice.new_item }}</strong> in your order.
  {%- elif notice.kind == "item_removed" %}
    Unfortunately, <strong>{{ notice.original_item }}</strong> is no longer available and has been removed from your order.
  {%- elif notice.kind == "order_cancelled" %}
    Your entire order has been cancelled as <strong>{{ notice.original_item }}</strong> was the only item and is no longer available.
  {%- else %}
    {{ notice.reason or "We need to substitute an item in your order, but the replacement costs more. Please complete payment to finalize your order." }}
  {%- endif %}
  </p>
  <p style="margin:10px 0 0 0;color:#666;font-size:14px;">Updated on {{ updated_at }}</p>
</div>
{% if notice.quantity_change %}
<div style="background-color:#e0f2fe;padding:15px;margin:15px 30px;border-radius:8px;">
  <h4 style="margin:0 0 5px 0;color:#0369a1;">Quantity Updated</h4>
  <p style="margin:0;color:#0369a1;">Quantity changed from <strong>{{ notice.quantity_change.from_quantity }}</strong>
  to <strong>{{ notice.quantity_change.to_quantity }}</strong></p>
</div>
{% endif %}
{% if notice.payment_url %}
<div style="background-color:#fef3c7;padding:25px;margin:20px 30px;border-radius:8px;text-align:center;">
  <h4 style="margin:0 0 15px 0;color:#92400e;">Payment Required</h4>
  <p style="margin:0 0 20px 0;color:#92400e;">Additional payment of <strong>{{ notice.price_difference | price }}</strong> required for replacement item.</p>
  <a href="{{ notice.payment_url }}" style="display:inline-block;background-color:#dc2626;color:white;padding:15px 30px;text-decoration:none;border-radius:8px;font-weight:bold;">Complete Payment Now</a>
  <p style="margin:15px 0 0 0;color:#92400e;font-size:14px;">Your order will be prepared once payment is completed.</p>
</div>
{% elif refund_amount %}
<div style="background-color:#dcfce7;padding:20px;margin:20px 30px;border-radius:8px;">
  <h4 style="margin:0 0 10px 0;color:#166534;">Refund Processed</h4>
  <p style="margin:0;color:#166534;">A refund of {{ refund_amount | price }} has been processed and will appear in your account within 3-5 business days.</p>
</div>
{% elif charge_amount %}
<div style="background-color:#fef3c7;padding:20px;margin:20px 30px;border-radius:8px;">
  <h4 style="margin:0 0 10px 0;color:#92400e;">Additional Charge</h4>
  <p style="margin:0;color:#92400e;">An additional {{ charge_amount | price }} has been charged to your payment method due to the price difference.</p>
</div>
{% endif %}
<div style="padding:0 30px 30px;">
  <div style="background-color:#f8f9fa;padding:20px;border-radius:8px;">
  {% if notice.payment_url %}
    <p style="margin:0 0 10px 0;">Current Order Total: <strong>{{ notice.order_total | price }}</strong></p>
    <p style="margin:0 0 10px 0;">Additional Payment: <strong style="color:#f59e0b;">+{{ notice.price_difference | price }}</strong></p>
    <p style="margin:0;border-top:2px solid #dc2626;padding-top:10px;font-weight:bold;">New Total After Payment:
      <span style="color:#dc2626;">{{ (notice.new_order_total if notice.new_order_total is not none else notice.order_total + notice.price_difference) | price }}</span></p>
  {% else %}
    <p style="margin:0;font-weight:bold;">Updated Order Total: <span style="color:#dc2626;">{{ notice.order_total | price }}</span></p>
  {% endif %}
  </div>
</div>
{% endblock %}
"""

_ORDER_TEMPLATE = """{% extends "base.html" %}
{% block content %}
<div style="padding:30px;">
  <h2 style="margin:0 0 15px 0;color:#333;text-align:center;">Order #{{ order.id[:8] }}</h2>
  <p style="color:#666;text-align:center;">
  {%- if kind == "confirmation" %}
    Thank you, {{ order.customer_name or "there" }}! Your order has been received and is being prepared.
  {%- elif kind == "cancellation" %}
    Your order has been cancelled.{% if refunded %} A full refund of {{ order.total_cents | price }} has been issued.{% endif %}
  {%- else %}
    Good news! Your order is ready for pickup.
  {%- endif %}
  </p>
  <p style="color:#666;font-size:14px;text-align:center;">{{ updated_at }}</p>
  <table style="width:100%;border-collapse:collapse;margin-top:20px;">
    {% for line in lines %}
    <tr>
      <td style="padding:8px 0;border-bottom:1px solid #eee;">{{ line.quantity }} x {{ line.name }}
        {% if line.instructions %}<br><em style="color:#666;font-size:13px;">{{ line.instructions }}</em>{% endif %}</td>
      <td style="padding:8px 0;border-bottom:1px solid #eee;text-align:right;">{{ line.subtotal | price }}</td>
    </tr>
    {% endfor %}
    <tr>
      <td style="padding:12px 0;font-weight:bold;">Total</td>
      <td style="padding:12px 0;font-weight:bold;text-align:right;color:#dc2626;">{{ order.total_cents | price }}</td>
    </tr>
  </table>
  {% if order.special_requests %}<p style="margin-top:15px;"><strong>Special requests:</strong> {{ order.special_requests }}</p>{% endif %}
</div>
{% endblock %}
"""

_TITLES = {
    "item_swap": "Item Substitution",
    "variant_swap": "Variant Change",
    "item_removed": "Item Removed",
    "order_cancelled": "Order Cancelled",
    "item_swap_payment_required": "Payment Required for Replacement",
    "confirmation": "Order Confirmation",
    "cancellation": "Order Cancelled",
    "status_update": "Ready for Pickup",
}

_environment = Environment(
    loader=DictLoader(
        {
            "base.html": _BASE_TEMPLATE,
            "substitution.html": _SUBSTITUTION_TEMPLATE,
            "order.html": _ORDER_TEMPLATE,
        }
    ),
    autoescape=select_autoescape(default=True),
)
_environment.filters["price"] = format_price


def _formatted_now(timezone_name: str, now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(ZoneInfo(timezone_name))
    return moment.strftime("%A, %B %d, %Y at %I:%M %p")


def _common_context(title: str, timezone_name: str, now: datetime | None) -> dict:
    return {
        "title": title,
        "restaurant": RESTAURANT_NAME,
        "phone": RESTAURANT_PHONE,
        "address": RESTAURANT_ADDRESS,
        "updated_at": _formatted_now(timezone_name, now),
    }


def render_substitution_email(
    notice: SubstitutionNotice,
    timezone_name: str = "America/New_York",
    now: datetime | None = None,
) -> tuple[str, str]:
    """Return ``(subject, html)`` describing a substitution to the customer."""
    if notice.kind not in SUBSTITUTION_KINDS:
        raise ValueError(f"Unknown substitution kind: {notice.kind}")
    refund_amount = notice.refund_amount
    charge_amount = notice.charge_amount
    if refund_amount is None and notice.price_difference < 0:
        refund_amount = abs(notice.price_difference)
    context = _common_context(_TITLES[notice.kind], timezone_name, now)
    context.update(notice=notice, refund_amount=refund_amount, charge_amount=charge_amount)
    html = _environment.get_template("substitution.html").render(**context)
    subject = f"Order Update #{notice.order_id[:8]} - {RESTAURANT_NAME}"
    return subject, html


def render_order_email(
    kind: str,
    order: OrderRecord,
    timezone_name: str = "America/New_York",
    now: datetime | None = None,
    refunded: bool = False,
) -> tuple[str, str]:
    if kind not in ORDER_EMAIL_KINDS:
        raise ValueError(f"Unknown order email kind: {kind}")
    lines = [
        {
            "quantity": item.quantity,
            "name": display_name(
                item.menu_item_name, item.unit_price_cents, item.custom_name, item.variant_name
            ),
            "instructions": item.special_instructions,
            "subtotal": item.subtotal_cents,
        }
        for item in order.items
    ]
    context = _common_context(_TITLES[kind], timezone_name, now)
    context.update(kind=kind, order=order, lines=lines, refunded=refunded)
    html = _environment.get_template("order.html").render(**context)
    subject = f"{_TITLES[kind]} #{order.id[:8]} - {RESTAURANT_NAME}"
    return subject, html


class NotificationDispatcher:
    """Writes customer emails to the notifications outbox and delivers them best effort.

    A failed delivery never propagates: the row stays ``failed`` until
    :meth:`dispatch_pending` succeeds.
    """

    def __init__(
        self,
        repository: NotificationRepository,
        mailer: Mailer,
        *,
        restaurant_email: str,
        production: bool = False,
        timezone_name: str = "America/New_York",
    ):
        self._repo = repository
        self._mailer = mailer
        self._restaurant_email = restaurant_email
        self._production = production
        self._timezone_name = timezone_name

    def notify_substitution(self, order: OrderRecord, notice: SubstitutionNotice) -> NotificationRecord:
        if not order.customer_email:
            logger.info("Order %s has no customer email; %s notice not sent", order.id, notice.kind)
            return self._repo.add(order.id, "email", notice.kind, None, asdict(notice), status="logged")
        subject, html = render_substitution_email(notice, self._timezone_name)
        return self._enqueue_and_deliver(order, notice.kind, subject, html, asdict(notice))

    def notify_order(self, kind: str, order: OrderRecord, refunded: bool = False) -> NotificationRecord:
        if not order.customer_email:
            logger.info("Order %s has no customer email; %s email not sent", order.id, kind)
            return self._repo.add(order.id, "email", kind, None, None, status="logged")
        subject, html = render_order_email(kind, order, self._timezone_name, refunded=refunded)
        return self._enqueue_and_deliver(order, kind, subject, html, {"total_cents": order.total_cents})

    def record_payment_event(
        self, order_id: str, channel: str, event: str, recipient: str | None, details: dict
    ) -> NotificationRecord:
        return self._repo.add(order_id, channel, event, recipient, details, status="logged")

    def find_payment_event(self, order_id: str, event: str, session_id: str) -> NotificationRecord | None:
        for record in self._repo.list_for_order(order_id):
            if record.event == event and (record.payload or {}).get("session_id") == session_id:
                return record
        return None

    def dispatch_pending(self, limit: int = 100) -> int:
        delivered = 0
        for record in self._repo.list_undelivered(limit=limit):
            if self._deliver(record) == "sent":
                delivered += 1
        return delivered

    def _enqueue_and_deliver(
        self, order: OrderRecord, event: str, subject: str, html: str, details: dict
    ) -> NotificationRecord:
        recipients = self._recipients(order.customer_email)
        if not self._production:
            subject = f"[DEV] {subject}"
        payload = {"to": recipients, "subject": subject, "html": html, "details": details}
        record = self._repo.add(order.id, "email", event, order.customer_email, payload)
        status = self._deliver(record)
        return replace(record, status=status)

    def _deliver(self, record: NotificationRecord) -> str:
        payload = record.payload or {}
        try:
            message_id = self._mailer.send(payload["to"], payload["subject"], payload["html"])
        except MailerError as exc:
            logger.warning("Email %s for order %s failed: %s", record.event, record.order_id, exc)
            self._repo.mark(record.id, "failed", str(exc))
            return "failed"
        logger.info("Email %s for order %s sent (%s)", record.event, record.order_id, message_id)
        self._repo.mark(record.id, "sent")
        return "sent"

    def _recipients(self, customer_email: str) -> List[str]:
        if self._production:
            return [customer_email, self._restaurant_email]
        return [self._restaurant_email]
