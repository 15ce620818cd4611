import os
from decimal import Decimal
from typing import Dict, Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.logging import get_logger
from models.order import Order
from tasks.email_tasks import send_email_task

logger = get_logger(__name__)

# Jinja2 environment for email templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
)


def send_email(to_email: str, subject: str, body: str) -> None:
    """
    Queue an email on Celery and return immediately.

    Delivery is best-effort: a broker failure is logged and swallowed so the
    calling request never fails because of a notification.
    """
    try:
        send_email_task.delay(to_email, subject, body)
        logger.info("Email task queued for %s: %s", to_email, subject)
    except Exception:
        logger.exception("Failed to queue email to %s: %s", to_email, subject)


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def send_templated_email(to_email: str, subject: str, template_path: str, context: Dict[str, Any]) -> None:
    """Render a template and send email via existing send_email path."""
    try:
        body = render_template(template_path, context)
    except Exception:
        logger.exception("Failed to render %s for %s", template_path, to_email)
        return
    send_email(to_email, subject, body)


def order_summary(order: Order) -> Dict[str, Any]:
    address = order.shipping_address or {}
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "items": [
            {"name": item.name, "quantity": item.quantity, "price": item.unit_price, "subtotal": item.subtotal}
            for item in order.items
        ],
        "subtotal": order.subtotal,
        "discount": order.discount_amount or Decimal("0.00"),
        "tax": order.tax_amount or Decimal("0.00"),
        "shipping": order.shipping_cost,
        "total": order.total,
        "currency": order.currency,
        "shipping_address": {
            "full_name": address.get("full_name", ""),
            "street": address.get("address_line1", ""),
            "city": address.get("city", ""),
            "state": address.get("state", ""),
            "postal_code": address.get("postal_code", ""),
            "country": address.get("country", ""),
        },
    }


def send_order_confirmation(email: str, summary: Dict[str, Any]) -> None:
    send_templated_email(
        email,
        f"Order confirmation {summary['order_number']}",
        "emails/order_confirmation.txt",
        summary,
    )


def send_shipping_notification(email: str, tracking_info: Dict[str, Any]) -> None:
    send_templated_email(
        email,
        f"Your order {tracking_info['order_number']} has shipped",
        "emails/shipping_notification.txt",
        tracking_info,
    )
