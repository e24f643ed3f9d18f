import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    # PAYMENTS_ADMIN_EMAILS is comma-separated; without it the sender mailbox gets the copy
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", "") or ""
    candidates = raw.split(",") if raw.strip() else [
        getattr(settings, "EMAIL_HOST_USER", "") or "",
        getattr(settings, "DEFAULT_FROM_EMAIL", "") or "",
    ]
    recipients: List[str] = []
    for address in (c.strip() for c in candidates):
        if address and address.lower() not in {r.lower() for r in recipients}:
            recipients.append(address)
    return recipients


def _context(payment) -> dict:
    order = payment.order
    return {
        "payment_id": str(payment.pk),
        "order_id": str(order.pk) if order else "",
        "method": payment.get_method_display(),
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "external_id": payment.external_id or "",
        "transaction_id": payment.transaction_id,
        "customer_name": payment.user.get_full_name() or payment.user.get_username(),
        "customer_email": payment.user.email,
        "items": list(order.items.all()) if order else [],
        "frontend_url": getattr(settings, "FRONTEND_URL", ""),
    }


def _send(template: str, subject: str, recipients: List[str], context: dict) -> None:
    sender = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
    message = EmailMultiAlternatives(
        subject, render_to_string(f"emails/{template}.txt", context), sender, recipients
    )
    message.attach_alternative(render_to_string(f"emails/{template}.html", context), "text/html")
    message.send(fail_silently=_fail_silently())


def send_payment_confirmation(*, payment) -> None:
    """Send a receipt to the customer and a notification to admins for a settled payment.

    Never raises; failures are logged.
    """
    try:
        context = _context(payment)
    except Exception:
        logger.exception("Could not build payment email context for payment=%s", getattr(payment, "pk", None))
        return

    ref = (context["order_id"] or context["payment_id"])[:8]
    amount = f"{payment.currency} {payment.amount}"

    if context["customer_email"]:
        try:
            _send("payment_receipt_customer", f"Payment received: order {ref} - {amount}",
                  [context["customer_email"]], context)
        except Exception:
            logger.exception("Failed to send payment receipt to %s", context["customer_email"])

    admins = _admin_recipients()
    if admins:
        try:
            _send("payment_notification_admin", f"New payment: order {ref} - {amount} ({payment.method})",
                  admins, context)
        except Exception:
            logger.exception("Failed to send payment admin notification for %s", payment.pk)
