import logging
from urllib.parse import urlencode

from django.conf import settings
from django.http import JsonResponse
from django.shortcuts import redirect
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from orders.models import PaymentMethod
from orders.serializers import serialize_order
from storefront.container import get_services
from storefront.errors import Forbidden, StoreError, ValidationFailed
from storefront.http import api_login_required, json_body, staff_required

from .gateways import Outcome
from .serializers import serialize_payment

logger = logging.getLogger(__name__)


def _frontend(path: str, **params) -> str:
    query = urlencode({k: v for k, v in params.items() if v})
    return f"{settings.FRONTEND_URL}{path}" + (f"?{query}" if query else "")


def _require(body: dict, *fields):
    missing = [k for k in fields if not body.get(k)]
    if missing:
        raise ValidationFailed(f"Missing fields: {', '.join(missing)}", missing=missing)


@csrf_exempt
@api_login_required
@require_POST
def initiate_payment_view(request):
    body = json_body(request)
    _require(body, "order_id", "method")
    payment, initiation = get_services().payment_service.initiate(
        user=request.user,
        order_id=body["order_id"],
        method=body["method"],
        return_url=body.get("return_url", ""),
        requester_is_admin=request.user.is_staff,
    )
    return JsonResponse({"ok": True, "payment": serialize_payment(payment), **initiation.as_dict()})


@csrf_exempt
@api_login_required
@require_POST
def initiate_with_order_view(request):
    body = json_body(request)
    _require(body, "method", "order")
    payment, initiation = get_services().payment_service.initiate_with_draft(
        user=request.user,
        method=body["method"],
        draft=body["order"],
        return_url=body.get("return_url", ""),
    )
    return JsonResponse({"ok": True, "payment": serialize_payment(payment), **initiation.as_dict()})


@csrf_exempt
@api_login_required
@require_POST
def cod_process_view(request):
    body = json_body(request)
    _require(body, "order_id")
    payment, _ = get_services().payment_service.process_cash_on_delivery(
        user=request.user, order_id=body["order_id"], requester_is_admin=request.user.is_staff
    )
    return JsonResponse({"ok": True, "payment": serialize_payment(payment), "status": "PENDING_COLLECTION"})


@csrf_exempt
@api_login_required
@require_POST
def verify_payment_view(request):
    """Client-triggered lookup. The answer always comes from the provider."""
    body = json_body(request)
    correlation_id = body.get("correlation_id") or body.get("pidx") or body.get("transaction_uuid")
    if not correlation_id:
        raise ValidationFailed("Missing fields: correlation_id", missing=["correlation_id"])
    services = get_services()
    payment = services.payments.get_by_external_id(correlation_id)
    if not request.user.is_staff and payment.user_id != request.user.pk:
        raise Forbidden("You do not have access to this payment")
    result = services.reconciliation.reconcile(correlation_id)
    return JsonResponse({
        "ok": True,
        "outcome": result.outcome.value,
        "changed": result.changed,
        "payment": serialize_payment(result.payment),
    })


def _callback_redirect(method, payload):
    try:
        result = get_services().reconciliation.handle_callback(method, payload)
    except StoreError as e:
        logger.warning("%s callback rejected: %s", method, e.message)
        return redirect(_frontend("/payment/failed", error=e.code))

    payment = result.payment
    order_ref = str(payment.order_id) if payment.order_id else ""
    if result.outcome == Outcome.COMPLETED:
        return redirect(_frontend("/order-success", orderId=order_ref, payment=method.lower()))
    if result.outcome == Outcome.PENDING:
        return redirect(_frontend("/payment/pending", orderId=order_ref, paymentId=str(payment.pk)))
    return redirect(_frontend("/payment/failed", orderId=order_ref, status=payment.failure_reason or payment.status))


@require_GET
def khalti_callback_view(request):
    return _callback_redirect(PaymentMethod.KHALTI, request.GET.dict())


@csrf_exempt
@require_GET
def esewa_success_view(request):
    return _callback_redirect(PaymentMethod.ESEWA, request.GET.dict())


@api_login_required
@require_GET
def order_payments_view(request, order_id):
    order, payments = get_services().payment_service.payments_for_order(
        user=request.user, order_id=order_id, requester_is_admin=request.user.is_staff
    )
    return JsonResponse({
        "ok": True,
        "order": serialize_order(order, include_items=False),
        "payments": [serialize_payment(p) for p in payments],
    })


@csrf_exempt
@staff_required
@require_POST
def collect_payment_view(request, payment_id):
    payment = get_services().payment_service.collect_cash(payment_id=payment_id, requester_is_admin=request.user.is_staff)
    return JsonResponse({"ok": True, "payment": serialize_payment(payment)})


@csrf_exempt
@staff_required
@require_POST
def refund_payment_view(request, payment_id):
    body = json_body(request)
    payment = get_services().payment_service.refund(
        payment_id=payment_id,
        requester_is_admin=request.user.is_staff,
        reason=body.get("reason", ""),
        amount=body.get("amount"),
    )
    return JsonResponse({"ok": True, "payment": serialize_payment(payment)})
