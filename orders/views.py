from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from storefront.container import get_services
from storefront.errors import ValidationFailed
from storefront.http import api_login_required, json_body, page_params, staff_required

from .serializers import serialize_order


@csrf_exempt
@api_login_required
@require_http_methods(["GET", "POST"])
def orders_view(request):
    if request.method == "POST":
        return _create_order(request)

    page, page_size = page_params(request)
    filters = {k: request.GET.get(k) for k in ("status", "payment_status", "payment_method")}
    user_filter = request.GET.get("user")
    if user_filter:
        try:
            filters["user"] = int(user_filter)
        except ValueError:
            raise ValidationFailed("user must be an integer id", field="user")
    result = get_services().orders.list_orders(
        request.user.pk, request.user.is_staff, filters=filters, page=page, page_size=page_size
    )
    result["results"] = [serialize_order(o) for o in result["results"]]
    return JsonResponse({"ok": True, **result})


def _create_order(request):
    body = json_body(request)
    order = get_services().orders.create_order(
        user=request.user,
        items=body.get("items"),
        shipping_address=body.get("shipping_address"),
        payment_method=body.get("payment_method"),
        shipping_cost=body.get("shipping_cost", 0),
        discount_amount=body.get("discount_amount", 0),
        notes=body.get("notes", ""),
    )
    return JsonResponse({"ok": True, "order": serialize_order(order)}, status=201)


@csrf_exempt
@api_login_required
@require_http_methods(["GET", "DELETE"])
def order_detail_view(request, order_id):
    ledger = get_services().orders
    if request.method == "DELETE":
        ledger.delete_order(order_id, request.user.pk, request.user.is_staff)
        return JsonResponse({"ok": True, "deleted": str(order_id)})

    order = ledger.get_order(order_id, request.user.pk, request.user.is_staff)
    payments = order.payments.order_by("-created_at")
    return JsonResponse({"ok": True, "order": serialize_order(order, payments=payments)})


@csrf_exempt
@staff_required
@require_POST
def order_status_view(request, order_id):
    body = json_body(request)
    order = get_services().orders.update_status(
        order_id,
        body.get("status"),
        requester_is_admin=request.user.is_staff,
        admin_notes=body.get("admin_notes"),
        tracking_number=body.get("tracking_number"),
    )
    return JsonResponse({"ok": True, "order": serialize_order(order, include_items=False)})


@staff_required
@require_GET
def order_stats_view(request):
    stats = get_services().orders.statistics()
    stats["revenue"] = str(stats["revenue"])
    return JsonResponse({"ok": True, "stats": stats})
