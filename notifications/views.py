from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.cache import never_cache
from django.views.decorators.http import require_GET

from storefront.http import api_login_required

from .auth import issue_token


@never_cache
@api_login_required
@require_GET
def socket_token_view(request):
    return JsonResponse({
        "ok": True,
        "token": issue_token(request.user),
        "expires_in": getattr(settings, "NOTIFICATIONS_TOKEN_TTL", 300),
        "path": "/ws/orders/",
    })
