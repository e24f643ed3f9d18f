import json
from functools import wraps

from django.http import JsonResponse

from .errors import ValidationFailed


def json_body(request) -> dict:
    """Decode a JSON object body or raise ``ValidationFailed``."""
    try:
        body = json.loads(request.body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise ValidationFailed("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationFailed("JSON body must be an object")
    return body


def api_login_required(view):
    """Like ``login_required`` but answers 401 JSON instead of redirecting."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"ok": False, "error": "Authentication required", "code": "unauthenticated"}, status=401)
        return view(request, *args, **kwargs)
    return wrapper


def staff_required(view):
    @wraps(view)
    @api_login_required
    def wrapper(request, *args, **kwargs):
        if not request.user.is_staff:
            return JsonResponse({"ok": False, "error": "Admin access required", "code": "forbidden"}, status=403)
        return view(request, *args, **kwargs)
    return wrapper


def page_params(request, default_size=10, max_size=100):
    # Very light pagination, bad values fall back to defaults
    try:
        page = int(request.GET.get("page", "1"))
    except ValueError:
        page = 1
    try:
        size = int(request.GET.get("page_size", str(default_size)))
    except ValueError:
        size = default_size
    return max(page, 1), min(max(size, 1), max_size)
