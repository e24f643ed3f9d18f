from django.http import JsonResponse


def error_404_view(request, exception):
    # API clients get JSON instead of an HTML page
    return JsonResponse({"ok": False, "error": "Not found", "code": "not_found", "path": request.path}, status=404)
