import logging

from django.http import JsonResponse

from .errors import StoreError

logger = logging.getLogger(__name__)


class StoreErrorMiddleware:
    """Render domain errors that escape a view as JSON responses."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if not isinstance(exception, StoreError):
            return None
        if exception.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, exception.message)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.path, exception.code, exception.message)
        return JsonResponse(exception.as_dict(), status=exception.status_code)
