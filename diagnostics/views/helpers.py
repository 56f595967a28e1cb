"""
Shared utilities and helper functions used across views.
"""

from __future__ import annotations

import functools
import json
import logging
from typing import Any, Dict, Tuple

from django.http import JsonResponse

from training.exceptions import TrainingError, Unauthenticated, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10 MB

ALLOWED_CONTENT_TYPES = frozenset({
    "image/jpeg",
    "image/png",
})

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

def success(data: Any, status: int = 200) -> JsonResponse:
    return JsonResponse({"status": "success", "data": data}, status=status)


def error_response(kind: str, message: str, status: int) -> JsonResponse:
    return JsonResponse(
        {"status": "error", "error": {"kind": kind, "message": message}},
        status=status,
    )


def api_view(func):
    """Turn ``TrainingError`` into a structured error body.

    Anything else is logged with its traceback and answered with a bare
    ``InternalError``; stack traces never reach the client.
    """
    @functools.wraps(func)
    def wrapper(request, *args, **kwargs):
        try:
            return func(request, *args, **kwargs)
        except TrainingError as exc:
            return error_response(exc.kind, exc.message, exc.status_code)
        except Exception:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return error_response("InternalError", "Internal server error", 500)
    return wrapper


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def bearer_identity(request, *, required: bool = False) -> str:
    """Return the identity from ``Authorization: Bearer <identity>``.

    Raises ``Unauthenticated`` when *required* and the header is absent.
    """
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    identity = token.strip() if scheme.lower() == "bearer" else ""
    if required and not identity:
        raise Unauthenticated("Authorization: Bearer <identity> header required")
    return identity


def parse_json_body(request) -> Dict[str, Any]:
    """Parse a JSON object body; ``ValidationError`` on malformed input."""
    if not request.body:
        return {}
    try:
        body = json.loads(request.body)
    except (json.JSONDecodeError, ValueError):
        raise ValidationError("Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def safe_positive_int(value: Any, default: int) -> int:
    """Coerce *value* to a positive int, falling back to *default*."""
    try:
        n = int(value)
        return n if n > 0 else default
    except (TypeError, ValueError):
        return default


def page_params(request) -> Tuple[int, int]:
    page = safe_positive_int(request.GET.get("page"), 1)
    limit = min(safe_positive_int(request.GET.get("limit"), DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
    return page, limit


def paginate(queryset, page: int, per_page: int) -> Tuple[list, Dict[str, int]]:
    """Slice *queryset* into a page and return ``(page_items, pagination)``."""
    total = queryset.count()
    pages = (total + per_page - 1) // per_page if total > 0 else 0
    start = (page - 1) * per_page
    items = list(queryset[start : start + per_page])
    return items, {"total": total, "page": page, "pages": pages, "limit": per_page}
