from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class LedgerValidationError(ValidationError):
    """Missing or invalid input on a ledger operation. Recoverable by the caller."""


class NotFoundError(NotFound):
    """A referenced order, material, delivery or production record does not exist."""

    default_detail = "Referenced record was not found."


class PersistenceError(APIException):
    """The store rejected a write. The transaction was rolled back; retry the whole operation."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "The ledger could not persist this operation. Nothing was applied; retry it."
    default_code = "persistence_error"


class ConsistencyError(APIException):
    """Stock Account disagrees with the Movement Log. Flagged for repair, never fixed inline."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Stock balance does not match the movement log."
    default_code = "consistency_error"

    def __init__(self, detail=None, code=None, *, material_id=None, current_stock=None, log_balance=None):
        super().__init__(detail=detail, code=code)
        self.material_id = material_id
        self.current_stock = current_stock
        self.log_balance = log_balance


EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
    PersistenceError: "persistence_error",
    ConsistencyError: "consistency_error",
}


def _envelope(code: str, message: str, errors: Any, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    """Wrap every API error in the ledger's ``{code, message, errors, status}`` envelope."""
    response = drf_exception_handler(exc, context)

    if response is None:
        view = context.get("view")
        logger.exception("unhandled_api_exception view=%s", view.__class__.__name__ if view else "unknown")
        return Response(
            _envelope("internal_server_error", GENERIC_SERVER_ERROR_MESSAGE, None, status.HTTP_500_INTERNAL_SERVER_ERROR),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if isinstance(exc, ConsistencyError):
        errors = {
            "material_id": str(exc.material_id) if exc.material_id else None,
            "current_stock": str(exc.current_stock) if exc.current_stock is not None else None,
            "log_balance": str(exc.log_balance) if exc.log_balance is not None else None,
        }
    else:
        errors = _normalize_errors(response.data)

    response.data = _envelope(_error_code(exc), _error_message(exc, response.data), errors, response.status_code)
    return response


def _error_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code
    return str(getattr(exc, "default_code", "api_error"))


def _error_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."
    if isinstance(data, Mapping) and data.get("detail"):
        return str(data["detail"])
    return str(getattr(exc, "detail", GENERIC_SERVER_ERROR_MESSAGE))


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        return None if set(data) == {"detail"} else data
    if isinstance(data, Sequence) and not isinstance(data, str):
        return data
    return None
