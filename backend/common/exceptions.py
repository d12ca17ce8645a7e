# backend/common/exceptions.py
"""
Error types shared by the support and CMS apps, plus the DRF exception handler
that renders every API error as:

    {"success": false, "message": "...", "errors": {"<field>": ["..."]}}
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import APIException, ValidationError
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class BusinessRuleError(APIException):
    """A request that is well-formed but violates a domain rule."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "The request violates a business rule."
    default_code = "business_rule"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None,
                 errors: Optional[Dict[str, List[str]]] = None):
        self.message = message or str(self.default_detail)
        self.field = field
        self.errors = errors or ({field: [self.message]} if field else {})
        super().__init__(detail=self.message)


class TreeCycleError(BusinessRuleError):
    default_code = "circular_reference"


class TreeDepthError(BusinessRuleError):
    default_code = "tree_too_deep"


class ResourceInUseError(BusinessRuleError):
    default_code = "in_use"


class RedirectLoopError(BusinessRuleError):
    default_code = "redirect_loop"


def _flatten(detail: Any) -> Dict[str, List[str]]:
    if isinstance(detail, dict):
        out: Dict[str, List[str]] = {}
        for key, value in detail.items():
            if isinstance(value, (list, tuple)):
                out[str(key)] = [str(v) for v in value]
            elif isinstance(value, dict):
                for sub, msgs in _flatten(value).items():
                    out[f"{key}.{sub}"] = msgs
            else:
                out[str(key)] = [str(value)]
        return out
    if isinstance(detail, (list, tuple)):
        return {"non_field_errors": [str(v) for v in detail]}
    return {}


def api_exception_handler(exc, context):
    if isinstance(exc, DjangoValidationError):
        exc = ValidationError(detail=exc.message_dict if hasattr(exc, "error_dict") else exc.messages)

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, BusinessRuleError):
        message, errors = exc.message, exc.errors
    elif isinstance(exc, ValidationError):
        errors = _flatten(exc.detail)
        message = "The given data was invalid."
    elif isinstance(exc, Http404):
        message, errors = "Not found.", {}
    else:
        detail = getattr(exc, "detail", None)
        message = str(detail) if detail is not None and not isinstance(detail, (dict, list)) else str(exc)
        errors = _flatten(detail) if isinstance(detail, (dict, list)) else {}

    if response.status_code >= 500:
        logger.error("api error %s: %s", response.status_code, message)

    response.data = {"success": False, "message": message, "errors": errors}
    return response
