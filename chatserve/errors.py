"""Structured service errors carrying a domain, a type tag and extra data."""

from __future__ import annotations

import json
import traceback
from typing import Any

SERVICE_NAME = "chatserve"
COMMON_DOMAIN = "common"
USER_DOMAIN = "user"

BAD_REQUEST_ERROR_TYPE = "BadRequestError"
DATABASE_ERROR_TYPE = "DatabaseError"
FORBIDDEN_ERROR_TYPE = "ForbiddenError"
NOT_FOUND_ERROR_TYPE = "NotFoundError"
UNAUTHORIZED_ERROR_TYPE = "UnauthorizedError"
UNDEFINED_ERROR_TYPE = "UndefinedError"
VALIDATION_ERROR_TYPE = "ValidationError"
USER_NOT_FOUND_ERROR_TYPE = "UserNotFoundError"


def _stack_of(err: BaseException) -> str:
    if err.__traceback__ is not None:
        return "".join(traceback.format_exception(type(err), err, err.__traceback__))
    return "".join(traceback.format_stack())


class ErrorData(Exception):
    """Base error: serialises to JSON with domain, type, data and dev details."""

    def __init__(
        self,
        domain: str,
        error_type: str,
        err: BaseException | None,
        data: dict[str, Any] | None,
        *args: str,
    ) -> None:
        super().__init__()
        if data is None:
            data = {}
        if err is not None:
            data["stack"] = _stack_of(err)
            data["errorMessage"] = str(err)
        self.domain = domain
        self.error_type = error_type
        self.data = data
        self.dev_details: list[str] = list(args)

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "type": self.error_type,
            "data": self.data,
            "devDetails": list(self.dev_details) or None,
        }

    def __str__(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def truncate_error_data(error_data: ErrorData) -> dict[str, Any]:
    """Drop the error message and stack from the data and return the short form."""
    error_data.data.pop("errorMessage", None)
    error_data.data.pop("stack", None)
    return {
        "domain": error_data.domain,
        "type": error_data.error_type,
        "data": error_data.data,
    }


class BadRequestError(ErrorData):
    def __init__(self, domain, err, data, *args):
        super().__init__(domain, BAD_REQUEST_ERROR_TYPE, err, data, *args)


class DatabaseError(ErrorData):
    def __init__(self, domain, err, *args):
        super().__init__(domain, DATABASE_ERROR_TYPE, err, None, *args)


class ForbiddenError(ErrorData):
    def __init__(self):
        super().__init__(COMMON_DOMAIN, FORBIDDEN_ERROR_TYPE, None, None)


class NotFoundError(ErrorData):
    def __init__(self, domain):
        super().__init__(domain, NOT_FOUND_ERROR_TYPE, None, None)


class UnauthorizedError(ErrorData):
    def __init__(self, *args):
        super().__init__(COMMON_DOMAIN, UNAUTHORIZED_ERROR_TYPE, None, None, *args)


class UndefinedError(ErrorData):
    def __init__(self, err, *args):
        super().__init__(COMMON_DOMAIN, UNDEFINED_ERROR_TYPE, err, None, *args)


class ValidationError(ErrorData):
    def __init__(self, domain, err, data, *args):
        super().__init__(domain, VALIDATION_ERROR_TYPE, err, data, *args)


class UserNotFoundError(ErrorData):
    def __init__(self, data):
        super().__init__(USER_DOMAIN, USER_NOT_FOUND_ERROR_TYPE, None, data)