"""
shared/exceptions.py
Named application errors. Each maps to one HTTP status so FastAPI renders
them directly; the Socket.IO layer turns them into scoped `error` events.
"""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base exception for application errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be processed"

    def __init__(
        self,
        detail: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=self.status_code,
            detail=detail or self.default_detail,
            headers=headers,
        )

    @property
    def message(self) -> str:
        return str(self.detail)


class NotFoundError(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class AuthenticationError(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Authentication required"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class ForbiddenError(AppException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Access denied"


class BookingStateError(AppException):
    """The booking is in a state that does not allow the requested operation."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Operation not allowed in the current booking state"


class InvalidTransitionError(BookingStateError):
    def __init__(self, current, target, action: Optional[str] = None):
        self.current = current
        self.target = target
        verb = action or f"move to {_value(target)}"
        super().__init__(f"Cannot {verb} booking in {_value(current)} state")


class ConflictError(AppException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Resource was modified concurrently"


class ValidationFailure(AppException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Validation failed"

    def __init__(self, detail: Optional[str] = None, errors: Optional[List[dict]] = None):
        self.errors = errors or []
        super().__init__(detail)
        if self.errors:
            self.detail = [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
                for e in self.errors
            ]

    @property
    def message(self) -> str:
        if not self.errors:
            return str(self.detail)
        first = self.errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        return f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "")


def _value(status_or_str) -> str:
    return getattr(status_or_str, "value", status_or_str)
