"""
Centralized error handling for the authentication and account security flows.

Every user-facing failure is raised as an AuthFlowError subclass so that the
status code, message and any recovery data (locked-until, retry-after,
remaining attempts) are rendered the same way across endpoints.
"""

from typing import Any, Dict, Optional
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.core.logging import app_logger, security_logger


class AuthFlowError(HTTPException):
    """Base for expected failures of the auth flows, with extra response fields."""

    default_status = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        detail: str,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(
            status_code=status_code or self.default_status,
            detail=detail,
            headers=headers,
        )
        self.extra = extra or {}


class ValidationError(AuthFlowError):
    """Malformed or missing input, raised before any store access."""

    default_status = status.HTTP_400_BAD_REQUEST


class AuthenticationError(AuthFlowError):
    """Wrong credentials or unknown email. Message stays generic."""

    default_status = status.HTTP_401_UNAUTHORIZED


class AccountStatusError(AuthFlowError):
    """Suspended, deleted or otherwise unusable account."""

    default_status = status.HTTP_403_FORBIDDEN


class LockedError(AuthFlowError):
    """Account lock (423) or IP block (429), with recovery guidance."""

    default_status = status.HTTP_423_LOCKED

    def __init__(self, detail: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(detail, status_code=status_code, **kwargs)
        security_logger.warning(
            f"Lockout response: {detail}",
            extra={"event_type": "lockout_response", "status_code": self.status_code},
        )


class TokenError(AuthFlowError):
    """Expired, used or invalid unlock / setup / challenge token."""

    default_status = status.HTTP_401_UNAUTHORIZED


class NotFoundError(AuthFlowError):
    default_status = status.HTTP_404_NOT_FOUND


class ConflictError(AuthFlowError):
    """Duplicate registration or an external identity linked elsewhere."""

    default_status = status.HTTP_409_CONFLICT


class InfrastructureError(AuthFlowError):
    """Store or provider failure. Callers only ever see a generic message."""

    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class EmailDeliveryError(Exception):
    """The notifier could not hand the message to the mail transport."""


async def auth_flow_error_handler(request: Request, exc: AuthFlowError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        app_logger.error(
            f"API Error: {exc.detail}",
            extra={
                "status_code": exc.status_code,
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
            },
        )
    content = {"message": exc.detail, "detail": exc.detail, **exc.extra}
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(content),
        headers=exc.headers,
    )


def setup_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthFlowError, auth_flow_error_handler)
