"""Common FastAPI dependencies for caller identity and service access."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import AuthenticationException, BadRequestError
from app.db.session import get_db
from app.models.enums import UserRole
from app.models.user import User
from app.services.notifications_service import NotificationService


def get_current_user(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    # The hosted backend authenticates the session and forwards the user id.
    raw = (x_user_id or "").strip()
    if not raw:
        raise AuthenticationException(
            "not_authenticated",
            error_code="NOT_AUTHENTICATED",
            status_code=401,
        )
    try:
        user_id = UUID(raw)
    except ValueError:
        raise AuthenticationException(
            "invalid_user_id",
            error_code="INVALID_USER_ID",
            status_code=401,
        )

    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise AuthenticationException(
            "user_not_found",
            error_code="USER_NOT_FOUND",
            status_code=401,
        )
    return user


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


def require_automation_secret(
    x_automation_secret: str | None = Header(default=None, alias="X-Automation-Secret"),
) -> None:
    configured = settings.AUTOMATION_SECRET.strip()
    if not configured:
        raise BadRequestError("automation_secret_not_configured")
    if (x_automation_secret or "").strip() != configured:
        raise AuthenticationException("invalid_automation_secret", error_code="INVALID_AUTOMATION_SECRET", status_code=401)


NOTIFY_OTHERS_ROLES = {UserRole.admin.value, UserRole.manager.value}


def can_notify_user(user: User, target_user_id: UUID) -> bool:
    return target_user_id == user.id or user.role in NOTIFY_OTHERS_ROLES
