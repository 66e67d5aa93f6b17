"""Notifications API endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Body, Depends, Path, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import can_notify_user, get_current_user, get_notification_service, require_automation_secret
from app.core.exceptions import InsufficientPermissionsError, NotFoundError
from app.db.session import get_db
from app.models.user import User
from app.schemas.notification import (
    BulkActionOut,
    CreateNotificationOut,
    DedupEntryOut,
    DedupLedgerOut,
    HealthMetricsOut,
    HealthSweepOut,
    HealthSweepRequest,
    MaintenanceOut,
    NotificationActionOut,
    NotificationCreate,
    NotificationOut,
    NotificationPage,
    UnreadCountOut,
)
from app.services.health_sweep import run_health_sweep
from app.services.notifications_service import NotificationService

router = APIRouter()


@router.get("/", response_model=NotificationPage)
def get_notifications(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    unread_only: bool = Query(default=False),
    category: str | None = Query(default=None, max_length=32),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationPage:
    return service.list_notifications(
        db,
        current_user.id,
        limit=limit,
        offset=offset,
        unread_only=unread_only,
        category=category,
    )


@router.get("/unread-count", response_model=UnreadCountOut)
def get_unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> UnreadCountOut:
    return UnreadCountOut(count=service.get_unread_count(db, current_user.id))


@router.post("/", response_model=CreateNotificationOut)
def post_notification(
    payload: NotificationCreate = Body(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> CreateNotificationOut:
    target_user_id = payload.user_id or current_user.id
    if not can_notify_user(current_user, target_user_id):
        raise InsufficientPermissionsError("cannot_notify_other_users")
    if payload.user_id and not db.get(User, payload.user_id):
        raise NotFoundError("user_not_found", details={"user_id": str(payload.user_id)})
    record = service.create_notification(
        db,
        user_id=target_user_id,
        title=payload.title,
        message=payload.message,
        type=payload.type,
        priority=payload.priority,
        category=payload.category,
        metadata=payload.metadata,
    )
    if record is None:
        return CreateNotificationOut(created=False, notification=None)
    return CreateNotificationOut(created=True, notification=NotificationOut.model_validate(record))


@router.post("/read-all", response_model=BulkActionOut)
def read_all_notifications(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> BulkActionOut:
    return BulkActionOut(**service.mark_all_as_read(db, current_user.id))


@router.post("/dismiss-all", response_model=BulkActionOut)
def dismiss_all_notifications(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> BulkActionOut:
    return BulkActionOut(**service.dismiss_all(db, current_user.id))


@router.post("/{notification_id}/read", response_model=NotificationActionOut)
def read_notification(
    notification_id: UUID = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationActionOut:
    return NotificationActionOut(**service.mark_as_read(db, notification_id, current_user.id))


@router.post("/{notification_id}/dismiss", response_model=NotificationActionOut)
def dismiss_notification(
    notification_id: UUID = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationActionOut:
    return NotificationActionOut(**service.dismiss(db, notification_id, current_user.id))


@router.post("/health-sweep", response_model=HealthSweepOut, dependencies=[Depends(require_automation_secret)])
def post_health_sweep(
    payload: HealthSweepRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    service: NotificationService = Depends(get_notification_service),
) -> HealthSweepOut:
    payload = payload or HealthSweepRequest()
    users = None
    if payload.user_ids:
        users = list(db.execute(select(User).where(User.id.in_(payload.user_ids))).scalars().all())
    result = run_health_sweep(db, service, users, force=payload.force)
    return HealthSweepOut(**vars(result))


@router.post("/maintenance/cleanup", response_model=MaintenanceOut, dependencies=[Depends(require_automation_secret)])
def post_maintenance_cleanup(
    db: Session = Depends(get_db),
    service: NotificationService = Depends(get_notification_service),
) -> MaintenanceOut:
    return MaintenanceOut(
        dismissed_removed=service.cleanup_dismissed(db, settings.DISMISSED_RETENTION_DAYS),
        ledger_removed=service.cleanup_ledger(db, settings.DEDUP_RETENTION_DAYS),
    )


@router.get("/dedup", response_model=DedupLedgerOut)
def get_dedup_ledger(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> DedupLedgerOut:
    entries = service.ledger_stats(db, current_user.id)
    return DedupLedgerOut(entries=[DedupEntryOut(**entry) for entry in entries])


@router.get("/health-metrics", response_model=HealthMetricsOut)
def get_health_metrics(
    service: NotificationService = Depends(get_notification_service),
) -> HealthMetricsOut:
    return HealthMetricsOut(**service.get_health_metrics())
