"""Notification creation, reads and read-state updates.

``NotificationService`` owns the per-process state of the notification
pipeline: the read cache, the running metrics and the background tasks.
Deduplication decisions are delegated to an ``AdmissionStore`` so that the
"should this be sent" question is answered atomically by the store and never
by a read followed by a write in this process.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import PrimitiveUnavailable, StoreError, ValidationError
from app.core.sanitize import slugify, strip_markup
from app.models.enums import NotificationCategory, NotificationPriority, NotificationType
from app.models.notification import Notification
from app.models.user import User
from app.schemas.notification import NotificationOut, NotificationPage
from app.services.admission import AdmissionStore, Clock, utcnow
from app.services.email import build_notification_email
from app.services.email_dispatcher import EmailDispatcher, EmailJob
from app.services.health_gate import HealthGate
from app.services.notification_cache import NotificationCache

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_MESSAGE_LENGTH = 1000
DEGRADED_FAILURE_RATE = 10.0

COOLDOWN_HOURS = {
    NotificationPriority.CRITICAL: 1,
    NotificationPriority.HIGH: 6,
    NotificationPriority.MEDIUM: 24,
    NotificationPriority.LOW: 24,
    NotificationPriority.INFO: 24,
}

_TYPES = {item.value for item in NotificationType}
_CATEGORIES = {item.value for item in NotificationCategory}


@dataclass
class NotificationDraft:
    user_id: UUID
    title: str
    message: str
    type: str = NotificationType.info.value
    priority: int = NotificationPriority.MEDIUM
    category: str = NotificationCategory.general.value
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ServiceMetrics:
    created: int = 0
    failed: int = 0
    deduplicated: int = 0
    avg_create_time_ms: float = 0.0
    samples: int = 0


def cooldown_hours_for(priority: int) -> int:
    return COOLDOWN_HOURS.get(NotificationPriority(priority), 24)


def notification_key_for(category: str, title: str, metadata: dict[str, Any] | None) -> str:
    product_id = (metadata or {}).get("productId")
    if product_id:
        return f"{category}:{product_id}"
    return f"{category}:{slugify(title[:50])}"


def validate_draft(draft: NotificationDraft) -> None:
    if not draft.user_id:
        raise ValidationError("user_id is required", field="user_id")
    if not isinstance(draft.title, str) or not draft.title.strip():
        raise ValidationError("title is required", field="title")
    if not isinstance(draft.message, str) or not draft.message.strip():
        raise ValidationError("message is required", field="message")
    if len(draft.title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters", field="title")
    if len(draft.message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"message must be at most {MAX_MESSAGE_LENGTH} characters", field="message")
    priority = draft.priority
    if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5:
        raise ValidationError("priority must be an integer between 1 and 5", field="priority")


def _normalize(draft: NotificationDraft) -> NotificationDraft:
    draft_type = (draft.type or "").strip().lower()
    category = (draft.category or "").strip().lower()
    return NotificationDraft(
        user_id=draft.user_id,
        title=draft.title,
        message=draft.message,
        type=draft_type if draft_type in _TYPES else NotificationType.info.value,
        priority=int(draft.priority),
        category=category if category in _CATEGORIES else NotificationCategory.general.value,
        metadata=dict(draft.metadata or {}),
    )


def _to_record(draft: NotificationDraft, notification_key: str) -> Notification:
    return Notification(
        user_id=draft.user_id,
        title=strip_markup(draft.title),
        message=strip_markup(draft.message, allow_newlines=True),
        type=draft.type,
        priority=draft.priority,
        category=draft.category,
        meta=draft.metadata,
        notification_key=notification_key,
    )


def mark_email_sent(session_factory: Callable[[], Session], job: EmailJob) -> None:
    if job.notification_id is None:
        return
    db = session_factory()
    try:
        db.execute(
            update(Notification)
            .where(Notification.id == job.notification_id)
            .values(email_sent=True)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    finally:
        db.close()


class NotificationService:
    def __init__(
        self,
        admission_store: AdmissionStore,
        health_gate: HealthGate | None = None,
        cache: NotificationCache | None = None,
        email_dispatcher: EmailDispatcher | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.admission_store = admission_store
        self.health_gate = health_gate or HealthGate(admission_store)
        self.cache = cache or NotificationCache()
        self.email_dispatcher = email_dispatcher
        self._clock = clock
        self.metrics = ServiceMetrics()
        self.dedup_degraded = False
        self._metrics_lock = threading.Lock()
        self._tasks: list[asyncio.Task] = []

    # ----- lifecycle -----

    async def init(
        self,
        *,
        cache_sweep_seconds: int = 60,
        session_factory: Callable[[], Session] | None = None,
        health_sweep_seconds: int | None = None,
    ) -> None:
        if self._tasks:
            return
        if self.email_dispatcher is not None:
            self.email_dispatcher.start()
        self._tasks.append(
            asyncio.create_task(self._cache_sweep_loop(max(1, cache_sweep_seconds)), name="notification-cache-sweep")
        )
        if session_factory is not None and health_sweep_seconds:
            self._tasks.append(
                asyncio.create_task(
                    self._health_sweep_loop(session_factory, max(30, health_sweep_seconds)),
                    name="notification-health-sweep",
                )
            )
            logger.info("Health sweep loop started (every %s seconds)", max(30, health_sweep_seconds))

    async def shutdown(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.email_dispatcher is not None:
            await asyncio.to_thread(self.email_dispatcher.stop)
        self.cache.clear()

    async def _cache_sweep_loop(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cache.sweep()

    async def _health_sweep_loop(self, session_factory: Callable[[], Session], interval: int) -> None:
        while True:
            await asyncio.to_thread(self._run_health_sweep_once, session_factory)
            await asyncio.sleep(interval)

    def _run_health_sweep_once(self, session_factory: Callable[[], Session]) -> None:
        from app.services.health_sweep import run_health_sweep

        db = session_factory()
        try:
            result = run_health_sweep(db, self)
            if not result.skipped:
                logger.info(
                    "Health sweep completed: low_stock=%s out_of_stock=%s expiring=%s created=%s",
                    result.low_stock_count,
                    result.out_of_stock_count,
                    result.expiring_count,
                    result.total_created,
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Health sweep failed: %s", exc)
        finally:
            db.close()

    # ----- creation -----

    def _admit(self, db: Session, draft: NotificationDraft, notification_key: str) -> bool:
        try:
            admitted = self.admission_store.admit(
                db,
                user_id=draft.user_id,
                notification_key=notification_key,
                cooldown_hours=cooldown_hours_for(draft.priority),
            )
        except PrimitiveUnavailable as exc:
            if not self.dedup_degraded:
                logger.warning("Deduplication unavailable (%s); creating notifications without dedup", exc.primitive)
            self.dedup_degraded = True
            return True
        if self.dedup_degraded:
            logger.info("Deduplication available again")
            self.dedup_degraded = False
        return admitted

    def create_notification(
        self,
        db: Session,
        *,
        user_id: UUID,
        title: str,
        message: str,
        type: str = NotificationType.info.value,
        priority: int = NotificationPriority.MEDIUM,
        category: str = NotificationCategory.general.value,
        metadata: dict[str, Any] | None = None,
    ) -> Notification | None:
        """Create one notification unless its key is still cooling down.

        Returns ``None`` when deduplicated. Raises ``ValidationError`` before
        anything is written and ``StoreError`` when the insert fails.
        """
        started = time.perf_counter()
        draft = NotificationDraft(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            priority=priority,
            category=category,
            metadata=dict(metadata or {}),
        )
        validate_draft(draft)
        draft = _normalize(draft)
        notification_key = notification_key_for(draft.category, draft.title, draft.metadata)

        if not self._admit(db, draft, notification_key):
            with self._metrics_lock:
                self.metrics.deduplicated += 1
            logger.info("Notification deduplicated: user=%s key=%s", user_id, notification_key)
            return None

        record = _to_record(draft, notification_key)
        try:
            db.add(record)
            db.commit()
            db.refresh(record)
        except SQLAlchemyError as exc:
            db.rollback()
            self._release(db, [(draft.user_id, notification_key)])
            with self._metrics_lock:
                self.metrics.failed += 1
            logger.error("Failed to create notification for user=%s key=%s: %s", user_id, notification_key, exc)
            raise StoreError("Failed to create notification", operation="create_notification") from exc

        self.cache.invalidate_for_user(user_id)
        if draft.priority <= NotificationPriority.HIGH and not draft.metadata.get("suppressEmail"):
            self._queue_email(db, record)
        self._record_created(1, (time.perf_counter() - started) * 1000)
        return record

    def create_batch(self, db: Session, drafts: Iterable[NotificationDraft]) -> list[Notification]:
        """Admit each draft, then write every admitted one with a single flush."""
        started = time.perf_counter()
        prepared: list[NotificationDraft] = []
        for draft in drafts:
            validate_draft(draft)
            prepared.append(_normalize(draft))

        records: list[Notification] = []
        admitted: list[tuple[UUID, str]] = []
        rejected = 0
        for draft in prepared:
            notification_key = notification_key_for(draft.category, draft.title, draft.metadata)
            if self._admit(db, draft, notification_key):
                records.append(_to_record(draft, notification_key))
                admitted.append((draft.user_id, notification_key))
            else:
                rejected += 1

        if records:
            try:
                db.add_all(records)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                self._release(db, admitted)
                with self._metrics_lock:
                    self.metrics.failed += len(records)
                logger.error("Bulk notification insert failed (%d rows): %s", len(records), exc)
                raise StoreError("Failed to create notifications", operation="create_batch") from exc

        for user_id in {record.user_id for record in records}:
            self.cache.invalidate_for_user(user_id)
        with self._metrics_lock:
            self.metrics.deduplicated += rejected
        if records:
            self._record_created(len(records), (time.perf_counter() - started) * 1000)
        logger.info("Batch notifications: %d created, %d deduplicated", len(records), rejected)
        return records

    def _release(self, db: Session, admitted: list[tuple[UUID, str]]) -> None:
        for user_id, notification_key in admitted:
            self.admission_store.release(db, user_id=user_id, notification_key=notification_key)

    def _record_created(self, count: int, duration_ms: float) -> None:
        with self._metrics_lock:
            metrics = self.metrics
            metrics.created += count
            if metrics.samples == 0:
                metrics.avg_create_time_ms = duration_ms
            else:
                metrics.avg_create_time_ms = (metrics.avg_create_time_ms + duration_ms) / 2
            metrics.samples += 1

    def _queue_email(self, db: Session, record: Notification) -> None:
        if self.email_dispatcher is None:
            return
        try:
            user = db.get(User, record.user_id)
        except SQLAlchemyError as exc:
            logger.warning("Could not load email recipient for notification %s: %s", record.id, exc)
            return
        if user is None or not user.email:
            logger.warning("No email address for user %s", record.user_id)
            return
        subject, body, html_body = build_notification_email(record, user.first_name or "User")
        self.email_dispatcher.submit(
            EmailJob(to=user.email, subject=subject, body=body, html_body=html_body, notification_id=record.id)
        )

    # ----- reads -----

    def get_unread_count(self, db: Session, user_id: UUID) -> int:
        def load() -> int:
            try:
                return int(
                    db.execute(
                        select(func.count())
                        .select_from(Notification)
                        .where(
                            Notification.user_id == user_id,
                            Notification.is_read.is_(False),
                            Notification.dismissed_at.is_(None),
                        )
                    ).scalar_one()
                )
            except SQLAlchemyError as exc:
                raise StoreError("Failed to count unread notifications", operation="get_unread_count") from exc

        return self.cache.get_or_load(NotificationCache.key("unread", user_id), load)

    def list_notifications(
        self,
        db: Session,
        user_id: UUID,
        *,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
        category: str | None = None,
    ) -> NotificationPage:
        def load() -> NotificationPage:
            conditions = [Notification.user_id == user_id, Notification.dismissed_at.is_(None)]
            if unread_only:
                conditions.append(Notification.is_read.is_(False))
            if category:
                conditions.append(Notification.category == category)
            try:
                total = db.execute(select(func.count()).select_from(Notification).where(*conditions)).scalar_one()
                rows = (
                    db.execute(
                        select(Notification)
                        .where(*conditions)
                        .order_by(Notification.created_at.desc())
                        .offset(offset)
                        .limit(limit)
                    )
                    .scalars()
                    .all()
                )
            except SQLAlchemyError as exc:
                raise StoreError("Failed to list notifications", operation="list_notifications") from exc
            return NotificationPage(
                notifications=[NotificationOut.model_validate(row) for row in rows],
                total_count=int(total),
                has_more=offset + len(rows) < int(total),
            )

        key = NotificationCache.key("list", user_id, limit, offset, unread_only, category or "all")
        return self.cache.get_or_load(key, load)

    # ----- mutations -----

    def _owned(self, db: Session, notification_id: UUID, user_id: UUID) -> Notification | None:
        record = db.get(Notification, notification_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    def mark_as_read(self, db: Session, notification_id: UUID, user_id: UUID) -> dict[str, Any]:
        try:
            record = self._owned(db, notification_id, user_id)
            if record is None:
                return {"success": False, "data": None}
            if not record.is_read:
                record.is_read = True
                record.read_at = self._clock()
                db.commit()
                db.refresh(record)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Failed to mark notification as read", operation="mark_as_read") from exc
        self.cache.invalidate_for_user(user_id)
        return {"success": True, "data": NotificationOut.model_validate(record)}

    def mark_all_as_read(self, db: Session, user_id: UUID) -> dict[str, Any]:
        try:
            result = db.execute(
                update(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                    Notification.dismissed_at.is_(None),
                )
                .values(is_read=True, read_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Failed to mark notifications as read", operation="mark_all_as_read") from exc
        self.cache.invalidate_for_user(user_id)
        return {"success": True, "count": int(result.rowcount or 0)}

    def dismiss(self, db: Session, notification_id: UUID, user_id: UUID) -> dict[str, Any]:
        try:
            record = self._owned(db, notification_id, user_id)
            if record is None:
                return {"success": False, "data": None}
            if record.dismissed_at is None:
                record.dismissed_at = self._clock()
                db.commit()
                db.refresh(record)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Failed to dismiss notification", operation="dismiss") from exc
        self.cache.invalidate_for_user(user_id)
        return {"success": True, "data": NotificationOut.model_validate(record)}

    def dismiss_all(self, db: Session, user_id: UUID) -> dict[str, Any]:
        try:
            result = db.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.dismissed_at.is_(None))
                .values(dismissed_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Failed to dismiss notifications", operation="dismiss_all") from exc
        self.cache.invalidate_for_user(user_id)
        return {"success": True, "count": int(result.rowcount or 0)}

    # ----- typed helpers -----

    def notify_low_stock(
        self, db: Session, *, user_id: UUID, product_id: Any, product_name: str, current_stock: int, reorder_level: int
    ) -> Notification | None:
        return self.create_notification(
            db,
            user_id=user_id,
            title="Low Stock Alert",
            message=f"{product_name} is running low: {current_stock} pieces remaining (reorder at {reorder_level})",
            type=NotificationType.warning.value,
            priority=NotificationPriority.HIGH,
            category=NotificationCategory.inventory.value,
            metadata={
                "productId": str(product_id),
                "productName": product_name,
                "currentStock": current_stock,
                "reorderLevel": reorder_level,
                "actionUrl": f"/inventory?product={product_id}",
            },
        )

    def notify_critical_stock(
        self, db: Session, *, user_id: UUID, product_id: Any, product_name: str, current_stock: int
    ) -> Notification | None:
        return self.create_notification(
            db,
            user_id=user_id,
            title="Critical Stock Alert",
            message=f"{product_name} is critically low: Only {current_stock} pieces left!",
            type=NotificationType.error.value,
            priority=NotificationPriority.CRITICAL,
            category=NotificationCategory.inventory.value,
            metadata={
                "productId": str(product_id),
                "productName": product_name,
                "currentStock": current_stock,
                "actionUrl": f"/inventory?product={product_id}",
            },
        )

    def notify_out_of_stock(
        self, db: Session, *, user_id: UUID, product_id: Any, product_name: str
    ) -> Notification | None:
        return self.create_notification(
            db,
            user_id=user_id,
            title="Out of Stock Alert",
            message=f"{product_name} is completely out of stock! Immediate reorder required.",
            type=NotificationType.error.value,
            priority=NotificationPriority.CRITICAL,
            category=NotificationCategory.inventory.value,
            metadata={
                "productId": str(product_id),
                "productName": product_name,
                "currentStock": 0,
                "actionUrl": f"/inventory?product={product_id}",
            },
        )

    def notify_expiring_soon(
        self,
        db: Session,
        *,
        user_id: UUID,
        product_id: Any,
        product_name: str,
        expiry_date: dt.date,
        days_remaining: int,
        critical_days: int = 7,
    ) -> Notification | None:
        is_critical = days_remaining <= critical_days
        return self.create_notification(
            db,
            user_id=user_id,
            title="Urgent: Product Expiring Soon" if is_critical else "Product Expiry Warning",
            message=f"{product_name} expires in {days_remaining} day{'' if days_remaining == 1 else 's'} ({expiry_date.isoformat()})",
            type=(NotificationType.error if is_critical else NotificationType.warning).value,
            priority=NotificationPriority.CRITICAL if is_critical else NotificationPriority.HIGH,
            category=NotificationCategory.expiry.value,
            metadata={
                "productId": str(product_id),
                "productName": product_name,
                "expiryDate": expiry_date.isoformat(),
                "daysRemaining": days_remaining,
                "actionUrl": f"/inventory?product={product_id}",
            },
        )

    def notify_sale_completed(
        self, db: Session, *, user_id: UUID, sale_id: Any, total_amount: float, item_count: int
    ) -> Notification | None:
        return self.create_notification(
            db,
            user_id=user_id,
            title="Sale Completed",
            message=(
                f"Successfully processed sale of {item_count} item{'' if item_count == 1 else 's'} "
                f"for PHP {total_amount:.2f}"
            ),
            type=NotificationType.success.value,
            priority=NotificationPriority.LOW,
            category=NotificationCategory.sales.value,
            metadata={
                "saleId": str(sale_id),
                "totalAmount": total_amount,
                "itemCount": item_count,
                "actionUrl": f"/sales/{sale_id}",
            },
        )

    def notify_system_error(
        self, db: Session, *, user_id: UUID, error_message: str, error_code: str | None = None
    ) -> Notification | None:
        return self.create_notification(
            db,
            user_id=user_id,
            title="System Error",
            message=f"An error occurred: {error_message}",
            type=NotificationType.error.value,
            priority=NotificationPriority.CRITICAL,
            category=NotificationCategory.system.value,
            metadata={"errorMessage": error_message, "errorCode": error_code},
        )

    # ----- maintenance -----

    def cleanup_dismissed(self, db: Session, days_old: int = 30) -> int:
        cutoff = self._clock() - dt.timedelta(days=days_old)
        try:
            result = db.execute(
                delete(Notification)
                .where(Notification.dismissed_at.is_not(None), Notification.dismissed_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Failed to clean up dismissed notifications", operation="cleanup_dismissed") from exc
        removed = int(result.rowcount or 0)
        if removed:
            self.cache.clear()
        logger.info("Removed %d dismissed notifications older than %d days", removed, days_old)
        return removed

    def cleanup_ledger(self, db: Session, days_old: int = 90) -> int:
        try:
            removed = self.admission_store.cleanup_ledger(db, days_old=days_old)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Failed to clean up deduplication ledger", operation="cleanup_ledger") from exc
        logger.info("Removed %d deduplication entries older than %d days", removed, days_old)
        return removed

    def reset_cooldown(self, db: Session, user_id: UUID, notification_key: str) -> bool:
        try:
            return self.admission_store.reset_cooldown(db, user_id=user_id, notification_key=notification_key)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Failed to reset cooldown", operation="reset_cooldown") from exc

    def ledger_stats(self, db: Session, user_id: UUID | None = None) -> list[dict[str, Any]]:
        try:
            return self.admission_store.ledger_stats(db, user_id=user_id)
        except SQLAlchemyError as exc:
            raise StoreError("Failed to read deduplication ledger", operation="ledger_stats") from exc

    # ----- metrics -----

    def get_health_metrics(self) -> dict[str, Any]:
        with self._metrics_lock:
            metrics = ServiceMetrics(**vars(self.metrics))
        attempted = metrics.created + metrics.failed
        failure_rate = round(metrics.failed / attempted * 100, 2) if attempted else 0.0
        cache_stats = self.cache.stats()
        degraded = failure_rate > DEGRADED_FAILURE_RATE or self.dedup_degraded
        return {
            "status": "degraded" if degraded else "healthy",
            "created": metrics.created,
            "failed": metrics.failed,
            "failure_rate": failure_rate,
            "deduplicated": metrics.deduplicated,
            "avg_create_time_ms": round(metrics.avg_create_time_ms, 2),
            "cache_hit_rate": cache_stats["hit_rate"],
            "cache_size": cache_stats["size"],
            "dedup_degraded": self.dedup_degraded,
            "email": self.email_dispatcher.counters() if self.email_dispatcher is not None else {},
        }
