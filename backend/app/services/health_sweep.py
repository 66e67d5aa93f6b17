"""Periodic inventory health sweep: stock and expiry alerts for pharmacy staff."""

from __future__ import annotations

import datetime as dt
import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.enums import NotificationCategory, NotificationPriority, NotificationType, UserRole
from app.models.product import Product
from app.models.user import User
from app.services.email import build_health_summary_email
from app.services.email_dispatcher import EmailJob
from app.services.health_gate import DEFAULT_CHECK_TYPE
from app.services.notifications_service import NotificationDraft

if TYPE_CHECKING:
    from app.services.notifications_service import NotificationService

logger = logging.getLogger(__name__)

RECIPIENT_ROLES = (UserRole.admin.value, UserRole.manager.value, UserRole.pharmacist.value)

KIND_OUT_OF_STOCK = "out_of_stock"
KIND_LOW_STOCK = "low_stock"
KIND_EXPIRING = "expiring"


@dataclass
class HealthSweepResult:
    skipped: bool = False
    reason: str | None = None
    low_stock_count: int = 0
    out_of_stock_count: int = 0
    expiring_count: int = 0
    total_created: int = 0


def stock_thresholds(stock: int, reorder_level: int | None) -> tuple[int, int]:
    """Return ``(reorder_level, critical_threshold)`` for a product."""
    reorder = reorder_level or max(math.floor(stock * 0.2), 5)
    critical = max(math.floor(reorder * 0.5), min(5, reorder))
    return reorder, critical


def _stock_draft(user: User, product: Product) -> NotificationDraft | None:
    stock = product.stock_in_pieces or 0
    name = product.display_name
    base = {"productId": str(product.id), "productName": name, "suppressEmail": True}
    if stock == 0:
        return NotificationDraft(
            user_id=user.id,
            title="Out of Stock Alert",
            message=f"{name} is completely out of stock! Immediate reorder required.",
            type=NotificationType.error.value,
            priority=NotificationPriority.CRITICAL,
            category=NotificationCategory.inventory.value,
            metadata={**base, "currentStock": 0, "alertKind": KIND_OUT_OF_STOCK},
        )
    reorder, critical = stock_thresholds(stock, product.reorder_level)
    if not 0 < stock <= reorder:
        return None
    metadata = {**base, "currentStock": stock, "reorderLevel": reorder, "alertKind": KIND_LOW_STOCK}
    if stock <= critical:
        return NotificationDraft(
            user_id=user.id,
            title="Critical Stock Alert",
            message=f"{name} is critically low: Only {stock} pieces left!",
            type=NotificationType.error.value,
            priority=NotificationPriority.CRITICAL,
            category=NotificationCategory.inventory.value,
            metadata=metadata,
        )
    return NotificationDraft(
        user_id=user.id,
        title="Low Stock Alert",
        message=f"{name} is running low: {stock} pieces remaining (reorder at {reorder})",
        type=NotificationType.warning.value,
        priority=NotificationPriority.HIGH,
        category=NotificationCategory.inventory.value,
        metadata=metadata,
    )


def _expiry_draft(user: User, product: Product, *, today: dt.date, warning_days: int, critical_days: int) -> NotificationDraft | None:
    expiry = product.expiry_date
    if expiry is None or not today <= expiry <= today + dt.timedelta(days=warning_days):
        return None
    days_remaining = (expiry - today).days
    is_critical = days_remaining <= critical_days
    name = product.display_name
    return NotificationDraft(
        user_id=user.id,
        title="Urgent: Product Expiring Soon" if is_critical else "Product Expiry Warning",
        message=f"{name} expires in {days_remaining} day{'' if days_remaining == 1 else 's'} ({expiry.isoformat()})",
        type=(NotificationType.error if is_critical else NotificationType.warning).value,
        priority=NotificationPriority.CRITICAL if is_critical else NotificationPriority.HIGH,
        category=NotificationCategory.expiry.value,
        metadata={
            "productId": str(product.id),
            "productName": name,
            "expiryDate": expiry.isoformat(),
            "daysRemaining": days_remaining,
            "suppressEmail": True,
            "alertKind": KIND_EXPIRING,
        },
    )


def _recipients(db: Session, users: Iterable[User] | None) -> list[User]:
    if users is not None:
        return list(users)
    return list(
        db.execute(select(User).where(User.is_active.is_(True), User.role.in_(RECIPIENT_ROLES)).order_by(User.email))
        .scalars()
        .all()
    )


def build_sweep_drafts(
    users: list[User],
    products: list[Product],
    *,
    today: dt.date,
    warning_days: int,
    critical_days: int,
) -> list[NotificationDraft]:
    drafts: list[NotificationDraft] = []
    for user in users:
        for product in products:
            stock_draft = _stock_draft(user, product)
            if stock_draft is not None:
                drafts.append(stock_draft)
            expiry_draft = _expiry_draft(
                user, product, today=today, warning_days=warning_days, critical_days=critical_days
            )
            if expiry_draft is not None:
                drafts.append(expiry_draft)
    return drafts


def _send_summaries(service: "NotificationService", users: list[User], created: list) -> None:
    if service.email_dispatcher is None:
        return
    by_user: dict = defaultdict(list)
    for record in created:
        if record.priority <= NotificationPriority.HIGH:
            by_user[record.user_id].append(record)
    for user in users:
        items = by_user.get(user.id)
        if not items or not user.email:
            continue
        subject, body, html_body = build_health_summary_email(user.first_name or "Admin", items)
        service.email_dispatcher.submit(EmailJob(to=user.email, subject=subject, body=body, html_body=html_body))


def run_health_sweep(
    db: Session,
    service: "NotificationService",
    users: Iterable[User] | None = None,
    *,
    force: bool = False,
    today: dt.date | None = None,
) -> HealthSweepResult:
    if not force and not service.health_gate.should_run(db, DEFAULT_CHECK_TYPE):
        logger.info("Health sweep skipped: last run is within the check interval")
        return HealthSweepResult(skipped=True, reason="interval")

    try:
        recipients = _recipients(db, users)
        if not recipients:
            logger.warning("Health sweep skipped: no active admin, manager or pharmacist users")
            service.health_gate.record_run(db, DEFAULT_CHECK_TYPE, 0, None)
            return HealthSweepResult(skipped=True, reason="no_recipients")

        products = list(db.execute(select(Product).where(Product.is_active.is_(True))).scalars().all())
        drafts = build_sweep_drafts(
            recipients,
            products,
            today=today or dt.date.today(),
            warning_days=settings.EXPIRY_WARNING_DAYS,
            critical_days=settings.EXPIRY_CRITICAL_DAYS,
        )
        created = service.create_batch(db, drafts)

        result = HealthSweepResult(total_created=len(created))
        for record in created:
            kind = (record.meta or {}).get("alertKind")
            if kind == KIND_OUT_OF_STOCK:
                result.out_of_stock_count += 1
            elif kind == KIND_LOW_STOCK:
                result.low_stock_count += 1
            elif kind == KIND_EXPIRING:
                result.expiring_count += 1

        _send_summaries(service, recipients, created)
    except Exception as exc:
        service.health_gate.record_run(db, DEFAULT_CHECK_TYPE, 0, str(exc)[:1000])
        raise

    service.health_gate.record_run(db, DEFAULT_CHECK_TYPE, result.total_created, None)
    return result
