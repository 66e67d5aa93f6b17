"""Shared enum values used by the database models and schemas."""

from __future__ import annotations

import enum


class UserRole(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    pharmacist = "pharmacist"
    cashier = "cashier"


class NotificationType(str, enum.Enum):
    error = "error"
    warning = "warning"
    success = "success"
    info = "info"


class NotificationPriority(enum.IntEnum):
    # Lower value means more urgent.
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    INFO = 5


class NotificationCategory(str, enum.Enum):
    inventory = "inventory"
    expiry = "expiry"
    sales = "sales"
    system = "system"
    general = "general"


class HealthCheckStatus(str, enum.Enum):
    running = "running"
    success = "success"
    error = "error"
