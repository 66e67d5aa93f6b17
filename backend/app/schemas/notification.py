"""Pydantic schemas for notifications."""

from __future__ import annotations

import datetime as dt
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator

from app.core.sanitize import clean_multiline, clean_single_line
from app.models.enums import NotificationCategory, NotificationType

ALLOWED_TYPES = {item.value for item in NotificationType}
ALLOWED_CATEGORIES = {item.value for item in NotificationCategory}


class NotificationOut(BaseModel):
    id: UUID
    user_id: UUID
    title: str
    message: str
    type: str
    priority: int
    category: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    notification_key: str | None = None
    is_read: bool
    read_at: dt.datetime | None = None
    email_sent: bool = False
    created_at: dt.datetime
    dismissed_at: dt.datetime | None = None

    class Config:
        from_attributes = True


class NotificationCreate(BaseModel):
    user_id: UUID | None = None
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=1000)
    type: str = Field(default=NotificationType.info.value, max_length=16)
    priority: int = Field(default=3, ge=1, le=5)
    category: str = Field(default=NotificationCategory.general.value, max_length=32)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", mode="before")
    @classmethod
    def normalize_title(cls, value: str) -> str:
        return clean_single_line(value)

    @field_validator("message", mode="before")
    @classmethod
    def normalize_message(cls, value: str) -> str:
        return clean_multiline(value)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: str | None) -> str:
        normalized = clean_single_line(value or "info").lower()
        if normalized not in ALLOWED_TYPES:
            return NotificationType.info.value
        return normalized

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, value: str | None) -> str:
        normalized = clean_single_line(value or "general").lower()
        if normalized not in ALLOWED_CATEGORIES:
            return NotificationCategory.general.value
        return normalized

    @field_validator("metadata", mode="before")
    @classmethod
    def normalize_metadata(cls, value: dict[str, Any] | None) -> dict[str, Any]:
        return value or {}


class CreateNotificationOut(BaseModel):
    created: bool
    notification: NotificationOut | None = None


class NotificationPage(BaseModel):
    notifications: list[NotificationOut]
    total_count: int
    has_more: bool


class UnreadCountOut(BaseModel):
    count: int


class NotificationActionOut(BaseModel):
    success: bool
    data: NotificationOut | None = None


class BulkActionOut(BaseModel):
    success: bool
    count: int


class HealthSweepRequest(BaseModel):
    user_ids: list[UUID] | None = None
    force: bool = False


class HealthSweepOut(BaseModel):
    skipped: bool = False
    reason: str | None = None
    low_stock_count: int = 0
    out_of_stock_count: int = 0
    expiring_count: int = 0
    total_created: int = 0


class MaintenanceOut(BaseModel):
    dismissed_removed: int
    ledger_removed: int


class DedupEntryOut(BaseModel):
    notification_key: str
    total_sent: int
    last_sent_at: dt.datetime
    cooldown_hours: int
    hours_until_next: float


class DedupLedgerOut(BaseModel):
    entries: list[DedupEntryOut]


class HealthMetricsOut(BaseModel):
    status: str
    created: int
    failed: int
    failure_rate: float
    deduplicated: int
    avg_create_time_ms: float
    cache_hit_rate: float
    cache_size: int
    dedup_degraded: bool
    email: dict[str, int] = Field(default_factory=dict)
