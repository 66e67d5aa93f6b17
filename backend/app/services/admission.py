"""Atomic admission checks backing notification deduplication and sweep scheduling.

Every adapter answers the same two questions in a single atomic step:

* ``admit``: may a notification with this key be sent to this user right now?
  A "yes" is recorded in the deduplication ledger as part of the same step.
* ``should_run_health_check``: may the expensive inventory sweep run now?
  A "yes" claims the run slot so that later callers are denied.

``ProcedureAdmissionStore`` delegates to stored functions created by the
migrations, ``OrmAdmissionStore`` performs the same decision in a client
transaction with ``FOR UPDATE NOWAIT``, and ``MemoryAdmissionStore`` keeps the
ledger in process for single-worker deployments and tests.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import PrimitiveUnavailable
from app.models.enums import HealthCheckStatus
from app.models.health_check_run import HealthCheckRun
from app.models.notification_dedup import NotificationDeduplication

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]

UNDEFINED_FUNCTION = "42883"
LOCK_NOT_AVAILABLE = "55P03"

_FORCE_SENDABLE = dt.timedelta(days=36500)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    # psycopg 3 exposes sqlstate, psycopg2 exposes pgcode.
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _ledger_row(
    *,
    notification_key: str,
    total_sent: int,
    last_sent_at: dt.datetime,
    cooldown_hours: int,
    now: dt.datetime,
) -> dict[str, Any]:
    hours_since = (now - _as_utc(last_sent_at)).total_seconds() / 3600
    return {
        "notification_key": notification_key,
        "total_sent": total_sent,
        "last_sent_at": _as_utc(last_sent_at),
        "cooldown_hours": cooldown_hours,
        "hours_until_next": round(max(0.0, cooldown_hours - hours_since), 2),
    }


class AdmissionStore:
    """Interface shared by the admission adapters."""

    name = "abstract"

    def admit(self, db: Session | None, *, user_id: UUID, notification_key: str, cooldown_hours: int) -> bool:
        raise NotImplementedError

    def should_run_health_check(self, db: Session | None, *, check_type: str, interval_minutes: int) -> bool:
        raise NotImplementedError

    def record_health_check_run(
        self,
        db: Session | None,
        *,
        check_type: str,
        notifications_created: int,
        error_message: str | None,
    ) -> None:
        raise NotImplementedError

    def ledger_stats(self, db: Session | None, *, user_id: UUID | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def reset_cooldown(self, db: Session | None, *, user_id: UUID, notification_key: str) -> bool:
        raise NotImplementedError

    def cleanup_ledger(self, db: Session | None, *, days_old: int) -> int:
        raise NotImplementedError

    def release(self, db: Session | None, *, user_id: UUID, notification_key: str) -> None:
        """Undo an admission whose notification was never written.

        Database adapters record admissions in the caller's transaction, so the
        rollback after a failed insert already undoes them.
        """


class ProcedureAdmissionStore(AdmissionStore):
    """Calls the stored functions installed by the notification migrations."""

    name = "procedure"

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    def _call(self, db: Session, primitive: str, statement: str, params: dict[str, Any], *, rows: bool = False) -> Any:
        try:
            # A failed call must not poison the caller's transaction.
            with db.begin_nested():
                result = db.execute(text(statement), params)
                return result.mappings().all() if rows else result.scalar()
        except DBAPIError as exc:
            if _sqlstate(exc) == UNDEFINED_FUNCTION:
                raise PrimitiveUnavailable(primitive) from exc
            raise

    def admit(self, db: Session, *, user_id: UUID, notification_key: str, cooldown_hours: int) -> bool:
        try:
            admitted = self._call(
                db,
                "should_send_notification",
                "SELECT should_send_notification(CAST(:user_id AS uuid), :notification_key, :cooldown_hours)",
                {"user_id": user_id, "notification_key": notification_key, "cooldown_hours": cooldown_hours},
            )
        except PrimitiveUnavailable:
            raise
        except SQLAlchemyError as exc:
            logger.warning("Admission check failed for user=%s key=%s: %s", user_id, notification_key, exc)
            return False
        return bool(admitted)

    def should_run_health_check(self, db: Session, *, check_type: str, interval_minutes: int) -> bool:
        granted = self._call(
            db,
            "should_run_health_check",
            "SELECT should_run_health_check(:check_type, :interval_minutes)",
            {"check_type": check_type, "interval_minutes": interval_minutes},
        )
        return bool(granted)

    def record_health_check_run(
        self,
        db: Session,
        *,
        check_type: str,
        notifications_created: int,
        error_message: str | None,
    ) -> None:
        self._call(
            db,
            "record_health_check_run",
            "SELECT record_health_check_run(:check_type, :notifications_created, :error_message)",
            {
                "check_type": check_type,
                "notifications_created": notifications_created,
                "error_message": error_message,
            },
        )

    def ledger_stats(self, db: Session, *, user_id: UUID | None = None) -> list[dict[str, Any]]:
        rows = self._call(
            db,
            "get_notification_stats",
            "SELECT * FROM get_notification_stats(CAST(:user_id AS uuid))",
            {"user_id": user_id},
            rows=True,
        )
        return [
            {
                "notification_key": row["notification_key"],
                "total_sent": row["total_sent"],
                "last_sent_at": _as_utc(row["last_sent"]),
                "cooldown_hours": row["cooldown_hours"],
                "hours_until_next": float(row["hours_until_next"]),
            }
            for row in rows
        ]

    def reset_cooldown(self, db: Session, *, user_id: UUID, notification_key: str) -> bool:
        found = self._call(
            db,
            "reset_notification_cooldown",
            "SELECT reset_notification_cooldown(CAST(:user_id AS uuid), :notification_key)",
            {"user_id": user_id, "notification_key": notification_key},
        )
        db.commit()
        return bool(found)

    def cleanup_ledger(self, db: Session, *, days_old: int) -> int:
        deleted = self._call(
            db,
            "cleanup_old_deduplication_records",
            "SELECT cleanup_old_deduplication_records(:days_old)",
            {"days_old": days_old},
        )
        db.commit()
        return int(deleted or 0)


class OrmAdmissionStore(AdmissionStore):
    """Same decisions as the stored functions, taken inside a client savepoint."""

    name = "orm"

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    def admit(self, db: Session, *, user_id: UUID, notification_key: str, cooldown_hours: int) -> bool:
        now = self._clock()
        try:
            with db.begin_nested():
                entry = db.execute(
                    select(NotificationDeduplication)
                    .where(
                        NotificationDeduplication.user_id == user_id,
                        NotificationDeduplication.notification_key == notification_key,
                    )
                    .with_for_update(nowait=True)
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()
                if entry is None:
                    db.add(
                        NotificationDeduplication(
                            user_id=user_id,
                            notification_key=notification_key,
                            last_sent_at=now,
                            cooldown_hours=cooldown_hours,
                            notification_count=1,
                        )
                    )
                    db.flush()
                    return True
                if now - _as_utc(entry.last_sent_at) < dt.timedelta(hours=cooldown_hours):
                    return False
                entry.last_sent_at = now
                entry.cooldown_hours = cooldown_hours
                entry.notification_count = (entry.notification_count or 0) + 1
                db.flush()
                return True
        except IntegrityError:
            logger.debug("Lost ledger insert race for user=%s key=%s", user_id, notification_key)
            return False
        except DBAPIError as exc:
            if _sqlstate(exc) == LOCK_NOT_AVAILABLE:
                logger.debug("Ledger row busy for user=%s key=%s", user_id, notification_key)
                return False
            logger.warning("Admission check failed for user=%s key=%s: %s", user_id, notification_key, exc)
            return False
        except SQLAlchemyError as exc:
            logger.warning("Admission check failed for user=%s key=%s: %s", user_id, notification_key, exc)
            return False

    def should_run_health_check(self, db: Session, *, check_type: str, interval_minutes: int) -> bool:
        now = self._clock()
        cutoff = now - dt.timedelta(minutes=interval_minutes)
        claimed = db.execute(
            update(HealthCheckRun)
            .where(HealthCheckRun.check_type == check_type, HealthCheckRun.last_run_at <= cutoff)
            .values(last_run_at=now, status=HealthCheckStatus.running.value, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed:
            return True
        existing = db.execute(select(HealthCheckRun.id).where(HealthCheckRun.check_type == check_type)).first()
        if existing is not None:
            return False
        try:
            with db.begin_nested():
                db.add(
                    HealthCheckRun(
                        check_type=check_type,
                        last_run_at=now,
                        status=HealthCheckStatus.running.value,
                        run_count=0,
                    )
                )
                db.flush()
        except IntegrityError:
            return False
        return True

    def record_health_check_run(
        self,
        db: Session,
        *,
        check_type: str,
        notifications_created: int,
        error_message: str | None,
    ) -> None:
        now = self._clock()
        row = db.execute(
            select(HealthCheckRun).where(HealthCheckRun.check_type == check_type)
        ).scalar_one_or_none()
        if row is None:
            row = HealthCheckRun(check_type=check_type, run_count=0)
            db.add(row)
        row.last_run_at = now
        row.last_finished_at = now
        row.notifications_created = notifications_created
        row.error_message = error_message
        row.status = (HealthCheckStatus.error if error_message else HealthCheckStatus.success).value
        row.run_count = (row.run_count or 0) + 1
        db.flush()

    def ledger_stats(self, db: Session, *, user_id: UUID | None = None) -> list[dict[str, Any]]:
        query = select(NotificationDeduplication).order_by(NotificationDeduplication.last_sent_at.desc())
        if user_id is not None:
            query = query.where(NotificationDeduplication.user_id == user_id)
        now = self._clock()
        return [
            _ledger_row(
                notification_key=row.notification_key,
                total_sent=row.notification_count,
                last_sent_at=row.last_sent_at,
                cooldown_hours=row.cooldown_hours,
                now=now,
            )
            for row in db.execute(query).scalars().all()
        ]

    def reset_cooldown(self, db: Session, *, user_id: UUID, notification_key: str) -> bool:
        result = db.execute(
            update(NotificationDeduplication)
            .where(
                NotificationDeduplication.user_id == user_id,
                NotificationDeduplication.notification_key == notification_key,
            )
            .values(last_sent_at=self._clock() - _FORCE_SENDABLE)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return bool(result.rowcount)

    def cleanup_ledger(self, db: Session, *, days_old: int) -> int:
        cutoff = self._clock() - dt.timedelta(days=days_old)
        result = db.execute(
            delete(NotificationDeduplication)
            .where(NotificationDeduplication.last_sent_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return int(result.rowcount or 0)


@dataclass
class _LedgerEntry:
    last_sent_at: dt.datetime
    cooldown_hours: int
    notification_count: int = 1
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass
class _RunRecord:
    last_run_at: dt.datetime
    status: str = HealthCheckStatus.running.value
    notifications_created: int = 0
    error_message: str | None = None
    run_count: int = 0


class MemoryAdmissionStore(AdmissionStore):
    """Process-local ledger. Per-key locks are only ever taken without blocking."""

    name = "memory"

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._ledger: dict[tuple[str, str], _LedgerEntry] = {}
        self._runs: dict[str, _RunRecord] = {}
        # Ledger state before the latest admission per key, or None for a new entry.
        self._previous: dict[tuple[str, str], tuple[dt.datetime, int, int] | None] = {}

    def admit(self, db: Session | None, *, user_id: UUID, notification_key: str, cooldown_hours: int) -> bool:
        key = (str(user_id), notification_key)
        with self._registry_lock:
            entry = self._ledger.get(key)
            if entry is None:
                self._ledger[key] = _LedgerEntry(last_sent_at=self._clock(), cooldown_hours=cooldown_hours)
                self._previous[key] = None
                return True
        if not entry.lock.acquire(blocking=False):
            return False
        try:
            now = self._clock()
            if now - entry.last_sent_at < dt.timedelta(hours=cooldown_hours):
                return False
            with self._registry_lock:
                self._previous[key] = (entry.last_sent_at, entry.cooldown_hours, entry.notification_count)
            entry.last_sent_at = now
            entry.cooldown_hours = cooldown_hours
            entry.notification_count += 1
            return True
        finally:
            entry.lock.release()

    def should_run_health_check(self, db: Session | None, *, check_type: str, interval_minutes: int) -> bool:
        with self._registry_lock:
            now = self._clock()
            run = self._runs.get(check_type)
            if run is not None and now - run.last_run_at < dt.timedelta(minutes=interval_minutes):
                return False
            if run is None:
                self._runs[check_type] = _RunRecord(last_run_at=now)
            else:
                run.last_run_at = now
                run.status = HealthCheckStatus.running.value
            return True

    def record_health_check_run(
        self,
        db: Session | None,
        *,
        check_type: str,
        notifications_created: int,
        error_message: str | None,
    ) -> None:
        with self._registry_lock:
            now = self._clock()
            run = self._runs.setdefault(check_type, _RunRecord(last_run_at=now))
            run.last_run_at = now
            run.notifications_created = notifications_created
            run.error_message = error_message
            run.status = (HealthCheckStatus.error if error_message else HealthCheckStatus.success).value
            run.run_count += 1

    def ledger_stats(self, db: Session | None, *, user_id: UUID | None = None) -> list[dict[str, Any]]:
        now = self._clock()
        with self._registry_lock:
            items = [
                (key, entry)
                for key, entry in self._ledger.items()
                if user_id is None or key[0] == str(user_id)
            ]
        items.sort(key=lambda item: item[1].last_sent_at, reverse=True)
        return [
            _ledger_row(
                notification_key=key[1],
                total_sent=entry.notification_count,
                last_sent_at=entry.last_sent_at,
                cooldown_hours=entry.cooldown_hours,
                now=now,
            )
            for key, entry in items
        ]

    def reset_cooldown(self, db: Session | None, *, user_id: UUID, notification_key: str) -> bool:
        with self._registry_lock:
            entry = self._ledger.get((str(user_id), notification_key))
            if entry is None:
                return False
            entry.last_sent_at = self._clock() - _FORCE_SENDABLE
            return True

    def cleanup_ledger(self, db: Session | None, *, days_old: int) -> int:
        cutoff = self._clock() - dt.timedelta(days=days_old)
        with self._registry_lock:
            stale = [key for key, entry in self._ledger.items() if entry.last_sent_at < cutoff]
            for key in stale:
                del self._ledger[key]
                self._previous.pop(key, None)
        return len(stale)

    def release(self, db: Session | None, *, user_id: UUID, notification_key: str) -> None:
        key = (str(user_id), notification_key)
        with self._registry_lock:
            if key not in self._previous:
                return
            previous = self._previous.pop(key)
            entry = self._ledger.get(key)
            if entry is None:
                return
            if previous is None:
                del self._ledger[key]
                return
            entry.last_sent_at, entry.cooldown_hours, entry.notification_count = previous


_BACKENDS: dict[str, type[AdmissionStore]] = {
    ProcedureAdmissionStore.name: ProcedureAdmissionStore,
    OrmAdmissionStore.name: OrmAdmissionStore,
    MemoryAdmissionStore.name: MemoryAdmissionStore,
}


def build_admission_store(backend: str, *, clock: Clock = utcnow) -> AdmissionStore:
    store_cls = _BACKENDS.get((backend or "").strip().lower())
    if store_cls is None:
        raise ValueError(f"unknown admission backend: {backend!r}")
    return store_cls(clock=clock)
