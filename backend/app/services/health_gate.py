"""Rate gate that keeps the inventory health sweep to one run per interval."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import PrimitiveUnavailable
from app.services.admission import AdmissionStore

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TYPE = "all"


class HealthGate:
    def __init__(self, store: AdmissionStore, *, interval_minutes: int = 15) -> None:
        self.store = store
        self.interval_minutes = interval_minutes
        self.degraded = False

    def should_run(
        self,
        db: Session | None,
        check_type: str = DEFAULT_CHECK_TYPE,
        interval_minutes: int | None = None,
    ) -> bool:
        """Claim the sweep slot for ``check_type``.

        A grant is committed right away so concurrent callers see the claim.
        When the gate primitive is missing the sweep runs anyway; duplicate
        rows are still prevented by per-notification admission.
        """
        interval = self.interval_minutes if interval_minutes is None else interval_minutes
        try:
            granted = self.store.should_run_health_check(
                db, check_type=check_type, interval_minutes=interval
            )
        except PrimitiveUnavailable as exc:
            self.degraded = True
            logger.warning("Health check gate unavailable (%s), running sweep without gate", exc.primitive)
            return True
        except SQLAlchemyError as exc:
            if db is not None:
                db.rollback()
            logger.error("Health check gate failed for %s: %s", check_type, exc)
            return False
        if db is not None:
            db.commit()
        return granted

    def record_run(
        self,
        db: Session | None,
        check_type: str = DEFAULT_CHECK_TYPE,
        notifications_created: int = 0,
        error_message: str | None = None,
    ) -> None:
        try:
            self.store.record_health_check_run(
                db,
                check_type=check_type,
                notifications_created=notifications_created,
                error_message=error_message,
            )
            if db is not None:
                db.commit()
        except (PrimitiveUnavailable, SQLAlchemyError) as exc:
            if db is not None:
                db.rollback()
            logger.warning("Failed to record health check run for %s: %s", check_type, exc)
