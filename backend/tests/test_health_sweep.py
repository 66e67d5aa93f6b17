from __future__ import annotations

import datetime as dt

import pytest

from app.core.exceptions import StoreError
from app.services.admission import MemoryAdmissionStore, OrmAdmissionStore
from app.services.health_gate import HealthGate
from app.services.health_sweep import run_health_sweep, stock_thresholds
from app.services.notifications_service import NotificationService

TODAY = dt.date(2026, 10, 1)


class _RecordingDispatcher:
    def __init__(self) -> None:
        self.jobs = []

    def submit(self, job) -> bool:  # noqa: ANN001
        self.jobs.append(job)
        return True


def _service(store, dispatcher=None) -> NotificationService:  # noqa: ANN001
    return NotificationService(store, health_gate=HealthGate(store, interval_minutes=15), email_dispatcher=dispatcher)


@pytest.fixture()
def pharmacy(make_user, make_product):
    users = {
        "admin": make_user(role="admin", first_name="Ana"),
        "pharmacist": make_user(role="pharmacist", first_name="Ben"),
        "cashier": make_user(role="cashier"),
        "inactive_manager": make_user(role="manager", is_active=False),
    }
    products = {
        "out": make_product("Amoxicillin", stock=0, reorder_level=20),
        "low": make_product("Paracetamol", stock=15, reorder_level=20),
        "expiring_soon": make_product("Cetirizine", expiry_date=TODAY + dt.timedelta(days=3)),
        "expiring_later": make_product("Ibuprofen", expiry_date=TODAY + dt.timedelta(days=20)),
        "healthy": make_product("Vitamin C", expiry_date=TODAY + dt.timedelta(days=40)),
        "expired": make_product("Aspirin", expiry_date=TODAY - dt.timedelta(days=1)),
        "inactive": make_product("Retired", stock=0, is_active=False),
    }
    return users, products


def test_stock_thresholds() -> None:
    assert stock_thresholds(15, 20) == (20, 10)
    assert stock_thresholds(3, None) == (5, 5)
    assert stock_thresholds(100, None) == (20, 10)
    assert stock_thresholds(2, 4) == (4, 4)


def test_sweep_creates_alerts_for_recipient_roles(db_session, pharmacy, clock) -> None:
    users, _ = pharmacy
    dispatcher = _RecordingDispatcher()
    service = _service(OrmAdmissionStore(clock=clock), dispatcher)

    result = run_health_sweep(db_session, service, today=TODAY)

    assert result.skipped is False
    assert result.out_of_stock_count == 2
    assert result.low_stock_count == 2
    assert result.expiring_count == 4
    assert result.total_created == 8

    recipients = sorted(job.to for job in dispatcher.jobs)
    assert recipients == sorted([users["admin"].email, users["pharmacist"].email])
    assert all("Pharmacy Health Report (4 issues)" in job.subject for job in dispatcher.jobs)
    assert all(job.subject.startswith("[MedCure] CRITICAL") for job in dispatcher.jobs)


def test_sweep_is_gated_and_deduplicated(db_session, pharmacy, clock) -> None:
    service = _service(OrmAdmissionStore(clock=clock))
    first = run_health_sweep(db_session, service, today=TODAY)
    assert first.total_created == 8

    clock.advance(minutes=5)
    skipped = run_health_sweep(db_session, service, today=TODAY)
    assert skipped.skipped is True
    assert skipped.reason == "interval"

    forced = run_health_sweep(db_session, service, force=True, today=TODAY)
    assert forced.skipped is False
    assert forced.total_created == 0
    assert service.metrics.deduplicated == 8


def test_sweep_with_explicit_users(db_session, pharmacy, clock) -> None:
    users, _ = pharmacy
    service = _service(MemoryAdmissionStore(clock=clock))

    result = run_health_sweep(db_session, service, [users["cashier"]], today=TODAY)

    assert result.total_created == 4


def test_sweep_without_recipients_is_skipped(db_session, make_product, clock) -> None:
    make_product("Amoxicillin", stock=0)
    service = _service(MemoryAdmissionStore(clock=clock))

    result = run_health_sweep(db_session, service, today=TODAY)

    assert result.skipped is True
    assert result.reason == "no_recipients"


def test_sweep_failure_is_recorded_and_raised(db_session, pharmacy, clock, monkeypatch) -> None:
    store = MemoryAdmissionStore(clock=clock)
    service = _service(store)

    def broken_batch(_db, _drafts):  # noqa: ANN001
        raise StoreError("Failed to create notifications", operation="create_batch")

    monkeypatch.setattr(service, "create_batch", broken_batch)
    with pytest.raises(StoreError):
        run_health_sweep(db_session, service, today=TODAY)

    assert store._runs["all"].status == "error"
    assert store._runs["all"].error_message == "Failed to create notifications"
