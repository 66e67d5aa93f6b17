from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, ProgrammingError

from app.core.exceptions import PrimitiveUnavailable
from app.models.notification_dedup import NotificationDeduplication
from app.services.admission import (
    MemoryAdmissionStore,
    OrmAdmissionStore,
    ProcedureAdmissionStore,
    build_admission_store,
)


class _PgError(Exception):
    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class _FakeProcedureDb:
    def __init__(self, *, value=True, error: Exception | None = None) -> None:  # noqa: ANN001
        self.value = value
        self.error = error
        self.statements: list[tuple[str, dict]] = []
        self.commits = 0

    @contextmanager
    def begin_nested(self):
        yield self

    def execute(self, statement, params=None):  # noqa: ANN001
        self.statements.append((str(statement), params or {}))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(scalar=lambda: self.value)

    def commit(self) -> None:
        self.commits += 1


def test_memory_store_admits_once_within_cooldown(clock) -> None:
    store = MemoryAdmissionStore(clock=clock)
    user_id = uuid.uuid4()

    assert store.admit(None, user_id=user_id, notification_key="inventory:p1", cooldown_hours=6) is True
    assert store.admit(None, user_id=user_id, notification_key="inventory:p1", cooldown_hours=6) is False
    # Other keys and other users are independent.
    assert store.admit(None, user_id=user_id, notification_key="inventory:p2", cooldown_hours=6) is True
    assert store.admit(None, user_id=uuid.uuid4(), notification_key="inventory:p1", cooldown_hours=6) is True


def test_memory_store_cooldown_boundary(clock) -> None:
    store = MemoryAdmissionStore(clock=clock)
    user_id = uuid.uuid4()
    assert store.admit(None, user_id=user_id, notification_key="expiry:p1", cooldown_hours=1)

    clock.advance(hours=1, seconds=-1)
    assert store.admit(None, user_id=user_id, notification_key="expiry:p1", cooldown_hours=1) is False

    clock.advance(seconds=2)
    assert store.admit(None, user_id=user_id, notification_key="expiry:p1", cooldown_hours=1) is True

    stats = store.ledger_stats(None, user_id=user_id)
    assert len(stats) == 1
    assert stats[0]["total_sent"] == 2


def test_memory_store_concurrent_admissions_admit_exactly_one(clock) -> None:
    store = MemoryAdmissionStore(clock=clock)
    user_id = uuid.uuid4()
    workers = 32
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    results_lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        admitted = store.admit(None, user_id=user_id, notification_key="inventory:p9", cooldown_hours=24)
        with results_lock:
            results.append(admitted)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == workers
    assert results.count(True) == 1
    assert len(store.ledger_stats(None, user_id=user_id)) == 1


def test_memory_store_reset_and_cleanup(clock) -> None:
    store = MemoryAdmissionStore(clock=clock)
    user_id = uuid.uuid4()
    store.admit(None, user_id=user_id, notification_key="system:disk", cooldown_hours=24)

    assert store.reset_cooldown(None, user_id=user_id, notification_key="system:disk") is True
    assert store.reset_cooldown(None, user_id=user_id, notification_key="system:missing") is False
    assert store.admit(None, user_id=user_id, notification_key="system:disk", cooldown_hours=24) is True

    clock.advance(days=91)
    assert store.cleanup_ledger(None, days_old=90) == 1
    assert store.ledger_stats(None) == []


def test_orm_store_cooldown_and_single_row(db_session, make_user, clock) -> None:
    store = OrmAdmissionStore(clock=clock)
    user = make_user()

    assert store.admit(db_session, user_id=user.id, notification_key="inventory:p1", cooldown_hours=6) is True
    db_session.commit()
    assert store.admit(db_session, user_id=user.id, notification_key="inventory:p1", cooldown_hours=6) is False

    clock.advance(hours=6, seconds=-1)
    assert store.admit(db_session, user_id=user.id, notification_key="inventory:p1", cooldown_hours=6) is False

    clock.advance(seconds=2)
    assert store.admit(db_session, user_id=user.id, notification_key="inventory:p1", cooldown_hours=6) is True
    db_session.commit()

    rows = db_session.execute(select(NotificationDeduplication)).scalars().all()
    assert len(rows) == 1
    assert rows[0].notification_count == 2

    stats = store.ledger_stats(db_session, user_id=user.id)
    assert stats[0]["notification_key"] == "inventory:p1"
    assert stats[0]["hours_until_next"] == 6.0


def test_orm_store_maps_lock_contention_to_false(db_session, make_user, clock, monkeypatch) -> None:
    store = OrmAdmissionStore(clock=clock)
    user_id = make_user().id

    def busy(*_args, **_kwargs):  # noqa: ANN002, ANN003
        raise OperationalError("SELECT ... FOR UPDATE NOWAIT", {}, _PgError("could not obtain lock", "55P03"))

    monkeypatch.setattr(db_session, "execute", busy)
    assert store.admit(db_session, user_id=user_id, notification_key="inventory:p1", cooldown_hours=1) is False


def test_orm_store_reset_and_cleanup(db_session, make_user, clock) -> None:
    store = OrmAdmissionStore(clock=clock)
    user = make_user()
    store.admit(db_session, user_id=user.id, notification_key="sales:daily", cooldown_hours=24)
    db_session.commit()

    assert store.reset_cooldown(db_session, user_id=user.id, notification_key="sales:daily") is True
    assert store.admit(db_session, user_id=user.id, notification_key="sales:daily", cooldown_hours=24) is True
    db_session.commit()

    clock.advance(days=100)
    assert store.cleanup_ledger(db_session, days_old=90) == 1
    assert db_session.execute(select(func.count()).select_from(NotificationDeduplication)).scalar_one() == 0


def test_procedure_store_returns_function_result() -> None:
    store = ProcedureAdmissionStore()
    db = _FakeProcedureDb(value=False)
    user_id = uuid.uuid4()

    assert store.admit(db, user_id=user_id, notification_key="inventory:p1", cooldown_hours=1) is False
    statement, params = db.statements[0]
    assert "should_send_notification" in statement
    assert params == {"user_id": user_id, "notification_key": "inventory:p1", "cooldown_hours": 1}


def test_procedure_store_missing_function_raises_primitive_unavailable() -> None:
    error = ProgrammingError("SELECT should_send_notification(...)", {}, _PgError("function does not exist", "42883"))
    store = ProcedureAdmissionStore()

    with pytest.raises(PrimitiveUnavailable) as excinfo:
        store.admit(_FakeProcedureDb(error=error), user_id=uuid.uuid4(), notification_key="k", cooldown_hours=1)

    assert excinfo.value.primitive == "should_send_notification"


def test_procedure_store_fails_closed_on_other_errors() -> None:
    error = OperationalError("SELECT should_send_notification(...)", {}, _PgError("connection reset", "08006"))
    store = ProcedureAdmissionStore()

    assert store.admit(_FakeProcedureDb(error=error), user_id=uuid.uuid4(), notification_key="k", cooldown_hours=1) is False


def test_procedure_store_cleanup_uses_stored_function() -> None:
    db = _FakeProcedureDb(value=7)
    assert ProcedureAdmissionStore().cleanup_ledger(db, days_old=90) == 7
    assert "cleanup_old_deduplication_records" in db.statements[0][0]
    assert db.commits == 1


def test_build_admission_store_selects_backend(clock) -> None:
    assert isinstance(build_admission_store("procedure"), ProcedureAdmissionStore)
    assert isinstance(build_admission_store(" ORM ", clock=clock), OrmAdmissionStore)
    assert isinstance(build_admission_store("memory"), MemoryAdmissionStore)
    with pytest.raises(ValueError):
        build_admission_store("redis")
