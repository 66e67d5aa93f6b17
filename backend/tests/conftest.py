from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.db.base import Base  # noqa: E402
import app.models  # noqa: E402,F401
from app.models.product import Product  # noqa: E402
from app.models.user import User  # noqa: E402


class FakeClock:
    def __init__(self, start: dt.datetime) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:  # noqa: ANN003
        self.now = self.now + dt.timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(dt.datetime(2026, 10, 1, 8, 0, tzinfo=dt.timezone.utc))


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection):  # noqa: ANN001
        connection.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(db_engine):
    session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db_session):
    counter = {"n": 0}

    def _make(*, role: str = "pharmacist", is_active: bool = True, first_name: str | None = None) -> User:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@medcure.test",
            first_name=first_name or f"User{counter['n']}",
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture()
def make_product(db_session):
    def _make(
        name: str,
        *,
        stock: int = 100,
        reorder_level: int | None = 10,
        expiry_date: dt.date | None = None,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            brand_name=name,
            stock_in_pieces=stock,
            reorder_level=reorder_level,
            expiry_date=expiry_date,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make
