"""Shared pytest fixtures for EventPass."""

from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventpass import api, database, storage
from eventpass.crud import create_user
from eventpass.events import EventInput, create_event
from eventpass.models import Base
from eventpass.utils import utcnow


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = database.configure_sqlite_transactions(
        create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    database.SessionLocal.remove()
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def make_user(session):
    def _make(email: str, name: str | None = None, *, auth_uid: str | None = None):
        user = create_user(
            session,
            email=email,
            name=name or email.split("@")[0].title(),
            auth_uid=auth_uid,
        )
        session.commit()
        return user

    return _make


@pytest.fixture()
def make_event(session):
    def _make(admin, *, visibility: str = "PUBLIC", name: str = "Launch Party", **extra):
        start = extra.pop("start_date", utcnow().replace(microsecond=0) + timedelta(days=1))
        end = extra.pop("end_date", start + timedelta(hours=4))
        event = create_event(
            session,
            admin.id,
            EventInput(
                name=name,
                start_date=start,
                end_date=end,
                visibility=visibility,
                **extra,
            ),
        )
        session.commit()
        return event

    return _make
