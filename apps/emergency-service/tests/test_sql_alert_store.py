from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from emergency_service.alerts import AlertStatus, EmergencyAlertORM, SqlAlchemyAlertStore
from emergency_service.errors import PersistenceError

CREATED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _row(alert_id: str = "alert-1", status: str = "active") -> EmergencyAlertORM:
    return EmergencyAlertORM(
        id=alert_id,
        user_id="user-1",
        latitude=40.0,
        longitude=-73.0,
        status=status,
        created_at=CREATED,
        updated_at=CREATED,
    )


class FakeScalars:
    def __init__(self, rows: list[EmergencyAlertORM]) -> None:
        self._rows = rows

    def all(self) -> list[EmergencyAlertORM]:
        return list(self._rows)


class FakeSession:
    def __init__(self, active: EmergencyAlertORM | None = None, rows: list[EmergencyAlertORM] | None = None) -> None:
        self.active = active
        self.rows = {row.id: row for row in rows or []}
        if active is not None:
            self.rows[active.id] = active
        self.added: list[EmergencyAlertORM] = []
        self.queries: list[str] = []

    async def scalar(self, query):
        self.queries.append(str(query))
        return self.active

    async def scalars(self, query):
        self.queries.append(str(query))
        return FakeScalars(list(self.rows.values()))

    async def get(self, _model, alert_id: str):
        return self.rows.get(alert_id)

    def add(self, row: EmergencyAlertORM) -> None:
        self.added.append(row)


class FakeConnection:
    def __init__(self) -> None:
        self.synced: list = []

    async def run_sync(self, fn) -> None:
        self.synced.append(fn)


class FakeEngine:
    def __init__(self) -> None:
        self.connection = FakeConnection()

    @asynccontextmanager
    async def begin(self):
        yield self.connection


class FakeDatabase:
    def __init__(self, session: FakeSession, error: Exception | None = None) -> None:
        self.session = session
        self.error = error
        self.connects = 0
        self._engine = FakeEngine()

    @property
    def engine(self) -> FakeEngine:
        return self._engine

    async def connect(self) -> None:
        self.connects += 1

    async def run_with_session(self, fn):
        if self.error is not None:
            raise self.error
        return await fn(self.session)


@pytest.mark.asyncio
async def test_sql_store_inserts_when_no_alert_is_active() -> None:
    session = FakeSession()
    db = FakeDatabase(session)
    store = SqlAlchemyAlertStore(db)

    alert = await store.upsert_active("user-1", 40.7128, -74.0060)

    assert len(session.added) == 1
    assert session.added[0].id == alert.id
    assert alert.status is AlertStatus.ACTIVE
    assert (alert.latitude, alert.longitude) == (40.7128, -74.0060)
    assert alert.created_at == alert.updated_at
    assert db.connects == 1
    assert len(db.engine.connection.synced) == 1


@pytest.mark.asyncio
async def test_sql_store_reuses_active_alert_row() -> None:
    row = _row()
    session = FakeSession(active=row)
    store = SqlAlchemyAlertStore(FakeDatabase(session))

    alert = await store.upsert_active("user-1", 40.7128, -74.0060)

    assert session.added == []
    assert alert.id == "alert-1"
    assert (row.latitude, row.longitude) == (40.7128, -74.0060)
    assert alert.created_at == CREATED
    assert alert.updated_at > CREATED


@pytest.mark.asyncio
async def test_sql_store_active_query_filters_status_and_takes_newest() -> None:
    session = FakeSession(active=_row())
    store = SqlAlchemyAlertStore(FakeDatabase(session))

    alert = await store.get_active("user-1")

    query = session.queries[0]
    assert alert is not None and alert.id == "alert-1"
    assert "emergency_alerts.user_id = :user_id_1" in query
    assert "emergency_alerts.status = :status_1" in query
    assert "ORDER BY emergency_alerts.updated_at DESC" in query
    assert "LIMIT" in query


@pytest.mark.asyncio
async def test_sql_store_resolve_marks_row_resolved() -> None:
    row = _row()
    store = SqlAlchemyAlertStore(FakeDatabase(FakeSession(rows=[row])))

    alert = await store.resolve("alert-1")

    assert alert.status is AlertStatus.RESOLVED
    assert row.status == "resolved"


@pytest.mark.asyncio
async def test_sql_store_update_of_missing_alert_raises_persistence_error() -> None:
    store = SqlAlchemyAlertStore(FakeDatabase(FakeSession()))

    with pytest.raises(PersistenceError) as exc_info:
        await store.update_location("missing", 40.0, -73.0)

    assert exc_info.value.message == "Emergency alert missing not found"


@pytest.mark.asyncio
async def test_sql_store_lists_newest_first() -> None:
    session = FakeSession(rows=[_row("alert-1", "resolved"), _row("alert-2")])
    store = SqlAlchemyAlertStore(FakeDatabase(session))

    alerts = await store.list_for_user("user-1")

    assert [item.id for item in alerts] == ["alert-1", "alert-2"]
    assert "ORDER BY emergency_alerts.created_at DESC" in session.queries[0]


@pytest.mark.asyncio
async def test_sql_store_wraps_database_errors() -> None:
    error = OperationalError("SELECT 1", {}, Exception("connection refused"))
    store = SqlAlchemyAlertStore(FakeDatabase(FakeSession(), error=error))

    with pytest.raises(PersistenceError) as exc_info:
        await store.upsert_active("user-1", 40.0, -73.0)

    assert exc_info.value.message == "Failed to save emergency alert."
    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_sql_store_connects_once() -> None:
    db = FakeDatabase(FakeSession(active=_row()))
    store = SqlAlchemyAlertStore(db)

    await store.get_active("user-1")
    await store.get_active("user-1")

    assert db.connects == 1
