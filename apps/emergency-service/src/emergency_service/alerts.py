from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from devkit.db import AsyncDatabaseManager, Base, create_all_tables
from devkit.timezone import now_utc
from sqlalchemy import DateTime, Float, String, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from emergency_service.errors import PersistenceError

logger = logging.getLogger(__name__)


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class EmergencyAlert:
    id: str
    user_id: str
    latitude: float
    longitude: float
    status: AlertStatus
    created_at: datetime
    updated_at: datetime


class AlertStore(ABC):
    """Persistence for emergency alerts.

    At most one alert per user is `active`: activation updates the existing
    active row and inserts only when there is none.
    """

    @abstractmethod
    async def get_active(self, user_id: str) -> EmergencyAlert | None:
        raise NotImplementedError

    @abstractmethod
    async def upsert_active(self, user_id: str, latitude: float, longitude: float) -> EmergencyAlert:
        raise NotImplementedError

    @abstractmethod
    async def update_location(self, alert_id: str, latitude: float, longitude: float) -> EmergencyAlert:
        raise NotImplementedError

    @abstractmethod
    async def resolve(self, alert_id: str) -> EmergencyAlert:
        raise NotImplementedError

    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[EmergencyAlert]:
        raise NotImplementedError


class InMemoryAlertStore(AlertStore):
    def __init__(self) -> None:
        self._items: dict[str, EmergencyAlert] = {}

    async def get_active(self, user_id: str) -> EmergencyAlert | None:
        for item in self._items.values():
            if item.user_id == user_id and item.status is AlertStatus.ACTIVE:
                return item
        return None

    async def upsert_active(self, user_id: str, latitude: float, longitude: float) -> EmergencyAlert:
        existing = await self.get_active(user_id)
        now = now_utc()
        if existing is not None:
            alert = replace(existing, latitude=latitude, longitude=longitude, updated_at=now)
        else:
            alert = EmergencyAlert(
                id=str(uuid.uuid4()),
                user_id=user_id,
                latitude=latitude,
                longitude=longitude,
                status=AlertStatus.ACTIVE,
                created_at=now,
                updated_at=now,
            )
        self._items[alert.id] = alert
        return alert

    async def update_location(self, alert_id: str, latitude: float, longitude: float) -> EmergencyAlert:
        alert = replace(self._get(alert_id), latitude=latitude, longitude=longitude, updated_at=now_utc())
        self._items[alert_id] = alert
        return alert

    async def resolve(self, alert_id: str) -> EmergencyAlert:
        alert = replace(self._get(alert_id), status=AlertStatus.RESOLVED, updated_at=now_utc())
        self._items[alert_id] = alert
        return alert

    async def list_for_user(self, user_id: str) -> list[EmergencyAlert]:
        items = [item for item in self._items.values() if item.user_id == user_id]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def _get(self, alert_id: str) -> EmergencyAlert:
        alert = self._items.get(alert_id)
        if alert is None:
            raise PersistenceError(f"Emergency alert {alert_id} not found")
        return alert


class EmergencyAlertORM(Base):
    __tablename__ = "emergency_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyAlertStore(AlertStore):
    def __init__(self, db: AsyncDatabaseManager) -> None:
        self._db = db
        self._ready = False

    async def get_active(self, user_id: str) -> EmergencyAlert | None:
        async def _run(session):
            row = await session.scalar(self._active_query(user_id))
            return self._to_entity(row) if row else None

        return await self._run(_run)

    async def upsert_active(self, user_id: str, latitude: float, longitude: float) -> EmergencyAlert:
        async def _run(session):
            now = now_utc()
            row = await session.scalar(self._active_query(user_id))
            if row is None:
                row = EmergencyAlertORM(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    latitude=latitude,
                    longitude=longitude,
                    status=AlertStatus.ACTIVE.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.latitude = latitude
                row.longitude = longitude
                row.updated_at = now
            return self._to_entity(row)

        return await self._run(_run)

    async def update_location(self, alert_id: str, latitude: float, longitude: float) -> EmergencyAlert:
        async def _run(session):
            row = await self._get(session, alert_id)
            row.latitude = latitude
            row.longitude = longitude
            row.updated_at = now_utc()
            return self._to_entity(row)

        return await self._run(_run)

    async def resolve(self, alert_id: str) -> EmergencyAlert:
        async def _run(session):
            row = await self._get(session, alert_id)
            row.status = AlertStatus.RESOLVED.value
            row.updated_at = now_utc()
            return self._to_entity(row)

        return await self._run(_run)

    async def list_for_user(self, user_id: str) -> list[EmergencyAlert]:
        async def _run(session):
            query = (
                select(EmergencyAlertORM)
                .where(EmergencyAlertORM.user_id == user_id)
                .order_by(EmergencyAlertORM.created_at.desc())
            )
            rows = (await session.scalars(query)).all()
            return [self._to_entity(row) for row in rows]

        return await self._run(_run)

    async def _run(self, fn):
        try:
            await self._ensure_ready()
            return await self._db.run_with_session(fn)
        except SQLAlchemyError as exc:
            logger.error("alert_store_failed", extra={"error": type(exc).__name__})
            raise PersistenceError() from exc

    async def _ensure_ready(self) -> None:
        if self._ready:
            return
        await self._db.connect()
        await create_all_tables(self._db.engine, Base.metadata)
        self._ready = True

    @staticmethod
    def _active_query(user_id: str):
        return (
            select(EmergencyAlertORM)
            .where(EmergencyAlertORM.user_id == user_id, EmergencyAlertORM.status == AlertStatus.ACTIVE.value)
            .order_by(EmergencyAlertORM.updated_at.desc())
            .limit(1)
        )

    @staticmethod
    async def _get(session, alert_id: str) -> EmergencyAlertORM:
        row = await session.get(EmergencyAlertORM, alert_id)
        if row is None:
            raise PersistenceError(f"Emergency alert {alert_id} not found")
        return row

    @staticmethod
    def _to_entity(row: EmergencyAlertORM) -> EmergencyAlert:
        return EmergencyAlert(
            id=row.id,
            user_id=row.user_id,
            latitude=row.latitude,
            longitude=row.longitude,
            status=AlertStatus(row.status),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
