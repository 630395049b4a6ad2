"""
devices/store.py -- SQLAlchemy Core persistence for device records.

Pattern: Repository + Data Mapper. DeviceStore is the repository;
_row_to_device is the mapper. The tracker never touches SQL directly.

Atomic upsert:
  upsert_login() is a single INSERT ... ON CONFLICT (user_id, fingerprint)
  DO UPDATE statement, not a read-then-write pair. Two logins racing to
  create the first record for a new device both run the same statement; the
  UNIQUE constraint makes one of them the insert and the other the update,
  so exactly one row exists afterwards. Supported dialects: SQLite (3.24+)
  and PostgreSQL.

Timestamp invariants, enforced in the UPDATE branch itself:
  first_login_at and created_at are never in the SET list.
  last_login_at only moves forward and never drops below first_login_at.
  updated_at only moves forward.
A clock that steps backwards therefore cannot break them.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: imports from core/ only.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    case,
    func,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from core.db import from_iso, make_engine, to_iso, utcnow
from devices.models import DeviceRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_devices = Table(
    "user_devices",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("fingerprint", String(128), nullable=False),
    Column("name", String(255), nullable=False),
    Column("location", String(255)),
    Column("user_agent", Text, nullable=False),
    Column("ip_address", String(45)),
    Column("is_active", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
    Column("first_login_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("user_id", "fingerprint", name="uq_device_user_fingerprint"),
    Index("ix_user_devices_user_active", "user_id", "is_active"),
)

_UPSERT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}

# Most recent activity first; a device that never re-logged in sorts by its first login.
_LAST_SEEN = func.coalesce(_devices.c.last_login_at, _devices.c.first_login_at)


class DeviceStore:
    """Repository for DeviceRecord entities.

    Usage:
        store = DeviceStore("sqlite:///authgate.db")
        record, created = store.upsert_login(user_id, fingerprint, user_agent, name="Chrome on macOS")
        store.list_for_user(user_id, active_only=True)
        store.deactivate(record.id)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        dialect = self.engine.dialect.name
        if dialect not in _UPSERT_INSERTS:
            raise ValueError(f"DeviceStore needs ON CONFLICT support; unsupported dialect {dialect!r}")
        self._insert = _UPSERT_INSERTS[dialect]
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_login(
        self,
        user_id: str,
        fingerprint: str,
        user_agent: str,
        name: str,
        ip_address: str | None = None,
        location: str | None = None,
        now: datetime | None = None,
    ) -> tuple[DeviceRecord, bool]:
        """Record a successful login from (user_id, fingerprint).

        New device: inserted active with first_login_at = last_login_at =
        created_at = updated_at = now.

        Known device: reactivated, last_login_at/updated_at advanced,
        user_agent and name refreshed, ip_address/location refreshed when
        given (None keeps the previous value).

        Returns (record, created).
        """
        stamp = to_iso(now or utcnow())
        new_id = uuid.uuid4().hex
        stmt = self._insert(_devices).values(
            id=new_id,
            user_id=user_id,
            fingerprint=fingerprint,
            name=name,
            location=location,
            user_agent=user_agent,
            ip_address=ip_address,
            is_active=1,
            first_login_at=stamp,
            last_login_at=stamp,
            created_at=stamp,
            updated_at=stamp,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[_devices.c.user_id, _devices.c.fingerprint],
            set_={
                "last_login_at": case((excluded.last_login_at > _LAST_SEEN, excluded.last_login_at), else_=_LAST_SEEN),
                "updated_at": case(
                    (excluded.updated_at > _devices.c.updated_at, excluded.updated_at),
                    else_=_devices.c.updated_at,
                ),
                "is_active": 1,
                "user_agent": excluded.user_agent,
                "name": excluded.name,
                "ip_address": func.coalesce(excluded.ip_address, _devices.c.ip_address),
                "location": func.coalesce(excluded.location, _devices.c.location),
            },
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            row = conn.execute(
                _devices.select().where((_devices.c.user_id == user_id) & (_devices.c.fingerprint == fingerprint))
            ).fetchone()
            conn.commit()
        record = _row_to_device(row)
        return record, record.id == new_id

    def deactivate(self, device_id: str, user_id: str | None = None, now: datetime | None = None) -> DeviceRecord | None:
        """Mark a device inactive. Idempotent.

        Only an active device is touched, so a repeat call leaves updated_at
        alone. When user_id is given the device must belong to that user
        (IDOR check). Returns the device, or None if not found / not owned.
        """
        stamp = to_iso(now or utcnow())
        match = _devices.c.id == device_id
        if user_id is not None:
            match = match & (_devices.c.user_id == user_id)
        with self.engine.connect() as conn:
            conn.execute(
                _devices.update()
                .where(match & (_devices.c.is_active == 1))
                .values(is_active=0, updated_at=_forward(stamp))
            )
            row = conn.execute(_devices.select().where(match)).fetchone()
            conn.commit()
        return _row_to_device(row) if row is not None else None

    def deactivate_all(self, user_id: str, now: datetime | None = None) -> int:
        """Deactivate every active device a user has. Returns the number changed."""
        stamp = to_iso(now or utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where((_devices.c.user_id == user_id) & (_devices.c.is_active == 1))
                .values(is_active=0, updated_at=_forward(stamp))
            )
            conn.commit()
        return result.rowcount

    def purge_inactive(self, older_than_days: int, now: datetime | None = None) -> int:
        """Delete inactive devices not updated for older_than_days. Returns rows removed.

        This is the only path that physically removes device rows; it exists
        for an external retention job to call.
        """
        cutoff = to_iso((now or utcnow()) - timedelta(days=older_than_days))
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.delete().where((_devices.c.is_active == 0) & (_devices.c.updated_at < cutoff))
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, device_id: str) -> DeviceRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.id == device_id)).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_for_user(self, user_id: str, active_only: bool = False) -> list[DeviceRecord]:
        """Return a user's devices, most recently used first."""
        query = _devices.select().where(_devices.c.user_id == user_id)
        if active_only:
            query = query.where(_devices.c.is_active == 1)
        query = query.order_by(_LAST_SEEN.desc(), _devices.c.id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_device(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers / row mapper
# ---------------------------------------------------------------------------


def _forward(stamp: str):
    """SQL expression for updated_at that never moves backwards."""
    return case((_devices.c.updated_at < stamp, stamp), else_=_devices.c.updated_at)


def _row_to_device(row) -> DeviceRecord:
    return DeviceRecord(
        id=row.id,
        user_id=row.user_id,
        fingerprint=row.fingerprint,
        name=row.name,
        location=row.location,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        is_active=bool(row.is_active),
        first_login_at=from_iso(row.first_login_at),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
