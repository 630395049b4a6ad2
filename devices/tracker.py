"""
devices/tracker.py -- Device/session tracking service.

Async facade over DeviceStore. Every store call runs in a worker thread
through core.offload.run_store, which also turns SQLAlchemyError into
StorageFailureError. The tracker adds input checks, device naming and
logging; the invariants live in the store's SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from core.db import utcnow
from core.offload import run_store
from devices.fingerprint import describe_user_agent
from devices.models import DeviceRecord
from devices.store import DeviceStore

logger = logging.getLogger("authgate.devices")


class DeviceTracker:
    """Records logins per (user, device) and manages device activity.

    Usage:
        tracker = DeviceTracker(DeviceStore(db_url))
        device = await tracker.record_login(user_id, fingerprint, user_agent, ip_address="203.0.113.7")
        await tracker.list_active_devices(user_id)
        await tracker.deactivate(device.id)
    """

    def __init__(self, store: DeviceStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def record_login(
        self,
        user_id: str,
        fingerprint: str,
        user_agent: str,
        ip_address: str | None = None,
        location: str | None = None,
        name: str | None = None,
    ) -> DeviceRecord:
        """Create or refresh the device record for this login. Idempotent per (user_id, fingerprint).

        name defaults to a description of the user agent ("Chrome on macOS").
        """
        if not user_id or not fingerprint:
            raise ValueError("user_id and fingerprint are required")
        record, created = await run_store(
            self._store.upsert_login,
            user_id,
            fingerprint,
            user_agent or "",
            name or describe_user_agent(user_agent),
            ip_address=ip_address,
            location=location,
            now=self._clock(),
        )
        if created:
            logger.info("New device %s (%s) for user %s", record.id, record.name, user_id)
        else:
            logger.debug("Refreshed device %s for user %s", record.id, user_id)
        return record

    async def deactivate(self, device_id: str, user_id: str | None = None) -> DeviceRecord | None:
        """Mark a device inactive (logout / revocation). Repeat calls are no-op successes.

        Returns None when the device does not exist, or does not belong to
        user_id when one is given.
        """
        record = await run_store(self._store.deactivate, device_id, user_id=user_id, now=self._clock())
        if record is not None:
            logger.info("Deactivated device %s for user %s", device_id, record.user_id)
        return record

    async def deactivate_all(self, user_id: str) -> int:
        """Sign a user out everywhere. Returns how many devices were active."""
        count = await run_store(self._store.deactivate_all, user_id, now=self._clock())
        logger.info("Deactivated %d devices for user %s", count, user_id)
        return count

    async def list_active_devices(self, user_id: str) -> list[DeviceRecord]:
        """Active devices, most recently used first."""
        return await run_store(self._store.list_for_user, user_id, active_only=True)

    async def list_devices(self, user_id: str) -> list[DeviceRecord]:
        """All devices including inactive ones, most recently used first."""
        return await run_store(self._store.list_for_user, user_id)
