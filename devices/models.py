"""
devices/models.py -- Domain dataclass for tracked devices.

Pure data container. The timestamp invariants (first_login_at never changes,
last_login_at >= first_login_at, updated_at never goes backwards) are
enforced by devices/store.py at the SQL level, not here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class DeviceRecord:
    """One browser/device a user has signed in from.

    Unique per (user_id, fingerprint). Records are deactivated rather than
    deleted; only the retention purge removes rows.
    """

    id: str
    user_id: str
    fingerprint: str
    name: str
    user_agent: str
    is_active: bool
    first_login_at: datetime
    created_at: datetime
    updated_at: datetime
    last_login_at: datetime | None = None
    location: str | None = None
    ip_address: str | None = None

    @property
    def last_seen_at(self) -> datetime:
        """The timestamp device lists are ordered by."""
        return self.last_login_at or self.first_login_at
