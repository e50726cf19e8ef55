from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def _lease_deadline(job: dict[str, Any]) -> datetime | None:
    lease = job.get("lease_expires_at")
    if not lease:
        return None
    if isinstance(lease, str):
        lease = datetime.fromisoformat(lease.replace("Z", "+00:00"))
    return lease


def lease_expired(job: dict[str, Any], now: datetime | None = None) -> bool:
    deadline = _lease_deadline(job)
    if deadline is None:
        return False
    return deadline <= (now or datetime.now(timezone.utc))
