from __future__ import annotations

from typing import Any

from patch_sync_worker.jobs.reconcile import (
    RECONCILE_JOB_KIND,
    ReconciliationClient,
    execute_reconcile_lead_patches,
)


class UnsupportedJobKindError(ValueError):
    pass


async def execute_job(job: dict[str, Any], *, client: ReconciliationClient) -> dict[str, Any]:
    if job.get("kind") == RECONCILE_JOB_KIND:
        return await execute_reconcile_lead_patches(job, client=client)
    raise UnsupportedJobKindError(f"unsupported job kind: {job.get('kind')!r}")
