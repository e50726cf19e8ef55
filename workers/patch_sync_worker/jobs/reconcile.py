from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

RECONCILE_JOB_KIND = "reconcile_lead_patches"


class ReconciliationClient(Protocol):
    async def run_reconciliation(self, job_id: str) -> dict[str, Any]: ...


class MalformedJobError(ValueError):
    """Raised when a claimed job lacks the fields needed to run it."""


async def execute_reconcile_lead_patches(job: dict[str, Any], *, client: ReconciliationClient) -> dict[str, Any]:
    job_id = job.get("id")
    lead_organiser_id = job.get("target_id")
    if not isinstance(job_id, str) or not job_id:
        raise MalformedJobError("job id is required")
    if not isinstance(lead_organiser_id, str) or not lead_organiser_id:
        raise MalformedJobError(f"job {job_id} has no lead organiser target")

    result = await client.run_reconciliation(job_id)
    if result.get("skipped_reason"):
        logger.info(
            "reconciliation skipped job=%s lead=%s reason=%s",
            job_id,
            lead_organiser_id,
            result["skipped_reason"],
        )

    return {
        "handled": True,
        "kind": RECONCILE_JOB_KIND,
        "lead_organiser_id": result.get("lead_organiser_id", lead_organiser_id),
        "reason": (job.get("inputs_json") or {}).get("reason"),
        "patches_added": int(result.get("patches_added", 0)),
        "patches_removed": int(result.get("patches_removed", 0)),
        "final_patch_count": int(result.get("final_patch_count", 0)),
        "skipped_reason": result.get("skipped_reason"),
    }
