from __future__ import annotations

import asyncio
from typing import Any

import pytest

from patch_sync_worker.jobs.reconcile import MalformedJobError, execute_reconcile_lead_patches


class FakeReconciliationClient:
    def __init__(self, result: dict[str, Any]) -> None:
        self.result = result
        self.calls: list[str] = []

    async def run_reconciliation(self, job_id: str) -> dict[str, Any]:
        self.calls.append(job_id)
        return self.result


def test_reconcile_job_summarises_api_result() -> None:
    client = FakeReconciliationClient(
        {
            "lead_organiser_id": "lead-1",
            "coordinator_kind": "live",
            "patches_added": 2,
            "patches_removed": 1,
            "final_patch_count": 4,
            "skipped_reason": None,
        }
    )
    job = {
        "id": "job-1",
        "kind": "reconcile_lead_patches",
        "target_id": "lead-1",
        "inputs_json": {"reason": "role_hierarchy.insert"},
    }

    result = asyncio.run(execute_reconcile_lead_patches(job, client=client))

    assert client.calls == ["job-1"]
    assert result == {
        "handled": True,
        "kind": "reconcile_lead_patches",
        "lead_organiser_id": "lead-1",
        "reason": "role_hierarchy.insert",
        "patches_added": 2,
        "patches_removed": 1,
        "final_patch_count": 4,
        "skipped_reason": None,
    }


def test_reconcile_job_reports_skipped_coordinators() -> None:
    client = FakeReconciliationClient({"lead_organiser_id": "lead-1", "skipped_reason": "not_a_lead_organiser"})

    result = asyncio.run(
        execute_reconcile_lead_patches({"id": "job-1", "target_id": "lead-1"}, client=client)
    )

    assert result["skipped_reason"] == "not_a_lead_organiser"
    assert result["patches_added"] == 0


def test_reconcile_job_requires_target() -> None:
    client = FakeReconciliationClient({})

    with pytest.raises(MalformedJobError):
        asyncio.run(execute_reconcile_lead_patches({"id": "job-1", "target_id": None}, client=client))
    assert client.calls == []
