from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import patch_sync.core.security as security
from patch_sync.core.config import get_settings
from patch_sync.main import app
from patch_sync.services.repository import RepositoryForbiddenError, get_repository
from patch_sync.services.scope import PatchSource, ScopeResult

LEAD_ID = "00000000-0000-0000-0000-0000000000aa"
ADMIN_ID = "00000000-0000-0000-0000-00000000ad01"
P1 = "10000000-0000-0000-0000-000000000001"
P2 = "10000000-0000-0000-0000-000000000002"
O1 = "00000000-0000-0000-0000-000000000001"


class FakeScopeRepository:
    def __init__(self) -> None:
        self.profile_roles: dict[str, str] = {}
        self.reconcile_calls: list[dict[str, Any]] = []
        self.reconcile_all_error: Exception | None = None

    async def get_profile_role(self, user_id: str) -> str | None:
        return self.profile_roles.get(user_id)

    async def compute_scope(self, coordinator_id: str) -> ScopeResult:
        if coordinator_id != LEAD_ID:
            return ScopeResult(coordinator_id=coordinator_id, coordinator_kind="unresolved", patch_ids=frozenset())
        return ScopeResult(
            coordinator_id=LEAD_ID,
            coordinator_kind="live",
            patch_ids=frozenset({P2, P1}),
            sources=[
                PatchSource(patch_id=P1, source="field_assignment", via_id=O1),
                PatchSource(patch_id=P2, source="field_assignment", via_id=O1),
            ],
        )

    async def list_patch_assignments(self, coordinator_id: str, *, include_history: bool = False) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        rows = [
            {
                "id": "20000000-0000-0000-0000-000000000001",
                "lead_organiser_id": coordinator_id,
                "patch_id": P1,
                "patch_name": "North",
                "effective_from": now,
                "effective_to": None,
            },
            {
                "id": "20000000-0000-0000-0000-000000000002",
                "lead_organiser_id": coordinator_id,
                "patch_id": P2,
                "patch_name": "South",
                "effective_from": now,
                "effective_to": now,
            },
        ]
        if include_history:
            return rows
        return [row for row in rows if row["effective_to"] is None]

    async def reconcile(self, coordinator_id: str, *, actor_type: str, actor_id: str | None, reason: str) -> dict[str, Any]:
        self.reconcile_calls.append({"coordinator_id": coordinator_id, "actor_id": actor_id, "reason": reason})
        return {
            "lead_organiser_id": coordinator_id,
            "coordinator_kind": "live",
            "computed_patches": 2,
            "existing_patches": 0,
            "patches_added": 2,
            "patches_removed": 0,
            "final_patch_count": 2,
            "added_patch_ids": [P1, P2],
            "removed_patch_ids": [],
            "skipped_reason": None,
        }

    async def reconcile_all(self, *, actor_user_id: str, close_orphaned: bool = False) -> dict[str, Any]:
        if self.reconcile_all_error is not None:
            raise self.reconcile_all_error
        return {
            "coordinators_processed": 1,
            "total_added": 2,
            "total_removed": 0,
            "orphaned_closed": 3 if close_orphaned else 0,
            "failures": [{"lead_organiser_id": O1, "error": "boom"}],
            "results": [],
        }


@pytest.fixture
def fake_repo() -> FakeScopeRepository:
    return FakeScopeRepository()


@pytest.fixture
def authz_client(monkeypatch: pytest.MonkeyPatch, fake_repo: FakeScopeRepository) -> TestClient:
    monkeypatch.setenv("PS_SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("PS_SUPABASE_ANON_KEY", "anon-key")
    get_settings.cache_clear()
    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def test_scope_requires_bearer_token(authz_client: TestClient) -> None:
    response = authz_client.get(f"/coordinators/{LEAD_ID}/scope")
    assert response.status_code == 401


def test_scope_denies_role_without_scopes(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "viewer-1", "app_metadata": {"role": "viewer"}})

    response = authz_client.get(f"/coordinators/{LEAD_ID}/scope", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403


def test_scope_allows_organiser_and_explains_sources(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "organiser-1", "user_metadata": {"role": "organiser"}})

    response = authz_client.get(f"/coordinators/{LEAD_ID}/scope", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    body = response.json()
    assert body["coordinator_kind"] == "live"
    assert body["patch_ids"] == [P1, P2]
    assert body["sources"][0] == {"patch_id": P1, "source": "field_assignment", "via_id": O1}


def test_scope_for_unknown_coordinator_is_empty(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "organiser-1", "app_metadata": {"role": "organiser"}})

    response = authz_client.get("/coordinators/not-a-uuid/scope", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    assert response.json()["coordinator_kind"] == "unresolved"
    assert response.json()["patch_ids"] == []


def test_patch_assignments_history_toggle(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "lead-1", "app_metadata": {"role": "lead_organiser"}})

    current = authz_client.get(
        f"/coordinators/{LEAD_ID}/patch-assignments",
        headers={"Authorization": "Bearer token"},
    )
    history = authz_client.get(
        f"/coordinators/{LEAD_ID}/patch-assignments",
        params={"include_history": "true"},
        headers={"Authorization": "Bearer token"},
    )

    assert current.status_code == 200
    assert len(current.json()) == 1
    assert history.status_code == 200
    assert len(history.json()) == 2


def test_reconcile_denies_lead_organiser(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "lead-1", "app_metadata": {"role": "lead_organiser"}})

    response = authz_client.post(f"/coordinators/{LEAD_ID}/reconcile", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403


def test_reconcile_allows_admin(
    authz_client: TestClient,
    fake_repo: FakeScopeRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": ADMIN_ID, "app_metadata": {"role": "admin"}})

    response = authz_client.post(f"/coordinators/{LEAD_ID}/reconcile", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    assert response.json()["patches_added"] == 2
    assert fake_repo.reconcile_calls == [{"coordinator_id": LEAD_ID, "actor_id": ADMIN_ID, "reason": "manual"}]


def test_profile_role_takes_precedence_over_metadata(
    authz_client: TestClient,
    fake_repo: FakeScopeRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake_repo.profile_roles[ADMIN_ID] = "admin"
    _mock_supabase_user(monkeypatch, {"id": ADMIN_ID, "app_metadata": {"role": "viewer"}})

    response = authz_client.post(
        "/admin/reconcile-all",
        params={"close_orphaned": "true"},
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["coordinators_processed"] == 1
    assert body["orphaned_closed"] == 3
    assert body["failures"] == [{"lead_organiser_id": O1, "error": "boom"}]


def test_reconcile_all_denies_non_admin(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "organiser-1", "app_metadata": {"role": "organiser"}})

    response = authz_client.post("/admin/reconcile-all", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403


def test_reconcile_all_surfaces_repository_authorization_error(
    authz_client: TestClient,
    fake_repo: FakeScopeRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake_repo.reconcile_all_error = RepositoryForbiddenError("admin role required for bulk reconciliation")
    _mock_supabase_user(monkeypatch, {"id": ADMIN_ID, "app_metadata": {"role": "admin"}})

    response = authz_client.post("/admin/reconcile-all", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403
    assert "admin role required" in response.json()["detail"]
