from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from functools import lru_cache
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from patch_sync.core.config import get_settings
from patch_sync.services.scope import (
    HierarchySnapshot,
    LiveCoordinator,
    ProvisionalCoordinator,
    ScopeResult,
    compute_scope,
    coordinator_kind,
    plan_reconciliation,
    resolve_coordinator,
)
from patch_sync.services.triggers import HierarchyChange, resolve_affected_coordinators

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class ReconciliationPersistenceError(RepositoryError):
    """Raised when applying a reconciliation diff fails in the database."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


RECONCILE_MODES = {"queue", "inline"}
RECONCILE_JOB_KIND = "reconcile_lead_patches"
RECONCILE_JOB_TARGET_TYPE = "lead_organiser"
JOB_STATUSES = {"queued", "claimed", "done", "failed", "dead_letter"}
JOB_RESULT_STATUSES = {"done", "failed", "dead_letter"}

_JOB_COLUMNS = """
  id::text as id,
  lead_organiser_id::text as lead_organiser_id,
  reason,
  status::text as status
"""

_ADMIN_JOB_COLUMNS = """
  id::text as id,
  lead_organiser_id::text as lead_organiser_id,
  reason,
  status::text as status,
  attempt,
  locked_by_module_id::text as locked_by_module_id,
  lease_expires_at,
  next_run_at,
  result_json,
  error_json,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        reconcile_mode: str,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
    ) -> None:
        if reconcile_mode not in RECONCILE_MODES:
            raise ValueError(f"reconcile_mode must be one of: {sorted(RECONCILE_MODES)}")
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.reconcile_mode = reconcile_mode
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # -- principals -----------------------------------------------------------------

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    async def get_profile_role(self, user_id: str) -> str | None:
        normalized_user_id = self._coerce_uuid(user_id)
        if not normalized_user_id:
            return None
        pool = await self._get_pool()
        return await pool.fetchval(
            "select role from profiles where id = $1::uuid and is_active = true",
            normalized_user_id,
        )

    # -- closure --------------------------------------------------------------------

    async def compute_scope(self, coordinator_id: str) -> ScopeResult:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            snapshot = await self._load_hierarchy_snapshot(conn, coordinator_id)
        return compute_scope(snapshot)

    async def _load_hierarchy_snapshot(self, conn: asyncpg.Connection, coordinator_id: str) -> HierarchySnapshot:
        normalized_id = self._coerce_uuid(coordinator_id)
        if not normalized_id:
            return HierarchySnapshot(coordinator_id=str(coordinator_id), coordinator=None)

        profile_row = await conn.fetchrow(
            "select role, is_active from profiles where id = $1::uuid",
            normalized_id,
        )
        pending_row = await conn.fetchrow(
            "select role, status from pending_users where id = $1::uuid",
            normalized_id,
        )
        coordinator = resolve_coordinator(
            coordinator_id=normalized_id,
            profile_row=dict(profile_row) if profile_row else None,
            pending_row=dict(pending_row) if pending_row else None,
        )
        snapshot = HierarchySnapshot(coordinator_id=normalized_id, coordinator=coordinator)
        if coordinator is None:
            return snapshot

        if isinstance(coordinator, LiveCoordinator):
            live_rows = await conn.fetch(
                """
                select child_user_id::text as organiser_id
                from role_hierarchy
                where parent_user_id = $1::uuid
                  and end_date is null
                  and is_active = true
                """,
                normalized_id,
            )
            pending_rows = await conn.fetch(
                """
                select pending_user_id::text as organiser_id
                from lead_draft_organiser_links
                where lead_user_id = $1::uuid
                  and end_date is null
                  and is_active = true
                """,
                normalized_id,
            )
            snapshot.live_organiser_ids = [row["organiser_id"] for row in live_rows]
            snapshot.provisional_organiser_ids = [row["organiser_id"] for row in pending_rows]
        else:
            link_rows = await conn.fetch(
                """
                select
                  organiser_user_id::text as organiser_user_id,
                  organiser_pending_user_id::text as organiser_pending_user_id
                from draft_lead_organiser_links
                where draft_lead_pending_user_id = $1::uuid
                  and end_date is null
                  and is_active = true
                """,
                normalized_id,
            )
            snapshot.live_organiser_ids = [row["organiser_user_id"] for row in link_rows if row["organiser_user_id"]]
            snapshot.provisional_organiser_ids = [
                row["organiser_pending_user_id"] for row in link_rows if row["organiser_pending_user_id"]
            ]

        if snapshot.live_organiser_ids:
            field_rows = await conn.fetch(
                """
                select organiser_id::text as organiser_id, patch_id::text as patch_id
                from organiser_patch_assignments
                where organiser_id = any($1::text[]::uuid[])
                  and effective_to is null
                """,
                snapshot.live_organiser_ids,
            )
            for row in field_rows:
                snapshot.field_patch_ids.setdefault(row["organiser_id"], []).append(row["patch_id"])

        pending_ids = list(snapshot.provisional_organiser_ids)
        if isinstance(coordinator, ProvisionalCoordinator):
            pending_ids.append(normalized_id)
        if pending_ids:
            direct_rows = await conn.fetch(
                """
                select id::text as id, assigned_patch_ids::text[] as patch_ids
                from pending_users
                where id = any($1::text[]::uuid[])
                  and assigned_patch_ids is not null
                """,
                pending_ids,
            )
            for row in direct_rows:
                snapshot.direct_patch_ids[row["id"]] = [patch_id for patch_id in row["patch_ids"] or [] if patch_id]

        return snapshot

    # -- reconciliation -------------------------------------------------------------

    async def reconcile(
        self,
        coordinator_id: str,
        *,
        actor_type: str = "human",
        actor_id: str | None = None,
        reason: str = "manual",
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                return await self._reconcile_on_conn(
                    conn,
                    coordinator_id,
                    actor_type=actor_type,
                    actor_id=actor_id,
                    reason=reason,
                )

    async def _reconcile_on_conn(
        self,
        conn: asyncpg.Connection,
        coordinator_id: str,
        *,
        actor_type: str,
        actor_id: str | None,
        reason: str,
    ) -> dict[str, Any]:
        """Recompute one lead's scope and apply the diff as close/insert writes.

        Must run inside a transaction. Provisional and unresolved coordinators are
        reported but never written, since assignment rows reference live profiles.
        """
        try:
            normalized_id = self._coerce_uuid(coordinator_id)
            if normalized_id:
                # Serialises reconciliations of the same lead without blocking the key
                # share locks that foreign key checks on edge inserts hold.
                await conn.execute("select 1 from profiles where id = $1::uuid for no key update", normalized_id)

            snapshot = await self._load_hierarchy_snapshot(conn, coordinator_id)
            scope = compute_scope(snapshot)
            if not isinstance(snapshot.coordinator, LiveCoordinator):
                skipped_reason = (
                    "provisional_coordinator"
                    if isinstance(snapshot.coordinator, ProvisionalCoordinator)
                    else "not_a_lead_organiser"
                )
                return self._reconcile_result(
                    lead_organiser_id=snapshot.coordinator_id,
                    kind=coordinator_kind(snapshot.coordinator),
                    computed=scope.patch_ids,
                    existing=frozenset(),
                    added=[],
                    removed=[],
                    skipped_reason=skipped_reason,
                )

            existing_rows = await conn.fetch(
                """
                select patch_id::text as patch_id
                from lead_organiser_patch_assignments
                where lead_organiser_id = $1::uuid
                  and effective_to is null
                for update
                """,
                normalized_id,
            )
            existing = frozenset(row["patch_id"] for row in existing_rows)
            plan = plan_reconciliation(existing=existing, computed=scope.patch_ids)

            if plan.to_remove:
                await conn.execute(
                    """
                    update lead_organiser_patch_assignments
                    set effective_to = now()
                    where lead_organiser_id = $1::uuid
                      and patch_id = any($2::text[]::uuid[])
                      and effective_to is null
                    """,
                    normalized_id,
                    plan.to_remove,
                )
            if plan.to_add:
                await conn.execute(
                    """
                    insert into lead_organiser_patch_assignments (lead_organiser_id, patch_id, effective_from)
                    select $1::uuid, patch_id, now()
                    from unnest($2::text[]::uuid[]) as patch_id
                    """,
                    normalized_id,
                    plan.to_add,
                )

            result = self._reconcile_result(
                lead_organiser_id=normalized_id,
                kind="live",
                computed=scope.patch_ids,
                existing=existing,
                added=plan.to_add,
                removed=plan.to_remove,
                skipped_reason=None,
            )
            if not plan.is_noop:
                await self._record_event(
                    conn,
                    entity_type="lead_organiser",
                    entity_id=normalized_id,
                    event_type="patches_reconciled",
                    actor_type=actor_type,
                    actor_id=actor_id,
                    payload={"reason": reason, **result},
                )
        except asyncpg.PostgresError as exc:
            raise ReconciliationPersistenceError(
                f"failed to reconcile lead organiser {coordinator_id}: {exc}",
            ) from exc

        logger.info(
            "reconciled lead=%s added=%s removed=%s reason=%s",
            normalized_id,
            len(plan.to_add),
            len(plan.to_remove),
            reason,
        )
        return result

    async def reconcile_all(self, *, actor_user_id: str, close_orphaned: bool = False) -> dict[str, Any]:
        normalized_actor_user_id = self._coerce_uuid(actor_user_id)
        if not normalized_actor_user_id:
            raise RepositoryValidationError("actor_user_id must be a UUID")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._require_admin(conn, normalized_actor_user_id)
            lead_ids = await self._list_active_lead_ids(conn)

        results: list[dict[str, Any]] = []
        failures: list[dict[str, str]] = []
        for lead_id in lead_ids:
            try:
                result = await self.reconcile(
                    lead_id,
                    actor_type="human",
                    actor_id=normalized_actor_user_id,
                    reason="bulk_sweep",
                )
            except RepositoryError as exc:
                logger.warning("bulk reconciliation failed for lead=%s: %s", lead_id, exc)
                failures.append({"lead_organiser_id": lead_id, "error": str(exc)})
                continue
            results.append(result)

        orphaned_closed = 0
        if close_orphaned:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    orphaned_closed = await self._close_orphaned_assignments(
                        conn,
                        actor_user_id=normalized_actor_user_id,
                    )

        summary = {
            "coordinators_processed": len(results),
            "total_added": sum(result["patches_added"] for result in results),
            "total_removed": sum(result["patches_removed"] for result in results),
            "orphaned_closed": orphaned_closed,
            "failures": failures,
            "results": results,
        }
        logger.info(
            "bulk reconciliation processed=%s added=%s removed=%s failed=%s orphaned_closed=%s",
            summary["coordinators_processed"],
            summary["total_added"],
            summary["total_removed"],
            len(failures),
            orphaned_closed,
        )
        return summary

    async def enqueue_all_reconciliations(self, *, actor_user_id: str) -> dict[str, Any]:
        normalized_actor_user_id = self._coerce_uuid(actor_user_id)
        if not normalized_actor_user_id:
            raise RepositoryValidationError("actor_user_id must be a UUID")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._require_admin(conn, normalized_actor_user_id)
                lead_ids = await self._list_active_lead_ids(conn)
                job_ids: list[str] = []
                for lead_id in lead_ids:
                    job_ids.append(
                        await self._enqueue_reconciliation(
                            conn,
                            lead_id,
                            reason="bulk_sweep",
                            actor_type="human",
                            actor_id=normalized_actor_user_id,
                        )
                    )
        return {"coordinators_enqueued": len(lead_ids), "job_ids": job_ids}

    async def _close_orphaned_assignments(self, conn: asyncpg.Connection, *, actor_user_id: str) -> int:
        rows = await conn.fetch(
            """
            update lead_organiser_patch_assignments lopa
            set effective_to = now()
            where lopa.effective_to is null
              and not exists (
                select 1
                from profiles p
                where p.id = lopa.lead_organiser_id
                  and p.role = 'lead_organiser'
                  and p.is_active = true
              )
            returning lopa.lead_organiser_id::text as lead_organiser_id, lopa.patch_id::text as patch_id
            """
        )
        closed_by_lead: dict[str, list[str]] = {}
        for row in rows:
            closed_by_lead.setdefault(row["lead_organiser_id"], []).append(row["patch_id"])
        for lead_id, patch_ids in closed_by_lead.items():
            await self._record_event(
                conn,
                entity_type="lead_organiser",
                entity_id=lead_id,
                event_type="orphaned_patches_closed",
                actor_type="human",
                actor_id=actor_user_id,
                payload={"removed_patch_ids": sorted(patch_ids)},
            )
        return len(rows)

    async def list_patch_assignments(self, coordinator_id: str, *, include_history: bool = False) -> list[dict[str, Any]]:
        normalized_id = self._coerce_uuid(coordinator_id)
        if not normalized_id:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              lopa.id::text as id,
              lopa.lead_organiser_id::text as lead_organiser_id,
              lopa.patch_id::text as patch_id,
              p.name as patch_name,
              lopa.effective_from,
              lopa.effective_to
            from lead_organiser_patch_assignments lopa
            left join patches p on p.id = lopa.patch_id
            where lopa.lead_organiser_id = $1::uuid
              and ($2::boolean or lopa.effective_to is null)
            order by lopa.effective_from desc, lopa.id asc
            """,
            normalized_id,
            include_history,
        )
        return [dict(row) for row in rows]

    # -- hierarchy writes -----------------------------------------------------------

    async def create_supervision_edge(
        self,
        *,
        parent_user_id: str,
        child_user_id: str,
        start_date: date | None,
        actor_user_id: str,
    ) -> dict[str, Any]:
        parent_id = self._require_uuid(parent_user_id, "parent_user_id")
        child_id = self._require_uuid(child_user_id, "child_user_id")
        return await self._insert_edge(
            relation="role_hierarchy",
            query="""
            insert into role_hierarchy (parent_user_id, child_user_id, start_date, assigned_by)
            values ($1::uuid, $2::uuid, coalesce($3::date, current_date), $4::uuid)
            returning
              id::text as id,
              parent_user_id::text as parent_user_id,
              child_user_id::text as child_user_id,
              start_date,
              end_date,
              is_active
            """,
            args=(parent_id, child_id, start_date, self._coerce_uuid(actor_user_id)),
            actor_user_id=actor_user_id,
        )

    async def end_supervision_edge(self, *, edge_id: str, actor_user_id: str) -> dict[str, Any]:
        return await self._end_edge(
            relation="role_hierarchy",
            edge_id=edge_id,
            columns="parent_user_id::text as parent_user_id, child_user_id::text as child_user_id",
            actor_user_id=actor_user_id,
        )

    async def create_provisional_supervision_edge(
        self,
        *,
        lead_user_id: str,
        pending_user_id: str,
        start_date: date | None,
        actor_user_id: str,
    ) -> dict[str, Any]:
        lead_id = self._require_uuid(lead_user_id, "lead_user_id")
        pending_id = self._require_uuid(pending_user_id, "pending_user_id")
        return await self._insert_edge(
            relation="lead_draft_organiser_links",
            query="""
            insert into lead_draft_organiser_links (lead_user_id, pending_user_id, start_date, assigned_by)
            values ($1::uuid, $2::uuid, coalesce($3::date, current_date), $4::uuid)
            returning
              id::text as id,
              lead_user_id::text as lead_user_id,
              pending_user_id::text as pending_user_id,
              start_date,
              end_date,
              is_active
            """,
            args=(lead_id, pending_id, start_date, self._coerce_uuid(actor_user_id)),
            actor_user_id=actor_user_id,
        )

    async def end_provisional_supervision_edge(self, *, edge_id: str, actor_user_id: str) -> dict[str, Any]:
        return await self._end_edge(
            relation="lead_draft_organiser_links",
            edge_id=edge_id,
            columns="lead_user_id::text as lead_user_id, pending_user_id::text as pending_user_id",
            actor_user_id=actor_user_id,
        )

    async def create_provisional_lead_edge(
        self,
        *,
        draft_lead_pending_user_id: str,
        organiser_user_id: str | None,
        organiser_pending_user_id: str | None,
        start_date: date | None,
        actor_user_id: str,
    ) -> dict[str, Any]:
        lead_id = self._require_uuid(draft_lead_pending_user_id, "draft_lead_pending_user_id")
        if bool(organiser_user_id) == bool(organiser_pending_user_id):
            raise RepositoryValidationError(
                "exactly one of organiser_user_id or organiser_pending_user_id must be set",
            )
        organiser_id = self._require_uuid(organiser_user_id, "organiser_user_id") if organiser_user_id else None
        pending_organiser_id = (
            self._require_uuid(organiser_pending_user_id, "organiser_pending_user_id")
            if organiser_pending_user_id
            else None
        )
        return await self._insert_edge(
            relation="draft_lead_organiser_links",
            query="""
            insert into draft_lead_organiser_links (
              draft_lead_pending_user_id,
              organiser_user_id,
              organiser_pending_user_id,
              start_date,
              assigned_by
            )
            values ($1::uuid, $2::uuid, $3::uuid, coalesce($4::date, current_date), $5::uuid)
            returning
              id::text as id,
              draft_lead_pending_user_id::text as draft_lead_pending_user_id,
              organiser_user_id::text as organiser_user_id,
              organiser_pending_user_id::text as organiser_pending_user_id,
              start_date,
              end_date,
              is_active
            """,
            args=(lead_id, organiser_id, pending_organiser_id, start_date, self._coerce_uuid(actor_user_id)),
            actor_user_id=actor_user_id,
        )

    async def end_provisional_lead_edge(self, *, edge_id: str, actor_user_id: str) -> dict[str, Any]:
        return await self._end_edge(
            relation="draft_lead_organiser_links",
            edge_id=edge_id,
            columns=(
                "draft_lead_pending_user_id::text as draft_lead_pending_user_id, "
                "organiser_user_id::text as organiser_user_id, "
                "organiser_pending_user_id::text as organiser_pending_user_id"
            ),
            actor_user_id=actor_user_id,
        )

    async def start_field_assignment(self, *, organiser_id: str, patch_id: str, actor_user_id: str) -> dict[str, Any]:
        normalized_organiser_id = self._require_uuid(organiser_id, "organiser_id")
        normalized_patch_id = self._require_uuid(patch_id, "patch_id")
        return await self._insert_edge(
            relation="organiser_patch_assignments",
            query="""
            insert into organiser_patch_assignments (organiser_id, patch_id, effective_from)
            values ($1::uuid, $2::uuid, now())
            returning
              id::text as id,
              organiser_id::text as organiser_id,
              patch_id::text as patch_id,
              effective_from,
              effective_to
            """,
            args=(normalized_organiser_id, normalized_patch_id),
            actor_user_id=actor_user_id,
        )

    async def end_field_assignment(self, *, assignment_id: str, actor_user_id: str) -> dict[str, Any]:
        normalized_id = self._require_uuid(assignment_id, "assignment_id")
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                old_row = await conn.fetchrow(
                    """
                    select
                      id::text as id,
                      organiser_id::text as organiser_id,
                      patch_id::text as patch_id,
                      effective_from,
                      effective_to
                    from organiser_patch_assignments
                    where id = $1::uuid
                    for update
                    """,
                    normalized_id,
                )
                if not old_row:
                    raise RepositoryNotFoundError("field assignment not found")
                if old_row["effective_to"] is not None:
                    raise RepositoryConflictError("field assignment already ended")

                new_row = await conn.fetchrow(
                    """
                    update organiser_patch_assignments
                    set effective_to = now()
                    where id = $1::uuid
                    returning
                      id::text as id,
                      organiser_id::text as organiser_id,
                      patch_id::text as patch_id,
                      effective_from,
                      effective_to
                    """,
                    normalized_id,
                )
                change = HierarchyChange(
                    relation="organiser_patch_assignments",
                    operation="update",
                    old=dict(old_row),
                    new=dict(new_row),
                )
                dispatch = await self._after_hierarchy_change(
                    conn,
                    change,
                    actor_type="human",
                    actor_id=self._coerce_uuid(actor_user_id),
                )
                return {"row": dict(new_row), "dispatch": dispatch}

    async def set_direct_patch_assignments(
        self,
        *,
        pending_user_id: str,
        patch_ids: list[str],
        actor_user_id: str,
    ) -> dict[str, Any]:
        normalized_id = self._require_uuid(pending_user_id, "pending_user_id")
        normalized_patch_ids: list[str] = []
        for index, patch_id in enumerate(patch_ids):
            value = self._require_uuid(patch_id, f"patch_ids[{index}]")
            if value not in normalized_patch_ids:
                normalized_patch_ids.append(value)

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                old_row = await conn.fetchrow(
                    """
                    select id::text as id, role, status, assigned_patch_ids::text[] as assigned_patch_ids
                    from pending_users
                    where id = $1::uuid
                    for update
                    """,
                    normalized_id,
                )
                if not old_row:
                    raise RepositoryNotFoundError("pending user not found")

                if normalized_patch_ids:
                    known = await conn.fetchval(
                        "select count(*) from patches where id = any($1::text[]::uuid[])",
                        normalized_patch_ids,
                    )
                    if int(known) != len(normalized_patch_ids):
                        raise RepositoryValidationError("patch_ids contains unknown patches")

                new_row = await conn.fetchrow(
                    """
                    update pending_users
                    set assigned_patch_ids = $2::text[]::uuid[], updated_at = now()
                    where id = $1::uuid
                    returning id::text as id, role, status, assigned_patch_ids::text[] as assigned_patch_ids
                    """,
                    normalized_id,
                    normalized_patch_ids,
                )
                change = HierarchyChange(
                    relation="pending_users",
                    operation="update",
                    old=dict(old_row),
                    new=dict(new_row),
                )
                dispatch = await self._after_hierarchy_change(
                    conn,
                    change,
                    actor_type="human",
                    actor_id=self._coerce_uuid(actor_user_id),
                )
                row = dict(new_row)
                row["assigned_patch_ids"] = list(row["assigned_patch_ids"] or [])
                return {"row": row, "dispatch": dispatch}

    async def record_external_change(self, *, change: HierarchyChange, actor_module_db_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                return await self._after_hierarchy_change(
                    conn,
                    change,
                    actor_type="machine",
                    actor_id=self._coerce_uuid(actor_module_db_id),
                )

    async def _insert_edge(
        self,
        *,
        relation: str,
        query: str,
        args: tuple[Any, ...],
        actor_user_id: str,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(query, *args)
                    change = HierarchyChange(relation=relation, operation="insert", new=dict(row))  # type: ignore[arg-type]
                    dispatch = await self._after_hierarchy_change(
                        conn,
                        change,
                        actor_type="human",
                        actor_id=self._coerce_uuid(actor_user_id),
                    )
                    return {"row": dict(row), "dispatch": dispatch}
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError(f"{relation}: referenced user or patch not found") from exc
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"{relation}: an active row already exists") from exc
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError(f"{relation}: {exc}") from exc

    async def _end_edge(self, *, relation: str, edge_id: str, columns: str, actor_user_id: str) -> dict[str, Any]:
        normalized_id = self._require_uuid(edge_id, "edge_id")
        select_columns = f"id::text as id, {columns}, start_date, end_date, is_active"
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                old_row = await conn.fetchrow(
                    f"select {select_columns} from {relation} where id = $1::uuid for update",
                    normalized_id,
                )
                if not old_row:
                    raise RepositoryNotFoundError(f"{relation} edge not found")
                if not old_row["is_active"] or old_row["end_date"] is not None:
                    raise RepositoryConflictError(f"{relation} edge already ended")

                new_row = await conn.fetchrow(
                    f"""
                    update {relation}
                    set is_active = false, end_date = current_date
                    where id = $1::uuid
                    returning {select_columns}
                    """,
                    normalized_id,
                )
                change = HierarchyChange(
                    relation=relation,  # type: ignore[arg-type]
                    operation="update",
                    old=dict(old_row),
                    new=dict(new_row),
                )
                dispatch = await self._after_hierarchy_change(
                    conn,
                    change,
                    actor_type="human",
                    actor_id=self._coerce_uuid(actor_user_id),
                )
                return {"row": dict(new_row), "dispatch": dispatch}

    async def _after_hierarchy_change(
        self,
        conn: asyncpg.Connection,
        change: HierarchyChange,
        *,
        actor_type: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        """Resolve the leads affected by ``change`` and reconcile or enqueue each one.

        Runs inside the write's transaction. In inline mode a reconciliation error
        propagates and rolls the originating write back.
        """
        lead_ids = await resolve_affected_coordinators(conn, change)
        entity_row = change.new or change.old or {}
        await self._record_event(
            conn,
            entity_type=change.relation,
            entity_id=self._coerce_uuid(entity_row.get("id")),
            event_type=f"hierarchy_{change.operation}",
            actor_type=actor_type,
            actor_id=actor_id,
            payload={"affected_lead_organiser_ids": lead_ids, "mode": self.reconcile_mode},
        )

        dispatch: dict[str, Any] = {
            "mode": self.reconcile_mode,
            "affected_lead_organiser_ids": lead_ids,
            "enqueued_job_ids": [],
            "reconciliations": [],
        }
        reason = f"{change.relation}.{change.operation}"
        for lead_id in lead_ids:
            if self.reconcile_mode == "inline":
                dispatch["reconciliations"].append(
                    await self._reconcile_on_conn(
                        conn,
                        lead_id,
                        actor_type=actor_type,
                        actor_id=actor_id,
                        reason=reason,
                    )
                )
            else:
                dispatch["enqueued_job_ids"].append(
                    await self._enqueue_reconciliation(
                        conn,
                        lead_id,
                        reason=reason,
                        actor_type=actor_type,
                        actor_id=actor_id,
                    )
                )
        return dispatch

    # -- reconciliation queue -------------------------------------------------------

    async def _enqueue_reconciliation(
        self,
        conn: asyncpg.Connection,
        lead_organiser_id: str,
        *,
        reason: str,
        actor_type: str,
        actor_id: str | None,
    ) -> str:
        row = await conn.fetchrow(
            """
            insert into reconciliation_jobs (lead_organiser_id, reason, next_run_at)
            values ($1::uuid, $2, now())
            on conflict (lead_organiser_id) where status = 'queued'
            do update set
              reason = excluded.reason,
              next_run_at = least(reconciliation_jobs.next_run_at, now())
            returning id::text as id, (xmax = 0) as inserted
            """,
            lead_organiser_id,
            reason,
        )
        if row["inserted"]:
            await self._record_event(
                conn,
                entity_type="reconciliation_job",
                entity_id=row["id"],
                event_type="enqueued",
                actor_type=actor_type,
                actor_id=actor_id,
                payload={"lead_organiser_id": lead_organiser_id, "reason": reason},
            )
        return row["id"]

    async def list_queued_jobs(self, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from reconciliation_jobs
            where status = 'queued' and next_run_at <= now()
            order by next_run_at asc, created_at asc
            limit $1
            """,
            max(1, min(limit, 200)),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def claim_job(self, job_id: str, module_db_id: str, lease_seconds: int) -> dict[str, Any]:
        normalized_job_id = self._coerce_uuid(job_id)
        if not normalized_job_id:
            raise RepositoryNotFoundError("job not found")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update reconciliation_jobs
                    set
                      status = 'claimed',
                      locked_by_module_id = $2::uuid,
                      locked_at = now(),
                      lease_expires_at = now() + ($3::int * interval '1 second'),
                      attempt = attempt + 1
                    where id = $1::uuid and status = 'queued' and next_run_at <= now()
                    returning {_JOB_COLUMNS}, lease_expires_at
                    """,
                    normalized_job_id,
                    module_db_id,
                    lease_seconds,
                )
                if not row:
                    exists = await conn.fetchval("select 1 from reconciliation_jobs where id = $1::uuid", normalized_job_id)
                    if not exists:
                        raise RepositoryNotFoundError("job not found")
                    raise RepositoryConflictError("job is not claimable")

                await self._record_event(
                    conn,
                    entity_type="reconciliation_job",
                    entity_id=row["id"],
                    event_type="claimed",
                    actor_type="machine",
                    actor_id=module_db_id,
                    payload={"lease_seconds": lease_seconds},
                )
                job = self._job_row_to_dict(row)
                job["lease_expires_at"] = row["lease_expires_at"]
                return job

    async def reconcile_claimed_job(self, job_id: str, module_db_id: str) -> dict[str, Any]:
        normalized_job_id = self._coerce_uuid(job_id)
        if not normalized_job_id:
            raise RepositoryNotFoundError("job not found")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                job = await conn.fetchrow(
                    """
                    select
                      id::text as id,
                      lead_organiser_id::text as lead_organiser_id,
                      status::text as status,
                      locked_by_module_id::text as locked_by,
                      lease_expires_at <= now() as lease_expired
                    from reconciliation_jobs
                    where id = $1::uuid
                    for update
                    """,
                    normalized_job_id,
                )
                if not job:
                    raise RepositoryNotFoundError("job not found")
                if job["status"] != "claimed":
                    raise RepositoryConflictError("job is not in claimed state")
                if job["locked_by"] != module_db_id:
                    raise RepositoryForbiddenError("job claimed by another module")
                if job["lease_expired"]:
                    raise RepositoryConflictError("job lease expired")

                return await self._reconcile_on_conn(
                    conn,
                    job["lead_organiser_id"],
                    actor_type="machine",
                    actor_id=module_db_id,
                    reason=f"job:{job['id']}",
                )

    async def submit_job_result(
        self,
        job_id: str,
        module_db_id: str,
        status: str,
        result_json: dict[str, Any] | None,
        error_json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if status not in JOB_RESULT_STATUSES:
            raise RepositoryValidationError("status must be one of: done, failed, dead_letter")
        normalized_job_id = self._coerce_uuid(job_id)
        if not normalized_job_id:
            raise RepositoryNotFoundError("job not found")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchrow(
                    """
                    select
                      id::text as id,
                      status::text as status,
                      locked_by_module_id::text as locked_by,
                      attempt
                    from reconciliation_jobs
                    where id = $1::uuid
                    for update
                    """,
                    normalized_job_id,
                )
                if not claimed:
                    raise RepositoryNotFoundError("job not found")
                if claimed["status"] != "claimed":
                    raise RepositoryConflictError("job is not in claimed state")
                if claimed["locked_by"] != module_db_id:
                    raise RepositoryForbiddenError("job claimed by another module")

                attempt = int(claimed["attempt"])
                resolved_status = status
                retry_delay_seconds: int | None = None
                if status == "failed":
                    if attempt >= self.job_max_attempts:
                        resolved_status = "dead_letter"
                    else:
                        retry_delay_seconds = self._compute_retry_delay_seconds(attempt=attempt)
                        resolved_status = "queued"

                try:
                    async with conn.transaction():
                        row = await conn.fetchrow(
                            f"""
                            update reconciliation_jobs
                            set
                              status = $2::reconciliation_job_status,
                              result_json = $3::jsonb,
                              error_json = $4::jsonb,
                              locked_by_module_id = null,
                              locked_at = null,
                              lease_expires_at = null,
                              next_run_at = case
                                when $5::int is null then next_run_at
                                else now() + ($5::int * interval '1 second')
                              end
                            where id = $1::uuid
                            returning {_JOB_COLUMNS}
                            """,
                            normalized_job_id,
                            resolved_status,
                            json.dumps(result_json) if result_json is not None else None,
                            json.dumps(error_json) if error_json is not None else None,
                            retry_delay_seconds,
                        )
                except pg_exc.UniqueViolationError:
                    # A newer queued job for the same lead already covers the retry.
                    resolved_status = "failed"
                    row = await conn.fetchrow(
                        f"""
                        update reconciliation_jobs
                        set
                          status = 'failed',
                          error_json = $2::jsonb,
                          locked_by_module_id = null,
                          locked_at = null,
                          lease_expires_at = null
                        where id = $1::uuid
                        returning {_JOB_COLUMNS}
                        """,
                        normalized_job_id,
                        json.dumps(error_json) if error_json is not None else None,
                    )

                await self._record_event(
                    conn,
                    entity_type="reconciliation_job",
                    entity_id=row["id"],
                    event_type="result_submitted",
                    actor_type="machine",
                    actor_id=module_db_id,
                    payload={
                        "requested_status": status,
                        "resolved_status": resolved_status,
                        "attempt": attempt,
                        "max_attempts": self.job_max_attempts,
                        "retry_delay_seconds": retry_delay_seconds,
                    },
                )
                if resolved_status == "queued":
                    await self._record_event(
                        conn,
                        entity_type="reconciliation_job",
                        entity_id=row["id"],
                        event_type="retry_scheduled",
                        actor_type="machine",
                        actor_id=module_db_id,
                        payload={
                            "attempt": attempt,
                            "max_attempts": self.job_max_attempts,
                            "retry_delay_seconds": retry_delay_seconds,
                        },
                    )
                elif resolved_status == "dead_letter":
                    logger.warning(
                        "reconciliation job dead-lettered id=%s lead=%s attempt=%s",
                        row["id"],
                        row["lead_organiser_id"],
                        attempt,
                    )
                    await self._record_event(
                        conn,
                        entity_type="reconciliation_job",
                        entity_id=row["id"],
                        event_type="dead_lettered",
                        actor_type="machine",
                        actor_id=module_db_id,
                        payload={"attempt": attempt, "error_json": error_json},
                    )
                return self._job_row_to_dict(row)

    async def requeue_expired_claimed_jobs(self, module_db_id: str, limit: int) -> int:
        return await self._requeue_expired_claimed_jobs(actor_id=module_db_id, actor_type="machine", limit=limit)

    async def admin_requeue_expired_claimed_jobs(self, *, actor_user_id: str, limit: int) -> int:
        normalized_actor_user_id = self._coerce_uuid(actor_user_id)
        if not normalized_actor_user_id:
            raise RepositoryValidationError("actor_user_id must be a UUID")
        return await self._requeue_expired_claimed_jobs(
            actor_id=normalized_actor_user_id,
            actor_type="human",
            limit=limit,
        )

    async def _requeue_expired_claimed_jobs(self, *, actor_id: str, actor_type: str, limit: int) -> int:
        """Requeue expired leases, keeping at most one queued job per lead.

        The latest expired claim of a lead is requeued unless the lead already has a
        queued job. Every other expired claim is closed as ``failed`` and marked
        superseded, since the queued job recomputes the whole scope anyway.
        """
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                try:
                    rows = await conn.fetch(
                        """
                        with expired as (
                          select j.id, j.lead_organiser_id, j.lease_expires_at
                          from reconciliation_jobs j
                          where j.status = 'claimed'
                            and j.lease_expires_at is not null
                            and j.lease_expires_at <= now()
                          order by j.lease_expires_at asc
                          limit $1
                          for update skip locked
                        ),
                        ranked as (
                          select
                            e.id,
                            (
                              row_number() over (
                                partition by e.lead_organiser_id
                                order by e.lease_expires_at desc, e.id
                              ) = 1
                              and not exists (
                                select 1
                                from reconciliation_jobs queued
                                where queued.lead_organiser_id = e.lead_organiser_id
                                  and queued.status = 'queued'
                              )
                            ) as requeue
                          from expired e
                        )
                        update reconciliation_jobs j
                        set
                          status = case
                            when r.requeue then 'queued'::reconciliation_job_status
                            else 'failed'::reconciliation_job_status
                          end,
                          error_json = case
                            when r.requeue then j.error_json
                            else jsonb_build_object('reason', 'superseded')
                          end,
                          locked_by_module_id = null,
                          locked_at = null,
                          lease_expires_at = null,
                          next_run_at = case when r.requeue then now() else j.next_run_at end
                        from ranked r
                        where j.id = r.id
                        returning j.id::text as id, r.requeue as requeued
                        """,
                        bounded_limit,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise RepositoryConflictError("a reconciliation job was queued concurrently; retry the reap") from exc

                requeued = 0
                for row in rows:
                    if row["requeued"]:
                        requeued += 1
                    await self._record_event(
                        conn,
                        entity_type="reconciliation_job",
                        entity_id=row["id"],
                        event_type="lease_requeued" if row["requeued"] else "lease_superseded",
                        actor_type=actor_type,
                        actor_id=actor_id,
                        payload={"reason": "lease_expired" if row["requeued"] else "superseded"},
                    )
                return requeued

    async def list_admin_jobs(
        self,
        *,
        status: str | None,
        lead_organiser_id: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError("status must be one of: claimed, dead_letter, done, failed, queued")
        normalized_lead_id: str | None = None
        if lead_organiser_id is not None:
            normalized_lead_id = self._require_uuid(lead_organiser_id, "lead_organiser_id")

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_ADMIN_JOB_COLUMNS}
            from reconciliation_jobs
            where ($1::text is null or status::text = $1::text)
              and ($2::uuid is null or lead_organiser_id = $2::uuid)
            order by created_at desc, id desc
            limit $3
            offset $4
            """,
            status,
            normalized_lead_id,
            max(1, min(limit, 200)),
            max(0, offset),
        )
        return [self._admin_job_row_to_dict(row) for row in rows]

    # -- helpers --------------------------------------------------------------------

    async def _require_admin(self, conn: asyncpg.Connection, actor_user_id: str) -> None:
        role = await conn.fetchval(
            "select role from profiles where id = $1::uuid and is_active = true",
            actor_user_id,
        )
        if role != "admin":
            raise RepositoryForbiddenError("admin role required for bulk reconciliation")

    @staticmethod
    async def _list_active_lead_ids(conn: asyncpg.Connection) -> list[str]:
        rows = await conn.fetch(
            """
            select id::text as id
            from profiles
            where role = 'lead_organiser'
              and is_active = true
            order by id
            """
        )
        return [row["id"] for row in rows]

    @staticmethod
    async def _record_event(
        conn: asyncpg.Connection,
        *,
        entity_type: str,
        entity_id: str | None,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into provenance_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2::uuid, $3, $4, $5::uuid, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload, default=str),
        )

    @staticmethod
    def _reconcile_result(
        *,
        lead_organiser_id: str,
        kind: str,
        computed: frozenset[str],
        existing: frozenset[str],
        added: list[str],
        removed: list[str],
        skipped_reason: str | None,
    ) -> dict[str, Any]:
        return {
            "lead_organiser_id": lead_organiser_id,
            "coordinator_kind": kind,
            "computed_patches": len(computed),
            "existing_patches": len(existing),
            "patches_added": len(added),
            "patches_removed": len(removed),
            "final_patch_count": len(existing) - len(removed) + len(added),
            "added_patch_ids": list(added),
            "removed_patch_ids": list(removed),
            "skipped_reason": skipped_reason,
        }

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("PS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "kind": RECONCILE_JOB_KIND,
            "target_type": RECONCILE_JOB_TARGET_TYPE,
            "target_id": row["lead_organiser_id"],
            "inputs_json": {"reason": row["reason"]},
            "status": row["status"],
        }

    def _admin_job_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "lead_organiser_id": row["lead_organiser_id"],
            "reason": row["reason"],
            "status": row["status"],
            "attempt": int(row["attempt"]),
            "locked_by_module_id": row["locked_by_module_id"],
            "lease_expires_at": row["lease_expires_at"],
            "next_run_at": row["next_run_at"],
            "result_json": self._coerce_json_dict(row["result_json"]) if row["result_json"] is not None else None,
            "error_json": self._coerce_json_dict(row["error_json"]) if row["error_json"] is not None else None,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)

    @staticmethod
    def _coerce_uuid(value: Any) -> str | None:
        if isinstance(value, UUID):
            return str(value)
        if not isinstance(value, str):
            return None
        try:
            return str(UUID(value.strip()))
        except ValueError:
            return None

    def _require_uuid(self, value: Any, field_name: str) -> str:
        normalized = self._coerce_uuid(value)
        if not normalized:
            raise RepositoryValidationError(f"{field_name} must be a UUID")
        return normalized

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        reconcile_mode=settings.reconcile_mode,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
