from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]

HierarchyRelation = Literal[
    "role_hierarchy",
    "organiser_patch_assignments",
    "lead_draft_organiser_links",
    "draft_lead_organiser_links",
    "pending_users",
]
ChangeOperation = Literal["insert", "update", "delete"]

# Columns whose value names the lead end of an edge, per relation.
_LEAD_END_COLUMNS: dict[str, str] = {
    "role_hierarchy": "parent_user_id",
    "lead_draft_organiser_links": "lead_user_id",
    "draft_lead_organiser_links": "draft_lead_pending_user_id",
}


@dataclass(slots=True)
class HierarchyChange:
    """One row-level mutation of a hierarchy relation.

    ``old`` is the row before the write (absent for inserts) and ``new`` the row
    after it (absent for deletes). Only the key columns are consulted.
    """

    relation: HierarchyRelation
    operation: ChangeOperation
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None


@dataclass(slots=True)
class AffectedLookup:
    candidate_lead_ids: list[str] = field(default_factory=list)
    supervised_organiser_ids: list[str] = field(default_factory=list)
    supervised_pending_user_ids: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.candidate_lead_ids or self.supervised_organiser_ids or self.supervised_pending_user_ids)


def build_affected_lookup(change: HierarchyChange) -> AffectedLookup:
    """Translate a row change into the identities whose supervising leads must be resolved."""
    rows = [row for row in (change.old, change.new) if row]
    lookup = AffectedLookup()

    lead_column = _LEAD_END_COLUMNS.get(change.relation)
    if lead_column is not None:
        lookup.candidate_lead_ids = _collect_ids(rows, lead_column)
    elif change.relation == "organiser_patch_assignments":
        lookup.supervised_organiser_ids = _collect_ids(rows, "organiser_id")
    elif change.relation == "pending_users":
        if change.operation == "update" and not _assigned_patches_changed(change.old, change.new):
            return lookup
        lookup.supervised_pending_user_ids = _collect_ids(rows, "id")
    return lookup


async def resolve_affected_coordinators(conn: asyncpg.Connection, change: HierarchyChange) -> list[str]:
    """Return the live lead organisers whose scope may differ after ``change``."""
    lookup = build_affected_lookup(change)
    if lookup.is_empty:
        return []

    rows = await conn.fetch(
        """
        select p.id::text as lead_organiser_id
        from profiles p
        where p.id = any($1::text[]::uuid[])
          and p.role = 'lead_organiser'
          and p.is_active = true
        union
        select p.id::text as lead_organiser_id
        from role_hierarchy rh
        join profiles p on p.id = rh.parent_user_id
        where rh.child_user_id = any($2::text[]::uuid[])
          and rh.end_date is null
          and rh.is_active = true
          and p.role = 'lead_organiser'
          and p.is_active = true
        union
        select p.id::text as lead_organiser_id
        from lead_draft_organiser_links ldol
        join profiles p on p.id = ldol.lead_user_id
        where ldol.pending_user_id = any($3::text[]::uuid[])
          and ldol.end_date is null
          and ldol.is_active = true
          and p.role = 'lead_organiser'
          and p.is_active = true
        order by lead_organiser_id
        """,
        lookup.candidate_lead_ids,
        lookup.supervised_organiser_ids,
        lookup.supervised_pending_user_ids,
    )
    return [row["lead_organiser_id"] for row in rows]


def _assigned_patches_changed(old: dict[str, Any] | None, new: dict[str, Any] | None) -> bool:
    if not old or not new:
        return True
    if "assigned_patch_ids" not in old or "assigned_patch_ids" not in new:
        return True
    return sorted(_as_text_list(old["assigned_patch_ids"])) != sorted(_as_text_list(new["assigned_patch_ids"]))


def _collect_ids(rows: list[dict[str, Any]], column: str) -> list[str]:
    ids: list[str] = []
    for row in rows:
        value = _as_uuid_text(row.get(column))
        if value and value not in ids:
            ids.append(value)
    return ids


def _as_uuid_text(value: Any) -> str | None:
    if isinstance(value, UUID):
        return str(value)
    if not isinstance(value, str):
        return None
    try:
        return str(UUID(value.strip()))
    except ValueError:
        return None


def _as_text_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if item is not None]
