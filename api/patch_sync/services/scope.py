from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

LEAD_ORGANISER_ROLE = "lead_organiser"
PROVISIONAL_LEAD_STATUSES = {"draft", "invited"}

CoordinatorKind = Literal["live", "provisional", "unresolved"]
PatchSourceKind = Literal["field_assignment", "provisional_organiser", "direct"]


@dataclass(slots=True)
class LiveCoordinator:
    user_id: str
    role: str

    @property
    def id(self) -> str:
        return self.user_id


@dataclass(slots=True)
class ProvisionalCoordinator:
    pending_user_id: str
    role: str
    status: str

    @property
    def id(self) -> str:
        return self.pending_user_id


Coordinator = LiveCoordinator | ProvisionalCoordinator


@dataclass(slots=True)
class HierarchySnapshot:
    """Raw hierarchy rows reachable from one coordinator.

    Organiser id lists come straight from edge rows and may repeat; the patch
    maps are keyed by organiser (live) or pending user (provisional).
    """

    coordinator_id: str
    coordinator: Coordinator | None
    live_organiser_ids: list[str] = field(default_factory=list)
    provisional_organiser_ids: list[str] = field(default_factory=list)
    field_patch_ids: dict[str, list[str]] = field(default_factory=dict)
    direct_patch_ids: dict[str, list[str]] = field(default_factory=dict)


@dataclass(slots=True)
class PatchSource:
    patch_id: str
    source: PatchSourceKind
    via_id: str


@dataclass(slots=True)
class ScopeResult:
    coordinator_id: str
    coordinator_kind: CoordinatorKind
    patch_ids: frozenset[str]
    sources: list[PatchSource] = field(default_factory=list)


@dataclass(slots=True)
class ReconciliationPlan:
    to_add: list[str]
    to_remove: list[str]

    @property
    def is_noop(self) -> bool:
        return not self.to_add and not self.to_remove


def is_live_lead(row: dict[str, Any] | None) -> bool:
    if not row:
        return False
    return row.get("role") == LEAD_ORGANISER_ROLE and bool(row.get("is_active"))


def is_provisional_lead(row: dict[str, Any] | None) -> bool:
    if not row:
        return False
    return row.get("role") == LEAD_ORGANISER_ROLE and row.get("status") in PROVISIONAL_LEAD_STATUSES


def resolve_coordinator(
    *,
    coordinator_id: str,
    profile_row: dict[str, Any] | None,
    pending_row: dict[str, Any] | None,
) -> Coordinator | None:
    """Resolve a coordinator identity; a live lead always shadows a provisional record."""
    if profile_row is not None and is_live_lead(profile_row):
        return LiveCoordinator(user_id=coordinator_id, role=str(profile_row["role"]))
    if pending_row is not None and is_provisional_lead(pending_row):
        return ProvisionalCoordinator(
            pending_user_id=coordinator_id,
            role=str(pending_row["role"]),
            status=str(pending_row["status"]),
        )
    return None


def coordinator_kind(coordinator: Coordinator | None) -> CoordinatorKind:
    if isinstance(coordinator, LiveCoordinator):
        return "live"
    if isinstance(coordinator, ProvisionalCoordinator):
        return "provisional"
    return "unresolved"


def compute_scope(snapshot: HierarchySnapshot) -> ScopeResult:
    """Union every patch reachable from the snapshot's coordinator.

    Live leads reach patches through supervised live organisers (their open field
    assignments) and supervised provisional organisers (their assigned patch ids).
    Provisional leads add their own assigned patch ids to the same two sources.
    An unresolved coordinator has an empty scope.
    """
    coordinator = snapshot.coordinator
    kind = coordinator_kind(coordinator)
    if coordinator is None:
        return ScopeResult(coordinator_id=snapshot.coordinator_id, coordinator_kind=kind, patch_ids=frozenset())

    collected: dict[str, list[PatchSource]] = {}

    def add(patch_id: Any, source: PatchSourceKind, via_id: str) -> None:
        if not isinstance(patch_id, str) or not patch_id:
            return
        sources = collected.setdefault(patch_id, [])
        if any(existing.source == source and existing.via_id == via_id for existing in sources):
            return
        sources.append(PatchSource(patch_id=patch_id, source=source, via_id=via_id))

    if isinstance(coordinator, ProvisionalCoordinator):
        for patch_id in snapshot.direct_patch_ids.get(coordinator.pending_user_id, []):
            add(patch_id, "direct", coordinator.pending_user_id)

    for organiser_id in _unique(snapshot.live_organiser_ids):
        for patch_id in snapshot.field_patch_ids.get(organiser_id, []):
            add(patch_id, "field_assignment", organiser_id)

    for pending_user_id in _unique(snapshot.provisional_organiser_ids):
        for patch_id in snapshot.direct_patch_ids.get(pending_user_id, []):
            add(patch_id, "provisional_organiser", pending_user_id)

    ordered_sources = [source for patch_id in sorted(collected) for source in collected[patch_id]]
    return ScopeResult(
        coordinator_id=snapshot.coordinator_id,
        coordinator_kind=kind,
        patch_ids=frozenset(collected),
        sources=ordered_sources,
    )


def plan_reconciliation(*, existing: set[str] | frozenset[str], computed: set[str] | frozenset[str]) -> ReconciliationPlan:
    return ReconciliationPlan(
        to_add=sorted(computed - existing),
        to_remove=sorted(existing - computed),
    )


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    items: list[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        items.append(value)
    return items
