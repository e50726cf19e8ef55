from __future__ import annotations

from patch_sync.services.triggers import HierarchyChange, build_affected_lookup

LEAD = "00000000-0000-0000-0000-0000000000aa"
OTHER_LEAD = "00000000-0000-0000-0000-0000000000ab"
DRAFT_LEAD = "00000000-0000-0000-0000-0000000000bb"
O1 = "00000000-0000-0000-0000-000000000001"
PENDING_O = "00000000-0000-0000-0000-000000000003"
P1 = "10000000-0000-0000-0000-000000000001"


def test_supervision_edge_insert_targets_parent() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="role_hierarchy",
            operation="insert",
            new={"parent_user_id": LEAD, "child_user_id": O1},
        )
    )

    assert lookup.candidate_lead_ids == [LEAD]
    assert lookup.supervised_organiser_ids == []


def test_supervision_edge_reparent_targets_old_and_new_parent() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="role_hierarchy",
            operation="update",
            old={"parent_user_id": LEAD, "child_user_id": O1},
            new={"parent_user_id": OTHER_LEAD, "child_user_id": O1},
        )
    )

    assert lookup.candidate_lead_ids == [LEAD, OTHER_LEAD]


def test_field_assignment_change_targets_supervisors_of_organiser() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="organiser_patch_assignments",
            operation="update",
            old={"organiser_id": O1, "patch_id": P1, "effective_to": None},
            new={"organiser_id": O1, "patch_id": P1, "effective_to": "2025-01-01T00:00:00Z"},
        )
    )

    assert lookup.candidate_lead_ids == []
    assert lookup.supervised_organiser_ids == [O1]


def test_provisional_supervision_delete_targets_lead_end() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="lead_draft_organiser_links",
            operation="delete",
            old={"lead_user_id": LEAD, "pending_user_id": PENDING_O},
        )
    )

    assert lookup.candidate_lead_ids == [LEAD]


def test_provisional_lead_edge_targets_anchor_identity() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="draft_lead_organiser_links",
            operation="insert",
            new={"draft_lead_pending_user_id": DRAFT_LEAD, "organiser_user_id": O1},
        )
    )

    assert lookup.candidate_lead_ids == [DRAFT_LEAD]


def test_direct_patch_change_targets_supervisors_of_pending_user() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="pending_users",
            operation="update",
            old={"id": PENDING_O, "assigned_patch_ids": []},
            new={"id": PENDING_O, "assigned_patch_ids": [P1]},
        )
    )

    assert lookup.supervised_pending_user_ids == [PENDING_O]


def test_pending_user_update_without_patch_change_is_ignored() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="pending_users",
            operation="update",
            old={"id": PENDING_O, "status": "draft", "assigned_patch_ids": [P1]},
            new={"id": PENDING_O, "status": "invited", "assigned_patch_ids": [P1]},
        )
    )

    assert lookup.is_empty


def test_malformed_identifiers_are_dropped() -> None:
    lookup = build_affected_lookup(
        HierarchyChange(
            relation="role_hierarchy",
            operation="insert",
            new={"parent_user_id": "not-a-uuid", "child_user_id": O1},
        )
    )

    assert lookup.is_empty
