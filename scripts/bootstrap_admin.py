#!/usr/bin/env python3
"""Emit deterministic SQL that grants a profile role (admin by default)."""

from __future__ import annotations

import argparse

ROLES = ["viewer", "organiser", "lead_organiser", "admin"]


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, user_id: str | None, email: str | None, actor: str) -> str:
    role_value = _quote_sql(role)
    actor_value = _quote_sql(actor)

    if user_id:
        upsert = (
            "insert into profiles (id, role, is_active)\n"
            f"values ({_quote_sql(user_id)}::uuid, {role_value}, true)\n"
            "on conflict (id) do update set role = excluded.role, is_active = true, updated_at = now();"
        )
        target_payload = f"jsonb_build_object('user_id', {_quote_sql(user_id)}, 'role', {role_value}, 'actor', {actor_value})"
    else:
        assert email is not None
        upsert = (
            "update profiles\n"
            f"set role = {role_value}, is_active = true, updated_at = now()\n"
            f"where email = {_quote_sql(email)};"
        )
        target_payload = f"jsonb_build_object('email', {_quote_sql(email)}, 'role', {role_value}, 'actor', {actor_value})"

    return f"""-- Profile role bootstrap SQL
-- Run this in a privileged Postgres session against the patch-sync database.

{upsert}

insert into provenance_events (entity_type, event_type, actor_type, payload)
values ('bootstrap', 'profile_role_bootstrap', 'system', {target_payload});
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to grant a profile role.")
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="admin",
        help="Role to store in profiles.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Profile id (UUID, same as the Supabase auth user id)")
    identity_group.add_argument("--email", help="Profile email")
    parser.add_argument(
        "--actor",
        default="cli",
        help="Actor label recorded in the provenance event payload",
    )
    args = parser.parse_args()

    print(
        render_sql(
            role=args.role,
            user_id=args.user_id,
            email=args.email,
            actor=args.actor,
        )
    )


if __name__ == "__main__":
    main()
