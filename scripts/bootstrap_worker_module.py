#!/usr/bin/env python3
"""Emit SQL that registers a reconciliation worker module and its API key."""

from __future__ import annotations

import argparse
import hashlib
import secrets

DEFAULT_SCOPES = ["jobs:read", "jobs:write"]


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, module_id: str, name: str, api_key: str, scopes: list[str]) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    scopes_literal = "array[" + ", ".join(_quote_sql(scope) for scope in scopes) + "]::text[]"
    module_value = _quote_sql(module_id)

    return f"""-- Worker module bootstrap SQL
-- The API key itself is not stored; only its sha256 hash.

insert into modules (module_id, name, enabled, scopes)
values ({module_value}, {_quote_sql(name)}, true, {scopes_literal})
on conflict (module_id) do update set
  name = excluded.name,
  enabled = true,
  scopes = excluded.scopes,
  updated_at = now();

insert into module_credentials (module_id, key_hash, is_active)
select id, {_quote_sql(key_hash)}, true
from modules
where module_id = {module_value};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a worker module credential.")
    parser.add_argument("--module-id", default="patch-sync-worker")
    parser.add_argument("--name", default="Patch sync reconciliation worker")
    parser.add_argument("--api-key", help="API key to register; generated when omitted")
    parser.add_argument(
        "--scope",
        action="append",
        dest="scopes",
        help="Scope to grant (repeatable); defaults to jobs:read and jobs:write",
    )
    args = parser.parse_args()

    api_key = args.api_key or secrets.token_urlsafe(32)
    print(render_sql(module_id=args.module_id, name=args.name, api_key=api_key, scopes=args.scopes or DEFAULT_SCOPES))
    if not args.api_key:
        print(f"-- generated api key (set PS_WORKER_API_KEY): {api_key}")


if __name__ == "__main__":
    main()
