from __future__ import annotations

import hashlib
import subprocess
import sys
from pathlib import Path

SCRIPTS_DIR = Path(__file__).resolve().parents[2] / "scripts"


def _run_script(name: str, *args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPTS_DIR / name), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def test_bootstrap_admin_upserts_profile_for_user_id() -> None:
    user_id = "00000000-0000-0000-0000-000000000123"
    output = _run_script("bootstrap_admin.py", "--user-id", user_id, "--role", "lead_organiser", "--actor", "ops")

    assert "insert into profiles (id, role, is_active)" in output
    assert f"values ('{user_id}'::uuid, 'lead_organiser', true)" in output
    assert "on conflict (id) do update set role = excluded.role" in output
    assert "'profile_role_bootstrap', 'system'" in output
    assert "'actor', 'ops'" in output


def test_bootstrap_admin_updates_profile_by_email() -> None:
    output = _run_script("bootstrap_admin.py", "--email", "o'neil@example.org")

    assert "set role = 'admin', is_active = true" in output
    assert "where email = 'o''neil@example.org';" in output


def test_bootstrap_worker_module_stores_only_key_hash() -> None:
    output = _run_script("bootstrap_worker_module.py", "--api-key", "local-worker-key")

    expected_hash = hashlib.sha256(b"local-worker-key").hexdigest()
    assert "local-worker-key" not in output
    assert f"'{expected_hash}'" in output
    assert "array['jobs:read', 'jobs:write']::text[]" in output
    assert "values ('patch-sync-worker'" in output


def test_bootstrap_worker_module_accepts_custom_scopes() -> None:
    output = _run_script(
        "bootstrap_worker_module.py",
        "--module-id",
        "crm-sync",
        "--api-key",
        "k",
        "--scope",
        "hierarchy:write",
    )

    assert "array['hierarchy:write']::text[]" in output
    assert "where module_id = 'crm-sync';" in output
