from __future__ import annotations

import importlib.util
import subprocess
import sys
from pathlib import Path

SCRIPTS_DIR = Path(__file__).resolve().parents[2] / "scripts"
BOOTSTRAP_PATH = SCRIPTS_DIR / "bootstrap_branch_admin.py"


def _run_script(*args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(BOOTSTRAP_PATH), *args],
        check=check,
        capture_output=True,
        text=True,
    )


def test_bootstrap_script_emits_sql_for_user_id_target() -> None:
    user_id = "00000000-0000-0000-0000-000000000123"
    output = _run_script("--user-id", user_id).stdout

    assert "update auth.users" in output
    assert f"where id = '{user_id}'::uuid;" in output
    assert "jsonb_build_object('role', 'branch_admin')" in output


def test_bootstrap_script_links_employer_for_employer_role() -> None:
    output = _run_script(
        "--email", "o'brien@example.com", "--role", "employer", "--employer-id", "emp-42"
    ).stdout

    assert "where email = 'o''brien@example.com';" in output
    assert "jsonb_build_object('role', 'employer', 'employer_id', 'emp-42')" in output


def test_bootstrap_script_rejects_employer_id_for_admin_roles() -> None:
    completed = _run_script("--email", "admin@example.com", "--employer-id", "emp-42", check=False)

    assert completed.returncode != 0
    assert "--employer-id is only valid with --role employer" in completed.stderr


def test_bootstrap_script_sets_assigned_city_for_branch_admins() -> None:
    output = _run_script("--user-id", "00000000-0000-0000-0000-000000000123", "--assigned-city", "Pune").stdout
    assert "jsonb_build_object('role', 'branch_admin', 'assigned_city', 'Pune')" in output

    completed = _run_script("--email", "hr@example.com", "--role", "employer", "--assigned-city", "Pune", check=False)
    assert completed.returncode != 0
    assert "--assigned-city is only valid with --role branch_admin" in completed.stderr


def test_mock_supabase_tokens_cover_every_role() -> None:
    spec = importlib.util.spec_from_file_location("mock_supabase_auth", SCRIPTS_DIR / "mock_supabase_auth.py")
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    roles = {module.user_payload_for_token(token)["app_metadata"]["role"] for token in module.TOKEN_USERS}
    assert roles == {"candidate", "employer", "branch_admin", "super_admin"}

    employer = module.user_payload_for_token("employer-token", employer_id="emp-1")
    assert employer["app_metadata"]["employer_id"] == "emp-1"
    admin = module.user_payload_for_token("branch-admin-token", employer_id="emp-1")
    assert "employer_id" not in admin["app_metadata"]
    scoped = module.user_payload_for_token("branch-admin-token", assigned_city="Pune")
    assert scoped["app_metadata"]["assigned_city"] == "Pune"
    unscoped = module.user_payload_for_token("super-admin-token", assigned_city="Pune")
    assert "assigned_city" not in unscoped["app_metadata"]
    assert module.user_payload_for_token("unknown") is None
