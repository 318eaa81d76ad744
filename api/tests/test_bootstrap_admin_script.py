from __future__ import annotations

import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "bootstrap_admin.py"


def _run_script(*args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def test_bootstrap_script_grants_admin_by_user_id() -> None:
    user_id = "00000000-0000-0000-0000-000000000123"
    output = _run_script("--user-id", user_id)

    assert "update auth.users" in output
    assert f"where id = '{user_id}'::uuid;" in output
    assert "jsonb_build_object('role', 'admin')" in output


def test_bootstrap_script_matches_email_case_insensitively() -> None:
    output = _run_script("--email", "O'Brien@example.ca", "--role", "user")

    assert "where lower(email) = lower('O''Brien@example.ca');" in output
    assert "jsonb_build_object('role', 'user')" in output


def test_bootstrap_script_revokes_role() -> None:
    output = _run_script("--email", "admin@example.ca", "--revoke")

    assert "- 'role'" in output
    assert "jsonb_build_object" not in output
