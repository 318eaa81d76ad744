#!/usr/bin/env python3
"""Emit SQL that grants or revokes the directory admin role on a Supabase user."""

from __future__ import annotations

import argparse

ROLES = ("user", "admin")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _target_where(user_id: str | None, email: str | None) -> str:
    if user_id:
        return f"id = {_quote_sql(user_id)}::uuid"
    if not email:
        raise ValueError("either user_id or email is required")
    return f"lower(email) = lower({_quote_sql(email)})"


def render_sql(*, role: str, user_id: str | None, email: str | None, revoke: bool = False) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role: {role}")
    where = _target_where(user_id, email)

    if revoke:
        assignment = "coalesce(raw_app_meta_data, '{}'::jsonb) - 'role'"
        header = "-- Revoke directory role (falls back to 'user')"
    else:
        assignment = (
            "coalesce(raw_app_meta_data, '{}'::jsonb) || "
            f"jsonb_build_object('role', {_quote_sql(role)})"
        )
        header = f"-- Grant directory role {role}"

    return f"""{header}
-- Run in the Supabase SQL editor or another privileged Postgres session.

update auth.users
set raw_app_meta_data = {assignment}
where {where};

select id, email, raw_app_meta_data ->> 'role' as role
from auth.users
where {where};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to set the directory role of a Supabase user.")
    parser.add_argument("--role", choices=ROLES, default="admin", help="Value written to app_metadata.role")
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument("--revoke", action="store_true", help="Remove the role instead of setting it")
    args = parser.parse_args()

    print(render_sql(role=args.role, user_id=args.user_id, email=args.email, revoke=args.revoke))


if __name__ == "__main__":
    main()
