#!/usr/bin/env python3
"""Emit deterministic SQL that assigns a LokalHunt role to a Supabase user."""

from __future__ import annotations

import argparse

ROLES = ("candidate", "employer", "branch_admin", "super_admin")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(
    *,
    role: str,
    user_id: str | None,
    email: str | None,
    employer_id: str | None = None,
    assigned_city: str | None = None,
) -> str:
    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    else:
        assert email is not None
        target_where = f"email = {_quote_sql(email)}"

    pairs = [("role", role)]
    if employer_id:
        pairs.append(("employer_id", employer_id))
    if assigned_city:
        pairs.append(("assigned_city", assigned_city))
    arguments = ", ".join(f"{_quote_sql(key)}, {_quote_sql(value)}" for key, value in pairs)
    metadata = f"jsonb_build_object({arguments})"

    return f"""-- LokalHunt role bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).
-- Roles are read from app_metadata only; the user must sign in again to refresh the token.

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || {metadata}
where {target_where};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to assign a LokalHunt role to a Supabase user.")
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="branch_admin",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument(
        "--employer-id",
        help="Employer id to link (employer role only)",
    )
    parser.add_argument(
        "--assigned-city",
        help="City whose ads the admin reviews (branch_admin role only)",
    )
    args = parser.parse_args()

    if args.employer_id and args.role != "employer":
        parser.error("--employer-id is only valid with --role employer")
    if args.assigned_city and args.role != "branch_admin":
        parser.error("--assigned-city is only valid with --role branch_admin")

    print(
        render_sql(
            role=args.role,
            user_id=args.user_id,
            email=args.email,
            employer_id=args.employer_id,
            assigned_city=args.assigned_city,
        )
    )


if __name__ == "__main__":
    main()
