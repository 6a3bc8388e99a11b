#!/usr/bin/env python3
"""Emit SQL that grants or revokes a curator/admin role for a Supabase user."""

from __future__ import annotations

import argparse

ROLES = ("curator", "admin")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, user_id: str | None, email: str | None, actor: str, revoke: bool = False) -> str:
    role_value = _quote_sql(role)

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
        target_key, target_value = "user_id", _quote_sql(user_id)
    else:
        if email is None:
            raise ValueError("either user_id or email is required")
        target_where = f"email = {_quote_sql(email)}"
        target_key, target_value = "email", _quote_sql(email)

    if revoke:
        operation = "role_revoked"
        update_expr = "coalesce(raw_app_meta_data, '{}'::jsonb) - 'role'"
        target_where = f"{target_where} and raw_app_meta_data ->> 'role' = {role_value}"
    else:
        operation = "role_granted"
        update_expr = f"coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})"

    details = f"jsonb_build_object('{target_key}', {target_value}, 'role', {role_value})"

    return f"""-- Curator role {"revocation" if revoke else "bootstrap"} SQL
-- Run in the Supabase SQL editor or another privileged Postgres session.

begin;

update auth.users
set raw_app_meta_data = {update_expr}
where {target_where};

insert into audit_entries (operation_type, actor_type, actor_id, details)
values ({_quote_sql(operation)}, 'system', {_quote_sql(actor)}, {details});

commit;
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to grant or revoke a curator role in Supabase.")
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="curator",
        help="Role stored in auth.users.raw_app_meta_data.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument("--actor", default="bootstrap", help="actor_id recorded on the audit entry")
    parser.add_argument("--revoke", action="store_true", help="Remove the role instead of granting it")
    args = parser.parse_args()

    print(
        render_sql(
            role=args.role,
            user_id=args.user_id,
            email=args.email,
            actor=args.actor,
            revoke=args.revoke,
        )
    )


if __name__ == "__main__":
    main()
