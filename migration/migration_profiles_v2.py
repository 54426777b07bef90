"""
Migration: profiles V2
- Adds 'role' column to profiles if missing and backfills 'user'
- Promotes the operator-supplied admin emails (replaces the old compiled-in allowlist)
- Creates the missing profile row for every identity that has none
- Adds 'entitlement_applied_at' to payment_orders and marks completed orders as applied

Usage:
  python -m migration.migration_profiles_v2 --db path/to/portal.db --admin-email ops@example.com
"""
import argparse
import os
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from typing import Iterable


def has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cur.fetchall())


def migrate(db_path: str, admin_emails: Iterable[str] = ()) -> dict:
    if db_path == ":memory:":
        raise ValueError("Use a file-backed DB for migration script")

    if not os.path.exists(db_path):
        raise FileNotFoundError(db_path)

    now = datetime.now(timezone.utc).isoformat(sep=" ")
    summary = {"profiles_created": 0, "admins_promoted": 0, "orders_marked": 0}

    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA foreign_keys=ON")

        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        for required in ("users", "profiles"):
            if required not in tables:
                raise RuntimeError(f"{required} table missing; cannot migrate")

        if not has_column(conn, "profiles", "role"):
            conn.execute("ALTER TABLE profiles ADD COLUMN role TEXT NOT NULL DEFAULT 'user'")
        conn.execute("UPDATE profiles SET role = 'user' WHERE role IS NULL")

        cur = conn.execute(
            "INSERT INTO profiles (user_id, email, username, role, membership_type, created_at, updated_at) "
            "SELECT id, email, username, 'user', 'free', ?, ? FROM users "
            "WHERE id NOT IN (SELECT user_id FROM profiles)",
            (now, now),
        )
        summary["profiles_created"] = cur.rowcount

        for email in admin_emails:
            cur = conn.execute(
                "UPDATE profiles SET role = 'admin', updated_at = ? WHERE lower(email) = lower(?)",
                (now, email.strip()),
            )
            summary["admins_promoted"] += cur.rowcount

        if "payment_orders" in tables:
            if not has_column(conn, "payment_orders", "entitlement_applied_at"):
                conn.execute("ALTER TABLE payment_orders ADD COLUMN entitlement_applied_at TIMESTAMP")
            # completed orders from before the column existed were granted inline
            cur = conn.execute(
                "UPDATE payment_orders SET entitlement_applied_at = updated_at "
                "WHERE status = 'completed' AND entitlement_applied_at IS NULL"
            )
            summary["orders_marked"] = cur.rowcount

        conn.commit()
    return summary


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", required=True, help="Path to SQLite database file")
    parser.add_argument(
        "--admin-email", action="append", default=[], help="Email of a profile to promote to admin (repeatable)"
    )
    args = parser.parse_args()
    print(migrate(args.db, args.admin_email))

if __name__ == "__main__":
    main()
