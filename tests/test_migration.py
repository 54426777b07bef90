import os
import sqlite3
import tempfile

import pytest

from migration.migration_profiles_v2 import migrate


def create_legacy_db(path: str):
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE users (id TEXT PRIMARY KEY, email TEXT NOT NULL, username TEXT)")
        conn.execute(
            "CREATE TABLE profiles (user_id TEXT PRIMARY KEY REFERENCES users(id), email TEXT, username TEXT, "
            "membership_type TEXT NOT NULL DEFAULT 'free', membership_expires_at TIMESTAMP, "
            "created_at TIMESTAMP, updated_at TIMESTAMP)"
        )
        conn.execute(
            "CREATE TABLE payment_orders (order_id TEXT PRIMARY KEY, user_id TEXT NOT NULL, amount NUMERIC NOT NULL, "
            "plan TEXT NOT NULL, subject TEXT, status TEXT NOT NULL, gateway_trade_id TEXT, "
            "created_at TIMESTAMP, updated_at TIMESTAMP)"
        )
        # Seed data: u3 registered before profiles were created at sign-up
        conn.execute(
            "INSERT INTO users (id, email, username) VALUES "
            "('u1', 'master@admin.com', 'master'), ('u2', 'member@example.com', 'member'), ('u3', 'orphan@example.com', 'orphan')"
        )
        conn.execute(
            "INSERT INTO profiles (user_id, email, username, membership_type, created_at, updated_at) VALUES "
            "('u1', 'master@admin.com', 'master', 'free', '2024-01-01', '2024-01-01'), "
            "('u2', 'member@example.com', 'member', 'annual', '2024-01-01', '2024-01-01')"
        )
        conn.execute(
            "INSERT INTO payment_orders (order_id, user_id, amount, plan, subject, status, created_at, updated_at) VALUES "
            "('o1', 'u2', 99, 'annual', 'Annual', 'completed', '2024-02-01', '2024-02-02'), "
            "('o2', 'u2', 399, 'lifetime', 'Lifetime', 'pending', '2024-03-01', '2024-03-01')"
        )
        conn.commit()
    finally:
        conn.close()


def test_migration_adds_roles_and_missing_profiles():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "legacy.db")
        create_legacy_db(db_path)

        summary = migrate(db_path, admin_emails=["Master@Admin.com"])
        assert summary == {"profiles_created": 1, "admins_promoted": 1, "orders_marked": 1}

        conn = sqlite3.connect(db_path)
        try:
            cols = [r[1] for r in conn.execute("PRAGMA table_info(profiles)").fetchall()]
            assert "role" in cols

            rows = conn.execute("SELECT user_id, role, membership_type FROM profiles ORDER BY user_id").fetchall()
            assert rows == [("u1", "admin", "free"), ("u2", "user", "annual"), ("u3", "user", "free")]

            orders = dict(conn.execute("SELECT order_id, entitlement_applied_at FROM payment_orders").fetchall())
            assert orders == {"o1": "2024-02-02", "o2": None}
        finally:
            conn.close()


def test_migration_is_rerunnable():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "legacy.db")
        create_legacy_db(db_path)
        migrate(db_path)
        assert migrate(db_path) == {"profiles_created": 0, "admins_promoted": 0, "orders_marked": 0}


def test_migration_refuses_memory_and_missing_files():
    with pytest.raises(ValueError):
        migrate(":memory:")
    with pytest.raises(FileNotFoundError):
        migrate("/nonexistent/portal.db")
