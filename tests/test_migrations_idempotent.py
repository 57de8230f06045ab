import sqlite3

from newsharvest.migrations import _get_migrations, apply_migrations


def test_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path), isolation_level=None)

    apply_migrations(conn)
    apply_migrations(conn)

    versions = [
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations ORDER BY version").fetchall()
    ]
    assert versions == [version for version, _ in _get_migrations()]

    tables = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    }
    assert {"settings", "sources", "articles", "source_runs", "jobs", "cache_entries"} <= tables
    conn.close()
