from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("newsharvest.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations_pg():
            if version in applied:
                continue
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            target TEXT NOT NULL,
            domain TEXT NOT NULL,
            kind TEXT NOT NULL DEFAULT 'html',
            owner_id TEXT NULL,
            region_hint TEXT NULL,
            category_hint TEXT NULL,
            max_items INTEGER NOT NULL DEFAULT 0,
            enabled INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id BIGSERIAL PRIMARY KEY,
            source_id TEXT NOT NULL,
            owner_id TEXT NULL,
            domain TEXT NOT NULL,
            title TEXT NOT NULL,
            title_source TEXT NOT NULL,
            link TEXT NULL,
            summary TEXT NULL,
            body TEXT NOT NULL,
            cleaned_content TEXT NOT NULL,
            content_hash TEXT NULL,
            category TEXT NOT NULL,
            category_method TEXT NOT NULL,
            category_confidence DOUBLE PRECISION NOT NULL,
            region TEXT NULL,
            author TEXT NULL,
            published_at TEXT NULL,
            scraped_at TEXT NOT NULL,
            UNIQUE(domain, content_hash),
            UNIQUE(source_id, link)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_domain_scraped ON articles(domain, scraped_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_hash ON articles(content_hash)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS source_runs (
            id BIGSERIAL PRIMARY KEY,
            source_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            status TEXT NOT NULL,
            items_found INTEGER NOT NULL DEFAULT 0,
            items_saved INTEGER NOT NULL DEFAULT 0,
            duplicates INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            progress_detail TEXT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            requested_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, requested_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cache_entries (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            ttl_class TEXT NOT NULL,
            expires_at DOUBLE PRECISION NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _get_migrations_pg() -> list[tuple[str, object]]:
    return [
        ("pg_bootstrap_001", _bootstrap_schema),
    ]
