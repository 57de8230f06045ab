from __future__ import annotations

import json
import uuid
from typing import Any

from .db import DBConn, connect_db
from .models import (
    ArticleRecord,
    JobRecord,
    JobState,
    SaveResult,
    SourceDescriptor,
    StoredArticle,
)
from .utils import domain_from_url, json_dumps, utc_now_iso, utc_now_iso_offset

JOB_COLUMNS = (
    "id, job_type, status, payload_json, result_json, progress, progress_detail, attempts, "
    "error, cancel_requested, requested_at, started_at, finished_at, locked_by"
)
ARTICLE_COLUMNS = (
    "id, source_id, domain, title, link, content_hash, cleaned_content, category, scraped_at"
)


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


def upsert_source(conn: Any, source_dict: dict[str, object]) -> SourceDescriptor:
    source = _source_from_dict(source_dict)
    enabled = bool(source_dict.get("enabled", True))
    row = conn.execute("SELECT created_at FROM sources WHERE id = ?", (source.id,)).fetchone()
    created_at = row[0] if row else utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, target, domain, kind, owner_id, region_hint, category_hint,
             max_items, enabled, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            target = excluded.target,
            domain = excluded.domain,
            kind = excluded.kind,
            owner_id = excluded.owner_id,
            region_hint = excluded.region_hint,
            category_hint = excluded.category_hint,
            max_items = excluded.max_items,
            enabled = excluded.enabled,
            updated_at = excluded.updated_at
        """,
        (
            source.id,
            source.name,
            source.target,
            source.domain,
            source.kind,
            source.owner_id,
            source.region_hint,
            source.category_hint,
            source.max_items,
            1 if enabled else 0,
            created_at,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return source


def set_source_enabled(conn: Any, source_id: str, enabled: bool) -> bool:
    cursor = conn.execute(
        "UPDATE sources SET enabled = ?, updated_at = ? WHERE id = ?",
        (1 if enabled else 0, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_source(conn: Any, source_id: str) -> SourceDescriptor | None:
    row = conn.execute(
        """
        SELECT id, target, name, domain, owner_id, kind, max_items, region_hint, category_hint
        FROM sources WHERE id = ?
        """,
        (source_id,),
    ).fetchone()
    return _row_to_source(row) if row else None


def list_sources(conn: Any, enabled_only: bool = True) -> list[SourceDescriptor]:
    sql = """
        SELECT id, target, name, domain, owner_id, kind, max_items, region_hint, category_hint
        FROM sources
    """
    if enabled_only:
        sql += " WHERE enabled = 1"
    sql += " ORDER BY id"
    return [_row_to_source(row) for row in conn.execute(sql).fetchall()]


def record_source_run(
    conn: Any,
    source_id: str,
    started_at: str,
    status: str,
    items_found: int = 0,
    items_saved: int = 0,
    duplicates: int = 0,
    failed: int = 0,
    error: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO source_runs
            (source_id, started_at, finished_at, status, items_found, items_saved,
             duplicates, failed, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            started_at,
            utc_now_iso(),
            status,
            items_found,
            items_saved,
            duplicates,
            failed,
            error,
        ),
    )
    conn.commit()


def get_last_source_run(conn: Any, source_id: str) -> dict[str, object] | None:
    row = conn.execute(
        """
        SELECT started_at, finished_at, status, items_found, items_saved, duplicates, failed, error
        FROM source_runs
        WHERE source_id = ?
        ORDER BY started_at DESC, id DESC
        LIMIT 1
        """,
        (source_id,),
    ).fetchone()
    if not row:
        return None
    keys = (
        "started_at",
        "finished_at",
        "status",
        "items_found",
        "items_saved",
        "duplicates",
        "failed",
        "error",
    )
    return dict(zip(keys, row))


def insert_article(conn: Any, record: ArticleRecord) -> SaveResult:
    try:
        cursor = conn.execute(
            """
            INSERT INTO articles
                (source_id, owner_id, domain, title, title_source, link, summary, body,
                 cleaned_content, content_hash, category, category_method, category_confidence,
                 region, author, published_at, scraped_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                record.source_id,
                record.owner_id,
                record.domain,
                record.title,
                record.title_source,
                record.link,
                record.summary,
                record.body,
                record.cleaned_content,
                record.content_hash,
                record.category,
                record.category_method,
                record.category_confidence,
                record.region,
                record.author,
                record.published_at,
                record.scraped_at,
            ),
        )
        row = cursor.fetchone()
        conn.commit()
    except Exception as exc:
        conn.rollback()
        if _is_integrity_error(exc):
            return SaveResult(status="conflict", error=str(exc))
        raise
    return SaveResult(status="saved", article_id=int(row[0]) if row else None)


def find_article_by_hash(
    conn: Any, digest: str, domain: str | None, since: str | None
) -> StoredArticle | None:
    sql = f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE content_hash = ?"
    params: list[object] = [digest]
    sql, params = _scope_clause(sql, params, domain, since)
    sql += " ORDER BY scraped_at DESC LIMIT 1"
    row = conn.execute(sql, tuple(params)).fetchone()
    return _row_to_article(row) if row else None


def find_articles_by_title(
    conn: Any,
    fragment: str,
    domain: str | None,
    since: str | None,
    limit: int = 10,
) -> list[StoredArticle]:
    sql = (
        f"SELECT {ARTICLE_COLUMNS} FROM articles "
        "WHERE LOWER(title) LIKE ? ESCAPE '!' AND content_hash IS NOT NULL"
    )
    params: list[object] = [f"%{_escape_like(fragment.lower())}%"]
    sql, params = _scope_clause(sql, params, domain, since)
    sql += " ORDER BY scraped_at DESC LIMIT ?"
    params.append(int(limit))
    return [_row_to_article(row) for row in conn.execute(sql, tuple(params)).fetchall()]


def find_recent_article_by_link(
    conn: Any, source_id: str, link: str, since: str
) -> StoredArticle | None:
    row = conn.execute(
        f"""
        SELECT {ARTICLE_COLUMNS} FROM articles
        WHERE source_id = ? AND link = ? AND scraped_at >= ?
        LIMIT 1
        """,
        (source_id, link, since),
    ).fetchone()
    return _row_to_article(row) if row else None


def count_articles(conn: Any, source_id: str | None = None) -> int:
    if source_id:
        row = conn.execute(
            "SELECT COUNT(*) FROM articles WHERE source_id = ?", (source_id,)
        ).fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM articles").fetchone()
    return int(row[0]) if row else 0


def enqueue_job(conn: Any, job_type: str, payload: dict[str, object]) -> JobRecord:
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, job_type, status, payload_json, result_json, progress, progress_detail,
             attempts, error, cancel_requested, requested_at)
        VALUES (?, ?, ?, ?, NULL, 0, NULL, 0, NULL, 0, ?)
        """,
        (job_id, job_type, JobState.QUEUED.value, json_dumps(payload), now),
    )
    conn.commit()
    return JobRecord(
        id=job_id,
        job_type=job_type,
        state=JobState.QUEUED,
        payload=json.loads(json_dumps(payload)),
        requested_at=now,
    )


def get_job(conn: Any, job_id: str) -> JobRecord | None:
    row = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: Any, limit: int = 50, status: str | None = None) -> list[JobRecord]:
    sql = f"SELECT {JOB_COLUMNS} FROM jobs"
    params: list[object] = []
    if status:
        sql += " WHERE status = ?"
        params.append(status)
    sql += " ORDER BY requested_at DESC LIMIT ?"
    params.append(int(limit))
    return [_row_to_job(row) for row in conn.execute(sql, tuple(params)).fetchall()]


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> JobRecord | None:
    with conn.transaction():
        if lock_timeout_seconds is not None:
            cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
            conn.execute(
                """
                UPDATE jobs
                SET status = 'queued',
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    error = 'stale_lock_requeued'
                WHERE status = 'active' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (cutoff,),
            )
        params: list[object] = []
        type_clause = ""
        if allowed_types:
            placeholders = ",".join(["?"] * len(allowed_types))
            type_clause = f" AND job_type IN ({placeholders})"
            params.extend(allowed_types)
        lock_clause = " FOR UPDATE SKIP LOCKED" if conn.backend == "postgres" else ""
        row = conn.execute(
            f"""
            SELECT id FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL{type_clause}
            ORDER BY requested_at ASC
            LIMIT 1{lock_clause}
            """,
            tuple(params),
        ).fetchone()
        if not row:
            return None
        job_id = row[0]
        now = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'active', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, job_id),
        )
        if cursor.rowcount != 1:
            return None
        claimed = conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
    return _row_to_job(claimed) if claimed else None


def update_job_progress(
    conn: Any,
    job_id: str,
    progress: int,
    detail: str | None,
    attempts: int,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET progress = ?, progress_detail = ?, attempts = ?, locked_at = ?
        WHERE id = ? AND status = 'active'
        """,
        (int(progress), detail, int(attempts), utc_now_iso(), job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def finish_job(
    conn: Any,
    job_id: str,
    state: JobState,
    result: dict[str, object] | None = None,
    error: str | None = None,
) -> bool:
    if not state.terminal:
        raise ValueError(f"finish_job requires a terminal state, got {state.value}")
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = ?, finished_at = ?, result_json = ?, error = ?,
            progress = CASE WHEN ? = 'completed' THEN 100 ELSE progress END,
            locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = 'active'
        """,
        (
            state.value,
            utc_now_iso(),
            json_dumps(result) if result is not None else None,
            error,
            state.value,
            job_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_job(conn: Any, job_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'cancelled', finished_at = ?, error = 'cancelled'
        WHERE id = ? AND status = 'queued'
        """,
        (now, job_id),
    )
    if cursor.rowcount == 1:
        conn.commit()
        return True
    cursor = conn.execute(
        "UPDATE jobs SET cancel_requested = 1 WHERE id = ? AND status = 'active'",
        (job_id,),
    )
    conn.commit()
    return cursor.rowcount == 1


def is_cancel_requested(conn: Any, job_id: str) -> bool:
    row = conn.execute(
        "SELECT status, cancel_requested FROM jobs WHERE id = ?", (job_id,)
    ).fetchone()
    return bool(row and (row[0] == "cancelled" or int(row[1] or 0) == 1))


def count_jobs_by_status(conn: Any) -> dict[str, int]:
    counts = {state.value: 0 for state in JobState}
    for status, count in conn.execute(
        "SELECT status, COUNT(*) FROM jobs GROUP BY status"
    ).fetchall():
        counts[str(status)] = int(count)
    return counts


def clean_jobs(conn: Any, completed_before: str, failed_before: str) -> int:
    cursor = conn.execute(
        """
        DELETE FROM jobs
        WHERE (status IN ('completed', 'cancelled') AND finished_at < ?)
           OR (status = 'failed' AND finished_at < ?)
        """,
        (completed_before, failed_before),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def cache_get(conn: Any, key: str, now: float) -> str | None:
    row = conn.execute(
        "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
    ).fetchone()
    if not row:
        return None
    if float(row[1]) <= now:
        conn.execute("DELETE FROM cache_entries WHERE key = ? AND expires_at <= ?", (key, now))
        conn.commit()
        return None
    return row[0]


def cache_set(conn: Any, key: str, value: str, ttl_class: str, expires_at: float) -> None:
    conn.execute(
        """
        INSERT INTO cache_entries (key, value, ttl_class, expires_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            value = excluded.value,
            ttl_class = excluded.ttl_class,
            expires_at = excluded.expires_at,
            updated_at = excluded.updated_at
        """,
        (key, value, ttl_class, expires_at, utc_now_iso()),
    )
    conn.commit()


def cache_exists(conn: Any, key: str, now: float) -> bool:
    row = conn.execute(
        "SELECT 1 FROM cache_entries WHERE key = ? AND expires_at > ?", (key, now)
    ).fetchone()
    return row is not None


def cache_ttl_remaining(conn: Any, key: str, now: float) -> float | None:
    row = conn.execute(
        "SELECT expires_at FROM cache_entries WHERE key = ? AND expires_at > ?", (key, now)
    ).fetchone()
    return float(row[0]) - now if row else None


def cache_delete(conn: Any, key: str) -> bool:
    cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
    conn.commit()
    return cursor.rowcount == 1


def cache_delete_prefix(conn: Any, prefix: str) -> int:
    cursor = conn.execute(
        "DELETE FROM cache_entries WHERE key LIKE ? ESCAPE '!'",
        (f"{_escape_like(prefix)}%",),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def cache_purge_expired(conn: Any, now: float) -> int:
    cursor = conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (now,))
    conn.commit()
    return int(cursor.rowcount or 0)


def cache_clear(conn: Any) -> int:
    cursor = conn.execute("DELETE FROM cache_entries")
    conn.commit()
    return int(cursor.rowcount or 0)


def _scope_clause(
    sql: str, params: list[object], domain: str | None, since: str | None
) -> tuple[str, list[object]]:
    if domain:
        sql += " AND domain = ?"
        params.append(domain)
    if since:
        sql += " AND scraped_at >= ?"
        params.append(since)
    return sql, params


def _escape_like(value: str) -> str:
    return value.replace("!", "!!").replace("%", "!%").replace("_", "!_")


def _is_integrity_error(exc: Exception) -> bool:
    return any(cls.__name__ == "IntegrityError" for cls in type(exc).__mro__)


def _source_from_dict(data: dict[str, object]) -> SourceDescriptor:
    source_id = str(data.get("id") or "").strip()
    target = str(data.get("target") or data.get("url") or "").strip()
    if not source_id:
        raise ValueError("source id is required")
    if not target:
        raise ValueError(f"source {source_id} requires a target url")
    kind = str(data.get("kind") or "html").strip().lower()
    if kind not in ("html", "rss"):
        raise ValueError(f"source {source_id} has unsupported kind {kind}")
    return SourceDescriptor(
        id=source_id,
        target=target,
        name=str(data.get("name") or source_id),
        domain=str(data.get("domain") or domain_from_url(target)),
        owner_id=str(data["owner_id"]) if data.get("owner_id") else None,
        kind=kind,
        max_items=int(data.get("max_items") or 0),
        region_hint=str(data["region_hint"]) if data.get("region_hint") else None,
        category_hint=str(data["category_hint"]) if data.get("category_hint") else None,
    )


def _row_to_source(row: tuple) -> SourceDescriptor:
    (
        source_id,
        target,
        name,
        domain,
        owner_id,
        kind,
        max_items,
        region_hint,
        category_hint,
    ) = row
    return SourceDescriptor(
        id=source_id,
        target=target,
        name=name,
        domain=domain,
        owner_id=owner_id,
        kind=kind,
        max_items=int(max_items or 0),
        region_hint=region_hint,
        category_hint=category_hint,
    )


def _row_to_article(row: tuple) -> StoredArticle:
    (
        article_id,
        source_id,
        domain,
        title,
        link,
        content_hash,
        cleaned_content,
        category,
        scraped_at,
    ) = row
    return StoredArticle(
        id=int(article_id),
        source_id=source_id,
        domain=domain,
        title=title,
        link=link,
        content_hash=content_hash,
        cleaned_content=cleaned_content,
        category=category,
        scraped_at=scraped_at,
    )


def _row_to_job(row: tuple) -> JobRecord:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        progress,
        progress_detail,
        attempts,
        error,
        cancel_requested,
        requested_at,
        started_at,
        finished_at,
        locked_by,
    ) = row
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    try:
        result = json.loads(result_json) if result_json else None
    except json.JSONDecodeError:
        result = None
    return JobRecord(
        id=job_id,
        job_type=job_type,
        state=JobState(status),
        payload=payload,
        requested_at=requested_at,
        progress=int(progress or 0),
        progress_detail=progress_detail,
        attempts=int(attempts or 0),
        last_error=error,
        result=result,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        cancel_requested=bool(cancel_requested),
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
