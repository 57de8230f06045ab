import pytest

from newsharvest.models import ArticleRecord
from newsharvest.storage import (
    count_articles,
    find_article_by_hash,
    find_articles_by_title,
    find_recent_article_by_link,
    get_last_source_run,
    get_source,
    init_db,
    insert_article,
    list_sources,
    record_source_run,
    set_source_enabled,
    upsert_source,
)
from newsharvest.utils import utc_now_iso, utc_now_iso_offset


def _record(**overrides):
    values = dict(
        source_id="df-economia",
        domain="df.cl",
        title="Dólar cierra al alza por tercera jornada",
        title_source="extracted",
        body="El dólar cerró al alza por tercera jornada consecutiva.",
        cleaned_content="el dólar cerró al alza por tercera jornada consecutiva",
        content_hash="abc123",
        category="economia",
        category_method="url",
        category_confidence=0.95,
        scraped_at=utc_now_iso(),
        link="https://www.df.cl/economia/dolar",
    )
    values.update(overrides)
    return ArticleRecord(**values)


def test_upsert_source_derives_domain_and_updates(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    source = upsert_source(conn, {"id": "df", "url": "https://www.df.cl/economia", "kind": "HTML"})
    assert source.domain == "df.cl"
    assert source.kind == "html"
    assert source.name == "df"

    upsert_source(conn, {"id": "df", "target": "https://www.df.cl/", "name": "DF", "max_items": 5})
    stored = get_source(conn, "df")
    assert stored.name == "DF"
    assert stored.max_items == 5

    assert set_source_enabled(conn, "df", False) is True
    assert list_sources(conn) == []
    assert [s.id for s in list_sources(conn, enabled_only=False)] == ["df"]


@pytest.mark.parametrize(
    "data",
    [
        {"target": "https://x.cl"},
        {"id": "x"},
        {"id": "x", "target": "https://x.cl", "kind": "json"},
    ],
)
def test_upsert_source_rejects_invalid_entries(tmp_path, data):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(ValueError):
        upsert_source(conn, data)


def test_insert_article_reports_conflicts(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    first = insert_article(conn, _record())
    again = insert_article(conn, _record(content_hash="other"))
    same_hash = insert_article(conn, _record(link="https://www.df.cl/economia/otra"))

    assert first.saved
    assert first.article_id is not None
    assert again.status == "conflict"
    assert same_hash.status == "conflict"
    assert count_articles(conn) == 1
    assert count_articles(conn, "df-economia") == 1


def test_article_lookups(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    insert_article(conn, _record())
    insert_article(
        conn,
        _record(
            title="100% de aumento en ventas_online",
            content_hash="def456",
            link="https://www.df.cl/economia/ventas",
        ),
    )

    assert find_article_by_hash(conn, "abc123", "df.cl", None).title.startswith("Dólar")
    assert find_article_by_hash(conn, "abc123", "other.cl", None) is None
    assert find_article_by_hash(conn, "abc123", None, utc_now_iso_offset(seconds=60)) is None

    matches = find_articles_by_title(conn, "100% de", "df.cl", None)
    assert [m.content_hash for m in matches] == ["def456"]
    assert find_articles_by_title(conn, "ventas%online", None, None) == []

    since = utc_now_iso_offset(seconds=-3600)
    assert find_recent_article_by_link(conn, "df-economia", "https://www.df.cl/economia/dolar", since)
    assert find_recent_article_by_link(conn, "other", "https://www.df.cl/economia/dolar", since) is None


def test_source_runs_keep_latest(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    assert get_last_source_run(conn, "df") is None

    record_source_run(conn, "df", utc_now_iso_offset(seconds=-20), "ok", items_found=3, items_saved=2)
    record_source_run(conn, "df", utc_now_iso_offset(seconds=-10), "error", failed=1, error="boom")

    last = get_last_source_run(conn, "df")
    assert last["status"] == "error"
    assert last["error"] == "boom"
    assert last["failed"] == 1
