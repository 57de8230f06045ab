import pytest
from fastapi.testclient import TestClient

from newsharvest import __version__
from newsharvest.admin import create_app
from newsharvest.config import load_config
from newsharvest.services.runtime import build_runtime
from newsharvest.storage import upsert_source

TOKEN = {"X-Admin-Token": "secret"}


class NoNetworkFetcher:
    def fetch(self, url):
        raise AssertionError(f"unexpected fetch {url}")


@pytest.fixture
def runtime(tmp_path, monkeypatch):
    for name in ("NH_CONFIG", "NH_LLM_BASE_URL", "NH_LLM_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NH_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("NH_ADMIN_TOKEN", "secret")
    config_path = tmp_path / "config.yml"
    config_path.write_text("cache:\n  backend: memory\nqueue:\n  backend: memory\n", encoding="utf-8")
    runtime = build_runtime(load_config(str(config_path)), fetcher=NoNetworkFetcher())
    yield runtime
    runtime.close()


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


def test_health_reports_cache_and_queue(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["version"] == __version__
    assert body["cache"]["status"] == "healthy"
    assert body["queue"] == {"backend": "memory", "available": True}


def test_mutations_require_token(client):
    assert client.post("/batches", json={}).status_code == 401
    assert client.post("/cache/breaker/reset", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/jobs/stats").status_code == 200


def test_batch_lifecycle(client, runtime):
    assert client.post("/batches", json={}, headers=TOKEN).json()["detail"] == "no_sources"

    upsert_source(
        runtime.connections.get(),
        {"id": "df-economia", "target": "https://www.df.cl/economia", "kind": "html"},
    )
    missing = client.post("/batches", json={"source_ids": ["nope"]}, headers=TOKEN)
    assert missing.status_code == 404

    created = client.post("/batches", json={"attempts": 2}, headers=TOKEN)
    assert created.status_code == 200
    job = created.json()
    assert job["state"] == "queued"
    assert job["executed_synchronously"] is False

    assert client.get(f"/jobs/{job['id']}").json()["state"] == "queued"
    assert [j["id"] for j in client.get("/jobs", params={"state": "queued"}).json()] == [job["id"]]
    assert client.get("/jobs", params={"state": "bogus"}).status_code == 400
    assert client.get("/jobs/job_missing").status_code == 404

    cancelled = client.delete(f"/jobs/{job['id']}", headers=TOKEN)
    assert cancelled.json() == {"job_id": job["id"], "cancel_requested": True}
    assert client.get(f"/jobs/{job['id']}").json()["state"] == "cancelled"
    assert client.delete(f"/jobs/{job['id']}", headers=TOKEN).status_code == 409

    stats = client.get("/jobs/stats").json()
    assert stats["cancelled"] == 1
    assert stats["total"] == 1


def test_sources_listing(client, runtime):
    upsert_source(
        runtime.connections.get(),
        {"id": "gol", "target": "https://www.gol.cl/", "kind": "html", "enabled": False},
    )

    rows = client.get("/sources").json()

    assert [(row["id"], row["enabled"], row["last_run"]) for row in rows] == [("gol", False, None)]


def test_cache_endpoints(client, runtime):
    runtime.cache.set("search:public:abc", [1])
    runtime.cache.set("stats:public", {"articles": 3})
    runtime.cache.set("static:domain:df.cl:home", "<html>")
    runtime.cache.set("scrape:https://www.df.cl/a", "<html>")

    removed = client.post(
        "/cache/invalidate", json={"owner_ids": ["public"], "domains": ["df.cl"]}, headers=TOKEN
    )
    assert removed.json() == {"removed": 3}

    deleted = client.delete("/cache/keys/scrape:https://www.df.cl/a", headers=TOKEN)
    assert deleted.json() == {"key": "scrape:https://www.df.cl/a", "deleted": True}

    assert client.post("/cache/invalidate", json={"prefix": "*"}, headers=TOKEN).status_code == 400

    stats = client.get("/cache/stats").json()
    assert stats["backend"] == "memory"
    assert stats["sets"] == 4

    assert client.get("/cache/breaker").json()["state"] == "closed"
    assert client.post("/cache/breaker/reset", headers=TOKEN).json()["failures"] == 0


def test_runtime_config_endpoints(client):
    current = client.get("/admin/config/runtime", headers=TOKEN).json()["config"]
    current["pipeline"]["fetch_concurrency"] = 2

    assert client.put("/admin/config/runtime", json={"config": current}, headers=TOKEN).json() == {
        "status": "ok",
        "restart_required": True,
    }
    assert client.get("/admin/config/runtime", headers=TOKEN).json()["config"]["pipeline"][
        "fetch_concurrency"
    ] == 2

    current["pipeline"]["fetch_concurrency"] = 0
    assert client.put("/admin/config/runtime", json={"config": current}, headers=TOKEN).status_code == 400
