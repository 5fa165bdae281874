from __future__ import annotations

import json
import sys

import pytest

import web_viewer

ROWS = [
    {"domain": "later.eth", "snipeable": False, "price": -999990.0},
    {"domain": "pricey.eth", "snipeable": True, "price": 500.0},
    {"domain": "cheap.eth", "snipeable": True, "price": 2.0},
    {"domain": "broken.eth", "error": "Failed to check expiration"},
]


@pytest.fixture
def client(tmp_path, monkeypatch):
    results = tmp_path / "ens_results.json"
    monkeypatch.setattr(web_viewer, "CACHE", web_viewer.Cache(results_path=results))
    web_viewer.app.config["TESTING"] = True
    with web_viewer.app.test_client() as c:
        yield c, results


def test_lists_snipeable_cheapest_first(client):
    c, results = client
    results.write_text(json.dumps(ROWS), encoding="utf-8")

    data = c.get("/api/domains").get_json()

    assert data["total"] == 2
    assert [r["domain"] for r in data["items"]] == ["cheap.eth", "pricey.eth"]
    assert data["note"] is None


def test_all_includes_pending_but_not_errors(client):
    c, results = client
    results.write_text(json.dumps(ROWS), encoding="utf-8")

    data = c.get("/api/domains?all=1").get_json()

    assert [r["domain"] for r in data["items"]] == ["cheap.eth", "pricey.eth", "later.eth"]


def test_search_and_pagination(client):
    c, results = client
    results.write_text(json.dumps(ROWS), encoding="utf-8")

    data = c.get("/api/domains?q=PRICEY").get_json()
    assert [r["domain"] for r in data["items"]] == ["pricey.eth"]

    data = c.get("/api/domains?page=2&per_page=1").get_json()
    assert data["page"] == 2
    assert [r["domain"] for r in data["items"]] == ["pricey.eth"]


def test_missing_results_file(client):
    c, _ = client
    data = c.get("/api/domains").get_json()
    assert data["total"] == 0
    assert "No results file" in data["note"]


def test_unreadable_file_keeps_last_snapshot(client):
    c, results = client
    results.write_text(json.dumps(ROWS), encoding="utf-8")
    c.get("/api/domains")

    web_viewer.CACHE.mtime = 0.0
    results.write_text("[{", encoding="utf-8")
    data = c.get("/api/domains").get_json()

    assert data["total"] == 2
    assert "could not be read" in data["note"]


def test_index_page(client):
    c, _ = client
    resp = c.get("/")
    assert resp.status_code == 200
    assert b"ENS snipe viewer" in resp.data


def test_scan_conflict_when_running(client, monkeypatch):
    c, _ = client
    monkeypatch.setitem(web_viewer.SCAN_STATE, "running", True)
    resp = c.post("/scan")
    assert resp.status_code == 409
    assert c.get("/api/scan_status").get_json()["running"] is True


def test_second_scan_rejected_before_worker_runs(client, monkeypatch):
    c, _ = client
    monkeypatch.setitem(web_viewer.SCAN_STATE, "running", False)
    monkeypatch.setattr(web_viewer, "SCAN_CMD", ["true"])
    started = []
    monkeypatch.setattr(web_viewer.threading.Thread, "start", lambda self: started.append(self))

    first = c.post("/scan")
    second = c.post("/scan")

    assert first.status_code == 200
    assert second.status_code == 409
    assert len(started) == 1
    assert c.get("/api/scan_status").get_json()["running"] is True


def test_scan_cmd_locks_output(tmp_path):
    results = tmp_path / "r.json"
    cmd = web_viewer.build_scan_cmd("ens_snipe.py", results, "--csv names.csv --output x.json --output=y.json -v")
    assert cmd == [sys.executable, "ens_snipe.py", "--output", str(results), "--csv", "names.csv", "-v"]
