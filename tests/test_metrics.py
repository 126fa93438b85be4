from datetime import datetime, timedelta, timezone

import pytest

from voicenotes.db import get_session
from voicenotes.models import RunLog, as_utc, utcnow
from voicenotes.services.metrics import clamp, list_runs, parse_since, pct

def _add_runs(rows):
    with get_session() as s:
        for row in rows:
            s.add(row)
        s.commit()

@pytest.fixture
def ten_runs():
    now = utcnow()
    statuses = [200] * 7 + [409] * 2 + [500]
    rows = [
        RunLog(user_id="u1", email_upstream_status=st, t_total_ms=(i + 1) * 100,
               t_transcribe_ms=50, t_summarize_ms=30, t_email_ms=10,
               created_at=now - timedelta(minutes=i + 1))
        for i, st in enumerate(statuses)
    ]
    rows.append(RunLog(user_id="other", email_upstream_status=500, t_total_ms=5, created_at=now))
    rows.append(RunLog(user_id="u1", email_upstream_status=500, t_total_ms=9999,
                       created_at=now - timedelta(days=10)))
    _add_runs(rows)
    return rows

def test_metrics_counts_and_percentiles(client, headers, ten_runs):
    r = client.get("/metrics", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["counts"] == {"total": 10, "success": 9, "fail": 1, "sent_200": 7, "duplicate_409": 2}
    assert body["success_rate"] == pytest.approx(0.9)
    assert body["t_total_ms"] == {"avg": 550, "p50": 500, "p90": 900, "p95": 900, "max": 1000}
    assert body["stages_avg_ms"] == {"transcribe": 50, "summarize": 30, "email": 10}
    assert body["window"]["hours"] == 168
    assert body["window"]["limit"] == 1000
    assert body["last_run_at"]

def test_metrics_params_are_clamped(client, headers, ten_runs):
    body = client.get("/metrics", headers=headers, params={"hours": 100000, "limit": 0}).json()
    assert body["window"]["hours"] == 720
    assert body["window"]["limit"] == 1
    assert body["counts"]["total"] == 1

def test_metrics_empty_window(client, make_headers):
    body = client.get("/metrics", headers=make_headers("nobody")).json()
    assert body["counts"]["total"] == 0
    assert body["success_rate"] is None
    assert body["t_total_ms"]["p50"] is None
    assert body["last_run_at"] is None

def test_list_runs_paginates_with_cursor(client, headers):
    now = utcnow()
    _add_runs([RunLog(user_id="u1", status_tag=f"r{i}", created_at=now - timedelta(minutes=i)) for i in range(3)])

    first = client.get("/runs", headers=headers, params={"limit": 2}).json()
    assert [i["status_tag"] for i in first["items"]] == ["r0", "r1"]
    assert first["next_cursor"]

    second = client.get("/runs", headers=headers, params={"limit": 2, "cursor": first["next_cursor"]}).json()
    assert [i["status_tag"] for i in second["items"]] == ["r2"]
    assert second["next_cursor"] is None

def test_get_and_delete_run_are_owner_scoped(client, headers, make_headers):
    run = RunLog(user_id="u1", email_to="me@example.com")
    _add_runs([run])

    assert client.get(f"/runs/{run.id}", headers=headers).json()["email_to"] == "me@example.com"
    assert client.get(f"/runs/{run.id}", headers=make_headers("intruder")).status_code == 404
    assert client.delete(f"/runs/{run.id}", headers=make_headers("intruder")).status_code == 404
    assert client.delete(f"/runs/{run.id}", headers=headers).json() == {"ok": True, "id": run.id}
    assert client.get(f"/runs/{run.id}", headers=headers).status_code == 404

def test_helpers():
    assert pct([], 50) is None
    assert pct([1, 2, 3, 4], 95) == 3
    assert clamp(None, 20, 1, 50) == 20
    assert clamp(500, 20, 1, 50) == 50
    assert parse_since("2024-01-01T00:00:00Z").isoformat() == "2024-01-01T00:00:00+00:00"
    assert parse_since("2024-01-01T02:00:00+02:00") == parse_since("2024-01-01T00:00:00")
    assert parse_since("not a date") is None

def test_created_at_round_trips_as_utc(client, headers):
    stamp = datetime(2024, 3, 5, 10, 30, 15, 123456, tzinfo=timezone.utc)
    run = RunLog(user_id="u1", created_at=stamp)
    _add_runs([run])

    with get_session() as s:
        stored = s.get(RunLog, run.id)
    assert as_utc(stored.created_at) == stamp
    assert client.get(f"/runs/{run.id}", headers=headers).json()["created_at"] == "2024-03-05T10:30:15.123456Z"

def test_cursor_keeps_rows_sharing_a_timestamp():
    now = utcnow()
    _add_runs([RunLog(id=f"run-{i}", user_id="u1", created_at=now) for i in range(5)])

    seen, cursor = [], None
    while True:
        page = list_runs("u1", limit=2, cursor=cursor)
        seen += [i["id"] for i in page["items"]]
        cursor = page["next_cursor"]
        if not cursor:
            break
    assert seen == ["run-4", "run-3", "run-2", "run-1", "run-0"]
