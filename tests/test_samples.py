import json
import re
from datetime import timedelta

import pytest
from sqlmodel import select

from voicenotes.db import get_session
from voicenotes.models import IdempotencyKey, as_utc, utcnow
from voicenotes.services import samples

@pytest.fixture
def bucket(monkeypatch):
    stored = {}

    def fake_upload(bucket, key, data, content_type, **extra):
        stored[key] = {"bucket": bucket, "data": data, "content_type": content_type, **extra}
        return f"{bucket}/{key}"

    monkeypatch.setattr(samples, "upload_bytes", fake_upload)
    monkeypatch.setattr(samples, "public_url", lambda bucket, key: f"https://cdn.example/{bucket}/{key}")
    return stored

BODY = {
    "recording_id": "R1",
    "redacted_text": "Patient [NAME] was seen on [DATE].",
    "vertical": "health",
    "entities_count_by_type": {"NAME_CUE": 1, "DATE": 1},
}

def test_publish_requires_idempotency_key(client, headers, bucket):
    r = client.post("/samples", headers=headers, json=BODY)
    assert r.status_code == 400
    assert r.json()["code"] == "missing_idempotency_key"
    assert bucket == {}

def test_publish_uploads_pdf_and_manifest(client, headers, bucket):
    r = client.post("/samples", headers={**headers, "Idempotency-Key": "k-1"}, json=BODY)
    assert r.status_code == 200
    body = r.json()
    assert body["idempotencyHit"] is False
    assert re.fullmatch(r"samples/u1/\d{4}/\d{2}/\d{2}/[0-9a-f-]{36}\.pdf", body["path"])
    assert body["publicUrl"].endswith(body["path"])

    pdf = bucket[body["path"]]
    assert pdf["bucket"] == "public_redacted_samples"
    assert pdf["content_type"] == "application/pdf"
    assert pdf["data"].startswith(b"%PDF")

    manifest = json.loads(bucket[body["path"].replace(".pdf", ".json")]["data"])
    assert manifest["sha256"] == body["sha256"]
    assert manifest["idempotencyKey"] == "k-1"
    assert manifest["userId"] == "u1"
    assert manifest["recordingId"] == "R1"
    assert manifest["entitiesCountByType"] == {"NAME_CUE": 1, "DATE": 1}

def test_repeated_key_returns_stored_response(client, headers, bucket):
    h = {**headers, "Idempotency-Key": "k-2"}
    first = client.post("/samples", headers=h, json=BODY).json()
    second = client.post("/samples", headers=h, json=BODY).json()
    assert second["idempotencyHit"] is True
    assert second["path"] == first["path"]
    assert len(bucket) == 2

def test_expired_key_is_evicted(client, headers, bucket):
    with get_session() as s:
        s.add(IdempotencyKey(scope=samples.SCOPE, key="k-old", user_id="u1",
                             response={"path": "stale"}, expires_at=utcnow() - timedelta(hours=1)))
        s.commit()
    body = client.post("/samples", headers={**headers, "Idempotency-Key": "k-old"}, json=BODY).json()
    assert body["idempotencyHit"] is False
    assert body["path"] != "stale"
    with get_session() as s:
        rows = s.exec(select(IdempotencyKey).where(IdempotencyKey.key == "k-old")).all()
    assert len(rows) == 1 and as_utc(rows[0].expires_at) > utcnow()

def test_key_owned_by_other_user_conflicts(client, headers, make_headers, bucket):
    client.post("/samples", headers={**headers, "Idempotency-Key": "shared"}, json=BODY)
    r = client.post("/samples", headers={**make_headers("u2"), "Idempotency-Key": "shared"}, json=BODY)
    assert r.status_code == 409

def test_synthetic_sample_needs_no_text(client, headers, bucket):
    r = client.post("/samples", headers={**headers, "Idempotency-Key": "k-syn"},
                    json={"recording_id": "R1", "synthetic": True, "vertical": "legal"})
    assert r.status_code == 200
