import json

import httpx
import pytest

from apps.adsheet.core.auth import AuthContext, Role
from apps.adsheet.sync.client import PersistenceClient, PersistenceError
from apps.adsheet.sync.tracker import PendingEdit

BASE_URL = "http://sheet.test/api/adsheet"


def _envelope(data):
    return {"meta": {"client_id": "grid-tests"}, "data": data}


def _client(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    return PersistenceClient(
        BASE_URL,
        AuthContext(user_id=9, role=Role.MANAGER, director_id=7),
        "session_abc123def",
        api_key="k",
        tenant_id="acme",
        client=httpx.AsyncClient(transport=transport),
        **kwargs,
    )


def _edits(count):
    return [
        PendingEdit(record_id=100 + index, field="name", old_value="", new_value=f"N{index}")
        for index in range(count)
    ]


async def test_flush_sends_one_batch_request():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        return httpx.Response(200, json=_envelope({"updated": 2, "skipped": []}))

    client = _client(handler)
    report = await client.flush(_edits(2))

    assert report.ok and not report.used_fallback
    assert len(calls) == 1
    request = calls[0]
    assert request.method == "POST"
    assert request.url.path == "/api/adsheet/v1/ad-accounts/batch-update"
    assert request.headers["X-User-Id"] == "9"
    assert request.headers["X-Director-Id"] == "7"
    assert request.headers["X-Session-Id"] == "session_abc123def"
    assert request.headers["X-Tenant-Id"] == "acme"
    body = json.loads(request.content)
    assert body[0] == {
        "id": 100,
        "field": "name",
        "old_value": "",
        "new_value": "N0",
        "session_id": None,
    }


async def test_batch_failure_falls_back_to_isolated_patches():
    patched = []

    def handler(request: httpx.Request):
        if request.url.path.endswith("/batch-update"):
            return httpx.Response(500, json={"error": {"message": "boom"}})
        record_id = int(request.url.path.rsplit("/", 1)[-1])
        patched.append(record_id)
        if record_id == 102:
            return httpx.Response(500, json={"error": {"message": "row locked"}})
        return httpx.Response(200, json=_envelope({"id": record_id}))

    client = _client(handler)
    report = await client.flush(_edits(5))

    assert report.used_fallback
    assert patched == [100, 101, 102, 103, 104]
    assert [edit.record_id for edit in report.saved] == [100, 101, 103, 104]
    assert len(report.failed) == 1
    failed_edit, error = report.failed[0]
    assert failed_edit.record_id == 102
    assert "row locked" in error


async def test_create_batch_chunks_and_skips_malformed_rows():
    bodies = []

    def handler(request: httpx.Request):
        body = json.loads(request.content)
        bodies.append(body)
        rows = [
            {"temp_marker": row["temp_marker"], "id": 500 + len(bodies) * 10 + index, "local_id": index + 1, "owner_id": 7}
            for index, row in enumerate(body["rows"])
        ]
        rows.append({"temp_marker": "temp-row-1-bad", "id": "not-a-number"})
        return httpx.Response(200, json=_envelope({"rows": rows, "created": len(rows)}))

    client = _client(handler, chunk_size=2)
    created = await client.create_batch(
        [(f"temp-paste-1-{index:09x}", {"name": f"R{index}", "vat_percentage": "10%"}) for index in range(5)]
    )

    assert [len(body["rows"]) for body in bodies] == [2, 2, 1]
    assert all(body["session_id"] == "session_abc123def" for body in bodies)
    assert bodies[0]["rows"][0]["values"]["vat_percentage"] == "10"
    assert len(created) == 5
    assert created[0].display_id == "1-7"


async def test_fetch_records_bypasses_caches_and_unwraps():
    seen = {}

    def handler(request: httpx.Request):
        seen["cache"] = request.headers.get("Cache-Control")
        return httpx.Response(200, json=_envelope([{"id": 1, "local_id": 1, "owner_id": 7}]))

    client = _client(handler)
    records = await client.fetch_records()

    assert seen["cache"] == "no-cache"
    assert records == [{"id": 1, "local_id": 1, "owner_id": 7}]


async def test_http_errors_become_persistence_errors():
    def handler(request: httpx.Request):
        return httpx.Response(404, json={"meta": {}, "error": {"message": "Record 3 not found"}})

    client = _client(handler)
    with pytest.raises(PersistenceError) as excinfo:
        await client.patch_record(3, {"name": "x"})
    assert excinfo.value.status_code == 404
    assert "Record 3 not found" in str(excinfo.value)


async def test_transport_errors_become_persistence_errors():
    def handler(request: httpx.Request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(PersistenceError):
        await client.fetch_updates(None)
