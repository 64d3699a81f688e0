"""Tests for API endpoints."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

import app.ingest as ingest
from app.main import app
from factories import ecg_recording, heart_rate_sample


def _stats(client, headers):
    response = client.get("/health-data/stats", headers=headers)
    assert response.status_code == 200
    return response.json()["stats"]


def test_health_check_needs_no_auth(client):
    """Liveness reports the database without an API key."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert "timestamp" in data


def test_root_lists_endpoints(client):
    data = client.get("/").json()
    assert data["endpoints"]["syncHeartRate"] == "POST /health-data/heartrate"


def test_unknown_route_is_json_404(client):
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json()["error"] == "Not Found"


def test_missing_api_key_is_unauthorized(client):
    response = client.post("/health-data/heartrate", json={"data": [heart_rate_sample()]})
    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized"


def test_wrong_api_key_is_forbidden(client, auth_headers):
    response = client.post(
        "/health-data/heartrate",
        json={"data": [heart_rate_sample()]},
        headers={"X-API-Key": "wrong"},
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"
    assert _stats(client, auth_headers)["totalHeartRateSamples"] == 0


def test_auth_is_checked_before_the_body(client):
    response = client.post(
        "/health-data/ecg", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 401


def test_ingest_replay_scenario(client, auth_headers, device_info):
    """Insert, replay, then a different heart rate at the same instant."""
    body = {"data": [heart_rate_sample(heart_rate=72)], "deviceInfo": device_info}

    first = client.post("/health-data/heartrate", json=body, headers=auth_headers)
    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["stats"] == {
        "received": 1, "inserted": 1, "updated": 0, "duplicates": 0, "failed": 0, "rejected": 0
    }

    replay = client.post("/health-data/heartrate", json=body, headers=auth_headers)
    assert replay.json()["stats"]["inserted"] == 0
    assert replay.json()["stats"]["duplicates"] == 1

    changed = {"data": [heart_rate_sample(heart_rate=73)], "deviceInfo": device_info}
    third = client.post("/health-data/heartrate", json=changed, headers=auth_headers)
    assert third.json()["stats"]["inserted"] == 1

    assert _stats(client, auth_headers)["totalHeartRateSamples"] == 2


@pytest.mark.parametrize("body", [
    {"data": {"timestamp": "2024-01-15T10:00:00Z"}},
    {"data": "not-a-list"},
    {"deviceInfo": {}},
    ["no", "envelope"],
])
def test_malformed_envelope_is_inert(client, auth_headers, body):
    response = client.post("/health-data/heartrate", json=body, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "Bad Request"
    assert _stats(client, auth_headers)["totalHeartRateSamples"] == 0


def test_malformed_device_info_is_named_in_the_error(client, auth_headers):
    body = {"data": [heart_rate_sample()], "deviceInfo": "iPhone"}
    response = client.post("/health-data/heartrate", json=body, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["message"].startswith("deviceInfo")
    assert _stats(client, auth_headers)["totalHeartRateSamples"] == 0


def test_non_list_data_names_the_record_kind(client, auth_headers):
    response = client.post("/health-data/ecg", json={"data": "nope"}, headers=auth_headers)
    assert response.json()["message"] == "Data must be an array of ECG records"


def test_invalid_json_is_bad_request(client, auth_headers):
    response = client.post(
        "/health-data/heartrate",
        content=b"{not json",
        headers={**auth_headers, "Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_conservation_with_mixed_batch(client, auth_headers):
    records = [
        ecg_recording(timestamp="2024-01-15T10:00:00Z"),
        ecg_recording(timestamp="2024-01-15T10:00:00Z", classification=2),
        ecg_recording(timestamp="2024-01-15T10:05:00Z", classification=9),
        ecg_recording(timestamp="2024-01-15T10:10:00Z"),
    ]
    response = client.post("/health-data/ecg", json={"data": records}, headers=auth_headers)
    stats = response.json()["stats"]

    assert response.status_code == 200
    assert stats["received"] == stats["inserted"] + stats["duplicates"] + stats["failed"]
    assert (stats["inserted"], stats["duplicates"], stats["failed"]) == (2, 1, 1)
    assert stats["rejected"] == 1


def test_device_info_is_attached_unless_record_has_its_own(client, auth_headers, device_info):
    records = [
        heart_rate_sample(timestamp="2024-01-15T10:00:00Z"),
        heart_rate_sample(timestamp="2024-01-15T10:01:00Z", deviceInfo={"deviceModel": "iPad"}),
    ]
    client.post("/health-data/heartrate", json={"data": records, "deviceInfo": device_info},
                headers=auth_headers)

    data = client.get("/health-data/heartrate", headers=auth_headers).json()["data"]
    by_time = {row["timestamp"]: row["deviceInfo"]["deviceModel"] for row in data}
    assert by_time == {"2024-01-15T10:00:00.000Z": "iPhone", "2024-01-15T10:01:00.000Z": "iPad"}


def test_query_is_newest_first_and_limited(client, auth_headers):
    records = [
        heart_rate_sample(timestamp=f"2024-01-15T10:{minute:02d}:00Z", heart_rate=60 + minute)
        for minute in (3, 0, 4, 1, 2)
    ]
    client.post("/health-data/heartrate", json={"data": records}, headers=auth_headers)

    response = client.get("/health-data/heartrate", params={"limit": 3}, headers=auth_headers)
    body = response.json()
    timestamps = [row["timestamp"] for row in body["data"]]

    assert body["success"] is True
    assert body["count"] == 3
    assert timestamps == [
        "2024-01-15T10:04:00.000Z",
        "2024-01-15T10:03:00.000Z",
        "2024-01-15T10:02:00.000Z",
    ]
    assert body["data"][0]["heartRate"] == 64
    assert body["data"][0]["sourceDevice"] == "Watch7"


def test_query_bounds_are_inclusive(client, auth_headers):
    records = [heart_rate_sample(timestamp=f"2024-01-15T10:0{m}:00Z") for m in range(5)]
    client.post("/health-data/heartrate", json={"data": records}, headers=auth_headers)

    response = client.get(
        "/health-data/heartrate",
        params={"startDate": "2024-01-15T10:01:00Z", "endDate": "2024-01-15T10:03:00Z"},
        headers=auth_headers,
    )
    assert [row["timestamp"][11:16] for row in response.json()["data"]] == ["10:03", "10:02", "10:01"]


def test_query_dates_accept_fractional_seconds_and_offsets(client, auth_headers):
    records = [heart_rate_sample(timestamp=f"2024-01-15T10:0{m}:00Z") for m in range(3)]
    client.post("/health-data/heartrate", json={"data": records}, headers=auth_headers)

    response = client.get(
        "/health-data/heartrate",
        params={"startDate": "2024-01-15T10:00:59.12Z", "endDate": "2024-01-15T12:02:00+02:00"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert [row["timestamp"][11:16] for row in response.json()["data"]] == ["10:02", "10:01"]


def test_ecg_query_defaults_to_twenty(client, auth_headers):
    records = [ecg_recording(timestamp=f"2024-01-15T{h:02d}:00:00Z") for h in range(24)]
    client.post("/health-data/ecg", json={"data": records}, headers=auth_headers)

    body = client.get("/health-data/ecg", headers=auth_headers).json()
    assert body["count"] == 20
    assert body["data"][0]["timestamp"] == "2024-01-15T23:00:00.000Z"
    assert body["data"][0]["voltageMeasurements"][1] == {"timeSinceStart": 0.001953125, "voltage": None}


@pytest.mark.parametrize("params", [
    {"startDate": "yesterday"},
    {"endDate": "0001-01-01T00:00:00+05:00"},
    {"limit": 0},
    {"limit": "many"},
])
def test_invalid_query_parameters(client, auth_headers, params):
    response = client.get("/health-data/heartrate", params=params, headers=auth_headers)
    assert response.status_code == 400


def test_stats_report_counts_and_latest(client, auth_headers):
    assert _stats(client, auth_headers) == {
        "totalHeartRateSamples": 0,
        "totalECGRecordings": 0,
        "latestHeartRateTimestamp": None,
        "latestECGTimestamp": None,
    }
    client.post(
        "/health-data/heartrate",
        json={"data": [heart_rate_sample(timestamp="2024-01-15T10:00:00Z"),
                       heart_rate_sample(timestamp="2024-01-16T08:30:00Z")]},
        headers=auth_headers,
    )
    client.post("/health-data/ecg", json={"data": [ecg_recording()]}, headers=auth_headers)

    stats = _stats(client, auth_headers)
    assert stats["totalHeartRateSamples"] == 2
    assert stats["totalECGRecordings"] == 1
    assert stats["latestHeartRateTimestamp"] == "2024-01-16T08:30:00.000Z"
    assert stats["latestECGTimestamp"] == "2024-01-15T10:00:00.000Z"


def test_store_outage_is_service_unavailable(client, auth_headers, monkeypatch):
    async def disconnected(db, kind, row):
        raise OperationalError("INSERT", {}, Exception("connection refused"), connection_invalidated=True)

    monkeypatch.setattr(ingest, "insert_if_absent", disconnected)
    response = client.post(
        "/health-data/heartrate", json={"data": [heart_rate_sample()]}, headers=auth_headers
    )
    assert response.status_code == 503


def test_unexpected_errors_do_not_leak_details(auth_headers, monkeypatch):
    async def boom(db, kind, records):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(ingest, "upsert_batch", boom)
    with TestClient(app, raise_server_exceptions=False) as c:
        response = c.post(
            "/health-data/heartrate", json={"data": [heart_rate_sample()]}, headers=auth_headers
        )
    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error", "message": "Something went wrong"}
