"""
HTTP tests for the Flask endpoints, run against mongomock storage and fake vendors
"""

import io
from datetime import datetime, timedelta, timezone

import pytest

import app as app_module
from conftest import FakeTranscriber, make_transcription
from errors import StorageError
from models import EmotionScores, Suggestion


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def client(coordinator):
    previous = app_module.app.config.get("PIPELINE")
    app_module.app.config["PIPELINE"] = coordinator
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as test_client:
        yield test_client
    app_module.app.config["PIPELINE"] = previous


def post_chunk(client, call_id="call-e2e", size=2000):
    data = {"audio": (io.BytesIO(b"\x01" * size), "chunk.wav")}
    if call_id is not None:
        data["callId"] = call_id
    return client.post("/api/live", data=data, content_type="multipart/form-data")


def test_health_check(client):
    response = client.get("/test")
    assert response.status_code == 200


def test_live_chunk_end_to_end(client, store):
    response = post_chunk(client, "call-e2e")

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert store.calls.get_by_id("call-e2e") is not None
    if body["transcript"]:
        assert len(store.turns.get_by_call_id("call-e2e")) >= 1
        assert len(store.metrics.get_by_call_id("call-e2e")) >= 1
    assert set(body["emotions"]) >= {"anger", "frustration", "satisfaction", "neutral", "confidence"}


def test_live_chunk_missing_fields(client):
    missing_call_id = post_chunk(client, call_id=None)
    missing_audio = client.post("/api/live", data={"callId": "call-1"}, content_type="multipart/form-data")

    assert missing_call_id.status_code == 400
    assert missing_call_id.get_json() == {"error": "Missing audio or callId"}
    assert missing_audio.status_code == 400


def test_live_chunk_too_small(client, store):
    response = post_chunk(client, "call-small", size=10)

    assert response.status_code == 200
    assert response.get_json()["transcript"] == ""
    assert store.calls.get_by_id("call-small") is None


def test_live_chunk_storage_failure_still_returns_200(client, store, monkeypatch):
    def fail(*args, **kwargs):
        raise StorageError("write failed")

    monkeypatch.setattr(store.metrics, "create", fail)
    monkeypatch.setattr(store.suggestions, "create", fail)

    response = post_chunk(client, "call-db-down")

    assert response.status_code == 200
    assert response.get_json()["success"] is True
    assert len(store.turns.get_by_call_id("call-db-down")) == 1


def test_live_chunk_unhandled_error_returns_500(client, coordinator):
    def explode(call_id, audio, filename=None):
        raise RuntimeError("boom")

    coordinator.process_chunk = explode
    response = post_chunk(client)

    assert response.status_code == 500
    assert response.get_json() == {"error": "Failed to process audio", "details": "boom"}


def test_end_live_call(client):
    post_chunk(client, "call-end")

    response = client.post("/api/live/end", json={"callId": "call-end", "outcome": "escalated"})

    assert response.status_code == 200
    call = response.get_json()["call"]
    assert call["outcome"] == "escalated"
    assert call["endTime"] is not None


def test_end_live_call_validation(client):
    assert client.post("/api/live/end", json={}).status_code == 400
    assert client.post("/api/live/end", json={"callId": "x", "outcome": "great"}).status_code == 400
    assert client.post("/api/live/end", json={"callId": "unknown"}).status_code == 404


def test_upload(client, coordinator, store):
    coordinator.transcriber = FakeTranscriber(make_transcription("Hi, my internet is down."))

    response = client.post("/api/upload", data={"audio": (io.BytesIO(b"\x01" * 5000), "call.wav")},
                           content_type="multipart/form-data")

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["transcript"] == "Hi, my internet is down."
    assert body["summary"]["overview"]
    assert store.calls.get_by_id(body["callId"]).agent_id == "demo-agent"


def test_upload_missing_file(client):
    response = client.post("/api/upload", data={}, content_type="multipart/form-data")

    assert response.status_code == 400
    assert response.get_json() == {"error": "No audio file provided"}


@pytest.mark.parametrize("total,successful,expected", [
    (8, 1, 13),
    (8, 3, 38),
    (3, 2, 67),
    (4, 4, 100),
])
def test_analytics_success_rate(client, store, total, successful, expected):
    for i in range(total):
        call = store.calls.create(agent_id="a", customer_id="c")
        outcome = "successful" if i < successful else "unresolved"
        store.calls.update(call.id, outcome=outcome)

    body = client.get("/api/analytics").get_json()

    assert body["totalCalls"] == total
    assert body["successRate"] == expected
    assert len(body["recentCalls"]) == min(total, 10)


def test_analytics_empty_store(client):
    body = client.get("/api/analytics").get_json()

    assert body == {"totalCalls": 0, "successRate": 0, "avgSatisfaction": 0, "recentCalls": []}


def test_analytics_average_satisfaction(client, store):
    call = store.calls.create(agent_id="a", customer_id="c")
    store.metrics.create(call.id, EmotionScores(satisfaction=60), timestamp_offset=0)
    store.metrics.create(call.id, EmotionScores(satisfaction=81), timestamp_offset=1)

    body = client.get("/api/analytics").get_json()

    assert body["avgSatisfaction"] == 71


def test_list_and_get_calls(client, store):
    post_chunk(client, "call-list")

    listed = client.get("/api/calls?limit=5").get_json()["calls"]
    details = client.get("/api/calls/call-list").get_json()

    assert [c["id"] for c in listed] == ["call-list"]
    assert details["call"]["id"] == "call-list"
    assert client.get("/api/calls/unknown").status_code == 404
    assert client.get("/api/calls?limit=abc").status_code == 400


def test_list_calls_filters(client, store):
    base = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    store.calls.create(agent_id="agent-1", customer_id="cust-1", call_id="early", start_time=base)
    store.calls.create(agent_id="agent-1", customer_id="cust-2", call_id="late", start_time=base + timedelta(hours=2))
    store.calls.create(agent_id="agent-2", customer_id="cust-1", call_id="other", start_time=base + timedelta(hours=1))
    store.calls.update("late", outcome="escalated")

    def listed(**args):
        response = client.get("/api/calls", query_string=args)
        assert response.status_code == 200
        return [c["id"] for c in response.get_json()["calls"]]

    assert listed() == ["late", "other", "early"]
    assert listed(agentId="agent-1") == ["late", "early"]
    assert listed(customerId="cust-1", limit=1) == ["other"]
    assert listed(outcome="escalated") == ["late"]
    assert listed(startTimeFrom="2024-05-01T09:30:00Z", startTimeTo="2024-05-01T10:30:00+00:00") == ["other"]
    assert client.get("/api/calls", query_string={"outcome": "lost"}).status_code == 400
    assert client.get("/api/calls", query_string={"startTimeFrom": "yesterday"}).status_code == 400


def test_suggestion_feedback(client, store):
    store.suggestions.create(Suggestion(
        id="s-1", call_id="call-1", priority="high", text="Escalate", reasoning="Anger", timestamp_offset=0,
    ))

    response = client.post("/api/suggestions/s-1/feedback", json={"wasFollowed": True})

    assert response.status_code == 200
    assert response.get_json()["suggestion"]["wasFollowed"] is True
    assert client.post("/api/suggestions/s-1/feedback", json={"wasFollowed": "yes"}).status_code == 400
    assert client.post("/api/suggestions/nope/feedback", json={"wasFollowed": False}).status_code == 404
