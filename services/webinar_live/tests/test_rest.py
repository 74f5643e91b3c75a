from __future__ import annotations

TIMELINE_CSV = (
    "hour,minute,second,name,message,mode\n"
    "0,2,0,,Grab the offer,CTA\n"
    "0,1,0,Coach,Welcome everyone,\n"
    ",,,,,\n"
)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_mutations_require_operator_token(client, make_webinar):
    webinar_id = make_webinar()

    missing = client.post(f"/webinars/{webinar_id}/start")
    invalid = client.post(
        f"/webinars/{webinar_id}/start", headers={"Authorization": "Bearer not-a-jwt"}
    )

    assert missing.status_code == 401
    assert missing.json()["detail"] == "Missing token"
    assert invalid.status_code == 401
    assert invalid.json()["detail"] == "Invalid token"


def test_start_and_stop_session(client, make_webinar, operator_headers, fake_clock):
    webinar_id = make_webinar()

    started = client.post(f"/webinars/{webinar_id}/start", headers=operator_headers)
    assert started.status_code == 200
    assert started.json()["isLive"] is True
    assert started.json()["status"] == "LIVE"

    fake_clock.advance(42)
    elapsed = client.get(f"/webinars/{webinar_id}/elapsed")
    assert elapsed.json() == {"webinarId": webinar_id, "elapsedSeconds": 42, "isLive": True}

    stopped = client.post(
        f"/webinars/{webinar_id}/stop",
        json={"reason": "technical issue"},
        headers=operator_headers,
    )
    body = stopped.json()
    assert stopped.status_code == 200
    assert body["status"] == "ENDED"
    assert body["isLive"] is False
    assert body["lastKnownOffsetSeconds"] == 42

    again = client.post(f"/webinars/{webinar_id}/stop", headers=operator_headers)
    assert again.status_code == 409
    assert again.json()["status"] == "ENDED"


def test_unknown_webinar_is_404(client, operator_headers):
    assert client.post("/webinars/missing/start", headers=operator_headers).status_code == 404
    assert client.get("/webinars/missing/state").status_code == 404


def test_state_reports_viewers(client, make_webinar):
    webinar_id = make_webinar()

    with client.websocket_connect("/ws/webinars") as websocket:
        websocket.send_json({"event": "join", "data": {"webinarId": webinar_id}})
        websocket.receive_json()
        state = client.get(f"/webinars/{webinar_id}/state").json()

    assert state["viewerCount"] == 1
    assert state["isLive"] is False


def test_reschedule_ended_webinar(client, make_webinar, operator_headers):
    webinar_id = make_webinar()
    client.post(f"/webinars/{webinar_id}/start", headers=operator_headers)
    client.post(f"/webinars/{webinar_id}/stop", headers=operator_headers)

    response = client.post(
        f"/webinars/{webinar_id}/reschedule",
        json={"scheduledAt": "2026-04-01T18:00:00Z"},
        headers=operator_headers,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "SCHEDULED"
    assert response.json()["scheduledAt"].startswith("2026-04-01T18:00:00")


def test_csv_import_replaces_timeline(client, make_webinar, operator_headers):
    webinar_id = make_webinar()
    url = f"/webinars/{webinar_id}/automations/csv"

    first = client.post(
        url, files={"file": ("timeline.csv", TIMELINE_CSV, "text/csv")}, headers=operator_headers
    )
    assert first.json() == {"webinarId": webinar_id, "imported": 2}

    listed = client.get(f"/webinars/{webinar_id}/automations", headers=operator_headers).json()
    assert [(item["kind"], item["triggerOffsetSeconds"]) for item in listed] == [
        ("TIMED_MESSAGE", 60),
        ("CTA_POPUP", 120),
    ]

    second = client.post(
        url,
        files={"file": ("timeline.csv", "hour,minute,second,name,message,mode\n0,0,5,,Hi,\n", "text/csv")},
        headers=operator_headers,
    )
    assert second.json()["imported"] == 1
    listed = client.get(f"/webinars/{webinar_id}/automations", headers=operator_headers).json()
    assert [item["triggerOffsetSeconds"] for item in listed] == [5]


def test_csv_import_rejects_non_integer_time(client, make_webinar, make_automation, operator_headers):
    webinar_id = make_webinar()
    make_automation(webinar_id, offset=10)
    bad = "hour,minute,second,name,message,mode\n0,one,0,,Hi,\n"

    response = client.post(
        f"/webinars/{webinar_id}/automations/csv",
        files={"file": ("timeline.csv", bad, "text/csv")},
        headers=operator_headers,
    )

    assert response.status_code == 400
    listed = client.get(f"/webinars/{webinar_id}/automations", headers=operator_headers).json()
    assert len(listed) == 1


def test_automation_crud(client, make_webinar, operator_headers):
    webinar_id = make_webinar()

    created = client.post(
        f"/webinars/{webinar_id}/automations",
        json={"kind": "CTA_POPUP", "triggerOffsetSeconds": 300, "content": {"title": "Book a call"}},
        headers=operator_headers,
    )
    assert created.status_code == 201
    automation = created.json()
    assert automation["enabled"] is True

    updated = client.put(
        f"/automations/{automation['id']}",
        json={"triggerOffsetSeconds": 360, "enabled": False},
        headers=operator_headers,
    )
    assert updated.json()["triggerOffsetSeconds"] == 360
    assert updated.json()["kind"] == "CTA_POPUP"
    assert updated.json()["enabled"] is False

    deleted = client.delete(f"/automations/{automation['id']}", headers=operator_headers)
    assert deleted.status_code == 204
    assert client.get(f"/webinars/{webinar_id}/automations", headers=operator_headers).json() == []


def test_invalid_automation_content_is_422(client, make_webinar, operator_headers):
    webinar_id = make_webinar()

    response = client.post(
        f"/webinars/{webinar_id}/automations",
        json={"kind": "CTA_POPUP", "triggerOffsetSeconds": 10, "content": {"duration": 0}},
        headers=operator_headers,
    )

    assert response.status_code == 422


def test_fire_automation_once(client, make_webinar, make_automation, operator_headers):
    webinar_id = make_webinar()
    automation_id = make_automation(webinar_id, offset=900)
    client.post(f"/webinars/{webinar_id}/start", headers=operator_headers)

    first = client.post(f"/automations/{automation_id}/fire", headers=operator_headers)
    second = client.post(f"/automations/{automation_id}/fire", headers=operator_headers)

    assert first.json() == {"automationId": automation_id, "fired": True}
    assert second.json()["fired"] is False
    messages = client.get(f"/webinars/{webinar_id}/chat", headers=operator_headers).json()
    assert [message["content"] for message in messages] == ["Message at 900s"]


def test_fire_automation_of_offline_webinar_is_409(client, make_webinar, make_automation, operator_headers):
    webinar_id = make_webinar()
    automation_id = make_automation(webinar_id, offset=900)

    response = client.post(f"/automations/{automation_id}/fire", headers=operator_headers)

    assert response.status_code == 409
    assert client.get(f"/webinars/{webinar_id}/chat", headers=operator_headers).json() == []


def test_pinning_keeps_a_single_pinned_message(client, make_webinar, make_message, operator_headers):
    webinar_id = make_webinar()
    first = make_message(webinar_id, "first", index=0)
    second = make_message(webinar_id, "second", index=1)

    assert client.post(f"/chat/{first}/pin", headers=operator_headers).json()["isPinned"] is True
    client.post(f"/chat/{second}/pin", headers=operator_headers)

    messages = client.get(f"/webinars/{webinar_id}/chat", headers=operator_headers).json()
    assert {message["id"]: message["isPinned"] for message in messages} == {first: False, second: True}


def test_deleted_message_is_hidden_and_unpinned(client, make_webinar, make_message, operator_headers):
    webinar_id = make_webinar()
    message_id = make_message(webinar_id, "spam")
    client.post(f"/chat/{message_id}/pin", headers=operator_headers)

    deleted = client.delete(f"/chat/{message_id}", headers=operator_headers)

    assert deleted.json()["isDeleted"] is True
    assert deleted.json()["isPinned"] is False
    assert client.get(f"/webinars/{webinar_id}/chat", headers=operator_headers).json() == []
    with_deleted = client.get(
        f"/webinars/{webinar_id}/chat", params={"include_deleted": True}, headers=operator_headers
    ).json()
    assert [message["id"] for message in with_deleted] == [message_id]


def test_audit_log_records_lifecycle(client, make_webinar, operator_headers):
    webinar_id = make_webinar()
    client.post(f"/webinars/{webinar_id}/start", headers=operator_headers)
    client.post(f"/webinars/{webinar_id}/stop", headers=operator_headers)

    response = client.get("/audit-logs", params={"webinarId": webinar_id}, headers=operator_headers)

    entries = response.json()
    assert [entry["action"] for entry in entries] == ["WEBINAR_STOPPED", "WEBINAR_STARTED"]
    assert {entry["actorId"] for entry in entries} == {"op-1"}
    assert client.get("/audit-logs").status_code == 401


def test_metrics_endpoint(client):
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
