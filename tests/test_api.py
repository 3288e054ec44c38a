import pytest
from fastapi.testclient import TestClient

from pulsecheck.models import StoreUnavailable
from pulsecheck.web.api import create_app

SURVEY = {
    "name": "Pulse",
    "creator": "Alice",
    "questions": [
        {"text": "How was your week?", "options": ["Good", "Bad"]},
        {"text": "Any blockers?", "format": "dropdown", "options": ["Yes", "No"]},
    ],
    "reminder_message": "Hi [firstName], please respond",
    "reminder_hours": 2,
}


@pytest.fixture
def client(ledger, messenger):
    with TestClient(create_app(ledger, messenger, start_scheduler=False)) as client:
        yield client


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_startup_creates_groups_tab(store, client):
    assert store.tables["Groups"] == [["Name", "Creator", "Members", "Created At"]]


def test_create_survey_with_group_and_manual_recipients(store, client):
    client.post("/api/groups", json={"name": "Eng", "creator": "Alice", "members": ["U1", "U2"]})

    resp = client.post("/api/surveys", json={**SURVEY, "recipients": ["C1", "X9", "U2"], "group": "Eng"})

    assert resp.status_code == 200
    assert resp.json()["recipients"] == ["C1", "U1", "U2"]
    rows = store.tables["Pulse"]
    assert rows[3][1] == "2"
    assert rows[6] == ["User", "Timestamp", "How was your week?", "Any blockers?"]


def test_create_survey_twice_conflicts(client):
    assert client.post("/api/surveys", json=SURVEY).status_code == 200
    assert client.post("/api/surveys", json=SURVEY).status_code == 409


def test_definition_and_question_lookup(client):
    client.post("/api/surveys", json=SURVEY)

    definition = client.get("/api/surveys/Pulse/definition").json()
    assert [q["text"] for q in definition["questions"]] == ["How was your week?", "Any blockers?"]
    assert definition["questions"][1]["format"] == "dropdown"

    assert client.get("/api/surveys/Pulse/questions/1").json() == {"index": 1, "text": "Any blockers?"}
    assert client.get("/api/surveys/Pulse/questions/5").status_code == 404
    assert client.get("/api/surveys/Missing/definition").status_code == 404


def test_submit_response_and_duplicate_gates(store, client):
    client.post("/api/surveys", json=SURVEY)
    answer = {"user": "Bob Jones", "question": "Any blockers?", "answer": "No", "event_id": "evt-1"}

    first = client.post("/api/surveys/Pulse/responses", json=answer).json()
    assert first["recorded"] is True

    redelivered = client.post("/api/surveys/Pulse/responses", json=answer).json()
    assert redelivered == {"recorded": False, "duplicate": True, "reason": "duplicate_delivery"}

    again = client.post("/api/surveys/Pulse/responses", json={**answer, "event_id": "evt-2", "answer": "Yes"}).json()
    assert again["reason"] == "already_answered"

    changed = client.post(
        "/api/surveys/Pulse/responses",
        json={**answer, "event_id": "evt-3", "answer": "Yes", "allow_change": True},
    ).json()
    assert changed["recorded"] is True

    data_rows = store.tables["Pulse"][7:]
    assert len(data_rows) == 1
    assert data_rows[0][0] == "Bob Jones"
    assert data_rows[0][3] == "Yes"


def test_check_response(client):
    client.post("/api/surveys", json=SURVEY)
    client.post("/api/surveys/Pulse/responses",
                json={"user": "Bob Jones", "question": "Any blockers?", "answer": "No"})

    params = {"user": "Bob Jones", "question": "Any blockers?"}
    assert client.get("/api/surveys/Pulse/responses", params=params).json() == {"answered": True}
    params["question"] = "How was your week?"
    assert client.get("/api/surveys/Pulse/responses", params=params).json() == {"answered": False}


def test_unknown_question_is_not_recorded(client):
    client.post("/api/surveys", json=SURVEY)
    resp = client.post("/api/surveys/Pulse/responses",
                       json={"user": "Bob Jones", "question": "Favourite colour?", "answer": "Red"})
    assert resp.json()["recorded"] is False


def test_group_endpoints(client):
    created = client.post("/api/groups", json={"name": "Eng", "creator": "Alice", "members": ["U1"]})
    assert created.json()["members"] == ["U1"]
    assert client.post("/api/groups", json={"name": "Eng", "creator": "Bob", "members": []}).status_code == 409

    assert [g["name"] for g in client.get("/api/groups").json()] == ["Eng"]
    assert client.get("/api/groups/Eng").json()["creator"] == "Alice"
    assert client.get("/api/groups/Ops").status_code == 404

    assert client.delete("/api/groups/Eng").json() == {"deleted": True, "name": "Eng"}
    assert client.delete("/api/groups/Eng").status_code == 404


def test_manual_sweep(client, messenger):
    client.post("/api/surveys", json={**SURVEY, "recipients": ["U1"]})

    result = client.post("/api/sweep").json()

    # Freshly created, so the first window has not elapsed yet
    assert result["surveys_seen"] == 1
    assert result["surveys_due"] == 0
    assert messenger.sent == []


def test_store_outage_maps_to_503(store, client):
    async def unavailable(*args, **kwargs):
        raise StoreUnavailable("network down")

    store.read_range = unavailable
    assert client.get("/api/surveys/Pulse/definition").status_code == 503


def test_saved_thread_refs_are_used_by_the_sweep(store, client, messenger):
    client.post("/api/surveys", json=SURVEY)
    store.tables["Pulse"][4][1] = "0"  # window already elapsed

    resp = client.put("/api/surveys/Pulse/recipients", json={"recipients": [
        {"id": "U2", "thread_ts": "1700.42"},
        {"id": "C7", "kind": "channel"},
    ]})
    assert resp.json()["saved"] == 2

    result = client.post("/api/sweep").json()
    assert result["reminders_sent"] == 1
    assert messenger.sent == [{"to": "U2", "text": "Hi Jane, please respond", "thread_ts": "1700.42"}]


def test_saving_recipients_for_missing_survey_is_404(client):
    resp = client.put("/api/surveys/Missing/recipients", json={"recipients": [{"id": "U1"}]})
    assert resp.status_code == 404


def test_store_failure_lets_the_redelivered_event_through(store, client):
    client.post("/api/surveys", json=SURVEY)
    real_append = store.append_rows
    attempts = []

    async def flaky_append(name, rows):
        attempts.append(name)
        if len(attempts) == 1:
            raise StoreUnavailable("quota exceeded")
        return await real_append(name, rows)

    store.append_rows = flaky_append
    answer = {"user": "Bob Jones", "question": "Any blockers?", "answer": "No", "event_id": "evt-9"}

    assert client.post("/api/surveys/Pulse/responses", json=answer).status_code == 503

    retry = client.post("/api/surveys/Pulse/responses", json=answer).json()
    assert retry["recorded"] is True
    data_rows = store.tables["Pulse"][7:]
    assert len(data_rows) == 1
    assert data_rows[0][0] == "Bob Jones"
    assert data_rows[0][3] == "No"


def test_saved_channel_without_kind_is_not_reminded(store, client, messenger):
    client.post("/api/surveys", json=SURVEY)
    store.tables["Pulse"][4][1] = "0"

    client.put("/api/surveys/Pulse/recipients", json={"recipients": [{"id": "C7"}, {"id": "U1"}]})
    client.post("/api/sweep")

    assert messenger.name_lookups == ["U1"]
    assert [m["to"] for m in messenger.sent] == ["U1"]


def test_unrecognised_recipient_without_kind_is_rejected(client):
    client.post("/api/surveys", json=SURVEY)
    resp = client.put("/api/surveys/Pulse/recipients", json={"recipients": [{"id": "X1"}]})
    assert resp.status_code == 422


@pytest.mark.parametrize("hours", [0, -3])
def test_non_positive_reminder_hours_are_rejected(store, client, hours):
    resp = client.post("/api/surveys", json={**SURVEY, "reminder_hours": hours})
    assert resp.status_code == 422
    assert "Pulse" not in store.tables
