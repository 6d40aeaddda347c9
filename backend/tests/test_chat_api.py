from __future__ import annotations

import json
import threading

import pytest

from fakes import FakeEmbedder
from sse_utils import event_data, parse_sse_events


def _chat(client, headers, message, conversation_id=None):
    payload = {"message": message}
    if conversation_id:
        payload["conversation_id"] = conversation_id
    return client.post("/chat", headers=headers, json=payload)


@pytest.fixture
def with_embeddings(backend_module, monkeypatch):
    def _install(dimension: int = 1536):
        embedder = FakeEmbedder(dimension=dimension)
        container = backend_module.SymptrackApp(embedding_provider=embedder, use_env_providers=False)
        monkeypatch.setattr(backend_module, "container", container)
        return container

    return _install


def test_health_reports_configured_providers(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "text_generation": False, "semantic_retrieval": False}


def test_chat_requires_identity(client):
    response = client.post("/chat", json={"message": "I have a cough"})

    assert response.status_code == 401


def test_first_message_creates_conversation_and_reports_changes(client, auth_headers):
    response = _chat(client, auth_headers("user-a"), "I have a headache and a cough.")

    assert response.status_code == 200
    body = response.json()
    assert body["is_new_conversation"] is True
    assert body["intent"] == "symptom_tracking"
    assert body["phase"] == "gathering"
    assert sorted(change["name"] for change in body["explicit_changes"]) == ["cough", "headache"]
    assert {change["action"] for change in body["explicit_changes"]} == {"created"}
    status_types = [update["type"] for update in body["status_updates"]]
    assert status_types[0] == "processing"
    assert status_types[-1] == "completed"
    assert status_types.count("symptom-added") == 2


def test_conversation_continues_and_persists_messages(client, auth_headers):
    headers = auth_headers("user-a")
    first = _chat(client, headers, "I have a cough.").json()

    second = _chat(client, headers, "The cough is constant now.", first["conversation_id"])

    assert second.status_code == 200
    body = second.json()
    assert body["is_new_conversation"] is False
    assert body["conversation_id"] == first["conversation_id"]
    assert [change["action"] for change in body["explicit_changes"]] == ["updated"]

    messages = client.get(f"/conversations/{first['conversation_id']}/messages", headers=headers).json()["items"]
    assert [item["role"] for item in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[0]["content"] == "I have a cough."
    assert json.loads(messages[1]["status_json"])["intent"] == "symptom_tracking"

    conversations = client.get("/conversations", headers=headers).json()["items"]
    assert [item["title"] for item in conversations] == ["I have a cough."]


def test_unknown_conversation_is_not_found(client, auth_headers):
    response = _chat(client, auth_headers("user-a"), "I have a cough.", "does-not-exist")

    assert response.status_code == 404


def test_blank_message_is_rejected(client, auth_headers):
    response = _chat(client, auth_headers("user-a"), "   ")

    assert response.status_code == 400


def test_users_cannot_read_each_others_data(client, auth_headers):
    body = _chat(client, auth_headers("user-a"), "I have a rash.").json()
    episode_id = body["explicit_changes"][0]["id"]
    other = auth_headers("user-b")

    assert client.get(f"/conversations/{body['conversation_id']}/messages", headers=other).status_code == 404
    assert _chat(client, other, "I have a cough.", body["conversation_id"]).status_code == 404
    assert client.get(f"/episodes/{episode_id}", headers=other).status_code == 404
    assert client.get("/episodes", headers=other).json()["items"] == []


def test_assessment_turn_links_episodes_and_persists_assessment(client, auth_headers):
    headers = auth_headers("user-a")
    conversation_id = _chat(client, headers, "I have a headache.").json()["conversation_id"]
    _chat(client, headers, "I feel nauseous too.", conversation_id)

    response = _chat(client, headers, "Can you generate an assessment?", conversation_id)

    assert response.status_code == 200
    body = response.json()
    assert body["intent"] == "assessment"
    assessment_changes = [item for item in body["explicit_changes"] if item["entity_type"] == "assessment"]
    assert len(assessment_changes) == 1
    change = assessment_changes[0]
    assert change["action"] == "created"
    assert change["name"] == "Migraine"
    assert 0.0 <= change["confidence"] <= 1.0

    saved = client.get(f"/assessments/{change['id']}", headers=headers).json()
    assert saved["status"] == "completed"
    assert saved["conversation_id"] == conversation_id
    assert sum(link["weight"] for link in saved["linked_episodes"]) == pytest.approx(1.0)

    episodes = client.get("/episodes", headers=headers).json()["items"]
    assert {item["stage"] for item in episodes} == {"linked"}
    assert [item["id"] for item in client.get("/assessments", headers=headers).json()["items"]] == [change["id"]]
    assert client.get(f"/assessments/{change['id']}", headers=auth_headers("user-b")).status_code == 404


def test_symptom_history_lists_episodes(client, auth_headers):
    headers = auth_headers("user-a")
    _chat(client, headers, "I have a cough.")

    history = client.get("/symptoms/Cough/history", headers=headers)

    assert history.status_code == 200
    assert history.json()["symptom"] == "cough"
    assert len(history.json()["items"]) == 1
    assert client.get("/symptoms/fever/history", headers=headers).status_code == 404


def test_chat_stream_event_contract(client, auth_headers):
    response = client.post("/chat/stream", headers=auth_headers("user-a"), json={"message": "I have a fever."})

    assert response.status_code == 200
    assert "text/event-stream" in response.headers.get("content-type", "")
    events = parse_sse_events(response.text)
    event_types = [event.get("event") for event in events]
    assert set(event_types) == {"status", "token", "message", "changes"}
    assert event_types[0] == "status"
    assert event_types[-1] == "changes"

    assert event_data(events, "status")[0]["type"] == "processing"
    tokens = [item["delta"] for item in event_data(events, "token")]
    message = event_data(events, "message")[0]
    assert "".join(tokens).strip() == message["text"]
    assert message["is_new_conversation"] is True
    changes = event_data(events, "changes")[0]["items"]
    assert changes[0]["name"] == "fever"


def test_chat_stream_reports_errors_as_events(client, auth_headers):
    response = client.post(
        "/chat/stream",
        headers=auth_headers("user-a"),
        json={"message": "I have a fever.", "conversation_id": "missing"},
    )

    events = parse_sse_events(response.text)
    assert [event["event"] for event in events] == ["error"]
    assert event_data(events, "error")[0]["status"] == 404


def test_messages_are_indexed_and_debug_endpoint_clears_them(client, auth_headers, with_embeddings, monkeypatch):
    monkeypatch.setenv("SYMPTRACK_ADMIN_TOKEN", "operator-secret")
    container = with_embeddings()
    headers = auth_headers("user-a")

    first = _chat(client, headers, "I have a headache.").json()
    _chat(client, headers, "I have a headache again.")

    assert client.get("/health").json()["semantic_retrieval"] is True
    assert container.vectors.count() == 4
    related = container.retrieval.search(
        "user-a",
        "I have a headache again.",
        exclude_conversation_id=first["conversation_id"],
    )
    assert [item.content for item in related] == ["I have a headache again."]

    response = client.delete("/debug/embeddings", headers={**headers, "X-Admin-Token": "operator-secret"})

    assert response.status_code == 200
    assert response.json() == {"deleted": 4}
    assert container.vectors.count() == 0


def test_embedding_dimension_mismatch_fails_without_storing_messages(client, auth_headers, with_embeddings):
    container = with_embeddings(dimension=768)

    response = _chat(client, auth_headers("user-a"), "I have a cough.")

    assert response.status_code == 503
    assert "1536" in response.json()["detail"]
    with container.db.connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0] == 0


def test_debug_clear_requires_operator_token(client, auth_headers, with_embeddings, monkeypatch):
    container = with_embeddings()
    _chat(client, auth_headers("user-a"), "I have a headache.")
    assert container.vectors.count() == 2

    assert client.delete("/debug/embeddings", headers=auth_headers("user-b")).status_code == 403

    monkeypatch.setenv("SYMPTRACK_ADMIN_TOKEN", "operator-secret")
    wrong = client.delete("/debug/embeddings", headers={**auth_headers("user-b"), "X-Admin-Token": "guess"})

    assert wrong.status_code == 403
    assert container.vectors.count() == 2


def test_status_updates_stream_while_the_turn_is_still_running(backend_module, monkeypatch):
    orchestrator = backend_module.container.orchestrator
    process_message = orchestrator.process_message
    release = threading.Event()
    released_by_reader: list[bool] = []

    def gated(user_id, message, conversation_id=None, status_sink=None):
        def sink(update):
            status_sink(update)
            if update.type == "processing":
                released_by_reader.append(release.wait(timeout=5))

        return process_message(user_id, message, conversation_id, status_sink=sink)

    monkeypatch.setattr(orchestrator, "process_message", gated)
    stream = backend_module.stream_chat_events(orchestrator, "user-a", "I have a cough.")

    first = next(stream)
    release.set()
    events = parse_sse_events(first + "".join(stream))

    assert released_by_reader == [True]
    assert event_data(events[:1], "status")[0]["type"] == "processing"
    event_types = [event["event"] for event in events]
    assert event_types.index("message") > event_types.index("status")
    assert event_data(events, "status")[-1]["type"] == "completed"


def test_rename_and_delete_conversation(client, auth_headers):
    headers = auth_headers("user-a")
    conversation_id = _chat(client, headers, "I have a cough.").json()["conversation_id"]
    _chat(client, headers, "Can you generate an assessment?", conversation_id)

    renamed = client.put(f"/conversations/{conversation_id}", headers=headers, json={"title": "Cough in March"})

    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Cough in March"
    assert client.put(f"/conversations/{conversation_id}", headers=headers, json={"title": "   "}).status_code == 400

    assert client.get(f"/assessments/conversation/{conversation_id}", headers=headers).status_code == 200
    assert client.delete(f"/conversations/{conversation_id}", headers=headers).status_code == 204
    assert client.get("/conversations", headers=headers).json()["items"] == []
    assert client.get(f"/conversations/{conversation_id}/messages", headers=headers).status_code == 404
    assert client.get(f"/assessments/conversation/{conversation_id}", headers=headers).status_code == 404
    assert len(client.get("/episodes", headers=headers).json()["items"]) == 1


def test_conversations_cannot_be_renamed_or_deleted_by_another_user(client, auth_headers):
    conversation_id = _chat(client, auth_headers("user-a"), "I have a rash.").json()["conversation_id"]
    other = auth_headers("user-b")

    rename = client.put(f"/conversations/{conversation_id}", headers=other, json={"title": "mine now"})

    assert rename.status_code == 404
    assert client.delete(f"/conversations/{conversation_id}", headers=other).status_code == 404
    titles = [item["title"] for item in client.get("/conversations", headers=auth_headers("user-a")).json()["items"]]
    assert titles == ["I have a rash."]


def test_symptoms_list_and_assessment_by_conversation(client, auth_headers):
    headers = auth_headers("user-a")
    conversation_id = _chat(client, headers, "I have a headache and a cough.").json()["conversation_id"]
    _chat(client, auth_headers("user-b"), "I have a fever.")

    symptoms = client.get("/symptoms", headers=headers)

    assert symptoms.status_code == 200
    assert sorted(item["name"] for item in symptoms.json()["items"]) == ["cough", "headache"]
    assert client.get(f"/assessments/conversation/{conversation_id}", headers=headers).status_code == 404

    _chat(client, headers, "generate assessment", conversation_id)
    saved = client.get(f"/assessments/conversation/{conversation_id}", headers=headers)

    assert saved.status_code == 200
    assert saved.json()["conversation_id"] == conversation_id
    assert client.get(f"/assessments/conversation/{conversation_id}", headers=auth_headers("user-b")).status_code == 404
