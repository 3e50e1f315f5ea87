from __future__ import annotations

import pytest

from mockview import services


def create_interview(client, headers, **fields):
    payload = {"company_name": "Acme", "position": "Engineer", **fields}
    response = client.post("/api/interviews", json=payload, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_create_requires_company_and_position(client, user):
    response = client.post("/api/interviews", json={"company_name": "Acme"}, headers=user["headers"])
    assert response.status_code == 400


def test_create_and_fetch_interview(client, user, interview):
    assert interview["user_id"] == user["user"]["id"]
    assert interview["company_name"] == "Acme"
    assert interview["job_posting"] == ""

    response = client.get(f"/api/interviews/{interview['id']}", headers=user["headers"])
    assert response.status_code == 200
    assert response.json()["candidate_name"] == "Kim Minji"


def test_missing_and_foreign_interviews(client, signup, user, interview):
    other = signup(email="other@example.com", name="Other")
    assert client.get("/api/interviews/does-not-exist", headers=user["headers"]).status_code == 404
    assert client.get(f"/api/interviews/{interview['id']}", headers=other["headers"]).status_code == 403
    assert client.delete(f"/api/interviews/{interview['id']}", headers=other["headers"]).status_code == 403
    assert client.get(f"/api/interviews/{interview['id']}").status_code == 401


def test_patch_updates_only_given_fields(client, user, interview):
    response = client.patch(
        f"/api/interviews/{interview['id']}",
        json={"position": "Staff Engineer"},
        headers=user["headers"],
    )
    assert response.status_code == 200
    body = response.json()
    assert body["position"] == "Staff Engineer"
    assert body["company_name"] == "Acme"
    assert body["updated_at"] >= interview["updated_at"]


def test_pagination_walks_all_pages(client, user):
    created = [create_interview(client, user["headers"], candidate_name=f"Candidate {i}") for i in range(5)]

    first = client.get("/api/interviews", params={"limit": 2}, headers=user["headers"]).json()
    assert [item["id"] for item in first["interviews"]] == [created[4]["id"], created[3]["id"]]
    assert first["has_more"] is True
    assert first["next_cursor"]

    second = client.get(
        "/api/interviews",
        params={"limit": 2, "cursor": first["next_cursor"]},
        headers=user["headers"],
    ).json()
    assert [item["id"] for item in second["interviews"]] == [created[2]["id"], created[1]["id"]]
    assert second["has_more"] is True

    last = client.get(
        "/api/interviews",
        params={"limit": 2, "cursor": second["next_cursor"]},
        headers=user["headers"],
    ).json()
    assert [item["id"] for item in last["interviews"]] == [created[0]["id"]]
    assert last["has_more"] is False
    assert last["next_cursor"] is None


def test_pagination_ascending(client, user):
    created = [create_interview(client, user["headers"]) for _ in range(3)]
    page = client.get(
        "/api/interviews",
        params={"limit": 2, "order_direction": "asc"},
        headers=user["headers"],
    ).json()
    assert [item["id"] for item in page["interviews"]] == [created[0]["id"], created[1]["id"]]
    rest = client.get(
        "/api/interviews",
        params={"limit": 2, "order_direction": "asc", "cursor": page["next_cursor"]},
        headers=user["headers"],
    ).json()
    assert [item["id"] for item in rest["interviews"]] == [created[2]["id"]]


@pytest.mark.parametrize("params", [{"order_by": "password_hash"}, {"order_direction": "sideways"}])
def test_pagination_rejects_bad_ordering(client, user, params):
    assert client.get("/api/interviews", params=params, headers=user["headers"]).status_code == 400


def test_listing_is_scoped_to_owner(client, signup, user, interview):
    other = signup(email="other@example.com", name="Other")
    create_interview(client, other["headers"])
    mine = client.get("/api/interviews", headers=user["headers"]).json()["interviews"]
    assert [item["id"] for item in mine] == [interview["id"]]


def test_search_by_candidate_name(client, user):
    create_interview(client, user["headers"], candidate_name="Park Jisoo")
    create_interview(client, user["headers"], candidate_name="Lee Hana")
    results = client.get("/api/interviews/search", params={"q": "jisoo"}, headers=user["headers"]).json()["interviews"]
    assert [item["candidate_name"] for item in results] == ["Park Jisoo"]


def test_question_and_answer_crud(client, user, interview):
    base = f"/api/interviews/{interview['id']}"
    question = client.post(f"{base}/questions", json={"question_text": "Why Acme?"}, headers=user["headers"]).json()
    assert question["interview_id"] == interview["id"]

    edited = client.patch(f"/api/questions/{question['id']}", json={"question_text": "Why us?"}, headers=user["headers"])
    assert edited.json()["question_text"] == "Why us?"
    assert client.patch(f"/api/questions/{question['id']}", json={"question_text": "  "}, headers=user["headers"]).status_code == 400

    answer = client.post(
        f"{base}/answers",
        json={"question_id": question["id"], "answer_text": "Because of the mission."},
        headers=user["headers"],
    ).json()
    assert answer["question_id"] == question["id"]
    assert client.get(f"{base}/answers", headers=user["headers"]).json()["answers"][0]["id"] == answer["id"]

    edited_answer = client.patch(f"/api/answers/{answer['id']}", json={"comment": "shorter"}, headers=user["headers"])
    assert edited_answer.json()["comment"] == "shorter"
    assert edited_answer.json()["answer_text"] == "Because of the mission."

    assert client.delete(f"/api/questions/{question['id']}", headers=user["headers"]).status_code == 200
    assert client.get(f"{base}/questions", headers=user["headers"]).json()["questions"] == []
    assert client.get(f"{base}/answers", headers=user["headers"]).json()["answers"] == []


def test_answer_question_must_belong_to_interview(client, user, interview):
    other_interview = create_interview(client, user["headers"])
    question = client.post(
        f"/api/interviews/{other_interview['id']}/questions",
        json={"question_text": "Elsewhere?"},
        headers=user["headers"],
    ).json()
    response = client.post(
        f"/api/interviews/{interview['id']}/answers",
        json={"question_id": question["id"], "answer_text": "Nope"},
        headers=user["headers"],
    )
    assert response.status_code == 404


def test_foreign_question_is_forbidden(client, signup, user, interview):
    other = signup(email="other@example.com", name="Other")
    question = client.post(
        f"/api/interviews/{interview['id']}/questions",
        json={"question_text": "Mine"},
        headers=user["headers"],
    ).json()
    assert client.patch(f"/api/questions/{question['id']}", json={"comment": "x"}, headers=other["headers"]).status_code == 403
    assert client.delete(f"/api/questions/{question['id']}", headers=other["headers"]).status_code == 403
    assert client.delete("/api/questions/missing", headers=user["headers"]).status_code == 404


def test_delete_interview_cascades(client, user, interview):
    base = f"/api/interviews/{interview['id']}"
    question = client.post(f"{base}/questions", json={"question_text": "Q"}, headers=user["headers"]).json()
    client.post(f"{base}/answers", json={"question_id": question["id"], "answer_text": "A"}, headers=user["headers"])

    assert client.delete(base, headers=user["headers"]).status_code == 200
    assert client.get(base, headers=user["headers"]).status_code == 404
    assert client.patch(f"/api/questions/{question['id']}", json={"comment": "x"}, headers=user["headers"]).status_code == 404


def test_pagination_rejects_malformed_cursor(client, user):
    response = client.get("/api/interviews", params={"cursor": "not-a-cursor"}, headers=user["headers"])
    assert response.status_code == 400


def test_pagination_keeps_rows_with_equal_order_values(client, user):
    created = [create_interview(client, user["headers"], candidate_name="Same Name") for _ in range(4)]
    created.append(create_interview(client, user["headers"], candidate_name="Another Name"))

    seen = []
    cursor = None
    while True:
        params = {"limit": 2, "order_by": "candidate_name", "order_direction": "asc"}
        if cursor:
            params["cursor"] = cursor
        page = client.get("/api/interviews", params=params, headers=user["headers"]).json()
        seen.extend(item["id"] for item in page["interviews"])
        if not page["has_more"]:
            assert page["next_cursor"] is None
            break
        assert page["next_cursor"]
        cursor = page["next_cursor"]

    assert len(seen) == len(set(seen)) == 5
    assert set(seen) == {item["id"] for item in created}
    assert seen[0] == created[4]["id"]


def test_latest_interview(client, signup, user):
    assert client.get("/api/interviews/latest", headers=user["headers"]).status_code == 404
    create_interview(client, user["headers"], candidate_name="First")
    newest = create_interview(client, user["headers"], candidate_name="Second")
    other = signup(email="other@example.com", name="Other")
    create_interview(client, other["headers"], candidate_name="Not mine")

    response = client.get("/api/interviews/latest", headers=user["headers"])

    assert response.status_code == 200
    assert response.json()["id"] == newest["id"]
    assert client.get("/api/interviews/latest").status_code == 401


def failing(*args, **kwargs):
    raise RuntimeError("database is locked")


@pytest.mark.parametrize("name", ["create_question", "update_question", "delete_question"])
def test_question_handlers_wrap_unexpected_errors(client, user, interview, monkeypatch, name):
    question = client.post(
        f"/api/interviews/{interview['id']}/questions",
        json={"question_text": "Q"},
        headers=user["headers"],
    ).json()
    monkeypatch.setattr(services, name, failing)

    if name == "create_question":
        response = client.post(f"/api/interviews/{interview['id']}/questions", json={"question_text": "Q2"}, headers=user["headers"])
    elif name == "update_question":
        response = client.patch(f"/api/questions/{question['id']}", json={"comment": "x"}, headers=user["headers"])
    else:
        response = client.delete(f"/api/questions/{question['id']}", headers=user["headers"])

    assert response.status_code == 500
    assert "database is locked" not in response.text


@pytest.mark.parametrize("name", ["create_answer", "update_answer", "delete_answer"])
def test_answer_handlers_wrap_unexpected_errors(client, user, interview, monkeypatch, name):
    base = f"/api/interviews/{interview['id']}"
    question = client.post(f"{base}/questions", json={"question_text": "Q"}, headers=user["headers"]).json()
    answer = client.post(
        f"{base}/answers",
        json={"question_id": question["id"], "answer_text": "A"},
        headers=user["headers"],
    ).json()
    monkeypatch.setattr(services, name, failing)

    if name == "create_answer":
        response = client.post(f"{base}/answers", json={"question_id": question["id"], "answer_text": "B"}, headers=user["headers"])
    elif name == "update_answer":
        response = client.patch(f"/api/answers/{answer['id']}", json={"comment": "x"}, headers=user["headers"])
    else:
        response = client.delete(f"/api/answers/{answer['id']}", headers=user["headers"])

    assert response.status_code == 500
    assert "database is locked" not in response.text


def test_handlers_keep_client_errors(client, user, interview):
    question = client.post(
        f"/api/interviews/{interview['id']}/questions",
        json={"question_text": "Q"},
        headers=user["headers"],
    ).json()
    response = client.patch(f"/api/questions/{question['id']}", json={"question_text": " "}, headers=user["headers"])
    assert response.status_code == 400
