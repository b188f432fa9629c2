import asyncio
import os

import pytest
from fastapi.testclient import TestClient

import errors
import main
import models
import notifications
import schemas
from conftest import auth_headers, make_draft
from verifier import MockVerifier, TimedVerifier

ISSUE_BODY = make_draft().model_dump()


def create_issue(client, user, **overrides):
    resp = client.post("/issues/", json={**ISSUE_BODY, **overrides}, headers=auth_headers(user))
    assert resp.status_code == 200, resp.text
    return resp.json()


def use_verifier(verifier):
    main.app.dependency_overrides[main.get_verifier] = lambda: verifier


# --- Identity ---

def test_signup_login_and_me(client):
    resp = client.post("/users/", json={"email": "neha@example.com", "name": "Neha", "password": "longenough"})
    assert resp.status_code == 200, resp.text
    assert resp.json()["role"] == models.ISSUER

    resp = client.post("/token", data={"username": "neha@example.com", "password": "longenough"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    me = client.get("/users/me/", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "neha@example.com"


def test_wrong_password(client, issuer):
    resp = client.post("/token", data={"username": issuer.email, "password": "nope"})
    assert resp.status_code == 401


def test_officer_signup_needs_scope(client):
    resp = client.post("/users/", json={
        "email": "new.officer@example.com", "name": "New Officer", "password": "longenough",
        "role": "officer", "category": "Roads",
    })
    assert resp.status_code == 422
    assert set(resp.json()["violations"]) == {"zone", "designation"}


def test_signup_lists_every_problem(client):
    resp = client.post("/users/", json={"email": "not-an-email", "name": "X", "password": "short", "role": "admin"})
    assert resp.status_code == 422
    assert set(resp.json()["violations"]) == {"email", "name", "password", "role"}


@pytest.mark.parametrize("email", ["asha@example", "asha example.com", "@example.com", "asha@@example.com"])
def test_signup_refuses_malformed_email(email):
    user = schemas.UserCreate(email=email, name="Asha", password="longenough")
    with pytest.raises(errors.ValidationError) as exc:
        main.validate_signup(user)
    assert set(exc.value.violations) == {"email"}


def test_signup_accepts_subdomain_email():
    main.validate_signup(schemas.UserCreate(email="rao@roads.example.com", name="Rao", password="longenough"))


def test_duplicate_email(client, issuer):
    resp = client.post("/users/", json={"email": issuer.email, "name": "Again", "password": "longenough"})
    assert resp.status_code == 400


def test_logout_revokes_token(client, issuer):
    headers = auth_headers(issuer)
    assert client.post("/logout", headers=headers).status_code == 200
    assert client.get("/users/me/", headers=headers).status_code == 401


def test_requests_need_a_token(client):
    assert client.get("/dashboard/issuer").status_code == 401


def test_catalog(client):
    body = client.get("/catalog").json()
    assert "Street Lights" in body["categories"]
    assert body["statuses"] == list(models.STATUSES)


# --- Issues ---

def test_create_issue_reports_all_violations(client, issuer):
    resp = client.post("/issues/", json={**ISSUE_BODY, "title": "", "before_images": []},
                       headers=auth_headers(issuer))
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "validation_error"
    assert {"title", "before_images"} <= set(body["violations"])


def test_unknown_issue_is_404(client, issuer):
    resp = client.get("/issues/nope", headers=auth_headers(issuer))
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_full_lifecycle(client, issuer, officer, monkeypatch):
    sent = []

    async def record(email, issue_id, title, old_status, new_status):
        sent.append((email, old_status, new_status))

    monkeypatch.setattr(notifications, "send_status_update", record)

    issue = create_issue(client, issuer)
    assert issue["status"] == "pending"
    assert issue["reporter_name"] == "Asha"

    resp = client.patch(f"/issues/{issue['id']}", json={"status": "resolved"}, headers=auth_headers(officer))
    assert resp.status_code == 409
    assert resp.json()["error"] == "illegal_transition"

    resp = client.post(f"/issues/{issue['id']}/verify-submission", headers=auth_headers(issuer))
    assert resp.status_code == 200, resp.text
    assert resp.json()["accepted"] is True
    issue = resp.json()["issue"]
    assert issue["submission_verified"] is True

    resp = client.patch(f"/issues/{issue['id']}", json={"status": "in-progress", "version": issue["version"]},
                        headers=auth_headers(officer))
    assert resp.status_code == 200, resp.text
    issue = resp.json()
    assert issue["assigned_officer_id"] == officer.id
    assert issue["officer_name"] == "Rao"

    resp = client.post(f"/issues/{issue['id']}/images",
                       json={"refs": ["https://img.example.com/after.jpg"], "slot": "after"},
                       headers=auth_headers(officer))
    assert resp.status_code == 200
    assert resp.json()["after_images"] == ["https://img.example.com/after.jpg"]

    resp = client.post(f"/issues/{issue['id']}/verify-resolution", headers=auth_headers(officer))
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["resolved"] is True
    assert len(body["areas"]) == 3

    resp = client.patch(f"/issues/{issue['id']}", json={"status": "resolved"}, headers=auth_headers(officer))
    assert resp.status_code == 200
    assert resp.json()["status"] == "resolved"
    assert resp.json()["resolved_at"] is not None

    records = client.get(f"/issues/{issue['id']}/verifications", headers=auth_headers(issuer)).json()
    assert [r["kind"] for r in records] == ["resolution", "submission"]
    assert records[0]["details"]["overall_improvement"] is not None

    assert sent == [
        (issuer.email, "pending", "in-progress"),
        (issuer.email, "in-progress", "resolved"),
    ]


def test_allowed_transitions_depend_on_actor(client, issuer, officer):
    issue = create_issue(client, issuer)
    client.post(f"/issues/{issue['id']}/verify-submission", headers=auth_headers(issuer))

    as_officer = client.get(f"/issues/{issue['id']}/transitions", headers=auth_headers(officer)).json()
    as_issuer = client.get(f"/issues/{issue['id']}/transitions", headers=auth_headers(issuer)).json()
    assert as_officer == ["in-progress", "rejected"]
    assert as_issuer == []


def test_stale_version_is_412(client, issuer, officer):
    issue = create_issue(client, issuer)
    first = client.patch(f"/issues/{issue['id']}", json={"priority": "low", "version": issue["version"]},
                         headers=auth_headers(officer))
    assert first.status_code == 200
    second = client.patch(f"/issues/{issue['id']}", json={"priority": "medium", "version": issue["version"]},
                          headers=auth_headers(officer))
    assert second.status_code == 412
    assert second.json()["error"] == "conflict"


def test_rejected_verification_is_not_an_error(client, issuer):
    use_verifier(MockVerifier(submission_accept_rate=0.0))
    issue = create_issue(client, issuer)
    resp = client.post(f"/issues/{issue['id']}/verify-submission", headers=auth_headers(issuer))
    assert resp.status_code == 200
    assert resp.json()["accepted"] is False
    assert resp.json()["issue"]["submission_verified"] is False


def test_verifier_outage_is_503_and_marks_nothing(client, issuer):
    slow = TimedVerifier(MockVerifier(submission_accept_rate=1.0, latency=0.5), timeout=0.05)
    use_verifier(slow)
    try:
        issue = create_issue(client, issuer)
        resp = client.post(f"/issues/{issue['id']}/verify-submission", headers=auth_headers(issuer))
        assert resp.status_code == 503
        assert resp.json()["error"] == "verifier_unavailable"

        issue = client.get(f"/issues/{issue['id']}", headers=auth_headers(issuer)).json()
        assert issue["submission_verified"] is False
        assert client.get(f"/issues/{issue['id']}/verifications", headers=auth_headers(issuer)).json() == []
    finally:
        slow.shutdown()


def test_resolution_without_after_image_is_invalid(client, issuer, officer):
    issue = create_issue(client, issuer)
    client.post(f"/issues/{issue['id']}/verify-submission", headers=auth_headers(issuer))
    client.post(f"/issues/{issue['id']}/claim", headers=auth_headers(officer))
    client.patch(f"/issues/{issue['id']}", json={"status": "in-progress"}, headers=auth_headers(officer))

    resp = client.post(f"/issues/{issue['id']}/verify-resolution", headers=auth_headers(officer))
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_input"


def test_issuer_cannot_claim(client, issuer):
    issue = create_issue(client, issuer)
    resp = client.post(f"/issues/{issue['id']}/claim", headers=auth_headers(issuer))
    assert resp.status_code == 403


def test_comments(client, issuer, officer):
    issue = create_issue(client, issuer)
    resp = client.post(f"/issues/{issue['id']}/comments", json={"content": ""}, headers=auth_headers(issuer))
    assert resp.status_code == 422

    client.post(f"/issues/{issue['id']}/comments", json={"content": "Please hurry"}, headers=auth_headers(issuer))
    client.post(f"/issues/{issue['id']}/comments", json={"content": "On it"}, headers=auth_headers(officer))
    comments = client.get(f"/issues/{issue['id']}/comments", headers=auth_headers(issuer)).json()
    assert [(c["author_role"], c["content"]) for c in comments] == [("issuer", "Please hurry"), ("officer", "On it")]
    assert comments[1]["author_name"] == "Rao"


def test_upload_then_attach(client, issuer):
    resp = client.post("/uploads", files={"file": ("pothole.png", b"\x89PNG\r\n\x1a\nfake", "image/png")},
                       headers=auth_headers(issuer))
    assert resp.status_code == 200, resp.text
    url = resp.json()["url"]
    assert url.startswith(main.UPLOAD_BASE_URL)
    assert url.endswith(".png")
    stored = os.path.join(main.UPLOAD_DIR, url[len(main.UPLOAD_BASE_URL) + 1:])
    assert os.path.exists(stored)

    issue = create_issue(client, issuer)
    for _ in range(2):
        resp = client.post(f"/issues/{issue['id']}/images", json={"refs": [url]}, headers=auth_headers(issuer))
        assert resp.status_code == 200
    assert resp.json()["before_images"] == ISSUE_BODY["before_images"] + [url]


def test_upload_rejects_non_images(client, issuer):
    resp = client.post("/uploads", files={"file": ("notes.txt", b"hello", "text/plain")},
                       headers=auth_headers(issuer))
    assert resp.status_code == 400


def test_dashboards(client, issuer, officer):
    create_issue(client, issuer, title="Pothole")
    create_issue(client, issuer, title="Flooded underpass", priority="low")
    create_issue(client, issuer, title="Dark street", category="Street Lights")

    body = client.get("/dashboard/issuer", params={"search": "underpass"}, headers=auth_headers(issuer)).json()
    assert [i["title"] for i in body["issues"]] == ["Flooded underpass"]
    assert body["counts"]["total"] == 3

    body = client.get("/dashboard/officer", params={"view": "unassigned", "sort": "priority", "order": "asc"},
                      headers=auth_headers(officer)).json()
    assert [i["title"] for i in body["issues"]] == ["Flooded underpass", "Pothole"]
    assert body["assigned_to_me"] == 0

    assert client.get("/dashboard/officer", headers=auth_headers(issuer)).status_code == 403
    resp = client.get("/dashboard/issuer", params={"sort": "title"}, headers=auth_headers(issuer))
    assert resp.status_code == 422


def test_status_email_never_raises():
    asyncio.run(notifications.send_status_update("asha@example.com", "abc123", "Pothole", "pending", "in-progress"))


def test_status_message_wording():
    message = notifications.status_message("asha@example.com", "abc123", "Pothole", "pending", "in-progress")
    assert message.subject == 'Your issue "Pothole" is now In Progress'
    assert "from Pending to In Progress" in message.body


def test_error_bodies_carry_codes():
    err = errors.ValidationError({"title": ["Title is required"]})
    assert err.to_dict() == {
        "error": "validation_error",
        "detail": "Invalid fields: title",
        "violations": {"title": ["Title is required"]},
    }
    assert errors.Conflict("x").status_code == 412


def test_second_officer_cannot_claim(client, issuer, officer, other_officer):
    issue = create_issue(client, issuer)
    assert client.post(f"/issues/{issue['id']}/claim", headers=auth_headers(officer)).status_code == 200
    resp = client.post(f"/issues/{issue['id']}/claim", headers=auth_headers(other_officer))
    assert resp.status_code == 412
    assert resp.json()["error"] == "conflict"


def test_shutdown_stops_verifier_threads():
    main.get_verifier.cache_clear()
    with TestClient(main.app):
        verifier = main.get_verifier()
    assert main.get_verifier.cache_info().currsize == 0
    with pytest.raises(RuntimeError):
        verifier.verify_submission(["https://img.example.com/before-1.jpg"], "Roads")


def test_closing_without_a_verifier_is_a_noop():
    main.get_verifier.cache_clear()
    main.close_verifier()
    assert main.get_verifier.cache_info().currsize == 0
