"""Smoke-check a running server through one issue's full lifecycle.

The mock verifier rejects some submissions at random; a rejection is reported
and the script stops there.
"""

import sys
import time

import requests

BASE_URL = "http://127.0.0.1:8000"
PASSWORD = "testpassword123"


def register_and_login(session, email, **profile):
    resp = session.post(f"{BASE_URL}/users/", json={"email": email, "password": PASSWORD, **profile})
    print(f"Register {email}: {resp.status_code}")
    resp.raise_for_status()
    resp = session.post(f"{BASE_URL}/token", data={"username": email, "password": PASSWORD})
    resp.raise_for_status()
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def test_backend():
    session = requests.Session()
    print(f"Testing connectivity to {BASE_URL}...")
    resp = session.get(f"{BASE_URL}/docs")
    print(f"Docs endpoint status: {resp.status_code}")
    if resp.status_code != 200:
        print("FAILED: Backend seems down or returning error.")
        return False

    stamp = int(time.time())
    issuer = register_and_login(session, f"citizen_{stamp}@example.com", name="Smoke Citizen")
    officer = register_and_login(
        session,
        f"officer_{stamp}@example.com",
        name="Smoke Officer",
        role="officer",
        category="Roads",
        zone="North Zone",
        designation="Junior Engineer",
    )

    resp = session.post(f"{BASE_URL}/issues/", headers=issuer, json={
        "title": "Smoke test pothole",
        "description": "Created by verify_backend.py",
        "category": "Roads",
        "location": "Test Street",
        "zone": "North Zone",
        "before_images": ["https://images.example.com/smoke/before.jpg"],
    })
    resp.raise_for_status()
    issue = resp.json()
    print(f"Created issue {issue['id']} with status {issue['status']}")

    resp = session.patch(f"{BASE_URL}/issues/{issue['id']}", headers=officer, json={"status": "resolved"})
    print(f"Direct pending -> resolved: {resp.status_code} (expected 409)")

    resp = session.post(f"{BASE_URL}/issues/{issue['id']}/verify-submission", headers=issuer)
    if resp.status_code == 503:
        print("Verifier unavailable, try again later.")
        return False
    resp.raise_for_status()
    result = resp.json()
    print(f"Submission verification: accepted={result['accepted']} ({result['message']})")
    if not result["accepted"]:
        return True

    resp = session.patch(f"{BASE_URL}/issues/{issue['id']}", headers=officer, json={
        "status": "in-progress",
        "version": result["issue"]["version"],
    })
    resp.raise_for_status()
    print(f"Now {resp.json()['status']}, assigned to {resp.json()['officer_name']}")

    resp = session.post(f"{BASE_URL}/issues/{issue['id']}/comments", headers=officer,
                        json={"content": "Crew dispatched."})
    resp.raise_for_status()

    resp = session.get(f"{BASE_URL}/dashboard/officer", headers=officer, params={"view": "mine"})
    resp.raise_for_status()
    print(f"Officer dashboard counts: {resp.json()['counts']}")
    return True


if __name__ == "__main__":
    sys.exit(0 if test_backend() else 1)
