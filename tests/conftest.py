"""Shared fixtures: an in-memory database per test and a TestClient wired to it.

The environment is set before any project module is imported so ``main`` does
not create a database file or upload directory in the working tree.
"""

import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="civic-uploads-"))
os.environ.setdefault("MAIL_SUPPRESS_SEND", "1")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import auth
import models
import schemas
from store import IssueStore
from verifier import MockVerifier


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return IssueStore(db)


def make_user(db, email, role=models.ISSUER, name=None, **extra):
    user = models.User(
        email=email,
        name=name or email.split("@")[0].title(),
        hashed_password=auth.get_password_hash("password123"),
        role=role,
        **extra,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def issuer(db):
    return make_user(db, "asha@example.com")


@pytest.fixture
def other_issuer(db):
    return make_user(db, "ravi@example.com")


@pytest.fixture
def officer(db):
    return make_user(
        db, "rao@roads.example.com", role=models.OFFICER,
        category="Roads", zone="North Zone", designation="Senior Engineer",
    )


@pytest.fixture
def other_officer(db):
    return make_user(
        db, "devi@roads.example.com", role=models.OFFICER,
        category="Roads", zone="South Zone", designation="Junior Engineer",
    )


def make_draft(**overrides):
    fields = {
        "title": "Pothole on MG Road",
        "description": "Large pothole near the bus stop",
        "category": "Roads",
        "location": "MG Road, near bus stop 14",
        "zone": "North Zone",
        "priority": "high",
        "before_images": ["https://img.example.com/before-1.jpg"],
    }
    fields.update(overrides)
    return schemas.IssueCreate(**fields)


def verify_submission(store, issue, actor):
    return store.record_verification(issue.id, models.SUBMISSION, True, "ok", actor)


def start_work(store, issue, officer):
    """Take a freshly created issue to in-progress the legitimate way."""
    verify_submission(store, issue, officer)
    return store.update_issue(issue.id, {"status": models.IN_PROGRESS}, officer)


def finish_work(store, issue, officer, after="https://img.example.com/after-1.jpg"):
    store.add_images(issue.id, [after], models.AFTER, officer)
    store.record_verification(issue.id, models.RESOLUTION, True, "fixed", officer)
    return store.update_issue(issue.id, {"status": models.RESOLVED}, officer)


@pytest.fixture
def accepting_verifier():
    return MockVerifier(submission_accept_rate=1.0, resolution_accept_rate=1.0)


@pytest.fixture
def client(db, accepting_verifier):
    from fastapi.testclient import TestClient

    import database
    import main

    main.app.dependency_overrides[database.get_db] = lambda: db
    main.app.dependency_overrides[main.get_verifier] = lambda: accepting_verifier
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def auth_headers(user):
    token = auth.create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}
