from fastapi import FastAPI, Depends, HTTPException, status, BackgroundTasks, UploadFile, File, Request
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from typing import List, Optional
from functools import lru_cache
from contextlib import asynccontextmanager
import logging
import os
from dotenv import load_dotenv
from email_validator import validate_email, EmailNotValidError

import models, schemas, auth, errors, lifecycle, notifications, projections, storage
from database import engine, get_db
from store import IssueStore
from verifier import MockVerifier, RemoteVerifier, TimedVerifier, Verifier

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

AUTO_ASSIGN_OFFICERS = os.getenv("AUTO_ASSIGN_OFFICERS", "0") == "1"
VERIFIER_BACKEND = os.getenv("VERIFIER_BACKEND", "mock")
VERIFIER_URL = os.getenv("VERIFIER_URL", "")
VERIFIER_TIMEOUT_SECONDS = float(os.getenv("VERIFIER_TIMEOUT_SECONDS", 10))
VERIFIER_SEED = os.getenv("VERIFIER_SEED")
MOCK_VERIFIER_LATENCY = float(os.getenv("MOCK_VERIFIER_LATENCY", 0))
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
UPLOAD_BASE_URL = os.getenv("UPLOAD_BASE_URL", "http://localhost:8000/media")

PASSWORD_MIN_LENGTH = 8

models.Base.metadata.create_all(bind=engine)
os.makedirs(UPLOAD_DIR, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_verifier()


app = FastAPI(title="Civic Issue Tracker", lifespan=lifespan)

# CORS
origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/media", StaticFiles(directory=UPLOAD_DIR), name="media")


@app.exception_handler(errors.CivicError)
async def civic_error_handler(request: Request, exc: errors.CivicError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- Dependencies ---

def get_store(db: Session = Depends(get_db)):
    return IssueStore(db, auto_assign=AUTO_ASSIGN_OFFICERS)


@lru_cache()
def get_verifier() -> Verifier:
    if VERIFIER_BACKEND == "remote":
        if not VERIFIER_URL:
            raise RuntimeError("VERIFIER_URL must be set when VERIFIER_BACKEND=remote")
        inner = RemoteVerifier(VERIFIER_URL, timeout=VERIFIER_TIMEOUT_SECONDS)
    else:
        seed = int(VERIFIER_SEED) if VERIFIER_SEED else None
        inner = MockVerifier(seed=seed, latency=MOCK_VERIFIER_LATENCY)
    logger.info("Using %s verifier with %.1fs timeout", VERIFIER_BACKEND, VERIFIER_TIMEOUT_SECONDS)
    return TimedVerifier(inner, timeout=VERIFIER_TIMEOUT_SECONDS)


def close_verifier():
    """Stop the cached verifier's worker threads, if one was ever built."""
    if get_verifier.cache_info().currsize:
        get_verifier().shutdown()
        get_verifier.cache_clear()


def get_blob_storage():
    return storage.LocalBlobStorage(UPLOAD_DIR, UPLOAD_BASE_URL)


def require_officer(current_user: models.User = Depends(auth.get_current_user)):
    if current_user.role != models.OFFICER:
        raise errors.PermissionDenied("Officer privileges required")
    return current_user


# --- Identity ---

@app.post("/token", response_model=schemas.Token)
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    # The OAuth2 form's 'username' field carries the email
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled.")

    access_token = auth.create_access_token(
        data={"sub": user.email, "role": user.role},
        expires_delta=auth.timedelta(minutes=auth.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {"access_token": access_token, "token_type": "bearer"}


@app.post("/logout")
async def logout(token_data: schemas.TokenData = Depends(auth.get_token_data), db: Session = Depends(get_db)):
    auth.revoke_token(db, token_data)
    return {"message": "Signed out"}


def validate_signup(user: schemas.UserCreate):
    violations = {}
    try:
        validate_email(user.email or "", check_deliverability=False)
    except EmailNotValidError as e:
        violations["email"] = [f"Please enter a valid email address: {e}"]
    if len((user.name or "").strip()) < 2:
        violations["name"] = ["Name must be at least 2 characters"]
    if len(user.password or "") < PASSWORD_MIN_LENGTH:
        violations["password"] = [f"Password must be at least {PASSWORD_MIN_LENGTH} characters"]
    if user.role not in models.ROLES:
        violations["role"] = ["Role must be issuer or officer"]
    if user.role == models.OFFICER:
        if user.category not in models.CATEGORIES:
            violations["category"] = ["Officers need a category of responsibility"]
        if user.zone not in models.ZONES:
            violations["zone"] = ["Officers need a zone of responsibility"]
        if user.designation not in models.DESIGNATIONS:
            violations["designation"] = ["Officers need a designation"]
    if violations:
        raise errors.ValidationError(violations)


@app.post("/users/", response_model=schemas.User)
async def create_user(user: schemas.UserCreate, db: Session = Depends(get_db)):
    validate_signup(user)
    db_user = db.query(models.User).filter(models.User.email == user.email).first()
    if db_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    is_officer = user.role == models.OFFICER
    db_user = models.User(
        email=user.email,
        name=user.name.strip(),
        hashed_password=auth.get_password_hash(user.password),
        role=user.role,
        category=user.category if is_officer else None,
        zone=user.zone if is_officer else None,
        designation=user.designation if is_officer else None,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.info("Registered %s %s", db_user.role, db_user.id)
    return db_user


@app.get("/users/me/", response_model=schemas.User)
async def read_users_me(current_user: models.User = Depends(auth.get_current_user)):
    return current_user


@app.get("/catalog", response_model=schemas.Catalog)
def read_catalog():
    return schemas.Catalog(
        categories=list(models.CATEGORIES),
        zones=list(models.ZONES),
        designations=list(models.DESIGNATIONS),
        priorities=list(models.PRIORITIES),
        statuses=list(models.STATUSES),
    )


# --- Uploads ---

@app.post("/uploads", response_model=schemas.Upload)
async def upload_image(
    file: UploadFile = File(...),
    blob_storage: storage.LocalBlobStorage = Depends(get_blob_storage),
    current_user: models.User = Depends(auth.get_current_user),
):
    data = await file.read()
    url = storage.upload_image(blob_storage, current_user.id, file.content_type, data)
    return {"url": url}


# --- Issues ---

@app.post("/issues/", response_model=schemas.Issue)
def create_issue(
    draft: schemas.IssueCreate,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    return schemas.issue_from_model(store.create_issue(draft, current_user))


@app.get("/issues/{issue_id}", response_model=schemas.Issue)
def read_issue(
    issue_id: str,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    return schemas.issue_from_model(store.get_issue(issue_id))


def notify_status_change(background_tasks: BackgroundTasks, issue: models.Issue, old_status: str):
    if issue.status != old_status and issue.reporter and issue.reporter.email:
        background_tasks.add_task(
            notifications.send_status_update, issue.reporter.email, issue.id, issue.title, old_status, issue.status
        )


@app.patch("/issues/{issue_id}", response_model=schemas.Issue)
def update_issue(
    issue_id: str,
    patch: schemas.IssueUpdate,
    background_tasks: BackgroundTasks,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    changes = patch.model_dump(exclude_unset=True)
    expected_version = changes.pop("version", None)
    old_status = store.get_issue(issue_id).status
    issue = store.update_issue(issue_id, changes, current_user, expected_version=expected_version)
    notify_status_change(background_tasks, issue, old_status)
    return schemas.issue_from_model(issue)


@app.post("/issues/{issue_id}/claim", response_model=schemas.Issue)
def claim_issue(
    issue_id: str,
    version: Optional[int] = None,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(require_officer),
):
    return schemas.issue_from_model(store.claim_issue(issue_id, current_user, expected_version=version))


@app.post("/issues/{issue_id}/images", response_model=schemas.Issue)
def attach_images(
    issue_id: str,
    attach: schemas.ImageAttach,
    version: Optional[int] = None,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    issue = store.add_images(issue_id, attach.refs, attach.slot, current_user, expected_version=version)
    return schemas.issue_from_model(issue)


@app.get("/issues/{issue_id}/comments", response_model=List[schemas.Comment])
def read_comments(
    issue_id: str,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    return [schemas.comment_from_model(c) for c in store.list_comments(issue_id)]


@app.post("/issues/{issue_id}/comments", response_model=schemas.Comment)
def create_comment(
    issue_id: str,
    comment: schemas.CommentCreate,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    return schemas.comment_from_model(store.add_comment(issue_id, comment.content, current_user))


@app.get("/issues/{issue_id}/verifications", response_model=List[schemas.VerificationRecord])
def read_verifications(
    issue_id: str,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    return store.list_verifications(issue_id)


@app.post("/issues/{issue_id}/verify-submission", response_model=schemas.SubmissionVerification)
def verify_submission(
    issue_id: str,
    store: IssueStore = Depends(get_store),
    verifier: Verifier = Depends(get_verifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    issue = store.verification_target(issue_id, models.SUBMISSION, current_user)
    version, images, category = issue.version, issue.before_images, issue.category

    outcome = verifier.verify_submission(images, category)
    issue = store.record_verification(
        issue_id, models.SUBMISSION, outcome.accepted, outcome.message, current_user, expected_version=version
    )
    return schemas.SubmissionVerification(
        accepted=outcome.accepted, message=outcome.message, issue=schemas.issue_from_model(issue)
    )


@app.post("/issues/{issue_id}/verify-resolution", response_model=schemas.ResolutionVerification)
def verify_resolution(
    issue_id: str,
    store: IssueStore = Depends(get_store),
    verifier: Verifier = Depends(get_verifier),
    current_user: models.User = Depends(auth.get_current_user),
):
    issue = store.verification_target(issue_id, models.RESOLUTION, current_user)
    version, before, after, category = issue.version, issue.before_images, issue.after_images, issue.category

    outcome = verifier.verify_resolution(before, after, category)
    issue = store.record_verification(
        issue_id,
        models.RESOLUTION,
        outcome.resolved,
        outcome.message,
        current_user,
        details=schemas.areas_to_details(outcome.areas, outcome.overall_improvement),
        expected_version=version,
    )
    return schemas.ResolutionVerification(
        resolved=outcome.resolved,
        message=outcome.message,
        areas=[schemas.ImprovementArea(**vars(a)) for a in outcome.areas],
        overall_improvement=outcome.overall_improvement,
        issue=schemas.issue_from_model(issue),
    )


# --- Dashboards ---

@app.get("/dashboard/issuer", response_model=schemas.IssuerDashboard)
def issuer_dashboard(
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort: str = "created_at",
    order: str = "desc",
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    query = projections.IssueQuery(search=search, category=category, sort=sort, order=order)
    return projections.issuer_dashboard(store, current_user, query)


@app.get("/dashboard/officer", response_model=schemas.OfficerDashboard)
def officer_dashboard(
    view: str = projections.ALL,
    zone_only: bool = False,
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort: str = "created_at",
    order: str = "desc",
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(require_officer),
):
    query = projections.IssueQuery(search=search, category=category, sort=sort, order=order)
    return projections.officer_dashboard(store, current_user, query, view=view, zone_only=zone_only)


@app.get("/issues/{issue_id}/transitions", response_model=List[str])
def read_allowed_transitions(
    issue_id: str,
    store: IssueStore = Depends(get_store),
    current_user: models.User = Depends(auth.get_current_user),
):
    issue = store.get_issue(issue_id)
    return [target for target in lifecycle.allowed_targets(issue.status)
            if lifecycle.refusal(issue, target, current_user) is None]
