"""Durable CRUD for issues, comments, images and verification records.

``IssueStore`` wraps one SQLAlchemy session. Every write re-reads the latest
row before checking it, and the UPDATE itself is conditional on the row's
``version`` column, so a racing writer surfaces as ``Conflict`` instead of
silently overwriting a newer state.
"""

import datetime
import logging
import secrets
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

import errors
import lifecycle
import models
import schemas

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200

# Fields each role may patch. Status is left to the lifecycle table.
ISSUER_FIELDS = frozenset({"title", "description", "location", "lat", "lng", "zone", "priority"})
OFFICER_FIELDS = frozenset({"priority", "zone", "assigned_officer_id"})
# Only written by the verification flow
VERIFICATION_FIELDS = frozenset({"submission_verified", "resolution_verified"})

VERIFIED_FLAG = {
    models.SUBMISSION: "submission_verified",
    models.RESOLUTION: "resolution_verified",
}


def _dedupe(refs: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for ref in refs:
        if ref not in seen:
            seen.add(ref)
            out.append(ref)
    return out


def _blank(value) -> bool:
    return value is None or not str(value).strip()


def _check_coordinates(lat, lng, violations: Dict[str, List[str]]):
    if (lat is None) != (lng is None):
        violations.setdefault("coordinates", []).append("Latitude and longitude must be given together")
    if lat is not None and not -90 <= lat <= 90:
        violations.setdefault("lat", []).append("Latitude must be between -90 and 90")
    if lng is not None and not -180 <= lng <= 180:
        violations.setdefault("lng", []).append("Longitude must be between -180 and 180")


def validate_draft(draft: schemas.IssueCreate) -> Dict[str, List[str]]:
    """Collect every problem with ``draft``; an empty dict means it is valid."""
    violations: Dict[str, List[str]] = {}

    def add(field, message):
        violations.setdefault(field, []).append(message)

    if _blank(draft.title):
        add("title", "Title is required")
    elif len(draft.title) > TITLE_MAX_LENGTH:
        add("title", f"Title must be at most {TITLE_MAX_LENGTH} characters")
    if _blank(draft.description):
        add("description", "Description is required")
    if _blank(draft.category):
        add("category", "Category is required")
    elif draft.category not in models.CATEGORIES:
        add("category", f"Category must be one of: {', '.join(models.CATEGORIES)}")
    if _blank(draft.location):
        add("location", "Location is required")
    if draft.priority not in models.PRIORITIES:
        add("priority", "Priority must be low, medium or high")
    if draft.zone is not None and draft.zone not in models.ZONES:
        add("zone", f"Zone must be one of: {', '.join(models.ZONES)}")
    _check_coordinates(draft.lat, draft.lng, violations)
    if not draft.before_images:
        add("before_images", "At least one image is required")
    elif any(_blank(ref) for ref in draft.before_images):
        add("before_images", "Image references cannot be empty")
    elif len(set(draft.before_images)) != len(draft.before_images):
        add("before_images", "Each image can only be attached once")
    return violations


class IssueStore:
    def __init__(self, db: Session, auto_assign: bool = False):
        self.db = db
        self.auto_assign = auto_assign

    # ------------------ Reads ------------------
    def _get(self, issue_id: str) -> models.Issue:
        # populate_existing refreshes an identity-mapped row with what is in the db now
        issue = (
            self.db.query(models.Issue)
            .filter(models.Issue.id == issue_id)
            .populate_existing()
            .first()
        )
        if issue is None:
            raise errors.NotFound(f"Issue {issue_id} not found")
        return issue

    def get_issue(self, issue_id: str) -> models.Issue:
        return self._get(issue_id)

    def list_issues_by_reporter(self, reporter_id: int) -> List[models.Issue]:
        return (
            self.db.query(models.Issue)
            .filter(models.Issue.reporter_id == reporter_id)
            .order_by(models.Issue.created_at.desc(), models.Issue.id.desc())
            .all()
        )

    def list_issues_by_officer_scope(self, category: str, zone: Optional[str] = None) -> List[models.Issue]:
        query = self.db.query(models.Issue).filter(models.Issue.category == category)
        if zone is not None:
            query = query.filter(models.Issue.zone == zone)
        return query.order_by(models.Issue.created_at.desc(), models.Issue.id.desc()).all()

    def list_comments(self, issue_id: str) -> List[models.IssueComment]:
        self._get(issue_id)
        return (
            self.db.query(models.IssueComment)
            .filter(models.IssueComment.issue_id == issue_id)
            .order_by(models.IssueComment.created_at.asc(), models.IssueComment.id.asc())
            .all()
        )

    def list_verifications(self, issue_id: str) -> List[models.VerificationRecord]:
        self._get(issue_id)
        return (
            self.db.query(models.VerificationRecord)
            .filter(models.VerificationRecord.issue_id == issue_id)
            .order_by(models.VerificationRecord.verified_at.desc(), models.VerificationRecord.id.desc())
            .all()
        )

    # ------------------ Writes ------------------
    def _commit(self):
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise errors.Conflict("Issue was modified by another request, reload and try again")

    def _check_version(self, issue: models.Issue, expected_version: Optional[int]):
        if expected_version is not None and expected_version != issue.version:
            logger.warning("Stale write to issue %s: expected version %s, found %s",
                           issue.id, expected_version, issue.version)
            raise errors.Conflict(
                f"Issue {issue.id} is at version {issue.version}, not {expected_version}; reload and try again"
            )

    @staticmethod
    def _touch(issue: models.Issue):
        now = models.utcnow()
        if issue.updated_at is not None and now <= issue.updated_at:
            now = issue.updated_at + datetime.timedelta(microseconds=1)
        issue.updated_at = now

    def create_issue(self, draft: schemas.IssueCreate, reporter: models.User) -> models.Issue:
        if reporter.role != models.ISSUER:
            raise errors.PermissionDenied("Only issuers can report issues")
        violations = validate_draft(draft)
        if violations:
            raise errors.ValidationError(violations)

        now = models.utcnow()
        issue = models.Issue(
            id=secrets.token_hex(6),
            title=draft.title,
            description=draft.description,
            category=draft.category,
            location=draft.location,
            lat=draft.lat,
            lng=draft.lng,
            zone=draft.zone,
            priority=draft.priority,
            status=models.PENDING,
            submission_verified=False,
            resolution_verified=False,
            reporter_id=reporter.id,
            created_at=now,
            updated_at=now,
        )
        for ref in draft.before_images:
            issue.images.append(models.IssueImage(url=ref, slot=models.BEFORE, uploaded_by=reporter.id, uploaded_at=now))

        if self.auto_assign and draft.zone:
            officer = (
                self.db.query(models.User)
                .filter(
                    models.User.role == models.OFFICER,
                    models.User.category == draft.category,
                    models.User.zone == draft.zone,
                    models.User.is_active.is_(True),
                )
                .order_by(models.User.id)
                .first()
            )
            if officer:
                issue.assigned_officer_id = officer.id

        self.db.add(issue)
        self._commit()
        self.db.refresh(issue)
        logger.info("Issue %s created by user %s in %s", issue.id, reporter.id, issue.category)
        return issue

    def _check_field_permissions(self, issue: models.Issue, fields, actor: models.User):
        if actor.role == models.ISSUER:
            allowed = ISSUER_FIELDS
            if fields and issue.reporter_id != actor.id:
                raise errors.PermissionDenied("Issuers can only edit their own issues")
            if fields and issue.status != models.PENDING:
                raise errors.IllegalTransition(f"Issue {issue.id} can only be edited while pending")
        elif actor.role == models.OFFICER:
            allowed = OFFICER_FIELDS
        else:
            raise errors.PermissionDenied("Unknown role")

        denied = sorted(set(fields) - allowed)
        if denied:
            raise errors.PermissionDenied(f"A {actor.role} cannot change: {', '.join(denied)}")

    def _validate_patch(self, issue: models.Issue, patch: dict):
        violations: Dict[str, List[str]] = {}
        for field in ("title", "description", "location"):
            if field in patch and _blank(patch[field]):
                violations.setdefault(field, []).append(f"{field.capitalize()} cannot be empty")
        if "title" in patch and patch["title"] and len(patch["title"]) > TITLE_MAX_LENGTH:
            violations.setdefault("title", []).append(f"Title must be at most {TITLE_MAX_LENGTH} characters")
        if "priority" in patch and patch["priority"] not in models.PRIORITIES:
            violations.setdefault("priority", []).append("Priority must be low, medium or high")
        if patch.get("zone") is not None and patch["zone"] not in models.ZONES:
            violations.setdefault("zone", []).append(f"Zone must be one of: {', '.join(models.ZONES)}")
        if "lat" in patch or "lng" in patch:
            _check_coordinates(patch.get("lat", issue.lat), patch.get("lng", issue.lng), violations)
        officer_id = patch.get("assigned_officer_id")
        if officer_id is not None:
            officer = self.db.get(models.User, officer_id)
            if officer is None or officer.role != models.OFFICER:
                violations.setdefault("assigned_officer_id", []).append("Assignee must be an existing officer")
        if violations:
            raise errors.ValidationError(violations)

    def _apply_patch(self, issue: models.Issue, patch: dict, actor: models.User) -> bool:
        """Apply ``patch`` to ``issue`` in the session. Returns whether anything changed."""
        patch = dict(patch)
        patch.pop("version", None)
        target = patch.pop("status", None)
        fields = [f for f in patch if f not in VERIFICATION_FIELDS]

        self._check_field_permissions(issue, fields, actor)
        self._validate_patch(issue, patch)

        changed = False
        for field, value in patch.items():
            if getattr(issue, field) != value:
                setattr(issue, field, value)
                changed = True
        if target is not None:
            lifecycle.transition(issue, target, actor)
            changed = True

        lifecycle.check_invariants(issue)
        if changed:
            self._touch(issue)
        return changed

    def update_issue(
        self, issue_id: str, patch: dict, actor: models.User, expected_version: Optional[int] = None
    ) -> models.Issue:
        """Partially update an issue.

        A ``status`` key is a lifecycle transition and goes through the
        transition table. Any failure leaves the stored issue as it was.
        """
        issue = self._get(issue_id)
        self._check_version(issue, expected_version)
        try:
            changed = self._apply_patch(issue, patch, actor)
        except errors.CivicError:
            self.db.rollback()
            raise
        if changed:
            self._commit()
            self.db.refresh(issue)
        return issue

    def claim_issue(self, issue_id: str, officer: models.User, expected_version: Optional[int] = None) -> models.Issue:
        if officer.role != models.OFFICER:
            raise errors.PermissionDenied("Only officers can claim issues")
        issue = self._get(issue_id)
        if lifecycle.is_terminal(issue.status):
            raise errors.IllegalTransition(f"Issue {issue.id} is {issue.status} and cannot be claimed")
        if issue.assigned_officer_id not in (None, officer.id):
            raise errors.Conflict(f"Issue {issue.id} is already assigned to another officer")
        return self.update_issue(issue_id, {"assigned_officer_id": officer.id}, officer, expected_version)

    def add_comment(self, issue_id: str, content: str, author: models.User) -> models.IssueComment:
        issue = self._get(issue_id)
        if _blank(content):
            raise errors.ValidationError({"content": ["Comment cannot be empty"]})
        if author.role not in models.ROLES:
            raise errors.PermissionDenied("Unknown role")

        comment = models.IssueComment(
            issue_id=issue.id,
            content=content,
            author_id=author.id,
            author_role=author.role,
            created_at=models.utcnow(),
        )
        self.db.add(comment)
        self._commit()
        self.db.refresh(comment)
        return comment

    def add_images(
        self,
        issue_id: str,
        refs: List[str],
        slot: str,
        actor: models.User,
        expected_version: Optional[int] = None,
    ) -> models.Issue:
        """Attach already-uploaded image refs to an issue.

        Refs already in the slot are skipped, so retrying a failed attach with
        the same refs is safe. New evidence clears the slot's verification.
        """
        violations: Dict[str, List[str]] = {}
        if slot not in models.IMAGE_SLOTS:
            violations["slot"] = ["Slot must be 'before' or 'after'"]
        if not refs:
            violations["refs"] = ["At least one image reference is required"]
        elif any(_blank(ref) for ref in refs):
            violations["refs"] = ["Image references cannot be empty"]
        if violations:
            raise errors.ValidationError(violations)

        issue = self._get(issue_id)
        self._check_version(issue, expected_version)
        if slot == models.BEFORE:
            if actor.id != issue.reporter_id:
                raise errors.PermissionDenied("Only the reporter can add before images")
            if issue.status != models.PENDING:
                raise errors.IllegalTransition(f"Before images can only be added while pending, issue is {issue.status}")
        else:
            if actor.role != models.OFFICER:
                raise errors.PermissionDenied("Only officers can add after images")
            if issue.status != models.IN_PROGRESS:
                raise errors.IllegalTransition(
                    f"After images can only be added while in progress, issue is {issue.status}"
                )

        existing = set(issue.image_urls(slot))
        new_refs = [ref for ref in _dedupe(refs) if ref not in existing]
        if not new_refs:
            return issue

        now = models.utcnow()
        for ref in new_refs:
            issue.images.append(models.IssueImage(url=ref, slot=slot, uploaded_by=actor.id, uploaded_at=now))
        if slot == models.BEFORE:
            issue.submission_verified = False
        else:
            issue.resolution_verified = False
        self._touch(issue)
        self._commit()
        self.db.refresh(issue)
        logger.info("Attached %d %s image(s) to issue %s", len(new_refs), slot, issue.id)
        return issue

    # ------------------ Verification ------------------
    def verification_target(self, issue_id: str, kind: str, actor: models.User) -> models.Issue:
        """Load the issue a verification is about to run on, checking it may run now."""
        issue = self._get(issue_id)
        if kind == models.SUBMISSION:
            if actor.role != models.OFFICER and actor.id != issue.reporter_id:
                raise errors.PermissionDenied("Only the reporter or an officer can verify a submission")
            if issue.status != models.PENDING:
                raise errors.IllegalTransition(f"Submission can only be verified while pending, issue is {issue.status}")
        elif kind == models.RESOLUTION:
            if actor.role != models.OFFICER:
                raise errors.PermissionDenied("Only officers can verify a resolution")
            if issue.status != models.IN_PROGRESS:
                raise errors.IllegalTransition(
                    f"Resolution can only be verified while in progress, issue is {issue.status}"
                )
        else:
            raise errors.InvalidInput(f"Unknown verification kind: {kind}")
        return issue

    def record_verification(
        self,
        issue_id: str,
        kind: str,
        accepted: bool,
        message: str,
        actor: models.User,
        details: Optional[dict] = None,
        expected_version: Optional[int] = None,
    ) -> models.Issue:
        """Persist a verifier outcome and set the issue's flag for that kind to match it.

        ``expected_version`` is the version the verified images were read at;
        if the issue moved on meanwhile the outcome no longer applies.
        """
        issue = self._get(issue_id)
        self._check_version(issue, expected_version)
        self.db.add(
            models.VerificationRecord(
                issue_id=issue.id,
                kind=kind,
                accepted=accepted,
                message=message,
                details=details,
                verified_by=actor.id,
                verified_at=models.utcnow(),
            )
        )
        # The latest verdict replaces any earlier one
        try:
            self._apply_patch(issue, {VERIFIED_FLAG[kind]: accepted}, actor)
        except errors.CivicError:
            self.db.rollback()
            raise
        self._commit()
        self.db.refresh(issue)
        logger.info("Issue %s %s verification %s", issue.id, kind, "accepted" if accepted else "rejected")
        return issue
