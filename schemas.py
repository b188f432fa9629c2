from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime

import models


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    email: Optional[str] = None
    jti: Optional[str] = None


class UserBase(BaseModel):
    email: str
    name: str


class UserCreate(UserBase):
    password: str
    role: str = models.ISSUER
    # Officers only
    category: Optional[str] = None
    zone: Optional[str] = None
    designation: Optional[str] = None


class User(UserBase):
    id: int
    role: str
    is_active: bool
    category: Optional[str] = None
    zone: Optional[str] = None
    designation: Optional[str] = None

    class Config:
        from_attributes = True


class IssueBase(BaseModel):
    title: str = ""
    description: str = ""
    category: str = ""
    location: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    zone: Optional[str] = None
    priority: str = "medium"


class IssueCreate(IssueBase):
    before_images: List[str] = []


class IssueUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    zone: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    assigned_officer_id: Optional[int] = None
    # Version the client read; a stale value is refused with 412
    version: Optional[int] = None


class Issue(IssueBase):
    id: str
    status: str
    submission_verified: bool
    resolution_verified: bool
    before_images: List[str]
    after_images: List[str]
    reporter_id: int
    reporter_name: Optional[str] = None
    assigned_officer_id: Optional[int] = None
    officer_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None
    version: int


class ImageAttach(BaseModel):
    refs: List[str]
    slot: str = models.BEFORE


class Upload(BaseModel):
    url: str


class CommentCreate(BaseModel):
    content: str = ""


class Comment(BaseModel):
    id: int
    issue_id: str
    content: str
    author_id: int
    author_role: str
    author_name: Optional[str] = None
    created_at: datetime


class ImprovementArea(BaseModel):
    name: str
    improvement_ratio: float
    details: str


class SubmissionVerification(BaseModel):
    accepted: bool
    message: str
    issue: Issue


class ResolutionVerification(BaseModel):
    resolved: bool
    message: str
    areas: List[ImprovementArea] = []
    overall_improvement: Optional[float] = None
    issue: Issue


class VerificationRecord(BaseModel):
    id: int
    issue_id: str
    kind: str
    accepted: bool
    message: str
    details: Optional[Dict[str, Any]] = None
    verified_by: Optional[int] = None
    verified_at: datetime

    class Config:
        from_attributes = True


class StatusCounts(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    resolved: int = 0
    rejected: int = 0


class IssuerDashboard(BaseModel):
    issues: List[Issue]
    counts: StatusCounts


class OfficerDashboard(BaseModel):
    view: str
    issues: List[Issue]
    counts: StatusCounts
    assigned_to_me: int


class Catalog(BaseModel):
    categories: List[str]
    zones: List[str]
    designations: List[str]
    priorities: List[str]
    statuses: List[str]


# --- Adapters between ORM rows and API payloads ---

def issue_from_model(issue: models.Issue) -> Issue:
    return Issue(
        id=issue.id,
        title=issue.title,
        description=issue.description,
        category=issue.category,
        location=issue.location,
        lat=issue.lat,
        lng=issue.lng,
        zone=issue.zone,
        priority=issue.priority,
        status=issue.status,
        submission_verified=issue.submission_verified,
        resolution_verified=issue.resolution_verified,
        before_images=issue.before_images,
        after_images=issue.after_images,
        reporter_id=issue.reporter_id,
        reporter_name=issue.reporter.name if issue.reporter else None,
        assigned_officer_id=issue.assigned_officer_id,
        officer_name=issue.assigned_officer.name if issue.assigned_officer else None,
        created_at=issue.created_at,
        updated_at=issue.updated_at,
        resolved_at=issue.resolved_at,
        version=issue.version,
    )


def comment_from_model(comment: models.IssueComment) -> Comment:
    return Comment(
        id=comment.id,
        issue_id=comment.issue_id,
        content=comment.content,
        author_id=comment.author_id,
        author_role=comment.author_role,
        author_name=comment.author.name if comment.author else None,
        created_at=comment.created_at,
    )


def areas_to_details(areas, overall_improvement=None) -> Dict[str, Any]:
    return {
        "areas": [
            {"name": a.name, "improvement_ratio": a.improvement_ratio, "details": a.details} for a in areas
        ],
        "overall_improvement": overall_improvement,
    }
