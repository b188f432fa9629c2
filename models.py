from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Float, DateTime, JSON, Text
from sqlalchemy.orm import relationship
from database import Base
import datetime

# Reference data
CATEGORIES = (
    "Water Supply",
    "Electricity",
    "Roads",
    "Garbage Collection",
    "Sewage",
    "Street Lights",
    "Public Property",
    "Parks",
    "Other",
)

ZONES = (
    "North Zone",
    "South Zone",
    "East Zone",
    "West Zone",
    "Central Zone",
)

DESIGNATIONS = (
    "Junior Engineer",
    "Senior Engineer",
    "Assistant Officer",
    "Deputy Officer",
    "Chief Officer",
)

PRIORITIES = ("low", "medium", "high")

PENDING = "pending"
IN_PROGRESS = "in-progress"
RESOLVED = "resolved"
REJECTED = "rejected"
STATUSES = (PENDING, IN_PROGRESS, RESOLVED, REJECTED)

ISSUER = "issuer"
OFFICER = "officer"
ROLES = (ISSUER, OFFICER)

BEFORE = "before"
AFTER = "after"
IMAGE_SLOTS = (BEFORE, AFTER)

SUBMISSION = "submission"
RESOLUTION = "resolution"


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String)
    email = Column(String, unique=True, index=True)
    hashed_password = Column(String)
    role = Column(String, default=ISSUER)  # issuer, officer
    is_active = Column(Boolean, default=True)

    # Officer scope
    category = Column(String, nullable=True)
    zone = Column(String, nullable=True)
    designation = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    issues = relationship("Issue", back_populates="reporter", foreign_keys="Issue.reporter_id")


class Issue(Base):
    __tablename__ = "issues"

    id = Column(String, primary_key=True, index=True)
    title = Column(String)
    description = Column(Text)
    category = Column(String, index=True)

    # Location
    location = Column(String)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    zone = Column(String, nullable=True, index=True)

    priority = Column(String, default="medium")  # low, medium, high
    status = Column(String, default=PENDING, index=True)  # pending, in-progress, resolved, rejected

    # Verification gates
    submission_verified = Column(Boolean, default=False, nullable=False)
    resolution_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    reporter_id = Column(Integer, ForeignKey("users.id"), index=True)
    assigned_officer_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Compare-and-swap counter, bumped by SQLAlchemy on every UPDATE
    version = Column(Integer, nullable=False)

    reporter = relationship("User", back_populates="issues", foreign_keys=[reporter_id])
    assigned_officer = relationship("User", foreign_keys=[assigned_officer_id])
    images = relationship(
        "IssueImage", back_populates="issue", order_by="IssueImage.id", cascade="all, delete-orphan"
    )
    comments = relationship(
        "IssueComment",
        back_populates="issue",
        order_by="IssueComment.id",
        cascade="all, delete-orphan",
    )
    verifications = relationship(
        "VerificationRecord",
        back_populates="issue",
        order_by="VerificationRecord.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def image_urls(self, slot):
        return [image.url for image in self.images if image.slot == slot]

    @property
    def before_images(self):
        return self.image_urls(BEFORE)

    @property
    def after_images(self):
        return self.image_urls(AFTER)


class IssueImage(Base):
    __tablename__ = "issue_images"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(String, ForeignKey("issues.id"), index=True)
    url = Column(String)
    slot = Column(String)  # before, after
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    uploaded_at = Column(DateTime, default=utcnow)

    issue = relationship("Issue", back_populates="images")


class IssueComment(Base):
    __tablename__ = "issue_comments"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(String, ForeignKey("issues.id"), index=True)
    content = Column(Text)
    author_id = Column(Integer, ForeignKey("users.id"))
    author_role = Column(String)  # issuer, officer
    created_at = Column(DateTime, default=utcnow)

    issue = relationship("Issue", back_populates="comments")
    author = relationship("User")


class VerificationRecord(Base):
    __tablename__ = "ai_verifications"

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(String, ForeignKey("issues.id"), index=True)
    kind = Column(String)  # submission, resolution
    accepted = Column(Boolean)
    message = Column(String)
    details = Column(JSON, nullable=True)
    verified_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    verified_at = Column(DateTime, default=utcnow)

    issue = relationship("Issue", back_populates="verifications")


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    jti = Column(String, primary_key=True, index=True)
    revoked_at = Column(DateTime, default=utcnow)
