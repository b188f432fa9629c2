"""Role-scoped dashboard views over the issue store."""

from dataclasses import dataclass
from typing import Iterable, List, Optional

import errors
import models
import schemas
from store import IssueStore

PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}

SORT_KEYS = ("created_at", "priority")
SORT_ORDERS = ("asc", "desc")

ALL = "all"
MINE = "mine"
UNASSIGNED = "unassigned"
OFFICER_VIEWS = (ALL, MINE, UNASSIGNED)


@dataclass
class IssueQuery:
    search: Optional[str] = None
    category: Optional[str] = None
    sort: str = "created_at"
    order: str = "desc"

    def validate(self):
        violations = {}
        if self.sort not in SORT_KEYS:
            violations["sort"] = [f"Sort must be one of: {', '.join(SORT_KEYS)}"]
        if self.order not in SORT_ORDERS:
            violations["order"] = ["Order must be asc or desc"]
        if self.category and self.category not in models.CATEGORIES:
            violations["category"] = [f"Category must be one of: {', '.join(models.CATEGORIES)}"]
        if violations:
            raise errors.ValidationError(violations)


def matches_search(issue: models.Issue, text: str) -> bool:
    needle = text.strip().lower()
    if not needle:
        return True
    return any(needle in (value or "").lower() for value in (issue.title, issue.description, issue.location))


def filter_issues(issues: Iterable[models.Issue], search: Optional[str] = None, category: Optional[str] = None):
    out = []
    for issue in issues:
        if category and issue.category != category:
            continue
        if search and not matches_search(issue, search):
            continue
        out.append(issue)
    return out


def sort_issues(issues: Iterable[models.Issue], sort: str = "created_at", order: str = "desc") -> List[models.Issue]:
    # created_at then id always trail the key, so equal priorities never swap between calls
    if sort == "priority":
        key = lambda i: (PRIORITY_RANK.get(i.priority, 0), i.created_at, i.id)
    else:
        key = lambda i: (i.created_at, i.id)
    return sorted(issues, key=key, reverse=(order == "desc"))


def count_by_status(issues: Iterable[models.Issue]) -> schemas.StatusCounts:
    counts = schemas.StatusCounts()
    for issue in issues:
        counts.total += 1
        if issue.status == models.PENDING:
            counts.pending += 1
        elif issue.status == models.IN_PROGRESS:
            counts.in_progress += 1
        elif issue.status == models.RESOLVED:
            counts.resolved += 1
        elif issue.status == models.REJECTED:
            counts.rejected += 1
    return counts


def apply_query(issues, query: IssueQuery):
    query.validate()
    filtered = filter_issues(issues, query.search, query.category)
    return sort_issues(filtered, query.sort, query.order)


def issuer_dashboard(store: IssueStore, user: models.User, query: IssueQuery) -> schemas.IssuerDashboard:
    issues = store.list_issues_by_reporter(user.id)
    return schemas.IssuerDashboard(
        issues=[schemas.issue_from_model(i) for i in apply_query(issues, query)],
        counts=count_by_status(issues),
    )


def officer_dashboard(
    store: IssueStore,
    officer: models.User,
    query: IssueQuery,
    view: str = ALL,
    zone_only: bool = False,
) -> schemas.OfficerDashboard:
    """Issues in the officer's category, optionally narrowed to their zone.

    Counts cover the whole scope; ``view`` and ``query`` only narrow the list.
    """
    if officer.role != models.OFFICER:
        raise errors.PermissionDenied("Only officers have an officer dashboard")
    if view not in OFFICER_VIEWS:
        raise errors.ValidationError({"view": [f"View must be one of: {', '.join(OFFICER_VIEWS)}"]})

    scope = store.list_issues_by_officer_scope(officer.category, officer.zone if zone_only else None)
    if view == MINE:
        listed = [i for i in scope if i.assigned_officer_id == officer.id]
    elif view == UNASSIGNED:
        listed = [i for i in scope if i.assigned_officer_id is None]
    else:
        listed = scope

    return schemas.OfficerDashboard(
        view=view,
        issues=[schemas.issue_from_model(i) for i in apply_query(listed, query)],
        counts=count_by_status(scope),
        assigned_to_me=sum(1 for i in scope if i.assigned_officer_id == officer.id),
    )
