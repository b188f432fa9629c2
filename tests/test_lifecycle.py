import itertools

import pytest

import errors
import lifecycle
import models
from models import PENDING, IN_PROGRESS, RESOLVED, REJECTED


def make_issue(status=PENDING, submission_verified=False, resolution_verified=False, after=(), assigned=None):
    issue = models.Issue(
        id="abc123",
        status=status,
        submission_verified=submission_verified,
        resolution_verified=resolution_verified,
        assigned_officer_id=assigned,
    )
    for url in after:
        issue.images.append(models.IssueImage(url=url, slot=models.AFTER))
    return issue


OFFICER = models.User(id=7, role=models.OFFICER)
ISSUER = models.User(id=3, role=models.ISSUER)


@pytest.mark.parametrize(
    "source,target",
    [pair for pair in itertools.product(models.STATUSES, repeat=2) if pair not in lifecycle.TRANSITIONS],
)
def test_transitions_outside_the_table_are_refused(source, target):
    issue = make_issue(status=source, submission_verified=True, resolution_verified=True,
                       after=["a.jpg"], assigned=OFFICER.id)
    with pytest.raises(errors.IllegalTransition):
        lifecycle.transition(issue, target, OFFICER)
    assert issue.status == source


def test_unknown_status_is_refused():
    issue = make_issue()
    with pytest.raises(errors.IllegalTransition):
        lifecycle.transition(issue, "closed", OFFICER)


def test_start_work_needs_verified_submission():
    issue = make_issue()
    with pytest.raises(errors.IllegalTransition, match="not been verified"):
        lifecycle.transition(issue, IN_PROGRESS, OFFICER)
    assert issue.status == PENDING
    assert issue.assigned_officer_id is None


def test_start_work_assigns_the_officer():
    issue = make_issue(submission_verified=True)
    lifecycle.transition(issue, IN_PROGRESS, OFFICER)
    assert issue.status == IN_PROGRESS
    assert issue.assigned_officer_id == OFFICER.id


def test_start_work_keeps_existing_assignee():
    issue = make_issue(submission_verified=True, assigned=99)
    lifecycle.transition(issue, IN_PROGRESS, OFFICER)
    assert issue.assigned_officer_id == 99


def test_issuers_cannot_move_issues():
    issue = make_issue(submission_verified=True)
    for target in (IN_PROGRESS, REJECTED):
        with pytest.raises(errors.IllegalTransition, match="only officers"):
            lifecycle.transition(issue, target, ISSUER)
    assert issue.status == PENDING


def test_resolve_needs_verified_resolution_and_after_image():
    issue = make_issue(IN_PROGRESS, submission_verified=True, assigned=OFFICER.id)
    with pytest.raises(errors.IllegalTransition):
        lifecycle.transition(issue, RESOLVED, OFFICER)

    issue.resolution_verified = True
    with pytest.raises(errors.IllegalTransition, match="after image"):
        lifecycle.transition(issue, RESOLVED, OFFICER)

    issue.images.append(models.IssueImage(url="after.jpg", slot=models.AFTER))
    lifecycle.transition(issue, RESOLVED, OFFICER)
    assert issue.status == RESOLVED
    assert issue.resolved_at is not None


def test_reopen_keeps_assignment_and_flags():
    issue = make_issue(IN_PROGRESS, submission_verified=True, assigned=OFFICER.id)
    lifecycle.transition(issue, PENDING, OFFICER)
    assert issue.status == PENDING
    assert issue.assigned_officer_id == OFFICER.id
    assert issue.submission_verified


@pytest.mark.parametrize("source", [PENDING, IN_PROGRESS])
def test_reject_from_open_states(source):
    issue = make_issue(source, submission_verified=True, assigned=OFFICER.id)
    lifecycle.transition(issue, REJECTED, OFFICER)
    assert issue.status == REJECTED
    assert lifecycle.is_terminal(REJECTED)


def test_allowed_targets():
    assert lifecycle.allowed_targets(PENDING) == [IN_PROGRESS, REJECTED]
    assert lifecycle.allowed_targets(IN_PROGRESS) == [PENDING, REJECTED, RESOLVED]
    assert lifecycle.allowed_targets(RESOLVED) == []
    assert lifecycle.allowed_targets(REJECTED) == []


def test_invariants_catch_unverified_in_progress():
    issue = make_issue(IN_PROGRESS, submission_verified=False, assigned=OFFICER.id)
    with pytest.raises(errors.IllegalTransition):
        lifecycle.check_invariants(issue)


def test_invariants_catch_unassigned_resolved():
    issue = make_issue(RESOLVED, submission_verified=True, resolution_verified=True, after=["a.jpg"])
    with pytest.raises(errors.IllegalTransition, match="assigned officer"):
        lifecycle.check_invariants(issue)


def test_invariants_hold_for_a_clean_resolution():
    issue = make_issue(RESOLVED, submission_verified=True, resolution_verified=True,
                       after=["a.jpg"], assigned=OFFICER.id)
    lifecycle.check_invariants(issue)
