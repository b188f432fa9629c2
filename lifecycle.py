"""Issue status state machine.

``TRANSITIONS`` is the only place that decides whether a status change is
legal. Guards read the already-persisted verification flags; nothing here calls
a verifier.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import errors
import models
from models import PENDING, IN_PROGRESS, RESOLVED, REJECTED

logger = logging.getLogger(__name__)

# A guard returns a reason the transition is refused, or None to allow it.
Guard = Callable[[models.Issue, models.User], Optional[str]]
Effect = Callable[[models.Issue, models.User], None]


def actor_is_officer(issue, actor):
    if actor.role != models.OFFICER:
        return "only officers can change an issue's status"
    return None


def submission_verified(issue, actor):
    if not issue.submission_verified:
        return "submission has not been verified"
    return None


def resolution_verified(issue, actor):
    if not issue.resolution_verified:
        return "resolution has not been verified"
    return None


def has_after_images(issue, actor):
    if not issue.after_images:
        return "at least one after image is required"
    return None


def assign_actor_if_unset(issue, actor):
    if issue.assigned_officer_id is None:
        issue.assigned_officer_id = actor.id


def stamp_resolved(issue, actor):
    issue.resolved_at = models.utcnow()


def no_effect(issue, actor):
    pass


@dataclass(frozen=True)
class Transition:
    guards: Tuple[Guard, ...]
    effect: Effect = no_effect


TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    (PENDING, IN_PROGRESS): Transition((actor_is_officer, submission_verified), assign_actor_if_unset),
    (PENDING, REJECTED): Transition((actor_is_officer,)),
    (IN_PROGRESS, RESOLVED): Transition((actor_is_officer, resolution_verified, has_after_images), stamp_resolved),
    (IN_PROGRESS, REJECTED): Transition((actor_is_officer,)),
    (IN_PROGRESS, PENDING): Transition((actor_is_officer,)),
}

TERMINAL_STATUSES = frozenset({RESOLVED, REJECTED})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def allowed_targets(status: str):
    return sorted(to for (frm, to) in TRANSITIONS if frm == status)


def refusal(issue: models.Issue, target: str, actor: models.User) -> Optional[str]:
    """Return why ``issue`` cannot move to ``target`` for ``actor``, or None if it can."""
    if target not in models.STATUSES:
        return f"unknown status '{target}'"
    transition = TRANSITIONS.get((issue.status, target))
    if transition is None:
        return f"cannot move from '{issue.status}' to '{target}'"
    for guard in transition.guards:
        reason = guard(issue, actor)
        if reason:
            return reason
    return None


def transition(issue: models.Issue, target: str, actor: models.User) -> models.Issue:
    """Move ``issue`` to ``target`` in place, or raise ``IllegalTransition`` leaving it untouched."""
    reason = refusal(issue, target, actor)
    if reason:
        raise errors.IllegalTransition(f"Issue {issue.id}: {reason}")

    previous = issue.status
    TRANSITIONS[(previous, target)].effect(issue, actor)
    issue.status = target
    logger.info("Issue %s moved %s -> %s by user %s", issue.id, previous, target, actor.id)
    return issue


def check_invariants(issue: models.Issue):
    """Raise ``IllegalTransition`` if ``issue`` breaks a lifecycle invariant.

    Run on every patched issue before it is written, so field edits cannot
    undo what the transition table guarantees.
    """
    if issue.status in (IN_PROGRESS, RESOLVED) and not issue.submission_verified:
        raise errors.IllegalTransition(f"Issue {issue.id}: a {issue.status} issue must stay submission-verified")
    if issue.status in (IN_PROGRESS, RESOLVED) and issue.assigned_officer_id is None:
        raise errors.IllegalTransition(f"Issue {issue.id}: a {issue.status} issue must have an assigned officer")
    if issue.status == RESOLVED and not (issue.resolution_verified and issue.after_images):
        raise errors.IllegalTransition(
            f"Issue {issue.id}: a resolved issue needs a verified resolution and an after image"
        )
