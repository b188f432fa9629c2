"""Image verification behind a swappable ``Verifier`` interface.

``MockVerifier`` simulates the AI check with injected randomness, ``RemoteVerifier``
calls a real verification service over HTTP, and ``TimedVerifier`` bounds any
verifier with a timeout. The lifecycle code only ever sees persisted flags, so
none of these are imported outside the verification routes.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

import requests
from requests.adapters import HTTPAdapter, Retry

import errors
import models

logger = logging.getLogger(__name__)


@dataclass
class VerificationOutcome:
    accepted: bool
    message: str


@dataclass
class ImprovementArea:
    name: str
    improvement_ratio: float
    details: str


@dataclass
class ResolutionOutcome:
    resolved: bool
    message: str
    areas: List[ImprovementArea] = field(default_factory=list)
    overall_improvement: Optional[float] = None


class Verifier(Protocol):
    def verify_submission(self, images: Sequence[str], category: str) -> VerificationOutcome:
        ...

    def verify_resolution(
        self, before_images: Sequence[str], after_images: Sequence[str], category: str
    ) -> ResolutionOutcome:
        ...


def check_inputs(category: str, *image_lists: Sequence[str]):
    for images in image_lists:
        if not images:
            raise errors.InvalidInput("At least one image is required for verification")
    if category not in models.CATEGORIES:
        raise errors.InvalidInput(f"Unknown category: {category}")


# (name, (low, span) when resolved, (low, span) when not, resolved text, unresolved text)
AREA_PROFILES = (
    (
        "Cleanliness",
        (0.4, 0.6),
        (0.0, 0.4),
        "Significant improvement in cleanliness observed.",
        "Minor improvement in cleanliness, but not sufficient.",
    ),
    (
        "Structural Integrity",
        (0.3, 0.7),
        (0.0, 0.3),
        "Structure has been properly repaired.",
        "Some repair work done, but structure still needs attention.",
    ),
    (
        "Safety Hazards",
        (0.1, 0.9),
        (0.0, 0.2),
        "All safety hazards have been addressed.",
        "Safety issues still present and need immediate attention.",
    ),
)


class MockVerifier:
    """Random-outcome stand-in for the AI model.

    With a ``seed`` every call draws from a generator seeded by the seed, the
    operation and its inputs, so repeating a call repeats its outcome. Without
    one, outcomes come from a private unseeded generator.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        submission_accept_rate: float = 0.85,
        resolution_accept_rate: float = 0.7,
        latency: float = 0.0,
    ):
        self.seed = seed
        self.submission_accept_rate = submission_accept_rate
        self.resolution_accept_rate = resolution_accept_rate
        self.latency = latency
        self._rng = random.Random()

    def _rng_for(self, *parts) -> random.Random:
        if self.seed is None:
            return self._rng
        return random.Random(repr((self.seed,) + parts))

    def _simulate_delay(self):
        if self.latency > 0:
            time.sleep(self.latency)

    def verify_submission(self, images: Sequence[str], category: str) -> VerificationOutcome:
        check_inputs(category, images)
        rng = self._rng_for(models.SUBMISSION, category, list(images))
        self._simulate_delay()

        if rng.random() < self.submission_accept_rate:
            return VerificationOutcome(True, f"Image verified successfully for category: {category}")
        return VerificationOutcome(
            False,
            f"Image does not clearly show a {category} issue. Please upload a clearer image.",
        )

    def verify_resolution(
        self, before_images: Sequence[str], after_images: Sequence[str], category: str
    ) -> ResolutionOutcome:
        check_inputs(category, before_images, after_images)
        rng = self._rng_for(models.RESOLUTION, category, list(before_images), list(after_images))
        self._simulate_delay()

        improvement = rng.random()
        resolved = improvement >= 1 - self.resolution_accept_rate

        areas = []
        for name, hit, miss, hit_text, miss_text in AREA_PROFILES:
            low, span = hit if resolved else miss
            areas.append(
                ImprovementArea(
                    name=name,
                    improvement_ratio=low + rng.random() * span,
                    details=hit_text if resolved else miss_text,
                )
            )

        if resolved:
            message = f"The {category} issue has been successfully resolved."
        else:
            message = f"The {category} issue has not been fully resolved. Please address remaining issues."
        return ResolutionOutcome(resolved, message, areas, improvement)


class RemoteVerifier:
    """Client for an external verification service.

    The service takes ``{verificationType, category, beforeImageUrls,
    afterImageUrls}`` and answers ``{isValid, feedback, areas?,
    overallImprovement?}``. Any transport or protocol failure surfaces as
    ``VerifierUnavailable``, never as a rejection.
    """

    def __init__(self, url: str, timeout: float = 10.0, retries: int = 2, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            retry = Retry(total=retries, connect=retries, backoff_factor=0.3, status_forcelist=(502, 503, 504),
                          allowed_methods=frozenset(["POST"]))
            session.mount("http://", HTTPAdapter(max_retries=retry))
            session.mount("https://", HTTPAdapter(max_retries=retry))
        self.session = session

    def _call(self, payload: dict) -> dict:
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            logger.warning("Verification service call failed: %s", e)
            raise errors.VerifierUnavailable("Verification service is unavailable, try again later") from e
        except ValueError as e:
            raise errors.VerifierUnavailable("Verification service returned an unreadable response") from e

        if not isinstance(body, dict) or not isinstance(body.get("isValid"), bool):
            raise errors.VerifierUnavailable("Verification service returned an unexpected response")
        return body

    def verify_submission(self, images: Sequence[str], category: str) -> VerificationOutcome:
        check_inputs(category, images)
        body = self._call({
            "verificationType": "issue",
            "category": category,
            "beforeImageUrls": list(images),
            "afterImageUrls": [],
        })
        return VerificationOutcome(body["isValid"], body.get("feedback") or "")

    def verify_resolution(
        self, before_images: Sequence[str], after_images: Sequence[str], category: str
    ) -> ResolutionOutcome:
        check_inputs(category, before_images, after_images)
        body = self._call({
            "verificationType": "resolution",
            "category": category,
            "beforeImageUrls": list(before_images),
            "afterImageUrls": list(after_images),
        })
        try:
            areas = [
                ImprovementArea(
                    name=str(a["name"]),
                    improvement_ratio=min(max(float(a["improvement"]), 0.0), 1.0),
                    details=str(a.get("details", "")),
                )
                for a in body.get("areas") or []
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise errors.VerifierUnavailable("Verification service returned malformed areas") from e
        return ResolutionOutcome(body["isValid"], body.get("feedback") or "", areas, body.get("overallImprovement"))


class TimedVerifier:
    """Runs another verifier's calls on a worker thread and gives up after ``timeout`` seconds."""

    def __init__(self, inner: Verifier, timeout: float, max_workers: int = 4):
        self.inner = inner
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="verifier")

    def _run(self, fn, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("Verifier did not answer within %.1fs", self.timeout)
            raise errors.VerifierUnavailable(
                f"Verifier did not answer within {self.timeout:g} seconds, try again later"
            )

    def verify_submission(self, images: Sequence[str], category: str) -> VerificationOutcome:
        return self._run(self.inner.verify_submission, images, category)

    def verify_resolution(
        self, before_images: Sequence[str], after_images: Sequence[str], category: str
    ) -> ResolutionOutcome:
        return self._run(self.inner.verify_resolution, before_images, after_images, category)

    def shutdown(self):
        self._executor.shutdown(wait=False)
