"""Error taxonomy shared by the store, the lifecycle controller and the verifiers.

Every error carries the HTTP status and machine code the API answers with, so
route handlers raise and the single exception handler in ``main`` renders.
"""

from typing import Dict, List, Optional


class CivicError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail}


class ValidationError(CivicError):
    """Bad input. ``violations`` maps each offending field to all its messages."""

    status_code = 422
    code = "validation_error"

    def __init__(self, violations: Dict[str, List[str]], detail: Optional[str] = None):
        self.violations = violations
        fields = ", ".join(sorted(violations))
        super().__init__(detail or f"Invalid fields: {fields}")

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["violations"] = self.violations
        return body


class InvalidInput(CivicError):
    status_code = 400
    code = "invalid_input"


class PermissionDenied(CivicError):
    status_code = 403
    code = "permission_denied"


class NotFound(CivicError):
    status_code = 404
    code = "not_found"


class IllegalTransition(CivicError):
    status_code = 409
    code = "illegal_transition"


class Conflict(CivicError):
    status_code = 412
    code = "conflict"


class VerifierUnavailable(CivicError):
    """The verifier timed out or failed. Distinct from a rejection: retry later."""

    status_code = 503
    code = "verifier_unavailable"
