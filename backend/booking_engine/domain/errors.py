from dataclasses import dataclass
from typing import List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None
    status_code: int = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationError(DomainError):
    title: str = "Validation Error"
    type: str = "https://example.com/problems/validation-error"
    status_code: int = 422


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = "https://example.com/problems/not-found"
    status_code: int = 404


@dataclass
class ConflictError(DomainError):
    """Requested dates overlap an existing block on the unit."""

    title: str = "Availability Conflict"
    type: str = "https://example.com/problems/availability-conflict"
    status_code: int = 409


@dataclass
class InvalidTransition(DomainError):
    title: str = "Invalid Transition"
    type: str = "https://example.com/problems/invalid-transition"
    status_code: int = 409


@dataclass
class UpstreamFailure(DomainError):
    """Payment gateway unreachable or declined after bounded retries."""

    title: str = "Upstream Failure"
    type: str = "https://example.com/problems/upstream-failure"
    status_code: int = 502


@dataclass
class InvariantViolation(DomainError):
    title: str = "Invariant Violation"
    type: str = "https://example.com/problems/invariant-violation"
    status_code: int = 500
