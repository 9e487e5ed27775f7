"""Error taxonomy for the defect criteria core."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CriteriaError(Exception):
    """Base class for every failure raised by the criteria core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CriteriaError):
    """Malformed or incomplete rule, procedure or finding input."""


class NotFoundError(CriteriaError):
    """Reference to a procedure, rule or parameter that does not exist."""


class ConflictError(CriteriaError):
    """The store detected a concurrent modification; refetch and retry."""


class DependencyError(CriteriaError):
    """Storage or library collaborator unavailable."""
