"""Central error types raised by the diagnosis pipeline.

Every error that crosses the public API carries a stable ``code`` string
(``too_few_points``, ``too_many_points``, ``invalid_points``,
``internal_error``, ``cancelled``) plus a ``details`` mapping, so callers can
translate them into transport-level responses without parsing messages.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class DiagnosisError(RuntimeError):
    """Base error for failures surfaced by :func:`pytrackdoctor.diagnose`."""

    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": dict(self.details)}


class PointValidationError(DiagnosisError, ValueError):
    """Raised when the input batch is rejected before any processing."""

    code = "invalid_points"


class TooFewPointsError(PointValidationError):
    """Raised when fewer points than the minimum are supplied."""

    code = "too_few_points"

    def __init__(self, received: int, limit: int):
        super().__init__(
            f"At least {limit} points are required, got {received}.",
            {"field": "points", "limit": limit, "received": received},
        )


class TooManyPointsError(PointValidationError):
    """Raised when the batch exceeds the per-request point limit."""

    code = "too_many_points"

    def __init__(self, received: int, limit: int):
        super().__init__(
            f"At most {limit} points are accepted, got {received}.",
            {"field": "points", "limit": limit, "received": received},
        )


class InvalidPointsError(PointValidationError):
    """Raised when one or more points have malformed or out-of-range values."""

    code = "invalid_points"

    def __init__(self, invalid_indices: Sequence[int], reasons: Optional[Dict[int, str]] = None):
        indices = [int(i) for i in invalid_indices]
        preview = ", ".join(str(i) for i in indices[:10])
        if len(indices) > 10:
            preview += ", ..."
        super().__init__(
            f"{len(indices)} invalid point(s) at indices [{preview}].",
            {"field": "points", "invalid_indices": indices, "reasons": dict(reasons or {})},
        )
        self.invalid_indices = indices


class InternalDiagnosisError(DiagnosisError):
    """Raised on unexpected numerical failures or broken accounting invariants."""

    code = "internal_error"


class DiagnosisCancelledError(DiagnosisError):
    """Raised when the caller cancels a running diagnosis."""

    code = "cancelled"


class InvalidOptionsError(ValueError):
    """Raised when diagnosis options hold unusable values."""


__all__ = [
    "DiagnosisError",
    "PointValidationError",
    "TooFewPointsError",
    "TooManyPointsError",
    "InvalidPointsError",
    "InternalDiagnosisError",
    "DiagnosisCancelledError",
    "InvalidOptionsError",
]
