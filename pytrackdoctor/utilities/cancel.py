"""Cooperative cancellation checks for long-running stages."""

from typing import Optional, Protocol

from pytrackdoctor.errors import DiagnosisCancelledError

# Loop iterations between two cancellation checks
CHECK_EVERY = 1024


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


def raise_if_cancelled(cancel: Optional[CancelToken], stage: str) -> None:
    """Raise :class:`DiagnosisCancelledError` if ``cancel`` has been set."""
    if cancel is not None and cancel.is_set():
        raise DiagnosisCancelledError(f"Diagnosis cancelled during {stage}", {"stage": stage})
