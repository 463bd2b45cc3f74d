"""
Exception hierarchy for ontoforge.

Errors are grouped by how the pipeline reacts to them:
- TransientError: retried with bounded backoff
- LLMResponseError: recorded as a stage warning, deterministic fallback used
- InvariantViolation: stage and run fail immediately
- StageTimeoutError: the stage exceeded its time budget
- RunCancelled: cooperative cancellation observed at a checkpoint
"""

from __future__ import annotations

from typing import Optional


class OntoforgeError(Exception):
    """Base class for all ontoforge errors."""


class ConfigurationError(OntoforgeError):
    """Invalid or missing configuration."""


class TransientError(OntoforgeError):
    """A failure that is expected to succeed on retry (timeouts, dropped connections)."""


class InvariantViolation(OntoforgeError):
    """A logic or data invariant does not hold; retrying cannot help."""


class LLMResponseError(OntoforgeError):
    """The LLM returned output that could not be parsed or failed shape validation."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class StageTimeoutError(OntoforgeError):
    """A stage did not finish within its configured timeout."""

    def __init__(self, stage_name: str, timeout_seconds: float):
        super().__init__(f"Stage '{stage_name}' exceeded timeout of {timeout_seconds:.1f}s")
        self.stage_name = stage_name
        self.timeout_seconds = timeout_seconds


class RunCancelled(OntoforgeError):
    """Raised at a cancellation checkpoint once the run has been cancelled."""


class RunNotFoundError(OntoforgeError):
    """No run exists with the requested id."""


class RunNotResumableError(OntoforgeError):
    """The run is in a state that cannot be resumed (for example, cancelled)."""
