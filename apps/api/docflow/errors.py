"""Error taxonomy for the orchestration engine.

Each error carries the HTTP status the API surfaces it with, so the same
exceptions can be raised from the engine, the CLI and the routes.
"""

from __future__ import annotations

from typing import Any

from fastapi import status


class DocflowError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "internal_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "error": self.error}
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# The request was invalid
# =============================================================================

class ValidationError(DocflowError):
    """Rejected synchronously; nothing was persisted."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "bad_request"


class CycleDetectedError(ValidationError):
    error = "cycle_detected"


class NoActiveAgentsError(ValidationError):
    error = "no_active_agents"

    def __init__(self, message: str = "No active agent is configured"):
        super().__init__(message)


class AgentConfigurationError(ValidationError):
    """An agent is missing the prompts it needs to run."""

    error = "agent_misconfigured"


class NotFoundError(DocflowError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "not_found"


class ConflictError(DocflowError):
    status_code = status.HTTP_409_CONFLICT
    error = "conflict"


class RunAlreadyFinishedError(ConflictError):
    """Cancelling a run that already reached a terminal state."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "run_finished"


# =============================================================================
# The system could not complete the request
# =============================================================================

class ExternalServiceError(DocflowError):
    """The agent call or the queue broker failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error = "external_service_error"
