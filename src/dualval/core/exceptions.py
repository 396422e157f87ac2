"""
DualVal Custom Exceptions

This module defines all custom exceptions used throughout the DualVal system.
Exceptions are organized by layer/responsibility.

Note: a node or workflow that does not reach the confidence threshold is an
expected outcome, not an error, and is never raised.
"""

from typing import Any


class DualValError(Exception):
    """Base exception for all DualVal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigurationError(DualValError):
    """Error in system configuration or missing required collaborator."""

    pass


class MissingCollaboratorError(ConfigurationError):
    """A required collaborator was not supplied at construction."""

    def __init__(self, component: str, collaborator: str):
        super().__init__(
            f"{component} requires a {collaborator}",
            {"component": component, "collaborator": collaborator},
        )


# =============================================================================
# EXTRACTION ERRORS
# =============================================================================


class ExtractionError(DualValError):
    """Base error for node extraction. Fatal, never retried."""

    pass


class MalformedArtifact(ExtractionError):
    """Artifact lacks required structural sections or references."""

    def __init__(self, message: str, missing_sections: list[str] | None = None, **details: Any):
        super().__init__(message, {"missing_sections": missing_sections or [], **details})
        self.missing_sections = missing_sections or []


class DependencyCycle(ExtractionError):
    """Node dependency graph is not a DAG."""

    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            {"cycle": cycle},
        )
        self.cycle = cycle


# =============================================================================
# PROVIDER ERRORS
# =============================================================================


class ProviderError(DualValError):
    """Base error for external generation/evaluation providers."""

    pass


class TransientProviderError(ProviderError):
    """Retryable provider failure (timeouts, 429, 5xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code


class GenerationUnavailable(ProviderError):
    """Content generation failed after bounded retries."""

    pass


class EvaluationUnavailable(ProviderError):
    """Content evaluation failed after bounded retries."""

    pass


# =============================================================================
# WORKFLOW ERRORS
# =============================================================================


class WorkflowError(DualValError):
    """Base error for workflow orchestration."""

    pass


class WorkflowNotFoundError(WorkflowError):
    """Workflow does not exist in the store."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})


class WorkflowStateError(WorkflowError):
    """Operation is not allowed in the workflow's current status."""

    def __init__(self, workflow_id: str, status: str, operation: str):
        super().__init__(
            f"Cannot {operation} workflow {workflow_id} in status '{status}'",
            {"workflow_id": workflow_id, "status": status, "operation": operation},
        )


class RevisionTimeout(WorkflowError):
    """Revised content did not arrive within policy."""

    def __init__(self, workflow_id: str, waited_seconds: float):
        super().__init__(
            f"Revision for workflow {workflow_id} not received within {waited_seconds:.0f}s",
            {"workflow_id": workflow_id, "waited_seconds": waited_seconds},
        )


class FeedbackNotAddressedError(WorkflowError):
    """Revision submitted without addressing blocking (critical) feedback."""

    def __init__(self, workflow_id: str, item_ids: list[str]):
        super().__init__(
            f"Critical feedback not addressed for workflow {workflow_id}",
            {"workflow_id": workflow_id, "item_ids": item_ids},
        )
        self.item_ids = item_ids


# =============================================================================
# DISAGREEMENT ERRORS
# =============================================================================


class DisagreementError(DualValError):
    """Base error for disagreement handling."""

    pass


class DisagreementNotFoundError(DisagreementError):
    """Disagreement does not exist."""

    def __init__(self, disagreement_id: str):
        super().__init__(
            f"Disagreement not found: {disagreement_id}", {"disagreement_id": disagreement_id}
        )


class DisagreementStateError(DisagreementError):
    """Illegal disagreement state transition."""

    def __init__(self, disagreement_id: str, status: str, target: str):
        super().__init__(
            f"Disagreement {disagreement_id} cannot move from '{status}' to '{target}'",
            {"disagreement_id": disagreement_id, "status": status, "target": target},
        )


# =============================================================================
# LEARNING ERRORS
# =============================================================================


class LearningError(DualValError):
    """Base error for the continuous learning engine."""

    pass


class RetrainingRateLimited(LearningError):
    """Retraining requested again before the minimum interval elapsed."""

    def __init__(self, target_model: str, retry_after_seconds: float):
        super().__init__(
            f"Retraining for '{target_model}' is rate limited",
            {"target_model": target_model, "retry_after_seconds": round(retry_after_seconds, 1)},
        )
        self.retry_after_seconds = retry_after_seconds


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(DualValError):
    """Error in storage operations."""

    pass
