from __future__ import annotations

from typing import Any, Sequence


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures."""

    kind = "OrchestrationError"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class ConfigurationError(OrchestrationError):
    """Raised for fatal misconfiguration detected before any work starts."""

    kind = "ConfigurationError"


class UnknownDependencyError(ConfigurationError):
    """Raised when a work item depends on an id that is not part of the batch."""

    kind = "UnknownDependencyError"


class ClassificationError(OrchestrationError):
    """Raised when the complexity classifier cannot assess a work item."""

    kind = "ClassificationError"


class ValidationError(OrchestrationError):
    """Raised when a document fails structural validation."""

    kind = "ValidationError"


class HandoffValidationError(ValidationError):
    """Raised when a handoff document is incomplete; the item keeps its current tier."""

    kind = "HandoffValidationError"

    def __init__(self, message: str, *, issues: Sequence[str], details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.issues = list(issues)


class ConsultationError(OrchestrationError):
    """Raised when a consultant is unavailable or its invocation fails."""

    kind = "ConsultationError"


class EscalationError(OrchestrationError):
    """Raised when a tier transition is not permitted."""

    kind = "EscalationError"


class CyclicDependencyError(ConfigurationError):
    """Raised when the dependency graph of a batch contains a cycle."""

    kind = "CyclicDependencyError"

    def __init__(self, message: str, *, cycle: Sequence[str]) -> None:
        super().__init__(message, details={"cycle": list(cycle)})
        self.cycle = list(cycle)


class ExhaustedError(OrchestrationError):
    """Raised when every recovery option for a work item has failed."""

    kind = "ExhaustedError"

    def __init__(self, message: str, *, recovery_path: Sequence[str], details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.recovery_path = list(recovery_path)


__all__ = [
    "OrchestrationError",
    "ConfigurationError",
    "UnknownDependencyError",
    "ClassificationError",
    "ValidationError",
    "HandoffValidationError",
    "ConsultationError",
    "EscalationError",
    "CyclicDependencyError",
    "ExhaustedError",
]
