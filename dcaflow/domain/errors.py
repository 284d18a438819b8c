"""Domain-level exceptions for the DCA orchestration engine."""


class DcaflowError(Exception):
    """Base class for engine errors."""

    pass


class ValidationError(DcaflowError, ValueError):
    """Raised when a request, plan or identifier is malformed. Never retried."""

    pass


class ArtifactError(DcaflowError, ValueError):
    """Raised when an artifact operation would break the parent/child invariant."""

    pass


class PermissionDeniedError(DcaflowError):
    """Raised when a delegation or permission check rejects a plan."""

    pass


class CollaboratorError(DcaflowError):
    """Raised when an external collaborator fails or returns an unusable result."""

    def __init__(self, message: str, *, collaborator: str | None = None) -> None:
        super().__init__(message)
        self.collaborator = collaborator


class OrchestrationError(DcaflowError):
    """Raised when a critical workflow step fails and the run is aborted."""

    def __init__(
        self,
        message: str,
        *,
        orchestration_id: str,
        session_id: str,
        step_id: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.orchestration_id = orchestration_id
        self.session_id = session_id
        self.step_id = step_id
        self.cause = cause

    def __str__(self) -> str:
        if self.step_id is None:
            return self.message
        return f"{self.message} (step: {self.step_id})"
