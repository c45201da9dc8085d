"""
Error taxonomy for the evolver.

Controllers map these onto HTTP status codes; everything below the HTTP
layer raises them (or lets them propagate) instead of returning sentinels.
"""

from typing import Optional


class EvolverError(Exception):
    """Base class for all evolver errors."""


class ValidationError(EvolverError):
    """Missing or invalid configuration / request data."""


class InvalidTransitionError(ValidationError):
    """A status change that the entity's state machine does not allow."""

    def __init__(self, entity: str, current, target):
        self.entity = entity
        self.current = getattr(current, "value", current)
        self.target = getattr(target, "value", target)
        super().__init__(f"{entity} cannot transition from '{self.current}' to '{self.target}'")


class NotFoundError(EvolverError):
    """Missing evaluation, epoch, prompt, persona or session."""

    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} '{item_id}' not found")


class ProviderError(EvolverError):
    """Wraps a failure in an upstream audio, LLM, HTTP or storage provider."""

    def __init__(self, provider: str, message: str, cause: Optional[BaseException] = None):
        self.provider = provider
        self.cause = cause
        super().__init__(f"{provider}: {message}")


class SessionTimeoutError(EvolverError, TimeoutError):
    """A voice session hit its hard duration ceiling."""

    def __init__(self, session_id: str, limit_seconds: float):
        self.session_id = session_id
        self.limit_seconds = limit_seconds
        super().__init__(f"Session {session_id} exceeded hard limit of {limit_seconds:.0f}s")


class PartialBatchFailure(EvolverError):
    """Some, but not all, sessions in a run failed. Informational only."""

    def __init__(self, test_run_id: str, completed: int, failed: int):
        self.test_run_id = test_run_id
        self.completed = completed
        self.failed = failed
        super().__init__(f"Test run {test_run_id}: {failed} of {completed + failed} sessions failed")
