"""Failure kinds of the database assistant.

Phase boundaries (synthesize, guard, execute, compose) convert dependency
failures into one of these before handing control back to the orchestrator.
"""


class AssistantError(Exception):
    """Base class for every assistant failure."""


class SchemaConfigurationError(AssistantError):
    """The allow-list names a table or column the database does not have."""


class GenerationUnavailable(AssistantError):
    """Generation backend unreachable, timed out, disabled or returned garbage."""


class GuardRejected(AssistantError):
    """Candidate SQL broke a safety rule."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ExecutionFailed(AssistantError):
    """An approved statement failed while running."""

    def __init__(self, reason: str, kind: str = "error", timed_out: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.kind = kind
        self.timed_out = timed_out

    @property
    def retryable(self) -> bool:
        return self.kind in ("timeout", "connection", "error")


class NotOwned(AssistantError):
    """The conversation belongs to another user."""


class ComposerUnavailable(AssistantError):
    """Answer composition failed after the query succeeded."""
