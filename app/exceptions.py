"""Domain exceptions for the pipeline rule engine."""


class PipelineError(Exception):
    """Base class for all engine errors.

    Carries a human-readable ``detail`` so API handlers can surface it
    verbatim.
    """

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(detail)


class NotFoundError(PipelineError):
    """Raised when a lead, rule or AI action does not exist."""

    def __init__(self, detail: str = "Not found"):
        super().__init__(detail)


class RuleValidationError(PipelineError):
    """Raised when a rule references an unknown field, operator, trigger or action."""

    def __init__(self, detail: str = "Invalid rule"):
        super().__init__(detail)


class InvalidTransitionError(PipelineError):
    """Raised when an AI action status change is not allowed by the state machine.

    Raised before any side effect runs; the row's status is untouched.
    """

    def __init__(self, detail: str = "Invalid status transition"):
        super().__init__(detail)


class ActionExecutionError(PipelineError):
    """Raised when the side effect behind an approved AI action fails."""

    def __init__(self, detail: str = "Action execution failed"):
        super().__init__(detail)


class SuggestionGeneratorError(PipelineError):
    """Raised when the external suggestion generator is unreachable or returns garbage."""

    def __init__(self, detail: str = "Suggestion generator unavailable"):
        super().__init__(detail)
