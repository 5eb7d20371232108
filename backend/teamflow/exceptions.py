"""Errors raised while validating, dispatching and running workflows."""


class TeamflowError(Exception):
    """Base class for workflow engine errors."""


class UnsupportedActionKind(TeamflowError):
    """Raised when an action's type has no registered handler."""

    def __init__(self, action_type: str | None):
        self.action_type = action_type
        super().__init__(f"Unknown action type: {action_type}")


class ActionExecutionError(TeamflowError):
    """Raised when a recognised action fails to perform its side effect."""

    def __init__(self, action_type: str, message: str):
        self.action_type = action_type
        self.message = message
        super().__init__(message)


class DefinitionNotFound(TeamflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__("Workflow not found")


class PreconditionDenied(TeamflowError):
    """Raised before a run exists, when the caller may not invoke the workflow.

    ``status_code`` carries the HTTP status the trigger surface answers with.
    """

    def __init__(self, reason: str, status_code: int = 400):
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)
