"""
Errors raised by the workflow service layer.

These are NOT crashes - they are the system refusing a request, and every
one of them leaves the stored form unchanged. The HTTP layer maps ``kind``
to a status code.
"""


class WorkflowError(Exception):
    """Base class for expected, caller-recoverable refusals."""
    kind = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFoundError(WorkflowError):
    """Record absent, or present but outside the caller's visibility (deliberately conflated)."""
    kind = "not_found"


class ForbiddenError(WorkflowError):
    """The caller's role lacks rights for the requested action."""
    kind = "forbidden"


class ConflictError(WorkflowError):
    """The current status does not allow the action, including lost races."""
    kind = "conflict"


class InvalidError(WorkflowError):
    """Malformed input: missing required field, unknown action, rejected upload."""
    kind = "invalid"


class AttachmentStoreError(RuntimeError):
    """The blob store failed to store, read or release a blob."""
