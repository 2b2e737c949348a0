"""Enums for the form workflow - these define the valid values for roles, states and actions."""
from enum import Enum


class Role(str, Enum):
    """The three roles a principal can hold. No other roles are allowed."""
    OPERATOR = "operator"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"


class FormStatus(str, Enum):
    """The six states a form can be in."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISAPPROVED = "disapproved"


TERMINAL_STATUSES = frozenset({
    FormStatus.APPROVED,
    FormStatus.REJECTED,
    FormStatus.DISAPPROVED,
})


class FormAction(str, Enum):
    """Lifecycle actions a principal may request on an existing form."""
    SUBMIT = "submit"
    APPROVE = "approve"
    ESCALATE = "escalate"
    DISAPPROVE = "disapprove"
    REJECT = "reject"


# Decisions accepted by the two review channels
SUPERVISOR_DECISIONS = frozenset({FormAction.APPROVE, FormAction.ESCALATE, FormAction.DISAPPROVE})
ADMIN_DECISIONS = frozenset({FormAction.APPROVE, FormAction.REJECT, FormAction.DISAPPROVE})


class Scope(str, Enum):
    """Which relationship between actor and form a transition requires."""
    OWNER = "owner"
    DEPARTMENT = "department"
    ANY = "any"


class FileType(str, Enum):
    """Coarse attachment classification used for display."""
    IMAGE = "image"
    PDF = "pdf"
    DOCUMENT = "document"
    OTHER = "other"
