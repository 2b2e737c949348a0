"""
State machine that enforces the form lifecycle.

This is the core enforcement mechanism - every status change MUST go through
here. The rules live in a transition table keyed by (status, action, role);
adding a role or a state is a change to TRANSITIONS, not to control flow.

Nothing in this module touches the database: ``decide`` inspects a form and
a principal and either returns the transition to apply or raises the
refusal, and ``apply`` mutates an already-loaded form in memory. The
repository decides when that mutation becomes visible.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from formflow.models.audit import AuditAction
from formflow.models.enums import FormAction, FormStatus, Role, Scope
from formflow.models.principal import Principal
from formflow.services.errors import ConflictError, ForbiddenError, NotFoundError


@dataclass(frozen=True)
class Transition:
    """One edge of the lifecycle graph, as seen by one role."""
    from_status: FormStatus
    action: FormAction
    role: Role
    to_status: FormStatus
    audit_action: str
    scope: Scope
    stamp: Optional[str] = None  # form attribute set to the actor id
    details: str = ""


TRANSITIONS: Tuple[Transition, ...] = (
    Transition(
        FormStatus.DRAFT, FormAction.SUBMIT, Role.OPERATOR, FormStatus.SUBMITTED,
        AuditAction.SUBMITTED, Scope.OWNER, details="Form submitted for review",
    ),
    # Supervisor review of their own department's submissions
    Transition(
        FormStatus.SUBMITTED, FormAction.APPROVE, Role.SUPERVISOR, FormStatus.APPROVED,
        AuditAction.APPROVED, Scope.DEPARTMENT, stamp="approved_by",
        details="Form approved by supervisor",
    ),
    Transition(
        FormStatus.SUBMITTED, FormAction.ESCALATE, Role.SUPERVISOR, FormStatus.REVIEWED,
        AuditAction.ESCALATED, Scope.DEPARTMENT, stamp="reviewed_by",
        details="Form escalated to admin",
    ),
    Transition(
        FormStatus.SUBMITTED, FormAction.DISAPPROVE, Role.SUPERVISOR, FormStatus.DISAPPROVED,
        AuditAction.DISAPPROVED, Scope.DEPARTMENT, details="Form disapproved by supervisor",
    ),
    # Admin decisions, from either review stage
    Transition(
        FormStatus.SUBMITTED, FormAction.APPROVE, Role.ADMIN, FormStatus.APPROVED,
        AuditAction.APPROVED, Scope.ANY, stamp="approved_by", details="Form approved by admin",
    ),
    Transition(
        FormStatus.REVIEWED, FormAction.APPROVE, Role.ADMIN, FormStatus.APPROVED,
        AuditAction.APPROVED, Scope.ANY, stamp="approved_by", details="Form approved by admin",
    ),
    Transition(
        FormStatus.SUBMITTED, FormAction.REJECT, Role.ADMIN, FormStatus.REJECTED,
        AuditAction.REJECTED, Scope.ANY, details="Form rejected by admin",
    ),
    Transition(
        FormStatus.REVIEWED, FormAction.REJECT, Role.ADMIN, FormStatus.REJECTED,
        AuditAction.REJECTED, Scope.ANY, details="Form rejected by admin",
    ),
    Transition(
        FormStatus.SUBMITTED, FormAction.DISAPPROVE, Role.ADMIN, FormStatus.DISAPPROVED,
        AuditAction.DISAPPROVED, Scope.ANY, details="Form disapproved by admin",
    ),
    Transition(
        FormStatus.REVIEWED, FormAction.DISAPPROVE, Role.ADMIN, FormStatus.DISAPPROVED,
        AuditAction.DISAPPROVED, Scope.ANY, details="Form disapproved by admin",
    ),
)


class TransitionTable:
    """Lookup views over a set of transitions."""

    def __init__(self, transitions: Tuple[Transition, ...] = TRANSITIONS):
        self.transitions = transitions
        self._by_key: Dict[Tuple[FormStatus, FormAction, Role], Transition] = {}
        self._scopes: Dict[Tuple[FormAction, Role], Scope] = {}

        for t in transitions:
            key = (t.from_status, t.action, t.role)
            if key in self._by_key:
                raise ValueError(f"Duplicate transition for {key}")
            self._by_key[key] = t

            # A role must be scoped the same way for an action regardless of source status
            existing = self._scopes.setdefault((t.action, t.role), t.scope)
            if existing != t.scope:
                raise ValueError(f"Inconsistent scope for {t.action.value} by {t.role.value}")

    def lookup(self, status: FormStatus, action: FormAction, role: Role) -> Optional[Transition]:
        return self._by_key.get((status, action, role))

    def roles_for(self, action: FormAction) -> FrozenSet[Role]:
        return frozenset(role for (a, role) in self._scopes if a == action)

    def scope_for(self, action: FormAction, role: Role) -> Optional[Scope]:
        return self._scopes.get((action, role))

    def edges(self) -> FrozenSet[Tuple[FormStatus, FormStatus]]:
        """The lifecycle graph, independent of role."""
        return frozenset((t.from_status, t.to_status) for t in self.transitions)

    def outgoing(self, status: FormStatus, role: Role) -> List[Transition]:
        return [t for t in self.transitions if t.from_status == status and t.role == role]


def in_scope(scope: Scope, form, principal: Principal) -> bool:
    """Does the principal stand in the relationship to the form that ``scope`` demands?"""
    if scope == Scope.OWNER:
        return form.submitted_by == principal.id
    if scope == Scope.DEPARTMENT:
        return form.department == principal.department
    return True


class FormLifecycle:
    """Decides and applies lifecycle transitions."""

    def __init__(self, table: Optional[TransitionTable] = None):
        self.table = table or TransitionTable()

    def decide(
        self,
        form,
        principal: Principal,
        action: FormAction,
        required_role: Optional[Role] = None
    ) -> Transition:
        """
        Validate a transition request against a loaded form.

        Validation order (existence is settled by whoever loaded ``form``):
        - role permitted for the action (and for the channel, if given) → Forbidden
        - ownership/department scope → NotFound, so out-of-scope forms stay invisible
        - current status is a valid source for the action → Conflict
        """
        permitted = self.table.roles_for(action)
        if principal.role not in permitted or (required_role and principal.role != required_role):
            raise ForbiddenError(
                f"Role '{principal.role.value}' may not {action.value} forms"
            )

        scope = self.table.scope_for(action, principal.role)
        if not in_scope(scope, form, principal):
            raise NotFoundError("Form not found")

        transition = self.table.lookup(form.status, action, principal.role)
        if transition is None:
            raise ConflictError(
                f"Form is not in a state that allows '{action.value}' "
                f"(current status: {form.status.value})"
            )
        return transition

    def apply(
        self,
        form,
        transition: Transition,
        principal: Principal,
        comment: Optional[str] = None
    ) -> None:
        """
        Mutate a form along a decided transition.

        Status, stamp, audit entry and optional comment change together; the
        caller persists them in one unit.
        """
        if form.status != transition.from_status:
            raise ConflictError(
                f"Form moved to '{form.status.value}' before '{transition.action.value}' applied"
            )

        form.status = transition.to_status
        if transition.stamp:
            setattr(form, transition.stamp, principal.id)
        form.updated_at = datetime.utcnow()
        form.add_audit_entry(transition.audit_action, principal.id, transition.details)

        message = (comment or "").strip()
        if message:
            form.add_comment(principal.id, message)

    def available_actions(self, form, principal: Principal) -> List[FormAction]:
        """Actions the principal could successfully request right now."""
        return [
            t.action
            for t in self.table.outgoing(form.status, principal.role)
            if in_scope(t.scope, form, principal)
        ]

    @staticmethod
    def check_owned_draft(form, principal: Principal) -> None:
        """
        Drafts are editable and deletable by their owner only.

        Anything else - wrong owner, already submitted - is reported as
        NotFound so the caller cannot tell forbidden from absent.
        """
        if (
            not principal.is_operator
            or form.submitted_by != principal.id
            or form.status != FormStatus.DRAFT
        ):
            raise NotFoundError("Draft form not found")
