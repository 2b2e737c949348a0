"""Read scoping: which forms a principal may list or fetch."""
from typing import Iterable, List

from formflow.models.enums import FormStatus, Role
from formflow.models.principal import Principal


def is_visible(principal: Principal, form) -> bool:
    """
    Visibility rules:
    - operator: only forms they submitted
    - supervisor: their department's forms awaiting review, plus anything they escalated
    - admin: everything
    """
    if principal.role == Role.ADMIN:
        return True
    if principal.role == Role.SUPERVISOR:
        awaiting_review = (
            form.department == principal.department
            and form.status == FormStatus.SUBMITTED
        )
        return awaiting_review or form.reviewed_by == principal.id
    if principal.role == Role.OPERATOR:
        return form.submitted_by == principal.id
    return False


def visible_set(principal: Principal, forms: Iterable) -> List:
    """Filter ``forms`` down to what the principal may see, preserving order."""
    return [form for form in forms if is_visible(principal, form)]
