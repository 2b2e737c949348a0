"""The authenticated actor, handed to us by the auth collaborator."""
from dataclasses import dataclass

from formflow.models.enums import Role


@dataclass(frozen=True)
class Principal:
    """
    Who is invoking an operation.

    Trusted completely: no credential checks happen past this point.
    """
    id: str
    role: Role
    department: str

    @property
    def is_operator(self) -> bool:
        return self.role == Role.OPERATOR

    @property
    def is_supervisor(self) -> bool:
        return self.role == Role.SUPERVISOR

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
