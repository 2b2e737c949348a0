"""
Form audit trail model.

Entries are immutable and append-only: one per accepted transition or
draft mutation. They are only ever written inside the same atomic update
that changes the owning form.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from formflow.database import Base


class FormAuditEntry(Base):
    """
    Immutable audit entry for reconstructing a form's history.

    Invariants:
    - Once written, never edited or deleted (except with its draft form)
    - Append-only, ordered by position
    - performed_by is always the principal that caused the entry
    """
    __tablename__ = "form_audit_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    form_id = Column(String(36), ForeignKey("forms.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    action = Column(String, nullable=False, index=True)  # e.g., "submitted"
    performed_by = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    details = Column(String, nullable=False, default="")

    form = relationship("Form", back_populates="audit_log")


# Audit action constants for consistency
class AuditAction:
    """Enumeration of audit actions."""
    # Draft lifecycle
    CREATED = "created"
    UPDATED = "updated"

    # Transitions
    SUBMITTED = "submitted"
    ESCALATED = "escalated"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISAPPROVED = "disapproved"


TERMINAL_AUDIT_ACTIONS = frozenset({
    AuditAction.APPROVED,
    AuditAction.REJECTED,
    AuditAction.DISAPPROVED,
})
