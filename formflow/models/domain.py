"""Domain models - the form record, its owned sub-collections, and the template lookup."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Boolean, Enum as SQLEnum, JSON
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import relationship, validates
from formflow.database import Base
from formflow.models.audit import FormAuditEntry
from formflow.models.enums import FormStatus, FileType


def _new_id() -> str:
    return str(uuid.uuid4())


class Form(Base):
    """
    A form progresses: draft → submitted → reviewed → approved/rejected/disapproved.

    Invariants enforced here:
    - Status is always one of the six allowed states
    - department, submitted_by, reviewed_by and approved_by are written once
    - Every persisted change bumps ``version`` (optimistic concurrency)
    """
    __tablename__ = "forms"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    template = Column(String, nullable=False)
    department = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(FormStatus), nullable=False, default=FormStatus.DRAFT, index=True)

    submitted_by = Column(String, nullable=False, index=True)
    reviewed_by = Column(String, nullable=True, index=True)
    approved_by = Column(String, nullable=True)

    # Opaque payload, shape owned by the template collaborator
    form_data = Column(JSON, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Owned, append-only sub-collections
    attachments = relationship(
        "FormAttachment",
        back_populates="form",
        order_by="FormAttachment.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
    )
    comments = relationship(
        "FormComment",
        back_populates="form",
        order_by="FormComment.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
    )
    audit_log = relationship(
        FormAuditEntry,
        back_populates="form",
        order_by=FormAuditEntry.position,
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
    )

    @validates("department", "submitted_by", "reviewed_by", "approved_by")
    def _write_once(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(
                f"IMMUTABILITY VIOLATION: {key} is already set on form {self.id}"
            )
        return value

    def add_audit_entry(self, action: str, performed_by: str, details: str = "") -> FormAuditEntry:
        entry = FormAuditEntry(
            action=action,
            performed_by=performed_by,
            details=details,
            timestamp=datetime.utcnow(),
        )
        self.audit_log.append(entry)
        return entry

    def add_comment(self, author: str, message: str) -> "FormComment":
        comment = FormComment(author=author, message=message, timestamp=datetime.utcnow())
        self.comments.append(comment)
        return comment


class FormAttachment(Base):
    """
    Descriptor of a stored blob attached to a form.

    Invariants:
    - blob_id refers to a blob that finished storing before this row existed
    - Immutable once the owning form leaves draft
    """
    __tablename__ = "form_attachments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    form_id = Column(String(36), ForeignKey("forms.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    blob_id = Column(String, nullable=False, unique=True)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    file_type = Column(SQLEnum(FileType), nullable=False, default=FileType.OTHER)
    description = Column(String, nullable=False, default="")
    uploaded_by = Column(String, nullable=False)
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    form = relationship("Form", back_populates="attachments")


class FormComment(Base):
    """A message left on a form; append-only and visible to everyone who can see the form."""
    __tablename__ = "form_comments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    form_id = Column(String(36), ForeignKey("forms.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    author = Column(String, nullable=False)
    message = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    form = relationship("Form", back_populates="comments")


class FormTemplate(Base):
    """
    Read-only template lookup, used to label form data for display.

    The lifecycle never validates form_data against it.
    """
    __tablename__ = "form_templates"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False, index=True)
    department = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)
    fields = Column(JSON, nullable=False, default=list)  # [{id, label, type, required, options?}]
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
