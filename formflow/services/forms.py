"""
Form workflow operations.

Each public method is one operation a caller (the HTTP layer, a script)
can invoke on behalf of a principal. They return the affected form or
raise a WorkflowError; a refusal never leaves a partial change behind.
"""
import logging
from datetime import datetime
from typing import BinaryIO, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from formflow.models.audit import AuditAction
from formflow.models.domain import Form, FormAttachment
from formflow.models.enums import (
    ADMIN_DECISIONS,
    SUPERVISOR_DECISIONS,
    FormAction,
    FormStatus,
    Role,
)
from formflow.models.principal import Principal
from formflow.services.attachments import (
    AttachmentStore,
    Upload,
    UploadPolicy,
    release_quietly,
    store_uploads,
)
from formflow.services.errors import (
    AttachmentStoreError,
    ConflictError,
    ForbiddenError,
    InvalidError,
    NotFoundError,
    WorkflowError,
)
from formflow.services.repository import FormRepository, KeyedLocks, record_locks
from formflow.services.state_machine import FormLifecycle
from formflow.services.visibility import is_visible, visible_set

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Form Submission"
DEFAULT_TEMPLATE = "general_form"


def parse_action(value, allowed) -> FormAction:
    """Turn a caller-supplied action name into a FormAction from ``allowed``."""
    name = (value.value if isinstance(value, FormAction) else str(value or "")).strip().lower()
    if not name:
        raise InvalidError("Action is required")
    try:
        action = FormAction(name)
    except ValueError:
        raise InvalidError(f"Unknown action '{name}'")
    if action not in allowed:
        choices = ", ".join(sorted(a.value for a in allowed))
        raise InvalidError(f"Action '{name}' is not one of: {choices}")
    return action


def _check_form_data(form_data) -> dict:
    if form_data is None:
        return {}
    if not isinstance(form_data, dict):
        raise InvalidError("Form data must be an object mapping field ids to values")
    return form_data


class FormService:
    """The operations exposed to callers, wired to one database session."""

    def __init__(
        self,
        db: Session,
        store: AttachmentStore,
        policy: Optional[UploadPolicy] = None,
        lifecycle: Optional[FormLifecycle] = None,
        locks: KeyedLocks = record_locks
    ):
        self.db = db
        self.store = store
        self.policy = policy or UploadPolicy()
        self.lifecycle = lifecycle or FormLifecycle()
        self.repository = FormRepository(db, locks)

    # Draft construction and mutation

    def create_draft(
        self,
        principal: Principal,
        title: Optional[str] = None,
        description: Optional[str] = None,
        template: Optional[str] = None,
        form_data: Optional[dict] = None,
        uploads: Sequence[Upload] = (),
        department: Optional[str] = None
    ) -> Form:
        """
        Create a draft owned by ``principal``.

        ``department`` is accepted for interface compatibility and ignored:
        a form always belongs to its operator's department.
        """
        if not principal.is_operator:
            raise ForbiddenError("Only operators can create forms")
        form_data = _check_form_data(form_data)

        if department and department != principal.department:
            logger.info(
                "Ignoring department '%s' supplied by %s; using '%s'",
                department, principal.id, principal.department
            )

        attachments = store_uploads(self.store, self.policy, list(uploads), principal.id)

        form = Form(
            title=(title or "").strip() or DEFAULT_TITLE,
            description=description or "",
            template=(template or "").strip() or DEFAULT_TEMPLATE,
            department=principal.department,
            status=FormStatus.DRAFT,
            submitted_by=principal.id,
            form_data=form_data,
        )
        for attachment in attachments:
            form.attachments.append(attachment)
        form.add_audit_entry(AuditAction.CREATED, principal.id, "Draft form created")

        try:
            form = self.repository.insert(form)
        except Exception:
            release_quietly(self.store, [a.blob_id for a in attachments])
            raise

        logger.info(
            "Form %s created by %s (%d attachments)", form.id, principal.id, len(attachments)
        )
        return form

    def update_draft(
        self,
        principal: Principal,
        form_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        form_data: Optional[dict] = None,
        uploads: Sequence[Upload] = ()
    ) -> Form:
        """Edit an owned draft; attachments can only be added, never replaced."""
        if title is not None and not title.strip():
            raise InvalidError("Title cannot be blank")
        if form_data is not None:
            _check_form_data(form_data)

        # Cheap pre-check so blobs are not stored for a draft we cannot touch;
        # the authoritative check runs again inside the atomic update.
        self.lifecycle.check_owned_draft(self.repository.load(form_id), principal)

        attachments = store_uploads(self.store, self.policy, list(uploads), principal.id)

        def edit(form: Form) -> Form:
            self.lifecycle.check_owned_draft(form, principal)
            if title is not None:
                form.title = title.strip()
            if description is not None:
                form.description = description
            if form_data is not None:
                form.form_data = form_data
            for attachment in attachments:
                form.attachments.append(attachment)
            form.updated_at = datetime.utcnow()
            form.add_audit_entry(AuditAction.UPDATED, principal.id, "Draft form updated")
            return form

        try:
            form = self._guarded_update(form_id, principal, "update", edit)
        except Exception:
            release_quietly(self.store, [a.blob_id for a in attachments])
            raise

        logger.info("Draft %s updated by %s", form_id, principal.id)
        return form

    def delete_draft(self, principal: Principal, form_id: str) -> None:
        """
        Delete an owned draft and release its blobs.

        Release is strict and all-or-nothing: every blob is quarantined
        before the row is deleted, and purged only once that delete has
        committed. If any quarantine or the commit fails, the quarantined
        blobs are restored, the draft is kept intact and the error
        propagates (ConflictError for a blob that could not be released).
        A blob already gone counts as released.
        """
        held: List[str] = []

        def quarantine_all(form: Form) -> None:
            self.lifecycle.check_owned_draft(form, principal)
            for attachment in form.attachments:
                try:
                    if self.store.quarantine(attachment.blob_id):
                        held.append(attachment.blob_id)
                    else:
                        logger.warning(
                            "Blob %s of draft %s was already missing", attachment.blob_id, form_id
                        )
                except AttachmentStoreError as e:
                    logger.error("Keeping draft %s: blob release failed: %s", form_id, e)
                    raise ConflictError(
                        f"Could not release attachment '{attachment.original_name}'; draft was not deleted"
                    ) from e

        try:
            self.repository.atomic_delete(form_id, quarantine_all)
        except Exception as e:
            self._restore(form_id, held)
            if isinstance(e, WorkflowError):
                logger.info("Refused delete on form %s by %s: %s", form_id, principal.id, e.kind)
            raise

        for blob_id in held:
            try:
                self.store.purge(blob_id)
            except AttachmentStoreError:
                # The record is gone; nothing references this blob any more
                logger.warning("Could not purge blob %s of deleted draft %s", blob_id, form_id, exc_info=True)
        logger.info("Draft %s deleted by %s", form_id, principal.id)

    def _restore(self, form_id: str, blob_ids: Sequence[str]) -> None:
        for blob_id in blob_ids:
            try:
                self.store.restore(blob_id)
            except AttachmentStoreError:
                logger.error("Could not restore blob %s of kept draft %s", blob_id, form_id, exc_info=True)

    # Lifecycle transitions

    def submit(self, principal: Principal, form_id: str, comment: Optional[str] = None) -> Form:
        return self._transition(principal, form_id, FormAction.SUBMIT, Role.OPERATOR, comment)

    def supervisor_decide(
        self,
        principal: Principal,
        form_id: str,
        action,
        comment: Optional[str] = None
    ) -> Form:
        """approve | escalate | disapprove a submitted form of the supervisor's department."""
        decision = parse_action(action, SUPERVISOR_DECISIONS)
        return self._transition(principal, form_id, decision, Role.SUPERVISOR, comment)

    def admin_decide(
        self,
        principal: Principal,
        form_id: str,
        action,
        comment: Optional[str] = None
    ) -> Form:
        """approve | reject | disapprove a submitted or reviewed form."""
        decision = parse_action(action, ADMIN_DECISIONS)
        return self._transition(principal, form_id, decision, Role.ADMIN, comment)

    def _transition(
        self,
        principal: Principal,
        form_id: str,
        action: FormAction,
        channel: Role,
        comment: Optional[str]
    ) -> Form:
        def step(form: Form) -> Form:
            transition = self.lifecycle.decide(form, principal, action, required_role=channel)
            self.lifecycle.apply(form, transition, principal, comment)
            return form

        form = self._guarded_update(form_id, principal, action.value, step)
        logger.info(
            "Form %s: %s by %s (%s) -> %s",
            form_id, action.value, principal.id, principal.role.value, form.status.value
        )
        return form

    # Comments

    def add_comment(self, principal: Principal, form_id: str, message: str) -> Form:
        text = (message or "").strip()
        if not text:
            raise InvalidError("Comment message is required")

        def append(form: Form) -> Form:
            if not is_visible(principal, form):
                raise NotFoundError("Form not found")
            form.add_comment(principal.id, text)
            form.updated_at = datetime.utcnow()
            return form

        return self._guarded_update(form_id, principal, "comment", append)

    # Reads

    def list_visible(self, principal: Principal) -> List[Form]:
        return visible_set(principal, self.repository.query_all())

    def get_visible(self, principal: Principal, form_id: str) -> Form:
        form = self.repository.load(form_id)
        if not is_visible(principal, form):
            raise NotFoundError("Form not found")
        return form

    def open_attachment(
        self,
        principal: Principal,
        form_id: str,
        blob_id: str
    ) -> Tuple[FormAttachment, BinaryIO]:
        form = self.get_visible(principal, form_id)
        attachment = next((a for a in form.attachments if a.blob_id == blob_id), None)
        if attachment is None:
            raise NotFoundError("Attachment not found")
        return attachment, self.store.open(blob_id)

    # Helpers

    def _guarded_update(self, form_id: str, principal: Principal, what: str, fn) -> Form:
        try:
            return self.repository.atomic_update(form_id, fn)
        except WorkflowError as e:
            logger.info(
                "Refused %s on form %s by %s (%s): %s",
                what, form_id, principal.id, principal.role.value, e.kind
            )
            raise
