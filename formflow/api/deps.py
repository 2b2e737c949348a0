"""FastAPI dependencies: the caller's principal and the wired-up services."""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from formflow.database import get_db
from formflow.models.enums import Role
from formflow.models.principal import Principal
from formflow.services.attachments import AttachmentStore, LocalAttachmentStore, UploadPolicy
from formflow.services.forms import FormService
from formflow.services.templates import TemplateDirectory


def get_principal(
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    role: Optional[str] = Header(None, alias="X-User-Role"),
    department: Optional[str] = Header(None, alias="X-User-Department"),
) -> Principal:
    """
    Principal as asserted by the upstream auth collaborator.

    Credentials were checked before the request reached us; we only insist
    the identity is complete.
    """
    if not (user_id or "").strip() or not (role or "").strip() or not (department or "").strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        parsed_role = Role(role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Unknown role '{role}'")
    return Principal(id=user_id.strip(), role=parsed_role, department=department.strip())


@lru_cache()
def get_attachment_store() -> AttachmentStore:
    return LocalAttachmentStore()


@lru_cache()
def get_upload_policy() -> UploadPolicy:
    return UploadPolicy()


def get_form_service(
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
    policy: UploadPolicy = Depends(get_upload_policy),
) -> FormService:
    return FormService(db, store, policy)


def get_template_directory(db: Session = Depends(get_db)) -> TemplateDirectory:
    return TemplateDirectory(db)
