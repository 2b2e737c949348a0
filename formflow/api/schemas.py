"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from formflow.models.enums import FileType, FormAction, FormStatus


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# Form schemas
class AttachmentResponse(CamelModel):
    blob_id: str
    original_name: str
    mime_type: str
    size: int
    file_type: FileType
    description: str
    uploaded_by: str
    uploaded_at: datetime


class AttachmentMetadata(CamelModel):
    """Optional per-file metadata sent alongside a multipart upload, by index."""
    description: str = ""
    file_type: Optional[FileType] = None


class CommentResponse(CamelModel):
    author: str
    message: str
    timestamp: datetime


class AuditEntryResponse(CamelModel):
    action: str
    performed_by: str
    timestamp: datetime
    details: str


class FormResponse(CamelModel):
    id: str
    title: str
    description: str
    template: str
    department: str
    status: FormStatus
    submitted_by: str
    reviewed_by: Optional[str]
    approved_by: Optional[str]
    form_data: Dict[str, Any]
    attachments: List[AttachmentResponse]
    comments: List[CommentResponse]
    audit_log: List[AuditEntryResponse]
    created_at: datetime
    updated_at: datetime
    version: int
    # Filled per caller, not stored
    available_actions: List[FormAction] = []


# Transition schemas
class TransitionRequest(CamelModel):
    comment: Optional[str] = Field(None, max_length=2000)


class DecisionRequest(CamelModel):
    # Plain string so unknown/empty actions surface as Invalid from the service
    action: str = ""
    comment: Optional[str] = Field(None, max_length=2000)


class CommentCreate(CamelModel):
    message: str = Field(..., max_length=2000)


# Template schemas
class TemplateField(CamelModel):
    id: str
    label: str
    type: str
    required: bool = False
    options: Optional[List[str]] = None


class TemplateResponse(CamelModel):
    id: str
    name: str
    department: str
    description: Optional[str]
    fields: List[TemplateField]
    is_active: bool


# Error response
class ErrorDetail(BaseModel):
    """Body of every refused request."""
    kind: str
    message: str


class ErrorResponse(BaseModel):
    detail: ErrorDetail
