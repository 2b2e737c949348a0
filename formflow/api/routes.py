"""API routes for the form workflow."""
import json
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form as FormParam, Response, UploadFile, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from formflow.api.deps import get_form_service, get_principal, get_template_directory
from formflow.api.schemas import (
    AttachmentMetadata,
    CommentCreate,
    DecisionRequest,
    ErrorResponse,
    FormResponse,
    TemplateResponse,
    TransitionRequest,
)
from formflow.models.domain import Form
from formflow.models.principal import Principal
from formflow.services.attachments import Upload
from formflow.services.errors import InvalidError
from formflow.services.forms import FormService
from formflow.services.templates import TemplateDirectory

router = APIRouter()

REFUSALS = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    403: {"model": ErrorResponse, "description": "Role may not perform this action"},
    404: {"model": ErrorResponse, "description": "Form not found or not visible"},
    409: {"model": ErrorResponse, "description": "Form is not in a state that allows this action"},
}


def to_response(form: Form, principal: Principal, service: FormService) -> FormResponse:
    """Serialize a form, with the actions this caller could take next."""
    response = FormResponse.model_validate(form)
    response.available_actions = service.lifecycle.available_actions(form, principal)
    return response


def _parse_json(raw: Optional[str], what: str, default):
    if raw is None or not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidError(f"Invalid {what} format: {e.msg}")


def _read_uploads(
    files: List[UploadFile],
    metadata_raw: Optional[str],
    service: FormService
) -> List[Upload]:
    """Pair uploaded files with their metadata by position."""
    metadata = _parse_json(metadata_raw, "attachment metadata", [])
    if not isinstance(metadata, list):
        raise InvalidError("Attachment metadata must be a list")

    uploads = []
    for index, upload_file in enumerate(files):
        try:
            meta = AttachmentMetadata.model_validate(metadata[index]) if index < len(metadata) else AttachmentMetadata()
        except ValidationError as e:
            raise InvalidError(f"Invalid metadata for attachment {index}: {e.errors()[0]['msg']}")
        # One byte past the limit is enough for the policy to reject oversized files
        data = upload_file.file.read(service.policy.max_bytes + 1)
        uploads.append(Upload(
            data=data,
            original_name=upload_file.filename or "",
            mime_type=upload_file.content_type or "application/octet-stream",
            description=meta.description,
            file_type=meta.file_type,
        ))
    return uploads


# Form endpoints
@router.post("/forms", response_model=FormResponse, status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def create_form(
    title: Optional[str] = FormParam(None),
    description: Optional[str] = FormParam(None),
    template: Optional[str] = FormParam(None),
    department: Optional[str] = FormParam(None),
    form_data: Optional[str] = FormParam(None, alias="formData"),
    attachment_metadata: Optional[str] = FormParam(None, alias="attachmentMetadata"),
    attachments: Optional[List[UploadFile]] = File(None),
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    """Create a draft. Any department sent by the client is ignored."""
    form = service.create_draft(
        principal,
        title=title,
        description=description,
        template=template,
        form_data=_parse_json(form_data, "form data", {}),
        uploads=_read_uploads(attachments or [], attachment_metadata, service),
        department=department,
    )
    return to_response(form, principal, service)


@router.get("/forms", response_model=List[FormResponse])
def list_forms(
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    """List the forms visible to the caller, newest first."""
    return [to_response(form, principal, service) for form in service.list_visible(principal)]


@router.get("/forms/{form_id}", response_model=FormResponse, responses=REFUSALS)
def get_form(
    form_id: str,
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    return to_response(service.get_visible(principal, form_id), principal, service)


@router.put("/forms/{form_id}", response_model=FormResponse, responses=REFUSALS)
def update_form(
    form_id: str,
    title: Optional[str] = FormParam(None),
    description: Optional[str] = FormParam(None),
    form_data: Optional[str] = FormParam(None, alias="formData"),
    attachment_metadata: Optional[str] = FormParam(None, alias="attachmentMetadata"),
    attachments: Optional[List[UploadFile]] = File(None),
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    """Edit a draft you own. New attachments are appended."""
    form = service.update_draft(
        principal,
        form_id,
        title=title,
        description=description,
        form_data=_parse_json(form_data, "form data", None),
        uploads=_read_uploads(attachments or [], attachment_metadata, service),
    )
    return to_response(form, principal, service)


@router.delete("/forms/{form_id}", status_code=status.HTTP_204_NO_CONTENT, responses=REFUSALS)
def delete_form(
    form_id: str,
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    """Delete a draft you own, releasing its attachments."""
    service.delete_draft(principal, form_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Transition endpoints
@router.patch("/forms/{form_id}/submit", response_model=FormResponse, responses=REFUSALS)
def submit_form(
    form_id: str,
    body: Optional[TransitionRequest] = None,
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    comment = body.comment if body else None
    return to_response(service.submit(principal, form_id, comment), principal, service)


@router.patch("/forms/{form_id}/review", response_model=FormResponse, responses=REFUSALS)
def review_form(
    form_id: str,
    body: DecisionRequest,
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    """
    Supervisor review: approve, escalate or disapprove.

    Only forms of the supervisor's own department in 'submitted' qualify.
    """
    form = service.supervisor_decide(principal, form_id, body.action, body.comment)
    return to_response(form, principal, service)


@router.patch("/forms/{form_id}/approve", response_model=FormResponse, responses=REFUSALS)
def decide_form(
    form_id: str,
    body: DecisionRequest,
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    """Admin decision on a submitted or reviewed form: approve, reject or disapprove."""
    form = service.admin_decide(principal, form_id, body.action, body.comment)
    return to_response(form, principal, service)


@router.post("/forms/{form_id}/comments", response_model=FormResponse, status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def comment_on_form(
    form_id: str,
    body: CommentCreate,
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    form = service.add_comment(principal, form_id, body.message)
    return to_response(form, principal, service)


# Attachment endpoints
def _iter_chunks(stream, chunk_size: int = 64 * 1024):
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        stream.close()


@router.get("/forms/{form_id}/attachments/{blob_id}", responses=REFUSALS)
def download_attachment(
    form_id: str,
    blob_id: str,
    inline: bool = False,
    principal: Principal = Depends(get_principal),
    service: FormService = Depends(get_form_service),
):
    """Stream an attachment, as a download or (``inline=true``) for viewing."""
    attachment, stream = service.open_attachment(principal, form_id, blob_id)
    disposition = "inline" if inline else "attachment"
    return StreamingResponse(
        _iter_chunks(stream),
        media_type=attachment.mime_type,
        headers={
            "Content-Disposition": f"{disposition}; filename*=UTF-8''{quote(attachment.original_name)}"
        },
    )


# Template endpoints
@router.get("/templates", response_model=List[TemplateResponse])
def list_templates(
    principal: Principal = Depends(get_principal),
    directory: TemplateDirectory = Depends(get_template_directory),
):
    """Active templates; non-admins only see their own department's."""
    return directory.list_templates(principal)


@router.get("/templates/{template_id}", response_model=TemplateResponse, responses={404: REFUSALS[404]})
def get_template(
    template_id: str,
    principal: Principal = Depends(get_principal),
    directory: TemplateDirectory = Depends(get_template_directory),
):
    return directory.get_template(principal, template_id)
