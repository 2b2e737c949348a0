"""Main FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from formflow import settings
from formflow.database import engine, Base
from formflow.api.routes import router
# Import models to register them with SQLAlchemy Base
from formflow.models.domain import Form, FormAttachment, FormComment, FormTemplate
from formflow.models.audit import FormAuditEntry
from formflow.services.errors import (
    AttachmentStoreError,
    ConflictError,
    ForbiddenError,
    InvalidError,
    NotFoundError,
    WorkflowError,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidError: status.HTTP_400_BAD_REQUEST,
}

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="FormFlow - Form Approval Workflow",
    description="Role-gated form submission, review and approval with an immutable audit trail.",
    version="0.1.0"
)

# Browser clients; FORMFLOW_CORS_ORIGINS narrows this outside local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "X-User-Id", "X-User-Role", "X-User-Department"],
)

# Include API routes
app.include_router(router, prefix="/api", tags=["Forms"])


@app.exception_handler(WorkflowError)
def workflow_error_handler(request: Request, exc: WorkflowError):
    """Refusals are answers, not crashes: map the error kind to a status code."""
    code = STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(
        status_code=code,
        content={"detail": {"kind": exc.kind, "message": exc.message}},
    )


@app.exception_handler(AttachmentStoreError)
def attachment_store_error_handler(request: Request, exc: AttachmentStoreError):
    logger.error("Attachment store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": {"kind": "attachment_store", "message": "Attachment storage is unavailable"}},
    )


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "FormFlow"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
