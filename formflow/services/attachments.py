"""
Attachment blob storage and the upload policy applied before it.

The lifecycle only records and later dereferences blob ids; it never looks
inside a blob. Uploads are checked against the policy as a batch before the
first byte is written, and every blob is fully stored before a descriptor
pointing at it is added to a form.
"""
import io
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Dict, FrozenSet, Iterable, List, Optional, Sequence

from formflow import settings
from formflow.models.domain import FormAttachment
from formflow.models.enums import FileType
from formflow.services.errors import AttachmentStoreError, InvalidError, NotFoundError

logger = logging.getLogger(__name__)


DEFAULT_ALLOWED_EXTENSIONS: FrozenSet[str] = frozenset({
    "jpeg", "jpg", "png", "gif",
    "pdf", "doc", "docx", "txt", "rtf", "odt",
    "xls", "xlsx", "csv",
    "ppt", "pptx",
    "zip", "rar",
})

DEFAULT_ALLOWED_MIME_TYPES: FrozenSet[str] = frozenset({
    # Images
    "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/bmp",
    # Documents
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain", "text/rtf",
    "application/vnd.oasis.opendocument.text",
    # Spreadsheets
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/csv",
    # Presentations
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    # Archives
    "application/zip", "application/x-rar-compressed",
})

_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "bmp", "svg"}
_DOCUMENT_EXTENSIONS = {
    "doc", "docx", "txt", "rtf", "odt",
    "xls", "xlsx", "csv", "ods",
    "ppt", "pptx", "odp",
}
_DOCUMENT_MIME_HINTS = ("document", "word", "text", "spreadsheet", "excel", "presentation", "powerpoint")


def file_extension(name: str) -> str:
    """Lower-case extension without the dot, or '' if there is none."""
    return Path(name or "").suffix.lower().lstrip(".")


@dataclass
class Upload:
    """An incoming file plus the caller's metadata for it."""
    data: bytes
    original_name: str
    mime_type: str
    description: str = ""
    file_type: Optional[FileType] = None  # caller override of the classification

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredBlob:
    blob_id: str
    size: int


@dataclass(frozen=True)
class UploadPolicy:
    """
    Which files may be attached at all.

    A file passes only if both its extension and its MIME type are allowed;
    either one failing is enough to reject it.
    """
    max_bytes: int = settings.MAX_UPLOAD_BYTES
    max_files: int = settings.MAX_UPLOAD_FILES
    allowed_extensions: FrozenSet[str] = DEFAULT_ALLOWED_EXTENSIONS
    allowed_mime_types: FrozenSet[str] = DEFAULT_ALLOWED_MIME_TYPES

    def check(self, uploads: Sequence[Upload]) -> None:
        if len(uploads) > self.max_files:
            raise InvalidError(f"At most {self.max_files} attachments may be uploaded at once")

        for upload in uploads:
            if not (upload.original_name or "").strip():
                raise InvalidError("Attachment is missing a file name")
            if upload.size > self.max_bytes:
                raise InvalidError(
                    f"Attachment '{upload.original_name}' exceeds the {self.max_bytes} byte limit"
                )
            extension_ok = file_extension(upload.original_name) in self.allowed_extensions
            mime_ok = (upload.mime_type or "").lower() in self.allowed_mime_types
            if not (extension_ok and mime_ok):
                raise InvalidError(
                    f"Invalid file type: {upload.mime_type} ({upload.original_name}). "
                    "Allowed types: PDF, DOC, DOCX, TXT, Images, etc."
                )

    def classify(self, original_name: str, mime_type: str) -> FileType:
        name = (original_name or "").lower()
        mime = (mime_type or "").lower()
        extension = file_extension(name)

        if mime.startswith("image/") or extension in _IMAGE_EXTENSIONS:
            return FileType.IMAGE
        if mime == "application/pdf" or extension == "pdf":
            return FileType.PDF
        if any(hint in mime for hint in _DOCUMENT_MIME_HINTS) or extension in _DOCUMENT_EXTENSIONS:
            return FileType.DOCUMENT
        return FileType.OTHER


class AttachmentStore:
    """Blob store contract."""

    def put(self, data: bytes, original_name: str, mime_type: str) -> StoredBlob:
        raise NotImplementedError

    def open(self, blob_id: str) -> BinaryIO:
        """Return a readable stream; raises NotFoundError for unknown blobs."""
        raise NotImplementedError

    def delete(self, blob_id: str) -> bool:
        """Release a blob. False means it was not there to begin with."""
        raise NotImplementedError

    def quarantine(self, blob_id: str) -> bool:
        """
        Take a blob out of service without destroying it.

        A quarantined blob can no longer be opened but can be restored until
        it is purged. False means it was not there to begin with.
        """
        raise NotImplementedError

    def restore(self, blob_id: str) -> None:
        raise NotImplementedError

    def purge(self, blob_id: str) -> None:
        """Destroy a quarantined blob for good."""
        raise NotImplementedError


_BLOB_ID = re.compile(r"^[0-9a-f]{32}(\.[a-z0-9]{1,10})?$")


class LocalAttachmentStore(AttachmentStore):
    """Blobs as files under one directory, named by a generated id."""

    def __init__(self, root=None):
        self.root = Path(root or settings.UPLOAD_DIR)

    def _path(self, blob_id: str) -> Path:
        if not _BLOB_ID.match(blob_id or ""):
            raise NotFoundError("Attachment file not found")
        return self.root / blob_id

    def put(self, data: bytes, original_name: str, mime_type: str) -> StoredBlob:
        extension = file_extension(original_name)
        blob_id = uuid.uuid4().hex + (f".{extension}" if extension else "")
        path = self.root / blob_id
        partial = path.with_name(path.name + ".part")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            partial.write_bytes(data)
            # Only a complete file ever appears under the blob id
            os.replace(partial, path)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise AttachmentStoreError(f"Could not store '{original_name}': {e}") from e
        return StoredBlob(blob_id=blob_id, size=len(data))

    def open(self, blob_id: str) -> BinaryIO:
        path = self._path(blob_id)
        try:
            return path.open("rb")
        except FileNotFoundError:
            raise NotFoundError("Attachment file not found")
        except OSError as e:
            raise AttachmentStoreError(f"Could not read blob {blob_id}: {e}") from e

    def delete(self, blob_id: str) -> bool:
        path = self._path(blob_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise AttachmentStoreError(f"Could not release blob {blob_id}: {e}") from e
        return True

    def _held_path(self, blob_id: str) -> Path:
        path = self._path(blob_id)
        return path.with_name(path.name + ".held")

    def quarantine(self, blob_id: str) -> bool:
        try:
            os.replace(self._path(blob_id), self._held_path(blob_id))
        except FileNotFoundError:
            return False
        except OSError as e:
            raise AttachmentStoreError(f"Could not quarantine blob {blob_id}: {e}") from e
        return True

    def restore(self, blob_id: str) -> None:
        try:
            os.replace(self._held_path(blob_id), self._path(blob_id))
        except OSError as e:
            raise AttachmentStoreError(f"Could not restore blob {blob_id}: {e}") from e

    def purge(self, blob_id: str) -> None:
        try:
            self._held_path(blob_id).unlink(missing_ok=True)
        except OSError as e:
            raise AttachmentStoreError(f"Could not purge blob {blob_id}: {e}") from e


@dataclass
class InMemoryAttachmentStore(AttachmentStore):
    """Process-local store, for tests and embedding."""
    blobs: Dict[str, bytes] = field(default_factory=dict)
    held: Dict[str, bytes] = field(default_factory=dict)

    def put(self, data: bytes, original_name: str, mime_type: str) -> StoredBlob:
        extension = file_extension(original_name)
        blob_id = uuid.uuid4().hex + (f".{extension}" if extension else "")
        self.blobs[blob_id] = bytes(data)
        return StoredBlob(blob_id=blob_id, size=len(data))

    def open(self, blob_id: str) -> BinaryIO:
        if blob_id not in self.blobs:
            raise NotFoundError("Attachment file not found")
        return io.BytesIO(self.blobs[blob_id])

    def delete(self, blob_id: str) -> bool:
        return self.blobs.pop(blob_id, None) is not None

    def quarantine(self, blob_id: str) -> bool:
        if blob_id not in self.blobs:
            return False
        self.held[blob_id] = self.blobs.pop(blob_id)
        return True

    def restore(self, blob_id: str) -> None:
        if blob_id not in self.held:
            raise AttachmentStoreError(f"Blob {blob_id} is not quarantined")
        self.blobs[blob_id] = self.held.pop(blob_id)

    def purge(self, blob_id: str) -> None:
        self.held.pop(blob_id, None)


def store_uploads(
    store: AttachmentStore,
    policy: UploadPolicy,
    uploads: Sequence[Upload],
    uploaded_by: str
) -> List[FormAttachment]:
    """
    Check every upload, then store them all, then build their descriptors.

    If any put fails, the blobs stored so far are released and the
    AttachmentStoreError propagates, so nothing ends up half-attached.
    """
    policy.check(uploads)

    stored: List[StoredBlob] = []
    try:
        for upload in uploads:
            stored.append(store.put(upload.data, upload.original_name, upload.mime_type))
    except AttachmentStoreError:
        release_quietly(store, [blob.blob_id for blob in stored])
        raise

    now = datetime.utcnow()
    return [
        FormAttachment(
            blob_id=blob.blob_id,
            original_name=upload.original_name,
            mime_type=upload.mime_type,
            size=blob.size,
            file_type=upload.file_type or policy.classify(upload.original_name, upload.mime_type),
            description=upload.description or "",
            uploaded_by=uploaded_by,
            uploaded_at=now,
        )
        for upload, blob in zip(uploads, stored)
    ]


def release_quietly(store: AttachmentStore, blob_ids: Iterable[str]) -> None:
    """Best-effort cleanup of blobs no form will reference."""
    for blob_id in blob_ids:
        try:
            store.delete(blob_id)
        except AttachmentStoreError:
            logger.warning("Could not release orphaned blob %s", blob_id, exc_info=True)
