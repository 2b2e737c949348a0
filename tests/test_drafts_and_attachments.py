"""Tests for draft construction, editing, deletion and the attachment boundary."""
import logging

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from formflow.models.audit import AuditAction
from formflow.models.domain import Form
from formflow.models.enums import FileType, FormStatus
from formflow.services.attachments import (
    InMemoryAttachmentStore,
    LocalAttachmentStore,
    Upload,
    UploadPolicy,
    store_uploads,
)
from formflow.services.errors import (
    AttachmentStoreError,
    ConflictError,
    ForbiddenError,
    InvalidError,
    NotFoundError,
)
from formflow.services.forms import FormService


class RecordingStore(InMemoryAttachmentStore):
    """In-memory store that records releases and can be told to fail."""

    def __init__(self, fail_put_after=None, fail_quarantine_after=None, fail_purge=False):
        super().__init__()
        self.deleted = []
        self.purged = []
        self.puts = 0
        self.quarantines = 0
        self.fail_put_after = fail_put_after
        self.fail_quarantine_after = fail_quarantine_after
        self.fail_purge = fail_purge

    def put(self, data, original_name, mime_type):
        if self.fail_put_after is not None and self.puts >= self.fail_put_after:
            raise AttachmentStoreError("disk full")
        self.puts += 1
        return super().put(data, original_name, mime_type)

    def delete(self, blob_id):
        self.deleted.append(blob_id)
        return super().delete(blob_id)

    def quarantine(self, blob_id):
        if self.fail_quarantine_after is not None and self.quarantines >= self.fail_quarantine_after:
            raise AttachmentStoreError("store offline")
        self.quarantines += 1
        return super().quarantine(blob_id)

    def purge(self, blob_id):
        if self.fail_purge:
            raise AttachmentStoreError("store offline")
        self.purged.append(blob_id)
        super().purge(blob_id)


class TestCreateDraft:

    def test_draft_defaults(self, draft, operator):
        assert draft.status == FormStatus.DRAFT
        assert draft.submitted_by == operator.id
        assert draft.department == "IT"
        assert draft.template == "general_form"
        assert draft.form_data == {"machineId": "M-7", "batchNumber": "B-42"}
        assert draft.reviewed_by is None
        assert draft.approved_by is None

    def test_department_comes_from_principal(self, service, operator):
        form = service.create_draft(operator, title="Spoof", department="Finance")
        assert form.department == "IT"

    def test_missing_title_falls_back(self, service, operator):
        assert service.create_draft(operator).title == "Form Submission"
        assert service.create_draft(operator, title="   ").title == "Form Submission"

    @pytest.mark.parametrize("who", ["supervisor", "admin"])
    def test_only_operators_create(self, request, service, who):
        with pytest.raises(ForbiddenError):
            service.create_draft(request.getfixturevalue(who), title="Nope")

    def test_form_data_must_be_mapping(self, service, operator):
        with pytest.raises(InvalidError):
            service.create_draft(operator, form_data=["not", "a", "mapping"])

    def test_attachments_stored_before_descriptors(self, service, store, operator, png_upload, pdf_upload):
        form = service.create_draft(operator, title="With files", uploads=[png_upload, pdf_upload])

        assert [a.original_name for a in form.attachments] == ["photo.png", "report.pdf"]
        for attachment in form.attachments:
            assert attachment.blob_id in store.blobs
            assert attachment.uploaded_by == operator.id
        assert form.attachments[0].file_type == FileType.IMAGE
        assert form.attachments[1].file_type == FileType.PDF
        assert form.attachments[1].description == "Inspection report"
        assert form.attachments[1].size == len(pdf_upload.data)

    def test_caller_file_type_overrides_classification(self, service, operator):
        upload = Upload(b"a,b", "data.csv", "text/csv", file_type=FileType.OTHER)
        form = service.create_draft(operator, uploads=[upload])
        assert form.attachments[0].file_type == FileType.OTHER

    def test_store_failure_aborts_create(self, db_session, operator, png_upload, pdf_upload):
        store = RecordingStore(fail_put_after=1)
        service = FormService(db_session, store)

        with pytest.raises(AttachmentStoreError):
            service.create_draft(operator, title="Doomed", uploads=[png_upload, pdf_upload])

        assert db_session.query(Form).count() == 0
        # The blob stored before the failure was released again
        assert store.blobs == {}
        assert len(store.deleted) == 1

    def test_rejected_upload_stores_nothing(self, service, store, operator, png_upload):
        bad = Upload(b"MZ", "tool.exe", "application/x-msdownload")
        with pytest.raises(InvalidError):
            service.create_draft(operator, uploads=[png_upload, bad])
        assert store.blobs == {}


class TestUpdateDraft:

    def test_update_fields(self, service, operator, draft):
        form = service.update_draft(
            operator, draft.id,
            title="Log 1b", description="Corrected", form_data={"machineId": "M-8"},
        )
        assert form.title == "Log 1b"
        assert form.description == "Corrected"
        assert form.form_data == {"machineId": "M-8"}
        assert form.audit_log[-1].action == AuditAction.UPDATED

    def test_omitted_fields_unchanged(self, service, operator, draft):
        form = service.update_draft(operator, draft.id, description="Only this")
        assert form.title == "Log 1"
        assert form.form_data == {"machineId": "M-7", "batchNumber": "B-42"}

    def test_attachments_are_appended(self, service, operator, png_upload, pdf_upload):
        form = service.create_draft(operator, uploads=[png_upload])
        form = service.update_draft(operator, form.id, uploads=[pdf_upload])
        assert [a.original_name for a in form.attachments] == ["photo.png", "report.pdf"]
        assert [a.position for a in form.attachments] == [0, 1]

    def test_blank_title_invalid(self, service, operator, draft):
        with pytest.raises(InvalidError):
            service.update_draft(operator, draft.id, title="  ")

    def test_submitted_form_cannot_be_edited(self, service, operator, submitted_form):
        with pytest.raises(NotFoundError):
            service.update_draft(operator, submitted_form.id, title="Too late")

    def test_submitted_attachments_are_frozen(self, service, store, operator, submitted_form, png_upload):
        with pytest.raises(NotFoundError):
            service.update_draft(operator, submitted_form.id, uploads=[png_upload])
        assert store.blobs == {}

    def test_supervisor_gets_not_found(self, service, supervisor, draft):
        with pytest.raises(NotFoundError):
            service.update_draft(supervisor, draft.id, title="Mine now")


class TestDeleteDraft:

    def test_delete_releases_every_blob(self, db_session, operator, png_upload, pdf_upload):
        store = RecordingStore()
        service = FormService(db_session, store)
        form = service.create_draft(operator, uploads=[png_upload, pdf_upload])
        blob_ids = [a.blob_id for a in form.attachments]
        form_id = form.id

        service.delete_draft(operator, form_id)

        assert sorted(store.purged) == sorted(blob_ids)
        assert store.blobs == {}
        assert store.held == {}
        assert all(f.id != form_id for f in service.repository.query_all())

    def test_delete_then_list_is_empty(self, service, operator):
        """Scenario B: draft, never submitted, deleted."""
        form = service.create_draft(operator, title="Scratch")
        service.delete_draft(operator, form.id)
        assert service.list_visible(operator) == []
        with pytest.raises(NotFoundError):
            service.get_visible(operator, form.id)

    def test_release_failure_keeps_draft(self, db_session, operator, png_upload):
        store = RecordingStore(fail_quarantine_after=0)
        service = FormService(db_session, store)
        form = service.create_draft(operator, uploads=[png_upload])
        form_id = form.id

        with pytest.raises(ConflictError):
            service.delete_draft(operator, form_id)

        kept = service.get_visible(operator, form_id)
        assert kept.status == FormStatus.DRAFT
        assert len(kept.attachments) == 1

    def test_later_release_failure_restores_earlier_blobs(self, db_session, operator,
                                                          png_upload, pdf_upload):
        """A draft that survives a failed delete keeps every one of its blobs."""
        store = RecordingStore(fail_quarantine_after=1)
        service = FormService(db_session, store)
        csv = Upload(b"a,b\n1,2", "readings.csv", "text/csv")
        form = service.create_draft(operator, uploads=[png_upload, pdf_upload, csv])
        form_id = form.id

        with pytest.raises(ConflictError):
            service.delete_draft(operator, form_id)

        kept = service.get_visible(operator, form_id)
        assert len(kept.attachments) == 3
        for attachment in kept.attachments:
            _, stream = service.open_attachment(operator, form_id, attachment.blob_id)
            assert stream.read()
        assert store.held == {}
        assert store.purged == []

    @pytest.mark.parametrize("failure,expected", [
        (StaleDataError("forms row changed underneath"), ConflictError),
        (SQLAlchemyError("database is locked"), SQLAlchemyError),
    ])
    def test_commit_failure_restores_blobs(self, monkeypatch, db_session, operator,
                                           png_upload, pdf_upload, failure, expected):
        store = RecordingStore()
        service = FormService(db_session, store)
        form = service.create_draft(operator, uploads=[png_upload, pdf_upload])
        form_id = form.id
        blob_ids = sorted(a.blob_id for a in form.attachments)

        def failing_commit():
            raise failure
        monkeypatch.setattr(db_session, "commit", failing_commit)

        with pytest.raises(expected):
            service.delete_draft(operator, form_id)

        assert sorted(store.blobs) == blob_ids
        assert store.held == {}
        assert store.purged == []
        kept = service.get_visible(operator, form_id)
        assert sorted(a.blob_id for a in kept.attachments) == blob_ids

    def test_purge_failure_still_deletes(self, db_session, operator, png_upload, caplog):
        store = RecordingStore(fail_purge=True)
        service = FormService(db_session, store)
        form = service.create_draft(operator, uploads=[png_upload])
        form_id = form.id

        with caplog.at_level(logging.WARNING, logger="formflow.services.forms"):
            service.delete_draft(operator, form_id)

        assert service.list_visible(operator) == []
        assert store.blobs == {}
        assert "Could not purge blob" in caplog.text

    def test_missing_blob_counts_as_released(self, service, store, operator, png_upload):
        form = service.create_draft(operator, uploads=[png_upload])
        store.blobs.clear()
        service.delete_draft(operator, form.id)
        assert service.list_visible(operator) == []

    def test_submitted_form_cannot_be_deleted(self, service, operator, submitted_form):
        with pytest.raises(NotFoundError):
            service.delete_draft(operator, submitted_form.id)


class TestUploadPolicy:

    def test_extension_and_mime_must_both_pass(self):
        policy = UploadPolicy()
        # Allowed MIME, disallowed extension
        with pytest.raises(InvalidError):
            policy.check([Upload(b"x", "picture.webp", "image/webp")])
        # Allowed extension, disallowed MIME
        with pytest.raises(InvalidError):
            policy.check([Upload(b"x", "notes.txt", "application/x-sh")])
        # Mismatched but individually allowed values are judged separately
        policy.check([Upload(b"x", "notes.txt", "image/png")])

    def test_size_limit(self):
        policy = UploadPolicy(max_bytes=4)
        policy.check([Upload(b"1234", "a.txt", "text/plain")])
        with pytest.raises(InvalidError):
            policy.check([Upload(b"12345", "a.txt", "text/plain")])

    def test_file_count_limit(self):
        policy = UploadPolicy(max_files=2)
        files = [Upload(b"x", f"{i}.txt", "text/plain") for i in range(3)]
        with pytest.raises(InvalidError):
            policy.check(files)

    def test_missing_name_rejected(self):
        with pytest.raises(InvalidError):
            UploadPolicy().check([Upload(b"x", "", "text/plain")])

    @pytest.mark.parametrize("name,mime,expected", [
        ("a.png", "image/png", FileType.IMAGE),
        ("scan.jpg", "application/octet-stream", FileType.IMAGE),
        ("a.pdf", "application/pdf", FileType.PDF),
        ("a.docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document", FileType.DOCUMENT),
        ("sheet.xlsx", "application/octet-stream", FileType.DOCUMENT),
        ("deck.pptx", "application/vnd.ms-powerpoint", FileType.DOCUMENT),
        ("a.csv", "text/csv", FileType.DOCUMENT),
        ("bundle.zip", "application/zip", FileType.OTHER),
    ])
    def test_classification(self, name, mime, expected):
        assert UploadPolicy().classify(name, mime) == expected

    def test_policy_is_checked_before_any_put(self):
        store = RecordingStore()
        uploads = [Upload(b"ok", "a.txt", "text/plain"), Upload(b"x" * 10, "b.txt", "text/plain")]
        with pytest.raises(InvalidError):
            store_uploads(store, UploadPolicy(max_bytes=5), uploads, "op-1")
        assert store.puts == 0


class TestLocalAttachmentStore:

    def test_put_open_delete(self, tmp_path):
        store = LocalAttachmentStore(tmp_path / "uploads")
        blob = store.put(b"hello", "greeting.txt", "text/plain")

        assert blob.size == 5
        assert blob.blob_id.endswith(".txt")
        with store.open(blob.blob_id) as stream:
            assert stream.read() == b"hello"
        assert store.delete(blob.blob_id) is True
        assert store.delete(blob.blob_id) is False
        with pytest.raises(NotFoundError):
            store.open(blob.blob_id)

    def test_quarantine_restore_purge(self, tmp_path):
        store = LocalAttachmentStore(tmp_path)
        blob = store.put(b"scan", "scan.pdf", "application/pdf")

        assert store.quarantine(blob.blob_id) is True
        with pytest.raises(NotFoundError):
            store.open(blob.blob_id)

        store.restore(blob.blob_id)
        with store.open(blob.blob_id) as stream:
            assert stream.read() == b"scan"

        store.quarantine(blob.blob_id)
        store.purge(blob.blob_id)
        assert list(tmp_path.iterdir()) == []
        assert store.quarantine(blob.blob_id) is False

    def test_no_partial_files_left(self, tmp_path):
        store = LocalAttachmentStore(tmp_path)
        store.put(b"data", "a.pdf", "application/pdf")
        assert not list(tmp_path.glob("*.part"))

    @pytest.mark.parametrize("blob_id", ["../secret.txt", "/etc/passwd", "not-a-blob"])
    def test_blob_ids_cannot_escape_root(self, tmp_path, blob_id):
        store = LocalAttachmentStore(tmp_path)
        with pytest.raises(NotFoundError):
            store.open(blob_id)


class TestOpenAttachment:

    def test_visible_attachment_streams(self, service, operator, admin, png_upload):
        form = service.create_draft(operator, uploads=[png_upload])
        blob_id = form.attachments[0].blob_id

        attachment, stream = service.open_attachment(admin, form.id, blob_id)
        assert attachment.original_name == "photo.png"
        assert stream.read() == png_upload.data

    def test_invisible_form_hides_attachment(self, service, operator, other_operator, png_upload):
        form = service.create_draft(operator, uploads=[png_upload])
        with pytest.raises(NotFoundError):
            service.open_attachment(other_operator, form.id, form.attachments[0].blob_id)

    def test_blob_of_other_form_not_served(self, service, operator, png_upload, pdf_upload):
        first = service.create_draft(operator, uploads=[png_upload])
        second = service.create_draft(operator, uploads=[pdf_upload])
        with pytest.raises(NotFoundError):
            service.open_attachment(operator, first.id, second.attachments[0].blob_id)
