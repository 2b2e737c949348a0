"""Pytest configuration and shared fixtures."""
import os

# The app module creates tables on import; keep that away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from formflow.database import Base
from formflow.api.schemas import FormResponse
from formflow.models.domain import Form, FormTemplate
from formflow.models.enums import Role
from formflow.models.principal import Principal
from formflow.services.attachments import InMemoryAttachmentStore, Upload
from formflow.services.forms import FormService
from formflow.services.repository import KeyedLocks


@pytest.fixture
def db_engine(tmp_path):
    """A fresh SQLite database file per test (file-backed so threads get their own connections)."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def store():
    return InMemoryAttachmentStore()


@pytest.fixture
def service(db_session, store, locks):
    return FormService(db_session, store, locks=locks)


# Principals
@pytest.fixture
def operator():
    return Principal(id="op-1", role=Role.OPERATOR, department="IT")


@pytest.fixture
def other_operator():
    return Principal(id="op-2", role=Role.OPERATOR, department="IT")


@pytest.fixture
def supervisor():
    return Principal(id="sup-it", role=Role.SUPERVISOR, department="IT")


@pytest.fixture
def hr_supervisor():
    return Principal(id="sup-hr", role=Role.SUPERVISOR, department="HR")


@pytest.fixture
def admin():
    return Principal(id="admin-1", role=Role.ADMIN, department="HQ")


# Forms
@pytest.fixture
def draft(service, operator):
    """A draft in IT owned by op-1."""
    return service.create_draft(
        operator,
        title="Log 1",
        description="Daily machine log",
        form_data={"machineId": "M-7", "batchNumber": "B-42"},
    )


@pytest.fixture
def submitted_form(service, operator, draft):
    return service.submit(operator, draft.id)


@pytest.fixture
def png_upload():
    return Upload(data=b"\x89PNG fake image", original_name="photo.png", mime_type="image/png")


@pytest.fixture
def pdf_upload():
    return Upload(
        data=b"%PDF-1.4 fake",
        original_name="report.pdf",
        mime_type="application/pdf",
        description="Inspection report",
    )


@pytest.fixture
def snapshot(session_factory):
    """Read a form's full stored state through a separate session."""
    def take(form_id):
        session = session_factory()
        try:
            form = session.query(Form).filter(Form.id == form_id).one()
            return FormResponse.model_validate(form).model_dump()
        finally:
            session.close()
    return take


@pytest.fixture
def templates(db_session):
    rows = [
        FormTemplate(
            name="operator_daily_log",
            department="IT",
            description="Daily machine log",
            fields=[
                {"id": "machineId", "label": "Machine ID", "type": "text", "required": True},
                {"id": "shift", "label": "Shift", "type": "select", "required": False,
                 "options": ["early", "late"]},
            ],
            created_by="admin-1",
        ),
        FormTemplate(name="hr_onboarding", department="HR", fields=[], created_by="admin-1"),
        FormTemplate(name="retired_it_form", department="IT", fields=[], is_active=False,
                     created_by="admin-1"),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {t.name: t.id for t in rows}
