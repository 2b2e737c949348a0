"""Read-only template lookup, used for labelling form data on display."""
from typing import List

from sqlalchemy.orm import Session

from formflow.models.domain import FormTemplate
from formflow.models.principal import Principal
from formflow.services.errors import NotFoundError


class TemplateDirectory:
    """Active templates; non-admins only see their own department's."""

    def __init__(self, db: Session):
        self.db = db

    def _scoped(self, principal: Principal):
        query = self.db.query(FormTemplate).filter(FormTemplate.is_active.is_(True))
        if not principal.is_admin:
            query = query.filter(FormTemplate.department == principal.department)
        return query

    def list_templates(self, principal: Principal) -> List[FormTemplate]:
        return self._scoped(principal).order_by(FormTemplate.name).all()

    def get_template(self, principal: Principal, template_id: str) -> FormTemplate:
        template = self._scoped(principal).filter(FormTemplate.id == template_id).first()
        if template is None:
            raise NotFoundError("Template not found")
        return template
