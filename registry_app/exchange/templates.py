"""Saved column mapping templates, unique by name within a tenant."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from registry_app.models import db
from registry_app.models.exchange import MappingTemplate

from .errors import TemplateError
from .mapping import MappingSet


class MappingTemplateService:
    def __init__(self, organization_id: int, *, session: Session | None = None, user_id: int | None = None) -> None:
        self.organization_id = organization_id
        self.session = session or db.session
        self.user_id = user_id

    def _find_by_name(self, name: str) -> MappingTemplate | None:
        stmt = select(MappingTemplate).where(
            MappingTemplate.organization_id == self.organization_id,
            MappingTemplate.name == name,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def create(
        self,
        name: str,
        mappings: Iterable[Mapping[str, Any]] | MappingSet,
        *,
        description: str | None = None,
    ) -> MappingTemplate:
        cleaned = (name or "").strip()
        if not cleaned:
            raise TemplateError("Template name is required.")
        if self._find_by_name(cleaned) is not None:
            raise TemplateError(f"A mapping template named '{cleaned}' already exists.")
        mapping_set = mappings if isinstance(mappings, MappingSet) else MappingSet.build(mappings)
        template = MappingTemplate(
            organization_id=self.organization_id,
            name=cleaned,
            description=description,
            mapping_json=mapping_set.to_payload(),
            created_by_user_id=self.user_id,
        )
        self.session.add(template)
        self.session.commit()
        return template

    def get(self, template_id: int) -> MappingTemplate:
        template = self.session.get(MappingTemplate, template_id)
        if template is None or template.organization_id != self.organization_id:
            raise TemplateError(f"Mapping template {template_id} not found.")
        return template

    def mapping_set(self, template_id: int) -> MappingSet:
        return MappingSet.from_template(self.get(template_id))

    def list(self) -> list[MappingTemplate]:
        stmt = (
            select(MappingTemplate)
            .where(MappingTemplate.organization_id == self.organization_id)
            .order_by(MappingTemplate.name)
        )
        return list(self.session.execute(stmt).scalars())

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        self.session.delete(template)
        self.session.commit()
