import pytest

from registry_app.exchange.errors import MappingError, TemplateError
from registry_app.exchange.templates import MappingTemplateService


@pytest.fixture
def templates(organization, test_user):
    return MappingTemplateService(organization.id, user_id=test_user.id)


def test_create_stores_normalized_mapping(templates, standard_mapping, test_user):
    template = templates.create("  Standard  ", standard_mapping[:2], description="CRM dump")

    assert template.name == "Standard"
    assert template.created_by_user_id == test_user.id
    assert template.mapping_json[0]["source_column"] == "Nazwa"
    assert template.mapping_json[0]["target_field"] == "company_name"
    assert templates.mapping_set(template.id).target_fields == ("company_name", "tax_id")


def test_names_are_unique_per_tenant(templates, standard_mapping, other_organization):
    templates.create("Standard", standard_mapping)

    with pytest.raises(TemplateError, match="already exists"):
        templates.create("Standard", standard_mapping)

    foreign = MappingTemplateService(other_organization.id).create("Standard", standard_mapping)
    assert foreign.organization_id == other_organization.id


def test_create_rejects_blank_name_and_bad_mapping(templates, standard_mapping):
    with pytest.raises(TemplateError):
        templates.create("   ", standard_mapping)
    with pytest.raises(MappingError):
        templates.create("Broken", [{"source": "Nazwa", "target": "shoe_size"}])
    assert templates.list() == []


def test_list_is_ordered_and_scoped(templates, standard_mapping, other_organization):
    templates.create("Zeta", standard_mapping)
    templates.create("Alfa", standard_mapping)
    MappingTemplateService(other_organization.id).create("Foreign", standard_mapping)

    assert [template.name for template in templates.list()] == ["Alfa", "Zeta"]


def test_foreign_template_is_not_found(templates, standard_mapping, other_organization):
    foreign = MappingTemplateService(other_organization.id).create("Foreign", standard_mapping)

    with pytest.raises(TemplateError, match="not found"):
        templates.get(foreign.id)
    with pytest.raises(TemplateError):
        templates.delete(foreign.id)


def test_delete(templates, standard_mapping):
    template = templates.create("Standard", standard_mapping)
    template_id = template.id

    templates.delete(template_id)

    with pytest.raises(TemplateError):
        templates.get(template_id)
