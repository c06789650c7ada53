"""
Template rendering and lookup tests.
"""
import pytest

from invite_dispatch.errors import TemplateNotFoundError, TemplateValidationError
from invite_dispatch.models.template import MessageTemplate
from invite_dispatch.services.template_service import TemplateService, extract_variables, render


def test_render_substitutes_both_placeholder_styles():
    content = "Hi {{guest_name}}, welcome to {{ event_name }}"
    assert render(content, {"guest_name": "Carla", "event_name": "Ana & Ben"}) == "Hi Carla, welcome to Ana & Ben"


def test_unresolved_placeholders_are_left_verbatim():
    assert render("Hi {{ guest_name }}, RSVP: {{rsvp_link}}", {"guest_name": "Carla"}) == (
        "Hi Carla, RSVP: {{rsvp_link}}"
    )


def test_render_empty_content():
    assert render("", {"a": "b"}) == ""


def test_extract_variables_in_order_without_duplicates():
    assert extract_variables("{{a}} {{ b }} {{a}} {{c}}") == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_validate_reports_missing_variables(db, template):
    service = TemplateService(db)

    with pytest.raises(TemplateValidationError) as exc_info:
        await service.validate("wedding_invite", {"guest_name": "Carla", "event_name": "  "})

    assert exc_info.value.missing_variables == ["event_name"]


@pytest.mark.asyncio
async def test_unknown_and_inactive_templates_are_not_found(db, template):
    db.add(MessageTemplate(name="retired", display_name="Retired", content="x", variables=[], is_active=False))
    await db.commit()
    service = TemplateService(db)

    with pytest.raises(TemplateNotFoundError):
        await service.require_template("missing")
    assert await service.load_template("retired") is None
    assert [t.name for t in await service.list_templates()] == ["wedding_invite"]


@pytest.mark.asyncio
async def test_preview_renders_and_flags_missing(db, template):
    preview = await TemplateService(db).preview("wedding_invite", {"guest_name": "Carla"})

    assert preview.rendered_content.startswith("Hi Carla, you're invited to {{ event_name }}")
    assert preview.missing_variables == ["event_name"]
    assert not preview.is_valid


@pytest.mark.asyncio
async def test_create_template_defaults_required_variables(db):
    created = await TemplateService(db).create_template(
        "reminder", "Reminder", "See you at {{event_name}}, {{guest_name}}"
    )
    assert created.variables == ["event_name", "guest_name"]
    assert created.is_approved is False
