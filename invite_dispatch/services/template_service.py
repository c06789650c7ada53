"""
Template service: lookup, validation and placeholder rendering.
"""
import re
from dataclasses import dataclass, field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invite_dispatch.errors import TemplateNotFoundError, TemplateValidationError
from invite_dispatch.models.template import MessageTemplate

# {{name}} or {{ name }}
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")


def render(content: str, variables: dict[str, str]) -> str:
    """
    Substitute ``{{ name }}`` placeholders.

    Placeholders with no value are left exactly as written so a missing
    variable is visible in the audit record instead of silently erased.
    """
    if not content:
        return ""

    def _substitute(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, content)


def extract_variables(content: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    names: list[str] = []
    for name in PLACEHOLDER_PATTERN.findall(content or ""):
        if name not in names:
            names.append(name)
    return names


def missing_variables(required: list[str], variables: dict[str, str]) -> list[str]:
    return [
        name for name in required
        if not isinstance(variables.get(name), str) or not variables[name].strip()
    ]


@dataclass
class TemplatePreview:
    template_name: str
    original_content: str
    rendered_content: str
    missing_variables: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.missing_variables


class TemplateService:
    """Reads templates from the database."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_template(self, template_name: str) -> MessageTemplate | None:
        """Active template by name, or None."""
        stmt = select(MessageTemplate).where(
            MessageTemplate.name == template_name,
            MessageTemplate.is_active.is_(True),
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_template(self, template_name: str) -> MessageTemplate:
        template = await self.load_template(template_name)
        if template is None:
            raise TemplateNotFoundError(template_name)
        return template

    async def validate(self, template_name: str, variables: dict[str, str]) -> MessageTemplate:
        """
        Resolve the template and check every required variable is present.

        Raises TemplateNotFoundError or TemplateValidationError.
        """
        template = await self.require_template(template_name)
        missing = missing_variables(template.variables or [], variables)
        if missing:
            raise TemplateValidationError(template_name, missing)
        return template

    async def preview(self, template_name: str, variables: dict[str, str]) -> TemplatePreview:
        template = await self.require_template(template_name)
        return TemplatePreview(
            template_name=template.name,
            original_content=template.content,
            rendered_content=render(template.content, variables),
            missing_variables=missing_variables(template.variables or [], variables),
        )

    async def list_templates(self) -> list[MessageTemplate]:
        stmt = select(MessageTemplate).where(MessageTemplate.is_active.is_(True)).order_by(MessageTemplate.name)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create_template(
        self,
        name: str,
        display_name: str,
        content: str,
        variables: list[str] | None = None,
        is_approved: bool = False,
    ) -> MessageTemplate:
        """Create a template; required variables default to the placeholders found."""
        template = MessageTemplate(
            name=name,
            display_name=display_name,
            content=content,
            variables=variables if variables is not None else extract_variables(content),
            is_approved=is_approved,
            is_active=True,
        )
        self.db.add(template)
        await self.db.commit()
        return template
