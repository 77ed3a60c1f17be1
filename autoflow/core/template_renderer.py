"""Placeholder substitution for outgoing messages."""

import re
from typing import Any, Dict, Mapping, Optional

from ..models.core import ContactProfile
from .logging import get_logger

logger = get_logger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def resolve_path(data: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through nested mappings. Returns None when any hop is missing."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(item) for item in value)
    return str(value)


class TemplateRenderer:
    """Substitutes ``{{token}}`` placeholders with contact and organization values.

    Tokens are looked up first as flat contact attributes (``name``,
    ``first_name``, ``email``, ``phone`` and every custom field), then as
    dotted paths (``contact.name``, ``custom_fields.plan``, ``organization.name``).
    Unknown tokens render as an empty string.
    """

    def __init__(self, extra_variables: Optional[Dict[str, Any]] = None):
        self.extra_variables = dict(extra_variables or {})

    def build_variables(self, contact: Optional[ContactProfile],
                        extra: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        variables: Dict[str, Any] = dict(self.extra_variables)
        if extra:
            variables.update(extra)
        if contact is not None:
            attributes = contact.attributes()
            variables.update(attributes)
            variables["contact"] = attributes
        return variables

    def render(self, template: Optional[str], contact: Optional[ContactProfile] = None,
               extra: Optional[Mapping[str, Any]] = None) -> str:
        """
        Render a single template string.

        Args:
            template: Text with ``{{token}}`` placeholders
            contact: Contact whose attributes fill the placeholders
            extra: Additional variables, e.g. organization values

        Returns:
            Rendered text
        """
        if not template:
            return ""
        variables = self.build_variables(contact, extra)
        return self._substitute(template, variables)

    def render_value(self, value: Any, contact: Optional[ContactProfile] = None,
                     extra: Optional[Mapping[str, Any]] = None) -> Any:
        """Render every string inside a nested list/dict structure."""
        variables = self.build_variables(contact, extra)
        return self._render_nested(value, variables)

    def _render_nested(self, value: Any, variables: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return self._substitute(value, variables)
        if isinstance(value, list):
            return [self._render_nested(item, variables) for item in value]
        if isinstance(value, dict):
            return {key: self._render_nested(item, variables) for key, item in value.items()}
        return value

    def _substitute(self, template: str, variables: Dict[str, Any]) -> str:
        def replace(match):
            token = match.group(1)
            if token in variables:
                return _stringify(variables[token])
            value = resolve_path(variables, token)
            if value is None:
                logger.debug(f"Template token '{token}' has no value")
            return _stringify(value)

        return TOKEN_PATTERN.sub(replace, template)


default_renderer = TemplateRenderer()


def render_template(template: Optional[str], contact: Optional[ContactProfile] = None,
                    extra: Optional[Mapping[str, Any]] = None) -> str:
    """Render ``template`` with the default renderer."""
    return default_renderer.render(template, contact, extra)
