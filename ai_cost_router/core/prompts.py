"""
Prompt template lookup.

Resolves a template key and substitutes placeholders before a request is
built. The router treats the rendered prompt as an opaque payload.
"""

from string import Template
from typing import Dict, Mapping


class InMemoryTemplateStore:
    """Key -> template lookup with ``$placeholder`` substitution."""

    def __init__(self, templates: Mapping[str, str]):
        self._templates: Dict[str, str] = dict(templates)

    def get_template(self, key: str) -> str:
        """
        Raises:
            KeyError: If no template is stored under ``key``
        """
        if key not in self._templates:
            raise KeyError(f"Unknown prompt template: {key}")
        return self._templates[key]

    def render(self, key: str, **variables: object) -> str:
        """Render a template, normalizing surrounding whitespace.

        Raises:
            KeyError: If the template is unknown or a placeholder is missing
        """
        template = Template(self.get_template(key))
        return template.substitute(**{k: str(v) for k, v in variables.items()}).strip()
