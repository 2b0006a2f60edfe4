"""
Utilities for substituting build parameters into step definitions.
"""
import re
from typing import Dict, Set

# Group 1: name, group 2: '-' or '+' modifier, group 3: default / alternate value
PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Interpolates ``${NAME}`` placeholders.
    Supports ${NAME}, ${NAME:-default} and ${NAME:+value}.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates placeholders in the template using the provided context.

        :param template: The string containing ${NAME} placeholders.
        :param context: Resolved parameter values.
        :return: The interpolated string.
        :raises KeyError: If a plain ${NAME} is not found in the context.
        """
        def replace(match):
            var_name = match.group(1)
            modifier = match.group(2)
            alt_value = match.group(3)

            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            elif modifier == '+':
                return alt_value if value else ''
            if value is None:
                raise KeyError(var_name)
            return value

        return PLACEHOLDER.sub(replace, template)

    @staticmethod
    def referenced_names(template: str) -> Set[str]:
        """
        Names that must be resolved for the template to interpolate.
        Placeholders carrying a modifier have a fallback and are not required.
        """
        return {m.group(1) for m in PLACEHOLDER.finditer(template) if m.group(2) is None}

    @staticmethod
    def all_names(template: str) -> Set[str]:
        """Every name mentioned in the template, required or not."""
        return {m.group(1) for m in PLACEHOLDER.finditer(template)}
