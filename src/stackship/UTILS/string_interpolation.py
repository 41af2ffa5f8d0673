"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict

PATTERN = re.compile(r'\$\$|\$\{([^}:]+)(?::(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and $$ as a literal dollar.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str], strict: bool = True) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param strict: Raise on an unset ${VAR} instead of substituting an empty string.
        :return: The interpolated string.
        :raises KeyError: If strict and a variable is not found and no default is provided.
        """
        def replace(match):
            if match.group(0) == '$$':
                return '$'
            var_name = match.group(1)
            modifier = match.group(2)  # None, '-', or '+'
            alt_value = match.group(3)

            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            elif modifier == '+':
                return alt_value if value else ''
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {var_name} not found in context")
            return ''

        return PATTERN.sub(replace, template)
