"""Identifier validation for values that end up in file paths."""

import re

_IDENTIFIER = re.compile(r"^[a-zA-Z0-9_.-]+$")


def validate_identifier(value: str, name: str = "identifier") -> str:
    """
    Validate a tree, project or run id to prevent path traversal.

    Args:
        value: Identifier value to validate
        name: Name of the identifier (for error messages)

    Returns:
        Validated identifier

    Raises:
        ValueError: If identifier is invalid
    """
    if not value:
        raise ValueError(f"{name} cannot be empty")

    if not _IDENTIFIER.match(value):
        raise ValueError(f"Invalid {name}: {value}")

    if ".." in value or value.startswith("."):
        raise ValueError(f"{name} contains invalid characters: {value}")

    if len(value) > 128:
        raise ValueError(f"{name} too long")

    return value
