"""Utilities for parsing JSONL (JSON Lines) history files."""

import json
import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def parse_jsonl_to_models(
    content: str,
    model_class: type[T],
    *,
    strict: bool = False
) -> list[T]:
    """
    Parse JSONL content into list of pydantic models.

    Args:
        content: JSONL content (one JSON object per line)
        model_class: Pydantic model class to parse into
        strict: If True, raise on parse errors; if False, skip invalid lines

    Returns:
        List of successfully parsed model instances

    Raises:
        ValidationError: If strict=True and a line fails to parse
    """
    models = []
    for line_no, line in enumerate(content.splitlines(), 1):
        if not line.strip():
            continue

        try:
            models.append(model_class.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            if strict:
                raise
            logger.warning(f"Skipping unreadable JSONL line {line_no}: {e}")

    return models
