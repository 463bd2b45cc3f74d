"""
Centralized LLM JSON parsing and validation.

Every LLM response goes through parse_llm_json, which strips markdown code
fences, decodes the JSON and checks it against a named shape. Any failure is
an LLMResponseError; callers turn it into a stage warning and fall back to a
deterministic decision.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ontoforge.errors import LLMResponseError

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


@dataclass
class ValidationResult:
    """Result of shape validation."""
    valid: bool
    errors: List[str] = field(default_factory=list)


# Each shape defines required fields and their expected types
_SHAPES: Dict[str, Dict[str, Any]] = {
    "relationship_verdict": {
        "required_fields": ["is_valid_fk", "confidence"],
        "field_types": {
            "is_valid_fk": bool,
            "confidence": (int, float),
            "cardinality": (str, type(None)),
            "reasoning": (str, type(None)),
        },
    },
    "relationship_enrichment": {
        "required_fields": ["description"],
        "field_types": {
            "description": str,
            "association": (str, type(None)),
        },
    },
    "column_features": {
        "required_fields": ["columns"],
        "field_types": {"columns": list},
        "item_field": "columns",
        "item_required_fields": ["column", "role"],
        "item_field_types": {
            "column": str,
            "role": str,
            "purpose": (str, type(None)),
            "description": (str, type(None)),
        },
    },
}


def strip_code_fences(raw: str) -> str:
    """Remove a surrounding ```json ... ``` fence if present."""
    match = _FENCE.match(raw)
    return match.group(1).strip() if match else raw.strip()


def validate_shape(payload: Any, shape_name: str) -> ValidationResult:
    """
    Validate a decoded payload against a known shape.

    Args:
        payload: Decoded JSON value
        shape_name: One of the registered shapes

    Returns:
        ValidationResult with valid flag and error list
    """
    if shape_name not in _SHAPES:
        return ValidationResult(False, [f"Unknown shape: {shape_name}"])
    if not isinstance(payload, dict):
        return ValidationResult(False, [f"Expected object, got {type(payload).__name__}"])

    shape = _SHAPES[shape_name]
    errors: List[str] = []

    for name in shape.get("required_fields", []):
        if name not in payload:
            errors.append(f"Missing required field: {name}")
    for name, expected in shape.get("field_types", {}).items():
        if name in payload and not isinstance(payload[name], expected):
            errors.append(
                f"Field '{name}' has wrong type: got {type(payload[name]).__name__}"
            )
    # bool is an int subclass; a numeric confidence must not be a boolean
    if isinstance(payload.get("confidence"), bool):
        errors.append("Field 'confidence' has wrong type: got bool")
    # json.loads accepts NaN and Infinity literals
    for name, value in payload.items():
        if isinstance(value, float) and not math.isfinite(value):
            errors.append(f"Field '{name}' must be a finite number")

    item_field = shape.get("item_field")
    if item_field and isinstance(payload.get(item_field), list):
        for idx, item in enumerate(payload[item_field]):
            if not isinstance(item, dict):
                errors.append(f"{item_field}[{idx}] is not an object")
                continue
            for name in shape.get("item_required_fields", []):
                if name not in item:
                    errors.append(f"{item_field}[{idx}] missing required field: {name}")
            for name, expected in shape.get("item_field_types", {}).items():
                if name in item and not isinstance(item[name], expected):
                    errors.append(f"{item_field}[{idx}].{name} has wrong type")
            for name, value in item.items():
                if isinstance(value, float) and not math.isfinite(value):
                    errors.append(f"{item_field}[{idx}].{name} must be a finite number")

    return ValidationResult(valid=not errors, errors=errors)


def parse_llm_json(raw: Optional[str], shape_name: str) -> Dict[str, Any]:
    """
    Parse and validate an LLM response.

    Args:
        raw: Raw LLM text (may be fenced, empty or malformed)
        shape_name: Expected shape

    Returns:
        Decoded dictionary

    Raises:
        LLMResponseError: If the text is empty, not JSON, or the wrong shape
    """
    if raw is None or not raw.strip():
        raise LLMResponseError("Empty LLM response", raw)

    text = strip_code_fences(raw)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        preview = text[:100]
        logger.debug(f"LLM JSON decode failed: {e}; preview={preview!r}")
        raise LLMResponseError(f"LLM response is not valid JSON: {e.msg}", raw) from e

    result = validate_shape(payload, shape_name)
    if not result.valid:
        raise LLMResponseError(
            f"LLM response does not match '{shape_name}': {'; '.join(result.errors)}", raw
        )
    return payload
