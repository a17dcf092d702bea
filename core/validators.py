"""
Input validation for tool arguments.

Every helper raises ``ValidationIssue`` naming the offending field, which the
``service_tool`` wrapper turns into a "Bad Request" payload.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Sequence

from core.config import MAX_METADATA_BYTES
from core.errors import ValidationIssue


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} is required", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} is longer than {max_len} characters", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be text", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} is longer than {max_len} characters", field=field, error_type="max_length")


def validate_limit(value: Any, field: str, ceiling: int) -> int:
    """Reject non-positive limits and clamp the rest to ``ceiling``."""
    if not _is_int(value) or value <= 0:
        raise ValidationIssue(f"{field} must be a positive integer", field=field, error_type="out_of_range")
    return min(value, ceiling)


def validate_index(value: Any, field: str) -> None:
    if value is not None and not _is_int(value):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")


def validate_confidence(value: Any, field: str) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if not 0.0 <= value <= 1.0:
        raise ValidationIssue(f"{field} must be between 0.0 and 1.0", field=field, error_type="out_of_range")


def validate_list(values: Optional[Sequence], field: str, max_items: int, required: bool = False) -> None:
    if values is None or (required and isinstance(values, (list, tuple)) and not values):
        if required:
            raise ValidationIssue(f"{field} needs at least one item", field=field, error_type="required")
        return
    if not isinstance(values, (list, tuple)):
        raise ValidationIssue(f"{field} must be a list", field=field, error_type="invalid_type")
    if len(values) > max_items:
        raise ValidationIssue(f"{field} holds more than {max_items} items", field=field, error_type="max_items")


def validate_string_list(
    values: Optional[Sequence[str]],
    field: str,
    max_items: int,
    max_item_length: Optional[int] = None,
) -> None:
    validate_list(values, field, max_items)
    for item in values or ():
        if not isinstance(item, str):
            raise ValidationIssue(f"{field} must hold only text", field=field, error_type="invalid_type")
        if max_item_length is not None and len(item) > max_item_length:
            raise ValidationIssue(
                f"{field} has an item longer than {max_item_length} characters",
                field=field,
                error_type="max_length",
            )


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    """Metadata must be a JSON object no larger than ``MAX_METADATA_BYTES`` once encoded."""
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
    try:
        encoded = json.dumps(metadata)
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if len(encoded.encode("utf-8")) > MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} is larger than {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_size",
        )
