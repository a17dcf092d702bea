"""
Observation sensitivity classifier. Pure functions, no database access.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from core.graph_types import Observation
from core.services.authorization import GRAPH_OBSERVATIONS_VIEW, GRAPH_SENSITIVE_VIEW

SENSITIVE_MESSAGE_TYPES = frozenset({"system", "internal", "coordination"})
SENSITIVE_PREFIXES = ("[system]", "[internal]")


def _fields(observation: Any) -> tuple[Any, Any, Iterable]:
    if isinstance(observation, Observation):
        return observation.message_type, observation.sensitive, observation.contents
    if isinstance(observation, Mapping):
        return (
            observation.get("messageType", observation.get("message_type")),
            observation.get("sensitive"),
            observation.get("contents") or (),
        )
    raise TypeError("observation must be an Observation or a mapping")


def classify(observation: Any) -> bool:
    """Return True when the observation is agent-internal."""
    message_type, sensitive_flag, contents = _fields(observation)

    if isinstance(message_type, str) and message_type.strip().lower() in SENSITIVE_MESSAGE_TYPES:
        return True
    if sensitive_flag is True:
        return True
    for entry in contents:
        if not isinstance(entry, str):
            continue
        if entry.lstrip().casefold().startswith(SENSITIVE_PREFIXES):
            return True
    return False


def is_visible(observation: Any, permissions: Iterable[str]) -> bool:
    granted = set(permissions)
    if GRAPH_OBSERVATIONS_VIEW not in granted:
        return False
    return GRAPH_SENSITIVE_VIEW in granted or not classify(observation)


__all__ = ["classify", "is_visible", "SENSITIVE_MESSAGE_TYPES", "SENSITIVE_PREFIXES"]
