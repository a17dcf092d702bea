"""
Content-injection screening for every write path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import core.config as config
from core.audit import audit
from core.context import RequestContext
from core.errors import ContentRejected
from core.notifications import notify

# Phrase matches are case-insensitive substring checks.
INJECTION_PATTERNS: tuple[str, ...] = (
    "ignore previous",
    "ignore all previous",
    "disregard previous",
    "system override",
    "[INST]",
    "<|im_start|>",
    "<|system|>",
    "### system:",
)


@dataclass(frozen=True)
class ScreenResult:
    safe: bool
    reason: Optional[str] = None


def screen_content(value: Optional[str]) -> ScreenResult:
    if value is None:
        return ScreenResult(True)
    if not isinstance(value, str):
        value = str(value)
    max_length = config.SANITIZER_MAX_CONTENT_LENGTH
    if len(value) > max_length:
        return ScreenResult(False, f"content exceeds max length {max_length}")
    lowered = value.casefold()
    for pattern in INJECTION_PATTERNS:
        if pattern.casefold() in lowered:
            return ScreenResult(False, f"matched pattern '{pattern}'")
    return ScreenResult(True)


def enforce_clean(
    operation: str,
    values: Iterable[Optional[str]],
    context: RequestContext,
    *,
    actor: str,
    target: Optional[str] = None,
) -> None:
    """
    Screen values before a write. On the first match the write is refused:
    a flagged audit row is recorded, operators are notified best-effort, and
    ``ContentRejected`` is raised.
    """
    for value in values:
        result = screen_content(value)
        if result.safe:
            continue
        audit(
            operation=operation,
            tenant_id=context.tenant_id,
            actor_id=actor,
            content=value,
            target=target,
            target_count=0,
            flagged=True,
            flag_reason=result.reason,
        )
        notify(
            f"Neural write flagged - agent: {actor}, operation: {operation}, reason: {result.reason}"
        )
        config.logger.warning(
            "content_rejected",
            extra={"operation": operation, "actor": actor, "reason": result.reason},
        )
        raise ContentRejected(f"Content flagged by sanitizer: {result.reason}")


__all__ = ["INJECTION_PATTERNS", "ScreenResult", "enforce_clean", "screen_content"]
