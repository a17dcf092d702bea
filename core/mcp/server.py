"""
MCP server wiring and tool registration.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from fastmcp import FastMCP

import core.config as config
from core.services import memory_service
from core.mcp.auth_middleware import get_current_context, MCPAuthMiddleware

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP(config.SERVICE_NAME)

_REGISTERED_TOOLS: list[tuple[Callable[..., dict], tuple[Any, ...], dict[str, Any]]] = []
_TOOL_REGISTRY_LOCK = threading.Lock()


def mcp_tool(*args, **kwargs):
    """Register a tool with FastMCP and keep a local registry of what was registered."""
    def decorator(fn: Callable[..., dict]):
        with _TOOL_REGISTRY_LOCK:
            _REGISTERED_TOOLS.append((fn, args, kwargs))
        mcp.tool(*args, **kwargs)(fn)
        return fn
    return decorator


def registered_tool_names() -> list[str]:
    with _TOOL_REGISTRY_LOCK:
        return sorted(fn.__name__ for fn, _, _ in _REGISTERED_TOOLS)


async def tool_inventory_status() -> dict:
    """Return the tool inventory as FastMCP reports it."""
    tools = await mcp.get_tools()
    tool_names = sorted(tools.keys())
    if not tool_names:
        config.logger.warning("tool_inventory_empty", extra={"registered": len(_REGISTERED_TOOLS)})
    return {"tool_count": len(tool_names), "tools": tool_names}


# =============================================================================
# Graph store
# =============================================================================

@mcp_tool()
def create_entities(entities: list[dict]) -> dict:
    return memory_service.create_entities(entities=entities, context=get_current_context())


@mcp_tool()
def add_observations(observations: list[dict]) -> dict:
    return memory_service.add_observations(observations=observations, context=get_current_context())


@mcp_tool()
def create_relations(relations: list[dict]) -> dict:
    return memory_service.create_relations(relations=relations, context=get_current_context())


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def search_entities(query: str, limit: int = config.SEARCH_LIMIT_DEFAULT, search_type: str = "hybrid") -> dict:
    return memory_service.search_entities(
        query=query,
        limit=limit,
        search_type=search_type,
        context=get_current_context(),
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def graph_export(
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    include_observations: bool = False,
    entity_name: Optional[str] = None,
    updated_since: Optional[str] = None,
) -> dict:
    return memory_service.export_graph_page(
        limit=limit,
        cursor=cursor,
        include_observations=include_observations,
        entity_name=entity_name,
        updated_since=updated_since,
        context=get_current_context(),
    )


# =============================================================================
# Graph mutations
# =============================================================================

@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def delete_entity(entity_name: str, dry_run: bool = False, reason: Optional[str] = None) -> dict:
    return memory_service.delete_entity(
        entity_name=entity_name,
        dry_run=dry_run,
        reason=reason,
        context=get_current_context(),
    )


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def remove_observations(
    entity_name: str,
    observation_ids: Optional[list[str]] = None,
    contains_any: Optional[list[str]] = None,
    dry_run: bool = False,
    reason: Optional[str] = None,
) -> dict:
    return memory_service.remove_observations(
        entity_name=entity_name,
        observation_ids=observation_ids,
        contains_any=contains_any,
        dry_run=dry_run,
        reason=reason,
        context=get_current_context(),
    )


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def update_observation(
    observation_id: str,
    new_content: str,
    content_index: Optional[int] = None,
    reason: Optional[str] = None,
) -> dict:
    return memory_service.update_observation(
        observation_id=observation_id,
        new_content=new_content,
        content_index=content_index,
        reason=reason,
        context=get_current_context(),
    )


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def delete_observations_by_entity(entity_name: str, dry_run: bool = False, reason: Optional[str] = None) -> dict:
    return memory_service.delete_observations_by_entity(
        entity_name=entity_name,
        dry_run=dry_run,
        reason=reason,
        context=get_current_context(),
    )


# =============================================================================
# Agent identity
# =============================================================================

@mcp_tool()
def register_agent(
    agent_id: str,
    name: Optional[str] = None,
    capabilities: Optional[list[str]] = None,
    endpoint: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> dict:
    return memory_service.register_agent(
        agent_id=agent_id,
        name=name,
        capabilities=capabilities,
        endpoint=endpoint,
        metadata=metadata,
        context=get_current_context(),
    )


@mcp_tool()
def record_learning(
    lesson: str,
    context: Optional[str] = None,
    confidence: float = 0.8,
    agent_id: Optional[str] = None,
) -> dict:
    return memory_service.record_learning(
        lesson=lesson,
        context_text=context,
        confidence=confidence,
        agent_id=agent_id,
        context=get_current_context(),
    )


@mcp_tool()
def set_preferences(preferences: dict, agent_id: Optional[str] = None) -> dict:
    return memory_service.set_preferences(
        preferences=preferences,
        agent_id=agent_id,
        context=get_current_context(),
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def get_individual_memory(agent_id: Optional[str] = None) -> dict:
    return memory_service.get_individual_memory(agent_id=agent_id, context=get_current_context())


# =============================================================================
# Messages
# =============================================================================

@mcp_tool()
def send_ai_message(
    to_agent: str,
    content: str,
    from_agent: Optional[str] = None,
    message_type: str = "direct",
    priority: str = "normal",
) -> dict:
    return memory_service.send_ai_message(
        to_agent=to_agent,
        content=content,
        from_agent=from_agent,
        message_type=message_type,
        priority=priority,
        context=get_current_context(),
    )


@mcp_tool()
def get_ai_messages(
    agent_id: str,
    message_type: Optional[str] = None,
    since: Optional[str] = None,
    limit: int = config.MESSAGE_LIMIT_DEFAULT,
    unread_only: bool = True,
    mark_as_read: bool = False,
    include_archived: bool = False,
    compact: bool = True,
) -> dict:
    return memory_service.get_ai_messages(
        agent_id=agent_id,
        message_type=message_type,
        since=since,
        limit=limit,
        unread_only=unread_only,
        mark_as_read=mark_as_read,
        include_archived=include_archived,
        compact=compact,
        context=get_current_context(),
    )


@mcp_tool()
def get_message_detail(message_id: str, agent_id: str, mark_as_read: bool = True) -> dict:
    return memory_service.get_message_detail(
        message_id=message_id,
        agent_id=agent_id,
        mark_as_read=mark_as_read,
        context=get_current_context(),
    )


@mcp_tool()
def mark_messages_read(agent_id: str, message_ids: Optional[list[str]] = None) -> dict:
    return memory_service.mark_messages_read(
        agent_id=agent_id,
        message_ids=message_ids,
        context=get_current_context(),
    )


@mcp_tool()
def archive_messages(agent_id: str, older_than_days: int = 30) -> dict:
    return memory_service.archive_messages(
        agent_id=agent_id,
        older_than_days=older_than_days,
        context=get_current_context(),
    )


# =============================================================================
# Sessions
# =============================================================================

@mcp_tool()
def get_agent_context(
    agent_id: str,
    project_id: Optional[str] = None,
    depth: Optional[str] = None,
    max_tokens: int = config.CONTEXT_DEFAULT_MAX_TOKENS,
) -> dict:
    return memory_service.get_agent_context(
        agent_id=agent_id,
        project_id=project_id,
        depth=depth,
        max_tokens=max_tokens,
        context=get_current_context(),
    )


@mcp_tool()
def begin_session(agent_id: str, project_id: str, max_tokens: int = config.CONTEXT_DEFAULT_MAX_TOKENS) -> dict:
    return memory_service.begin_session(
        agent_id=agent_id,
        project_id=project_id,
        max_tokens=max_tokens,
        context=get_current_context(),
    )


@mcp_tool()
def end_session(
    agent_id: str,
    project_id: str,
    summary: str,
    open_items: Optional[list[str]] = None,
    learnings: Optional[list[dict]] = None,
) -> dict:
    return memory_service.end_session(
        agent_id=agent_id,
        project_id=project_id,
        summary=summary,
        open_items=open_items,
        learnings=learnings,
        context=get_current_context(),
    )


# =============================================================================
# Audit
# =============================================================================

@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def get_audit_log(
    agent_id: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = config.AUDIT_LOG_DEFAULT_LIMIT,
    flagged_only: bool = False,
) -> dict:
    return memory_service.get_audit_log(
        agent_id=agent_id,
        operation=operation,
        limit=limit,
        flagged_only=flagged_only,
        context=get_current_context(),
    )


mcp_stream_app = MCPAuthMiddleware(mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
))


class MCPRouteNormalizerASGI:
    """Pure ASGI middleware - no response buffering, SSE-safe."""
    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path") == "/mcp":
            scope = dict(scope)
            scope["path"] = "/mcp/"
        await self.wrapped_app(scope, receive, send)
