"""
Neural memory service facade.

Re-exports the tool entry points and owns the lifecycle of the outbound
ports (vector index, notifier).
"""

from core.audit import get_audit_sink, set_audit_sink
from core.notifications import build_notifier_from_config, close_notifier, set_notifier
from core.services.agent_memory import (
    get_individual_memory,
    record_learning,
    register_agent,
    set_preferences,
)
from core.services.audit_query import get_audit_log
from core.services.graph_export import ExportResult, export_graph, export_graph_page, invalidate_export_cache
from core.services.graph_mutations import (
    delete_entity,
    delete_observations_by_entity,
    remove_observations,
    update_observation,
)
from core.services.graph_store import (
    add_observations,
    create_entities,
    create_relations,
    search_entities,
)
from core.services.memory_shared import is_error_payload, logger, service_tool
from core.services.messages import (
    archive_messages,
    get_ai_messages,
    get_message_detail,
    mark_messages_read,
    send_ai_message,
)
from core.services.session_context import get_agent_context
from core.services.sessions import begin_session, end_session
from core.services.tombstones import sweep_tombstones
from core.vector_index import build_vector_index_from_config, close_vector_index, set_vector_index


def init_ports():
    """Build the vector index and notifier from config."""
    index = build_vector_index_from_config()
    set_vector_index(index)
    notifier = build_notifier_from_config()
    set_notifier(notifier)
    logger.info(
        "ports_initialized",
        extra={"vector_backend": getattr(index, "name", "none"), "notifier_enabled": notifier.enabled},
    )


def close_ports():
    """Release outbound clients on shutdown."""
    close_vector_index()
    close_notifier()
    logger.info("ports_closed")


__all__ = [
    "ExportResult",
    "add_observations",
    "archive_messages",
    "begin_session",
    "close_ports",
    "create_entities",
    "create_relations",
    "delete_entity",
    "delete_observations_by_entity",
    "end_session",
    "export_graph",
    "export_graph_page",
    "get_agent_context",
    "get_ai_messages",
    "get_audit_log",
    "get_audit_sink",
    "get_individual_memory",
    "get_message_detail",
    "init_ports",
    "invalidate_export_cache",
    "is_error_payload",
    "mark_messages_read",
    "record_learning",
    "register_agent",
    "remove_observations",
    "search_entities",
    "send_ai_message",
    "service_tool",
    "set_audit_sink",
    "set_preferences",
    "sweep_tombstones",
    "update_observation",
]
