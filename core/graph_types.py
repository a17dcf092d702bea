"""
Typed views over tagged graph records.

Rows in ``shared_memory`` carry one of three closed payload shapes. Services
read them through these views rather than poking at columns by memory type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from core.models import MemoryRecord, MemoryType


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Entity:
    id: str
    tenant_id: str
    name: str
    entity_type: str
    created_by: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "entityType": self.entity_type,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Observation:
    id: str
    tenant_id: str
    entity_name: str
    contents: tuple[str, ...]
    message_type: Optional[str] = None
    sensitive: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entityName": self.entity_name,
            "contents": list(self.contents),
            "messageType": self.message_type,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Relation:
    id: str
    tenant_id: str
    source: str
    target: str
    relation_type: str
    properties: dict = field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from": self.source,
            "to": self.target,
            "relationType": self.relation_type,
            "properties": dict(self.properties),
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }


GraphView = Union[Entity, Observation, Relation]


def view_of(record: MemoryRecord) -> GraphView:
    """Return the typed view for a stored record."""
    if record.memory_type == MemoryType.entity:
        return Entity(
            id=record.id,
            tenant_id=record.tenant_id,
            name=record.name,
            entity_type=record.kind or "",
            created_by=record.created_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
    if record.memory_type == MemoryType.observation:
        return Observation(
            id=record.id,
            tenant_id=record.tenant_id,
            entity_name=record.name,
            contents=tuple(record.contents or ()),
            message_type=record.message_type,
            sensitive=bool(record.sensitive),
            created_by=record.created_by,
            created_at=record.created_at,
        )
    if record.memory_type == MemoryType.relation:
        return Relation(
            id=record.id,
            tenant_id=record.tenant_id,
            source=record.name,
            target=record.target_name or "",
            relation_type=record.kind or "",
            properties=dict(record.properties or {}),
            created_by=record.created_by,
            created_at=record.created_at,
        )
    raise ValueError(f"unknown memory_type: {record.memory_type}")


def vector_document(record: MemoryRecord) -> dict:
    """Flatten a record into the payload sent to the vector index."""
    view = view_of(record)
    if isinstance(view, Entity):
        text = f"{view.name} ({view.entity_type})"
    elif isinstance(view, Observation):
        text = "\n".join(view.contents)
    else:
        text = f"{view.source} {view.relation_type} {view.target}"
    return {
        "id": record.id,
        "tenantId": record.tenant_id,
        "memoryType": record.memory_type.value,
        "name": record.name,
        "text": text,
    }


__all__ = [
    "Entity",
    "Observation",
    "Relation",
    "GraphView",
    "view_of",
    "vector_document",
]
