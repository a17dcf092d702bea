"""
Graph export and mutation endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.deps import get_request_context
from app.errors import payload_response
from core.context import RequestContext
from core.services import memory_service

router = APIRouter()

EXPORT_CACHE_CONTROL = "private, max-age=30"


class RemoveObservationsBody(BaseModel):
    observationIds: Optional[list[str]] = None
    containsAny: Optional[list[str]] = None
    dryRun: bool = False
    reason: Optional[str] = None


class UpdateObservationBody(BaseModel):
    newContent: str
    contentIndex: Optional[int] = None
    reason: Optional[str] = None


def _graph_export(
    limit: Optional[int],
    cursor: Optional[str],
    include_observations: bool,
    entity_name: Optional[str],
    updated_since: Optional[str],
    if_none_match: Optional[str],
    context: RequestContext,
) -> Response:
    result = memory_service.export_graph(
        context,
        limit=limit,
        cursor=cursor,
        include_observations=include_observations,
        entity_name=entity_name,
        updated_since=updated_since,
        if_none_match=if_none_match,
    )
    headers = {"ETag": result.etag, "Cache-Control": EXPORT_CACHE_CONTROL}
    if result.not_modified:
        return Response(status_code=304, headers=headers)
    return JSONResponse(result.body, headers=headers)


@router.get("/api/graph-export")
def graph_export(
    limit: Optional[int] = Query(None),
    cursor: Optional[str] = Query(None),
    include_observations: bool = Query(False, alias="includeObservations"),
    entity_name: Optional[str] = Query(None, alias="entityName"),
    updated_since: Optional[str] = Query(None, alias="updatedSince"),
    if_none_match: Optional[str] = Header(None),
    context: RequestContext = Depends(get_request_context),
):
    """Paginated, permission-filtered graph snapshot with ETag revalidation."""
    return _graph_export(limit, cursor, include_observations, entity_name, updated_since, if_none_match, context)


@router.get("/graph-export", include_in_schema=False)
def graph_export_alias(
    limit: Optional[int] = Query(None),
    cursor: Optional[str] = Query(None),
    include_observations: bool = Query(False, alias="includeObservations"),
    entity_name: Optional[str] = Query(None, alias="entityName"),
    updated_since: Optional[str] = Query(None, alias="updatedSince"),
    if_none_match: Optional[str] = Header(None),
    context: RequestContext = Depends(get_request_context),
):
    return _graph_export(limit, cursor, include_observations, entity_name, updated_since, if_none_match, context)


@router.delete("/api/graph/entities/{entity_name}")
def delete_entity(
    entity_name: str,
    dry_run: bool = Query(False, alias="dryRun"),
    reason: Optional[str] = Query(None),
    context: RequestContext = Depends(get_request_context),
):
    return payload_response(
        memory_service.delete_entity(entity_name=entity_name, dry_run=dry_run, reason=reason, context=context)
    )


@router.post("/api/graph/entities/{entity_name}/observations/remove")
def remove_observations(
    entity_name: str,
    body: RemoveObservationsBody,
    context: RequestContext = Depends(get_request_context),
):
    return payload_response(
        memory_service.remove_observations(
            entity_name=entity_name,
            observation_ids=body.observationIds,
            contains_any=body.containsAny,
            dry_run=body.dryRun,
            reason=body.reason,
            context=context,
        )
    )


@router.delete("/api/graph/entities/{entity_name}/observations")
def delete_observations_by_entity(
    entity_name: str,
    dry_run: bool = Query(False, alias="dryRun"),
    reason: Optional[str] = Query(None),
    context: RequestContext = Depends(get_request_context),
):
    return payload_response(
        memory_service.delete_observations_by_entity(
            entity_name=entity_name,
            dry_run=dry_run,
            reason=reason,
            context=context,
        )
    )


@router.patch("/api/graph/observations/{observation_id}")
def update_observation(
    observation_id: str,
    body: UpdateObservationBody,
    context: RequestContext = Depends(get_request_context),
):
    return payload_response(
        memory_service.update_observation(
            observation_id=observation_id,
            new_content=body.newContent,
            content_index=body.contentIndex,
            reason=body.reason,
            context=context,
        )
    )
