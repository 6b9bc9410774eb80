"""
Tag API Router
==============

Endpoints:
- GET    /tags
- POST   /tags
- GET    /tags/stats
- GET    /tags/{id}
- PUT    /tags/{id}
- DELETE /tags/{id}      ``force`` from the JSON body or the query string

Author: jetgause
Created: 2025-12-10
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from taskflow_core.auth import AuthContext, get_auth_context, require_ownership
from taskflow_core.database import Tag
from taskflow_core.dependencies import PROTECTED, get_db
from taskflow_core.errors import ValidationFailure, success_response
from taskflow_core.input_validator import TagCreate, TagDelete, TagQuery, TagUpdate, get_tag_query
from taskflow_core.repositories import TagRepository
from taskflow_core.security import rate_limit_dependency

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tags", tags=["tags"], dependencies=PROTECTED)

owned_tag = require_ownership(Tag, "Tag", param="tag_id")


async def get_tag_delete(request: Request, force: Optional[bool] = Query(None)) -> TagDelete:
    """Read ``force`` from the query string, falling back to an optional JSON body."""
    if force is not None:
        return TagDelete(force=force)
    body = await request.body()
    if not body:
        return TagDelete()
    try:
        return TagDelete.model_validate(json.loads(body))
    except ValueError:
        raise ValidationFailure("Invalid request body")


@router.get("")
def list_tags(
    request: Request,
    query: TagQuery = Depends(get_tag_query),
    auth: AuthContext = Depends(get_auth_context),
):
    with get_db(request).get_session() as session:
        page = TagRepository(session, auth.user.id).list(query)
        tags = [tag.to_dict() for tag in page.items]

    return success_response(
        {"tags": tags, "pagination": page.pagination_dict("totalTags")},
        "Tags retrieved successfully",
    )


@router.post("", status_code=201, dependencies=[Depends(rate_limit_dependency("create"))])
def create_tag(body: TagCreate, request: Request, auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        tag_data = TagRepository(session, auth.user.id).create(body).to_dict()
    return success_response({"tag": tag_data}, "Tag created successfully", status_code=201)


@router.get("/stats")
def tag_stats(request: Request, auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        stats = TagRepository(session, auth.user.id).stats()
    return success_response({"stats": stats}, "Tag statistics retrieved successfully")


@router.get("/{tag_id}")
def get_tag(request: Request, tag_id: str = Depends(owned_tag), auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        tag_data = TagRepository(session, auth.user.id).get(tag_id).to_dict()
    return success_response({"tag": tag_data}, "Tag retrieved successfully")


@router.put("/{tag_id}")
def update_tag(
    body: TagUpdate,
    request: Request,
    tag_id: str = Depends(owned_tag),
    auth: AuthContext = Depends(get_auth_context),
):
    with get_db(request).get_session() as session:
        tag_data = TagRepository(session, auth.user.id).update(tag_id, body.changes()).to_dict()
    return success_response({"tag": tag_data}, "Tag updated successfully")


@router.delete("/{tag_id}")
def delete_tag(
    request: Request,
    tag_id: str = Depends(owned_tag),
    options: TagDelete = Depends(get_tag_delete),
    auth: AuthContext = Depends(get_auth_context),
):
    with get_db(request).get_session() as session:
        result = TagRepository(session, auth.user.id).delete(tag_id, force=options.force)
    return success_response(
        {"removedFromTasks": result.removed_from_tasks},
        "Tag deleted successfully",
    )
