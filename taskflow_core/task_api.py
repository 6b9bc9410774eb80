"""
Task API Router
===============

Owner-scoped task endpoints.

Endpoints:
- GET    /tasks          list with filters, sort and pagination
- POST   /tasks          create
- GET    /tasks/stats    counts by status/priority, overdue, due soon
- PATCH  /tasks/bulk     update many owned tasks at once
- GET    /tasks/{id}
- PUT    /tasks/{id}
- DELETE /tasks/{id}     soft delete

Author: jetgause
Created: 2025-12-10
"""

import logging

from fastapi import APIRouter, Depends, Request

from taskflow_core.auth import AuthContext, get_auth_context, require_ownership
from taskflow_core.database import Task
from taskflow_core.dependencies import PROTECTED, get_db, get_dispatcher
from taskflow_core.errors import success_response
from taskflow_core.input_validator import BulkUpdate, TaskCreate, TaskQuery, TaskUpdate, get_task_query
from taskflow_core.repositories import TaskRepository
from taskflow_core.security import rate_limit_dependency

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=PROTECTED)

owned_task = require_ownership(Task, "Task", param="task_id")

# Changes that move or clear a task's reminder
REMINDER_FIELDS = {"status", "due_date"}


@router.get("")
def list_tasks(
    request: Request,
    query: TaskQuery = Depends(get_task_query),
    auth: AuthContext = Depends(get_auth_context),
):
    with get_db(request).get_session() as session:
        page = TaskRepository(session, auth.user.id).list(query)
        tasks = [task.to_dict() for task in page.items]

    return success_response(
        {"tasks": tasks, "pagination": page.pagination_dict("totalTasks")},
        "Tasks retrieved successfully",
    )


@router.post("", status_code=201, dependencies=[Depends(rate_limit_dependency("create"))])
def create_task(body: TaskCreate, request: Request, auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        task = TaskRepository(session, auth.user.id).create(body)
        task_data = task.to_dict()

    get_dispatcher(request).schedule_reminder(task)
    return success_response({"task": task_data}, "Task created successfully", status_code=201)


@router.get("/stats")
def task_stats(request: Request, auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        stats = TaskRepository(session, auth.user.id).stats()
    return success_response({"stats": stats}, "Task statistics retrieved successfully")


@router.patch("/bulk")
def bulk_update_tasks(body: BulkUpdate, request: Request, auth: AuthContext = Depends(get_auth_context)):
    task_ids, update = body.validated()
    changes = update.changes()

    with get_db(request).get_session() as session:
        repo = TaskRepository(session, auth.user.id)
        result = repo.bulk_update(task_ids, changes)
        touched = [repo.get(task_id) for task_id in result.modified_ids] if REMINDER_FIELDS & changes.keys() else []

    dispatcher = get_dispatcher(request)
    for task in touched:
        dispatcher.schedule_reminder(task)

    return success_response(
        result.to_dict(),
        f"{result.modified_count} tasks updated successfully",
    )


@router.get("/{task_id}")
def get_task(request: Request, task_id: str = Depends(owned_task), auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        task_data = TaskRepository(session, auth.user.id).get(task_id).to_dict()
    return success_response({"task": task_data}, "Task retrieved successfully")


@router.put("/{task_id}")
def update_task(
    body: TaskUpdate,
    request: Request,
    task_id: str = Depends(owned_task),
    auth: AuthContext = Depends(get_auth_context),
):
    changes = body.changes()
    with get_db(request).get_session() as session:
        task = TaskRepository(session, auth.user.id).update(task_id, changes)
        task_data = task.to_dict()

    if REMINDER_FIELDS & changes.keys():
        get_dispatcher(request).schedule_reminder(task)

    return success_response({"task": task_data}, "Task updated successfully")


@router.delete("/{task_id}")
def delete_task(request: Request, task_id: str = Depends(owned_task), auth: AuthContext = Depends(get_auth_context)):
    with get_db(request).get_session() as session:
        TaskRepository(session, auth.user.id).soft_delete(task_id)

    get_dispatcher(request).cancel_reminder(task_id)
    return success_response(message="Task deleted successfully")
