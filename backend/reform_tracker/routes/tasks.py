"""Reform task routes."""
from __future__ import annotations

import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from reform_tracker.database import get_db
from reform_tracker.middleware.auth import (
    get_recorder,
    get_role_table,
    require_permission,
    write_audit_log,
)
from reform_tracker.rbac import Permission, RoleTable
from reform_tracker.services.audit_service import AuditRecorder, RequestDetails
from reform_tracker.services.authorization import (
    Principal,
    RequestContext,
    check_permission,
)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

TASK_STATUSES = ("pending", "in_progress", "completed", "overdue")
TASK_PRIORITIES = ("low", "medium", "high", "critical")


class TaskCreate(BaseModel):
    title: str
    description: str | None = None
    status: str = "pending"
    priority: str = "medium"
    assigned_to: str | None = None
    due_date: datetime.date | None = None

    @field_validator("status")
    @classmethod
    def _check_status(cls, v: str) -> str:
        if v not in TASK_STATUSES:
            raise ValueError(f"status must be one of {', '.join(TASK_STATUSES)}")
        return v

    @field_validator("priority")
    @classmethod
    def _check_priority(cls, v: str) -> str:
        if v not in TASK_PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(TASK_PRIORITIES)}")
        return v


class TaskUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    assigned_to: str | None = None
    due_date: datetime.date | None = None

    @field_validator("status")
    @classmethod
    def _check_status(cls, v: str | None) -> str | None:
        if v is not None and v not in TASK_STATUSES:
            raise ValueError(f"status must be one of {', '.join(TASK_STATUSES)}")
        return v

    @field_validator("priority")
    @classmethod
    def _check_priority(cls, v: str | None) -> str | None:
        if v is not None and v not in TASK_PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(TASK_PRIORITIES)}")
        return v


def _task_out(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "assigned_to": t.assigned_to,
        "created_by": t.created_by,
        "due_date": t.due_date.isoformat() if t.due_date else None,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


async def _require_assign(
    request: Request,
    principal: Principal,
    recorder: AuditRecorder,
    role_table: RoleTable,
) -> None:
    """Assigning a task to someone needs ``tasks:assign`` as well."""
    decision = await check_permission(
        principal,
        Permission.ASSIGN_TASKS,
        role_table=role_table,
        recorder=recorder,
        context=RequestContext.from_request(request),
    )
    if not decision.allowed:
        raise HTTPException(status_code=403, detail="Insufficient permissions")


@router.get("")
async def list_tasks(
    status: str | None = Query(None),
    assigned_to: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission(Permission.VIEW_TASKS)),
):
    from reform_tracker.models.task import Task

    count_stmt = select(func.count(Task.id))
    data_stmt = select(Task)

    if status:
        count_stmt = count_stmt.where(Task.status == status)
        data_stmt = data_stmt.where(Task.status == status)
    if assigned_to:
        count_stmt = count_stmt.where(Task.assigned_to == assigned_to)
        data_stmt = data_stmt.where(Task.assigned_to == assigned_to)

    total = (await db.execute(count_stmt)).scalar_one()
    data_stmt = data_stmt.order_by(Task.id.desc()).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(data_stmt)

    items = [_task_out(t) for t in result.scalars().all()]
    return {"items": items, "total": total, "page": page, "page_size": page_size}


@router.post("", status_code=201)
async def create_task(
    body: TaskCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    role_table: RoleTable = Depends(get_role_table),
    principal: Principal = Depends(require_permission(Permission.CREATE_TASKS)),
):
    from reform_tracker.models.task import Task

    if body.assigned_to and body.assigned_to != principal.id:
        await _require_assign(request, principal, recorder, role_table)

    task = Task(
        title=body.title,
        description=body.description,
        status=body.status,
        priority=body.priority,
        assigned_to=body.assigned_to,
        created_by=principal.id,
        due_date=body.due_date,
    )
    db.add(task)
    await db.commit()

    await write_audit_log(
        recorder,
        request,
        principal,
        action="create_task",
        resource="tasks",
        resource_id=task.id,
        details=RequestDetails(
            method=request.method,
            path=request.url.path,
            body=body.model_dump(mode="json"),
        ),
    )
    return _task_out(task)


@router.put("/{task_id}")
async def update_task(
    task_id: int,
    body: TaskUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    role_table: RoleTable = Depends(get_role_table),
    principal: Principal = Depends(require_permission(Permission.EDIT_TASKS)),
):
    from reform_tracker.models.task import Task

    result = await db.execute(select(Task).where(Task.id == task_id))
    task = result.scalar_one_or_none()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    changes = body.model_dump(mode="json", exclude_unset=True)
    if "assigned_to" in changes and changes["assigned_to"] not in (None, principal.id):
        await _require_assign(request, principal, recorder, role_table)

    for field in ("title", "description", "status", "priority", "assigned_to"):
        if field in changes:
            setattr(task, field, getattr(body, field))
    if "due_date" in changes:
        task.due_date = body.due_date
    await db.commit()

    await write_audit_log(
        recorder,
        request,
        principal,
        action="update_task",
        resource="tasks",
        resource_id=task_id,
        details=RequestDetails(method=request.method, path=request.url.path, body=changes),
    )
    return _task_out(task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    principal: Principal = Depends(require_permission(Permission.DELETE_TASKS)),
):
    from reform_tracker.models.task import Task

    result = await db.execute(select(Task).where(Task.id == task_id))
    task = result.scalar_one_or_none()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    await db.delete(task)
    await db.commit()

    await write_audit_log(
        recorder,
        request,
        principal,
        action="delete_task",
        resource="tasks",
        resource_id=task_id,
        details=RequestDetails(method=request.method, path=request.url.path),
    )
    return {"status": "deleted"}
