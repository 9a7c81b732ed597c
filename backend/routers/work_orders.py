# routers/work_orders.py — Work order CRUD, status lifecycle, assignments
# and workflow task submission/review
from datetime import datetime
from typing import Optional, List, Dict, Any
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session
from models import WorkOrder, WorkOrderStatus, WorkOrderPriority, AssignmentRole
from permissions import ensure_can_view, ensure_can_write
from work_orders import WorkOrderService, serialize_work_order, serialize_comment
from workflow_engine import WorkflowEngine, serialize_workflow, serialize_submission

router = APIRouter(prefix="/api/v1/work-orders", tags=["Work Orders"])


# ============================================================
# SCHEMAS
# ============================================================

class WorkOrderCreate(BaseModel):
    vessel_id: str
    workflow_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    type: str = Field(..., min_length=1, max_length=100)
    priority: WorkOrderPriority = WorkOrderPriority.NORMAL
    location: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    regulatory_ref: Optional[str] = None
    compliance_framework: List[str] = []
    metadata: Optional[Dict[str, Any]] = None


class WorkOrderUpdate(BaseModel):
    vessel_id: Optional[str] = None
    workflow_id: Optional[str] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[WorkOrderPriority] = None
    location: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    regulatory_ref: Optional[str] = None
    compliance_framework: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class StatusChange(BaseModel):
    status: WorkOrderStatus
    reason: Optional[str] = None


class AssignRequest(BaseModel):
    user_id: str
    role: AssignmentRole = AssignmentRole.TEAM_MEMBER


class AttachWorkflow(BaseModel):
    workflow_id: str


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)
    parent_id: Optional[str] = None


class TaskSubmit(BaseModel):
    data: Dict[str, Any] = {}
    notes: Optional[str] = None
    signature: Optional[str] = None


class ReviewRequest(BaseModel):
    notes: Optional[str] = None


def _detail(wo: WorkOrder) -> Dict[str, Any]:
    data = serialize_work_order(wo, include_assignments=True)
    data["workflow"] = serialize_workflow(wo.workflow) if wo.workflow else None
    data["task_submissions"] = [serialize_submission(s) for s in wo.task_submissions]
    return data


async def _load_detail(db: AsyncSession, work_order_id: str, user: CurrentUser) -> Dict[str, Any]:
    db.expire_all()
    wo = await WorkOrderService.get_by_id(
        db, work_order_id, user.organisation_id, user.id,
        include_org_scope=user.has_scope("work_orders:view"),
    )
    return _detail(wo)


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("")
async def list_work_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort: str = "created_at",
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
    status: Optional[WorkOrderStatus] = None,
    type: Optional[str] = None,
    vessel_id: Optional[str] = None,
    priority: Optional[WorkOrderPriority] = None,
    search: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Work orders visible to the caller: own organisation's plus any they collaborate on"""
    return await WorkOrderService.list(
        db,
        organisation_id=user.organisation_id,
        user_id=user.id,
        page=page,
        limit=limit,
        sort=sort,
        order=order,
        filters={
            "status": status.value if status else None,
            "type": type,
            "vessel_id": vessel_id,
            "priority": priority.value if priority else None,
        },
        search=search,
        include_org_scope=user.has_scope("work_orders:view"),
    )


@router.post("", status_code=201)
async def create_work_order(
    data: WorkOrderCreate,
    user: CurrentUser = Depends(require_permission("work_orders:create")),
    db: AsyncSession = Depends(get_db_session),
):
    wo = await WorkOrderService.create(db, data.model_dump(), user.organisation_id, user.id)
    return await _load_detail(db, wo.id, user)


@router.get("/{work_order_id}")
async def get_work_order(
    work_order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await _load_detail(db, work_order_id, user)


@router.put("/{work_order_id}")
async def update_work_order(
    work_order_id: str,
    data: WorkOrderUpdate,
    user: CurrentUser = Depends(require_permission("work_orders:edit")),
    db: AsyncSession = Depends(get_db_session),
):
    await WorkOrderService.update(
        db, work_order_id, user.organisation_id, data.model_dump(exclude_unset=True), user.id,
    )
    return await _load_detail(db, work_order_id, user)


@router.patch("/{work_order_id}/status")
async def change_status(
    work_order_id: str,
    data: StatusChange,
    user: CurrentUser = Depends(require_permission("work_orders:edit")),
    db: AsyncSession = Depends(get_db_session),
):
    wo = await WorkOrderService.change_status(
        db, work_order_id, user.organisation_id, data.status, user.id, data.reason,
    )
    return serialize_work_order(wo)


@router.post("/{work_order_id}/assign", status_code=201)
async def assign_user(
    work_order_id: str,
    data: AssignRequest,
    user: CurrentUser = Depends(require_permission("work_orders:assign")),
    db: AsyncSession = Depends(get_db_session),
):
    """Add or re-role a collaborator (any organisation)"""
    assignment = await WorkOrderService.assign(
        db, work_order_id, user.organisation_id, data.user_id, data.role, user.id,
    )
    return {
        "id": assignment.id,
        "work_order_id": assignment.work_order_id,
        "user_id": assignment.user_id,
        "role": assignment.role.value,
    }


@router.delete("/{work_order_id}/assign/{user_id}")
async def unassign_user(
    work_order_id: str,
    user_id: str,
    user: CurrentUser = Depends(require_permission("work_orders:assign")),
    db: AsyncSession = Depends(get_db_session),
):
    await WorkOrderService.unassign(db, work_order_id, user.organisation_id, user_id, user.id)
    return {"message": "Assignment removed"}


@router.delete("/{work_order_id}")
async def delete_work_order(
    work_order_id: str,
    user: CurrentUser = Depends(require_permission("work_orders:delete")),
    db: AsyncSession = Depends(get_db_session),
):
    await WorkOrderService.soft_delete(db, work_order_id, user.organisation_id, user.id)
    return {"message": "Work order deleted"}


# ── Comments ─────────────────────────────────────────────────

@router.get("/{work_order_id}/comments")
async def list_comments(
    work_order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await ensure_can_view(db, work_order_id, user)
    comments = await WorkOrderService.list_comments(db, work_order_id)
    return [serialize_comment(c) for c in comments]


@router.post("/{work_order_id}/comments", status_code=201)
async def add_comment(
    work_order_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Org editors and writing collaborators; observers and viewers read only"""
    await ensure_can_write(db, work_order_id, user)
    comment = await WorkOrderService.add_comment(db, work_order_id, user.id, data.content, data.parent_id)
    return serialize_comment(comment)


# ── Workflow ─────────────────────────────────────────────────

@router.post("/{work_order_id}/workflow")
async def attach_workflow(
    work_order_id: str,
    data: AttachWorkflow,
    user: CurrentUser = Depends(require_permission("work_orders:edit")),
    db: AsyncSession = Depends(get_db_session),
):
    """Attach a workflow and start it at its first step"""
    await WorkOrderService.update(
        db, work_order_id, user.organisation_id, {"workflow_id": data.workflow_id}, user.id,
    )
    return await _load_detail(db, work_order_id, user)


@router.post("/{work_order_id}/tasks/{task_id}/submit", status_code=201)
async def submit_task(
    work_order_id: str,
    task_id: str,
    data: TaskSubmit,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await ensure_can_write(db, work_order_id, user)
    submission = await WorkflowEngine.submit_task(db, work_order_id, task_id, data.model_dump(), user.id)
    return serialize_submission(submission)


@router.post("/{work_order_id}/tasks/{task_id}/approve")
async def approve_task(
    work_order_id: str,
    task_id: str,
    data: ReviewRequest,
    user: CurrentUser = Depends(require_permission("work_orders:approve")),
    db: AsyncSession = Depends(get_db_session),
):
    await ensure_can_view(db, work_order_id, user)
    submission = await WorkflowEngine.approve_task(db, work_order_id, task_id, user, data.notes)
    return serialize_submission(submission)


@router.post("/{work_order_id}/tasks/{task_id}/reject")
async def reject_task(
    work_order_id: str,
    task_id: str,
    data: ReviewRequest,
    user: CurrentUser = Depends(require_permission("work_orders:approve")),
    db: AsyncSession = Depends(get_db_session),
):
    await ensure_can_view(db, work_order_id, user)
    submission = await WorkflowEngine.reject_task(db, work_order_id, task_id, user, data.notes)
    return serialize_submission(submission)
