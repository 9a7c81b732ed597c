# routers/workflows.py — Workflow templates (ordered steps of tasks)
from typing import Optional, List, Dict, Any
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session
from models import StepType, TaskType
from workflow_engine import WorkflowEngine, serialize_workflow

router = APIRouter(prefix="/api/v1/workflows", tags=["Workflows"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    order: Optional[int] = None
    task_type: TaskType = TaskType.CHECKLIST
    is_required: bool = True
    config: Dict[str, Any] = {}


class StepCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    order: Optional[int] = None
    type: StepType = StepType.DATA_CAPTURE
    required_role: Optional[str] = None
    auto_advance: bool = False
    config: Dict[str, Any] = {}
    tasks: List[TaskCreate] = []


class WorkflowCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    is_template: bool = True
    is_active: bool = True
    steps: List[StepCreate] = []


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("/templates")
async def list_templates(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Active workflow templates with nested steps and tasks"""
    templates = await WorkflowEngine.get_workflow_templates(db)
    return [serialize_workflow(w) for w in templates]


@router.post("/templates", status_code=201)
async def create_template(
    data: WorkflowCreate,
    user: CurrentUser = Depends(require_permission("workflows:manage")),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a workflow template"""
    payload = data.model_dump(exclude_none=True)
    workflow = await WorkflowEngine.create_template(
        db, payload, actor_id=user.id, organisation_id=user.organisation_id,
    )
    return serialize_workflow(workflow)


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    workflow = await WorkflowEngine.get_workflow(db, workflow_id)
    return serialize_workflow(workflow)
