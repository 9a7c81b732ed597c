# workflow_engine.py — Multi-step workflow progression for work orders.
#
# A work order with an attached workflow sits on exactly one step at a time
# (current_step_id). Submitting and approving tasks re-evaluates that step;
# once every required task is satisfied the order moves to the next step,
# skipping NOTIFICATION steps whose requirements are already met. Finishing
# the last step completes the work order.
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import record_audit
from errors import NotFound, Forbidden, ValidationError
from models import (
    WorkOrder, Workflow, WorkflowStep, Task, TaskSubmission, WorkOrderAssignment,
    WorkOrderStatus, StepType, TaskType, SubmissionStatus, AuditAction, utcnow,
)

logger = logging.getLogger("berthwise.workflow")

REVIEW_STEP_TYPES = frozenset({StepType.REVIEW, StepType.PARALLEL_REVIEW})
ADMIN_SCOPE = "admin:full"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


# ============================================================
# STEP COMPLETION
# ============================================================

def task_is_satisfied(step_type: StepType, submissions: Iterable[TaskSubmission]) -> bool:
    """Review steps need an approval; every other step just needs the work done."""
    if StepType(step_type) in REVIEW_STEP_TYPES:
        accepted = {SubmissionStatus.APPROVED}
    else:
        accepted = {SubmissionStatus.SUBMITTED, SubmissionStatus.APPROVED}
    return any(SubmissionStatus(s.status) in accepted for s in submissions)


def step_is_complete(step: WorkflowStep, submissions: Iterable[TaskSubmission]) -> bool:
    """True when every required task of the step is satisfied.

    A step without required tasks is trivially complete.
    """
    by_task: Dict[str, List[TaskSubmission]] = {}
    for submission in submissions:
        by_task.setdefault(submission.task_id, []).append(submission)

    return all(
        task_is_satisfied(step.type, by_task.get(task.id, []))
        for task in step.tasks
        if task.is_required
    )


# ============================================================
# SERIALISATION
# ============================================================

def serialize_task(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "step_id": task.step_id,
        "name": task.name,
        "description": task.description,
        "order": task.order,
        "task_type": _enum_value(task.task_type),
        "is_required": task.is_required,
        "config": task.config or {},
    }


def serialize_step(step: WorkflowStep) -> Dict[str, Any]:
    return {
        "id": step.id,
        "workflow_id": step.workflow_id,
        "name": step.name,
        "description": step.description,
        "order": step.order,
        "type": _enum_value(step.type),
        "required_role": step.required_role,
        "auto_advance": bool(step.auto_advance),
        "config": step.config or {},
        "tasks": [serialize_task(t) for t in step.tasks],
    }


def serialize_workflow(workflow: Workflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "organisation_id": workflow.organisation_id,
        "is_template": workflow.is_template,
        "is_active": workflow.is_active,
        "steps": [serialize_step(s) for s in workflow.steps],
        "created_at": _iso(workflow.created_at),
    }


def serialize_submission(submission: TaskSubmission) -> Dict[str, Any]:
    return {
        "id": submission.id,
        "task_id": submission.task_id,
        "work_order_id": submission.work_order_id,
        "user_id": submission.user_id,
        "status": _enum_value(submission.status),
        "data": submission.data or {},
        "notes": submission.notes,
        "signature": submission.signature,
        "submitted_at": _iso(submission.submitted_at),
        "reviewed_at": _iso(submission.reviewed_at),
        "reviewed_by": submission.reviewed_by,
        "review_notes": submission.review_notes,
    }


def _workflow_tree():
    return selectinload(Workflow.steps).selectinload(WorkflowStep.tasks)


# ============================================================
# ENGINE
# ============================================================

class WorkflowEngine:

    @staticmethod
    async def get_workflow_templates(db: AsyncSession) -> List[Workflow]:
        result = await db.execute(
            select(Workflow)
            .where(and_(Workflow.is_template.is_(True), Workflow.is_active.is_(True)))
            .options(_workflow_tree())
            .order_by(Workflow.name)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_workflow(db: AsyncSession, workflow_id: str) -> Workflow:
        result = await db.execute(
            select(Workflow).where(Workflow.id == workflow_id).options(_workflow_tree())
            .execution_options(populate_existing=True)
        )
        workflow = result.scalar_one_or_none()
        if not workflow:
            raise NotFound("Workflow not found")
        return workflow

    @staticmethod
    async def create_template(
        db: AsyncSession,
        data: Dict[str, Any],
        actor_id: Optional[str] = None,
        organisation_id: Optional[str] = None,
    ) -> Workflow:
        steps_data = data.get("steps") or []
        orders = [s.get("order", idx) for idx, s in enumerate(steps_data)]
        if len(orders) != len(set(orders)):
            raise ValidationError("Step order values must be unique within a workflow")

        workflow = Workflow(
            name=data["name"],
            description=data.get("description"),
            organisation_id=organisation_id,
            is_template=data.get("is_template", True),
            is_active=data.get("is_active", True),
            created_by=actor_id,
        )
        for idx, step_data in enumerate(steps_data):
            step = WorkflowStep(
                name=step_data["name"],
                description=step_data.get("description"),
                order=step_data.get("order", idx),
                type=StepType(step_data.get("type") or StepType.DATA_CAPTURE),
                required_role=step_data.get("required_role"),
                auto_advance=bool(step_data.get("auto_advance", False)),
                config=step_data.get("config") or {},
            )
            for t_idx, task_data in enumerate(step_data.get("tasks") or []):
                step.tasks.append(Task(
                    name=task_data["name"],
                    description=task_data.get("description"),
                    order=task_data.get("order", t_idx),
                    task_type=TaskType(task_data.get("task_type") or TaskType.CHECKLIST),
                    is_required=bool(task_data.get("is_required", True)),
                    config=task_data.get("config") or {},
                ))
            workflow.steps.append(step)

        db.add(workflow)
        await db.commit()
        return await WorkflowEngine.get_workflow(db, workflow.id)

    @staticmethod
    async def initialize_workflow(
        db: AsyncSession,
        work_order_id: str,
        workflow_id: str,
        commit: bool = True,
    ) -> Optional[str]:
        """Attach a workflow and put the work order on its first step.

        A workflow without steps leaves the work order untouched. Returns
        the id of the step the work order now sits on, if any.
        """
        result = await db.execute(
            select(Workflow).where(Workflow.id == workflow_id).options(selectinload(Workflow.steps))
            .execution_options(populate_existing=True)
        )
        workflow = result.scalar_one_or_none()
        if not workflow:
            raise NotFound("Workflow not found")
        if not workflow.steps:
            return None

        wo = await db.get(WorkOrder, work_order_id)
        if not wo or wo.is_deleted:
            raise NotFound("Work order not found")

        first_step = workflow.steps[0]
        wo.workflow_id = workflow.id
        wo.current_step_id = first_step.id
        if commit:
            await db.commit()
        else:
            await db.flush()
        logger.info(f"Work order {work_order_id[:8]} entered workflow {workflow.name!r} at step {first_step.name!r}")
        return first_step.id

    @staticmethod
    async def submit_task(
        db: AsyncSession,
        work_order_id: str,
        task_id: str,
        payload: Dict[str, Any],
        actor_id: str,
    ) -> TaskSubmission:
        """Record work against a task, then re-evaluate the current step.

        The task must belong to the work order's workflow but need not be on
        the current step.
        """
        result = await db.execute(
            select(WorkOrder)
            .where(and_(WorkOrder.id == work_order_id, WorkOrder.is_deleted.is_(False)))
            .options(selectinload(WorkOrder.workflow).options(_workflow_tree()))
        )
        wo = result.scalar_one_or_none()
        if not wo:
            raise NotFound("Work order not found")

        workflow_task_ids = set()
        if wo.workflow:
            workflow_task_ids = {t.id for s in wo.workflow.steps for t in s.tasks}
        if task_id not in workflow_task_ids:
            raise NotFound("Task not found")

        submission = TaskSubmission(
            task_id=task_id,
            work_order_id=work_order_id,
            user_id=actor_id,
            data=payload.get("data") or {},
            notes=payload.get("notes"),
            signature=payload.get("signature"),
            status=SubmissionStatus.SUBMITTED,
            submitted_at=utcnow(),
        )
        db.add(submission)
        await db.flush()

        record_audit(
            db,
            action=AuditAction.SUBMISSION,
            entity_type="TaskSubmission",
            entity_id=submission.id,
            actor_id=actor_id,
            organisation_id=wo.organisation_id,
            description=f"Submitted task {task_id} for work order {wo.reference_number}",
        )
        await db.commit()

        await WorkflowEngine.check_and_advance(db, work_order_id, actor_id=actor_id)
        return submission

    @staticmethod
    async def _pending_submission(db: AsyncSession, work_order_id: str, task_id: str) -> TaskSubmission:
        result = await db.execute(
            select(TaskSubmission)
            .where(
                and_(
                    TaskSubmission.task_id == task_id,
                    TaskSubmission.work_order_id == work_order_id,
                    TaskSubmission.status == SubmissionStatus.SUBMITTED,
                )
            )
            .options(selectinload(TaskSubmission.task).selectinload(Task.step))
            .order_by(TaskSubmission.created_at.desc())
            .limit(1)
        )
        submission = result.scalar_one_or_none()
        if not submission:
            raise NotFound("No pending submission found")
        return submission

    @staticmethod
    async def _ensure_required_role(db: AsyncSession, step: WorkflowStep, work_order_id: str, actor) -> None:
        """Enforce the step's required_role against the reviewer.

        Satisfied by a matching organisation role, a matching collaborator
        assignment on this work order, or full admin rights.
        """
        required = (step.required_role or "").strip().upper()
        if not required:
            return
        if actor.has_scope(ADMIN_SCOPE) or (actor.role or "").upper() == required:
            return
        result = await db.execute(
            select(WorkOrderAssignment.role).where(
                and_(
                    WorkOrderAssignment.work_order_id == work_order_id,
                    WorkOrderAssignment.user_id == actor.id,
                )
            )
        )
        role = result.scalar_one_or_none()
        if role is not None and _enum_value(role).upper() == required:
            return
        raise Forbidden(f"Step {step.name!r} requires role {required}")

    @staticmethod
    async def _review(
        db: AsyncSession,
        work_order_id: str,
        task_id: str,
        actor,
        notes: Optional[str],
        outcome: SubmissionStatus,
    ) -> TaskSubmission:
        submission = await WorkflowEngine._pending_submission(db, work_order_id, task_id)
        await WorkflowEngine._ensure_required_role(db, submission.task.step, work_order_id, actor)

        submission.status = outcome
        submission.reviewed_at = utcnow()
        submission.reviewed_by = actor.id
        submission.review_notes = notes

        approved = outcome == SubmissionStatus.APPROVED
        record_audit(
            db,
            action=AuditAction.APPROVAL if approved else AuditAction.REJECTION,
            entity_type="TaskSubmission",
            entity_id=submission.id,
            actor_id=actor.id,
            organisation_id=actor.organisation_id,
            description=f"{'Approved' if approved else 'Rejected'} task submission for work order {work_order_id}",
        )
        await db.commit()
        return submission

    @staticmethod
    async def approve_task(
        db: AsyncSession, work_order_id: str, task_id: str, actor, notes: Optional[str] = None,
    ) -> TaskSubmission:
        submission = await WorkflowEngine._review(
            db, work_order_id, task_id, actor, notes, SubmissionStatus.APPROVED,
        )
        await WorkflowEngine.check_and_advance(db, work_order_id, actor_id=actor.id)
        return submission

    @staticmethod
    async def reject_task(
        db: AsyncSession, work_order_id: str, task_id: str, actor, notes: Optional[str] = None,
    ) -> TaskSubmission:
        # No advancement: a rejected task has to be resubmitted
        return await WorkflowEngine._review(
            db, work_order_id, task_id, actor, notes, SubmissionStatus.REJECTED,
        )

    @staticmethod
    async def check_and_advance(
        db: AsyncSession, work_order_id: str, actor_id: Optional[str] = None,
    ) -> bool:
        """Advance the work order while its current step is complete.

        Reads a fresh snapshot of the work order, workflow and submissions.
        Moves forward one step at a time and keeps going only into
        NOTIFICATION steps; the loop is bounded by the step count so a
        malformed workflow cannot spin. Completing the last step completes
        the work order regardless of its coarse status: workflow completion
        is the one transition that does not consult VALID_TRANSITIONS.

        Returns True if anything changed.
        """
        result = await db.execute(
            select(WorkOrder)
            .where(WorkOrder.id == work_order_id)
            .options(
                selectinload(WorkOrder.workflow).options(_workflow_tree()),
                selectinload(WorkOrder.task_submissions),
            )
            .execution_options(populate_existing=True)
        )
        wo = result.scalar_one_or_none()
        if not wo or not wo.workflow:
            return False

        steps = list(wo.workflow.steps)
        submissions_by_task: Dict[str, List[TaskSubmission]] = {}
        for s in wo.task_submissions:
            submissions_by_task.setdefault(s.task_id, []).append(s)

        changed = False
        for _ in range(len(steps)):
            idx = next((i for i, s in enumerate(steps) if s.id == wo.current_step_id), None)
            if idx is None:
                break
            step = steps[idx]
            relevant = [sub for t in step.tasks for sub in submissions_by_task.get(t.id, [])]
            if not step_is_complete(step, relevant):
                break

            if idx + 1 >= len(steps):
                previous_status = _enum_value(wo.status)
                wo.status = WorkOrderStatus.COMPLETED
                wo.completed_at = utcnow()
                wo.current_step_id = None
                record_audit(
                    db,
                    action=AuditAction.WORKFLOW_COMPLETE,
                    entity_type="WorkOrder",
                    entity_id=wo.id,
                    actor_id=actor_id,
                    organisation_id=wo.organisation_id,
                    description=f"Workflow finished; {wo.reference_number} completed",
                    previous_data={"status": previous_status, "current_step_id": step.id},
                    new_data={"status": WorkOrderStatus.COMPLETED.value, "current_step_id": None},
                )
                logger.info(f"{wo.reference_number}: workflow complete ({previous_status} → COMPLETED)")
                changed = True
                break

            next_step = steps[idx + 1]
            wo.current_step_id = next_step.id
            record_audit(
                db,
                action=AuditAction.WORKFLOW_ADVANCE,
                entity_type="WorkOrder",
                entity_id=wo.id,
                actor_id=actor_id,
                organisation_id=wo.organisation_id,
                description=f"{wo.reference_number} advanced from {step.name!r} to {next_step.name!r}",
                previous_data={"current_step_id": step.id},
                new_data={"current_step_id": next_step.id},
            )
            logger.info(f"{wo.reference_number}: step {step.name!r} → {next_step.name!r}")
            changed = True

            if StepType(next_step.type) != StepType.NOTIFICATION:
                break

        if changed:
            await db.commit()
        return changed
