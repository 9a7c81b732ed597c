# work_orders.py — Work order lifecycle: creation, coarse status state
# machine, collaborator assignment, comments and soft deletion.
#
# The status machine here is independent of workflow step advancement
# (see workflow_engine.py); both mutate WorkOrder but neither triggers the
# other.
import math
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import record_audit
from errors import NotFound, InvalidTransition, ValidationError
from workflow_engine import WorkflowEngine
from models import (
    WorkOrder, WorkOrderAssignment, WorkOrderStatus, WorkOrderPriority,
    AssignmentRole, Comment, ReferenceCounter, User, Vessel, Workflow, WorkflowStep,
    AuditAction, utcnow,
)

logger = logging.getLogger("berthwise.work_orders")

S = WorkOrderStatus

VALID_TRANSITIONS: Dict[WorkOrderStatus, frozenset] = {
    S.DRAFT: frozenset({S.PENDING_APPROVAL, S.CANCELLED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.CANCELLED}),
    S.APPROVED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.AWAITING_REVIEW, S.ON_HOLD, S.CANCELLED}),
    S.AWAITING_REVIEW: frozenset({S.UNDER_REVIEW}),
    S.UNDER_REVIEW: frozenset({S.COMPLETED, S.IN_PROGRESS}),
    S.ON_HOLD: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Fields a client may change through update(); everything else is owned by
# the lifecycle or the workflow engine.
UPDATE_FIELD_ALLOWLIST = frozenset({
    "vessel_id", "workflow_id", "title", "description", "type", "priority",
    "location", "latitude", "longitude", "scheduled_start", "scheduled_end",
    "regulatory_ref", "compliance_framework", "metadata",
})

# Allow-listed fields backed by NOT NULL columns. compliance_framework is
# NOT NULL too, but null there clears it to an empty list.
NON_NULL_FIELDS = frozenset({"vessel_id", "title", "type", "priority"})

SORTABLE_FIELDS = frozenset({
    "created_at", "updated_at", "reference_number", "title", "status",
    "priority", "scheduled_start",
})


def can_transition(current: WorkOrderStatus, target: WorkOrderStatus) -> bool:
    return WorkOrderStatus(target) in VALID_TRANSITIONS.get(WorkOrderStatus(current), frozenset())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def serialize_assignment(a: WorkOrderAssignment) -> Dict[str, Any]:
    return {
        "id": a.id,
        "work_order_id": a.work_order_id,
        "user_id": a.user_id,
        "role": _enum_value(a.role),
        "assigned_at": _iso(a.assigned_at),
    }


def serialize_comment(c: Comment) -> Dict[str, Any]:
    author = c.author
    return {
        "id": c.id,
        "work_order_id": c.work_order_id,
        "parent_id": c.parent_id,
        "content": c.content,
        "author": {"id": author.id, "display_name": author.display_name} if author else None,
        "created_at": _iso(c.created_at),
    }


def serialize_work_order(wo: WorkOrder, include_assignments: bool = False) -> Dict[str, Any]:
    data = {
        "id": wo.id,
        "reference_number": wo.reference_number,
        "organisation_id": wo.organisation_id,
        "vessel_id": wo.vessel_id,
        "workflow_id": wo.workflow_id,
        "current_step_id": wo.current_step_id,
        "title": wo.title,
        "description": wo.description,
        "type": wo.type,
        "priority": _enum_value(wo.priority),
        "status": _enum_value(wo.status),
        "location": wo.location,
        "latitude": wo.latitude,
        "longitude": wo.longitude,
        "regulatory_ref": wo.regulatory_ref,
        "compliance_framework": wo.compliance_framework or [],
        "metadata": wo.extra_data,
        "scheduled_start": _iso(wo.scheduled_start),
        "scheduled_end": _iso(wo.scheduled_end),
        "actual_start": _iso(wo.actual_start),
        "actual_end": _iso(wo.actual_end),
        "completed_at": _iso(wo.completed_at),
        "created_at": _iso(wo.created_at),
        "updated_at": _iso(wo.updated_at),
    }
    if include_assignments:
        data["assignments"] = [serialize_assignment(a) for a in wo.assignments]
    return data


async def generate_reference_number(db: AsyncSession, now: Optional[datetime] = None) -> str:
    """Allocate the next WO-YYYYMMDD-NNNN reference for the given day.

    The per-day counter row is locked for the rest of the transaction so
    concurrent creates serialise on it. A day seen for the first time is
    seeded from the highest suffix already issued with that prefix.
    """
    day = (now or utcnow()).strftime("%Y%m%d")
    prefix = f"WO-{day}-"

    result = await db.execute(
        select(ReferenceCounter).where(ReferenceCounter.day == day).with_for_update()
    )
    counter = result.scalar_one_or_none()
    if counter is None:
        last = await db.execute(
            select(WorkOrder.reference_number)
            .where(WorkOrder.reference_number.like(f"{prefix}%"))
            .order_by(WorkOrder.reference_number.desc())
            .limit(1)
        )
        last_ref = last.scalar_one_or_none()
        seed = int(last_ref.rsplit("-", 1)[-1]) if last_ref else 0
        counter = ReferenceCounter(day=day, last_value=seed)
        db.add(counter)

    counter.last_value = counter.last_value + 1
    await db.flush()
    return f"{prefix}{counter.last_value:04d}"


class WorkOrderService:
    """Work order lifecycle operations. Mutating calls commit."""

    @staticmethod
    async def _get_owned(db: AsyncSession, work_order_id: str, organisation_id: str) -> WorkOrder:
        result = await db.execute(
            select(WorkOrder).where(
                and_(
                    WorkOrder.id == work_order_id,
                    WorkOrder.organisation_id == organisation_id,
                    WorkOrder.is_deleted.is_(False),
                )
            )
        )
        wo = result.scalar_one_or_none()
        if not wo:
            raise NotFound("Work order not found")
        return wo

    @staticmethod
    async def _ensure_vessel(db: AsyncSession, vessel_id: str, organisation_id: str) -> None:
        vessel = await db.get(Vessel, vessel_id)
        if not vessel or vessel.organisation_id != organisation_id or vessel.deleted_at is not None:
            raise NotFound("Vessel not found")

    @staticmethod
    def _access_filter(user_id: str, organisation_id: str, include_org_scope: bool):
        access = [WorkOrder.assignments.any(WorkOrderAssignment.user_id == user_id)]
        if include_org_scope:
            access.append(WorkOrder.organisation_id == organisation_id)
        return or_(*access)

    @staticmethod
    async def list(
        db: AsyncSession,
        organisation_id: str,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        sort: str = "created_at",
        order: str = "desc",
        filters: Optional[Dict[str, Optional[str]]] = None,
        search: Optional[str] = None,
        include_org_scope: bool = True,
    ) -> Dict[str, Any]:
        conditions = [
            WorkOrder.is_deleted.is_(False),
            WorkOrderService._access_filter(user_id, organisation_id, include_org_scope),
        ]
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(
                WorkOrder.title.ilike(pattern),
                WorkOrder.reference_number.ilike(pattern),
            ))
        filters = filters or {}
        if filters.get("status"):
            conditions.append(WorkOrder.status == WorkOrderStatus(filters["status"]))
        if filters.get("type"):
            conditions.append(WorkOrder.type == filters["type"])
        if filters.get("vessel_id"):
            conditions.append(WorkOrder.vessel_id == filters["vessel_id"])
        if filters.get("priority"):
            conditions.append(WorkOrder.priority == WorkOrderPriority(filters["priority"]))

        where = and_(*conditions)
        total = (await db.execute(select(func.count(WorkOrder.id)).where(where))).scalar() or 0

        sort_col = getattr(WorkOrder, sort if sort in SORTABLE_FIELDS else "created_at")
        order_by = sort_col.asc() if order == "asc" else sort_col.desc()
        result = await db.execute(
            select(WorkOrder)
            .where(where)
            .options(selectinload(WorkOrder.assignments))
            .order_by(order_by)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = result.scalars().all()
        return {
            "data": [serialize_work_order(wo, include_assignments=True) for wo in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if limit else 0,
            },
        }

    @staticmethod
    async def get_by_id(
        db: AsyncSession,
        work_order_id: str,
        organisation_id: str,
        user_id: str,
        include_org_scope: bool = True,
    ) -> WorkOrder:
        result = await db.execute(
            select(WorkOrder)
            .where(
                and_(
                    WorkOrder.id == work_order_id,
                    WorkOrder.is_deleted.is_(False),
                    WorkOrderService._access_filter(user_id, organisation_id, include_org_scope),
                )
            )
            .options(
                selectinload(WorkOrder.assignments),
                selectinload(WorkOrder.task_submissions),
                selectinload(WorkOrder.workflow)
                .selectinload(Workflow.steps)
                .selectinload(WorkflowStep.tasks),
            )
        )
        wo = result.scalar_one_or_none()
        if not wo:
            raise NotFound("Work order not found")
        return wo

    @staticmethod
    async def create(
        db: AsyncSession,
        data: Dict[str, Any],
        organisation_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> WorkOrder:
        await WorkOrderService._ensure_vessel(db, data["vessel_id"], organisation_id)
        reference_number = await generate_reference_number(db, now)
        wo = WorkOrder(
            organisation_id=organisation_id,
            reference_number=reference_number,
            vessel_id=data["vessel_id"],
            title=data["title"],
            type=data["type"],
            description=data.get("description"),
            priority=WorkOrderPriority(data.get("priority") or "NORMAL"),
            status=WorkOrderStatus.DRAFT,
            location=data.get("location"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            regulatory_ref=data.get("regulatory_ref"),
            compliance_framework=list(data.get("compliance_framework") or []),
            extra_data=data.get("metadata"),
            scheduled_start=data.get("scheduled_start"),
            scheduled_end=data.get("scheduled_end"),
            created_by=actor_id,
        )
        db.add(wo)
        await db.flush()

        if data.get("workflow_id"):
            await WorkflowEngine.initialize_workflow(db, wo.id, data["workflow_id"], commit=False)

        record_audit(
            db,
            action=AuditAction.CREATE,
            entity_type="WorkOrder",
            entity_id=wo.id,
            actor_id=actor_id,
            organisation_id=organisation_id,
            description=f'Created work order {wo.reference_number}: "{wo.title}"',
            new_data={"reference_number": wo.reference_number, "title": wo.title},
        )
        await db.commit()
        await db.refresh(wo)
        logger.info(f"Created work order {wo.reference_number} [org={organisation_id[:8]}]")
        return wo

    @staticmethod
    async def update(
        db: AsyncSession,
        work_order_id: str,
        organisation_id: str,
        data: Dict[str, Any],
        actor_id: str,
    ) -> WorkOrder:
        nulls = sorted(f for f in NON_NULL_FIELDS if f in data and data[f] is None)
        if nulls:
            raise ValidationError(f"{', '.join(nulls)} cannot be null", details={"fields": nulls})

        wo = await WorkOrderService._get_owned(db, work_order_id, organisation_id)
        if data.get("vessel_id") and data["vessel_id"] != wo.vessel_id:
            await WorkOrderService._ensure_vessel(db, data["vessel_id"], organisation_id)

        changed: List[str] = []
        previous: Dict[str, Any] = {}
        for field, value in data.items():
            if field not in UPDATE_FIELD_ALLOWLIST or field == "workflow_id":
                continue
            attr = "extra_data" if field == "metadata" else field
            if field == "priority" and value is not None:
                value = WorkOrderPriority(value)
            if field == "compliance_framework":
                value = list(value or [])
            previous[field] = _enum_value(getattr(wo, attr))
            setattr(wo, attr, value)
            changed.append(field)

        # current_step_id must always point into the attached workflow
        if "workflow_id" in data and data["workflow_id"] != wo.workflow_id:
            previous_workflow = wo.workflow_id
            if data["workflow_id"] is None:
                wo.workflow_id = None
                wo.current_step_id = None
                attached = True
            else:
                # A workflow without steps is not attached
                attached = await WorkflowEngine.initialize_workflow(
                    db, wo.id, data["workflow_id"], commit=False,
                ) is not None
            if attached:
                previous["workflow_id"] = previous_workflow
                changed.append("workflow_id")

        if not changed:
            return wo

        record_audit(
            db,
            action=AuditAction.UPDATE,
            entity_type="WorkOrder",
            entity_id=wo.id,
            actor_id=actor_id,
            organisation_id=organisation_id,
            description=f"Updated work order {wo.reference_number}",
            previous_data={k: v if not isinstance(v, datetime) else v.isoformat() for k, v in previous.items()},
            changed_fields=changed,
        )
        await db.commit()
        await db.refresh(wo)
        return wo

    @staticmethod
    async def change_status(
        db: AsyncSession,
        work_order_id: str,
        organisation_id: str,
        new_status: WorkOrderStatus,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> WorkOrder:
        wo = await WorkOrderService._get_owned(db, work_order_id, organisation_id)
        try:
            target = WorkOrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown status {new_status}")

        current = WorkOrderStatus(wo.status)
        if not can_transition(current, target):
            raise InvalidTransition(
                f"Cannot transition from {current.value} to {target.value}",
                details={"from": current.value, "to": target.value},
            )

        now = utcnow()
        wo.status = target
        if target == WorkOrderStatus.IN_PROGRESS and not wo.actual_start:
            wo.actual_start = now
        if target == WorkOrderStatus.COMPLETED:
            wo.completed_at = now
            wo.actual_end = now

        suffix = f": {reason}" if reason else ""
        record_audit(
            db,
            action=AuditAction.STATUS_CHANGE,
            entity_type="WorkOrder",
            entity_id=wo.id,
            actor_id=actor_id,
            organisation_id=organisation_id,
            description=f"Changed status of {wo.reference_number} from {current.value} to {target.value}{suffix}",
            previous_data={"status": current.value},
            new_data={"status": target.value},
            changed_fields=["status"],
        )
        await db.commit()
        await db.refresh(wo)
        logger.info(f"{wo.reference_number}: {current.value} → {target.value}")
        return wo

    @staticmethod
    async def assign(
        db: AsyncSession,
        work_order_id: str,
        organisation_id: str,
        user_id: str,
        role: AssignmentRole,
        actor_id: str,
    ) -> WorkOrderAssignment:
        """Upsert a collaborator. The user may belong to any organisation."""
        wo = await WorkOrderService._get_owned(db, work_order_id, organisation_id)

        user = (await db.execute(select(User.id).where(User.id == user_id))).scalar_one_or_none()
        if not user:
            raise NotFound("User not found")

        result = await db.execute(
            select(WorkOrderAssignment).where(
                and_(
                    WorkOrderAssignment.work_order_id == work_order_id,
                    WorkOrderAssignment.user_id == user_id,
                )
            )
        )
        assignment = result.scalar_one_or_none()
        if assignment:
            assignment.role = AssignmentRole(role)
        else:
            assignment = WorkOrderAssignment(
                work_order_id=work_order_id, user_id=user_id, role=AssignmentRole(role),
            )
            db.add(assignment)

        record_audit(
            db,
            action=AuditAction.ASSIGNMENT,
            entity_type="WorkOrder",
            entity_id=work_order_id,
            actor_id=actor_id,
            organisation_id=organisation_id,
            description=f"Assigned user {user_id} as {AssignmentRole(role).value} to {wo.reference_number}",
        )
        await db.commit()
        await db.refresh(assignment)
        return assignment

    @staticmethod
    async def unassign(
        db: AsyncSession,
        work_order_id: str,
        organisation_id: str,
        user_id: str,
        actor_id: str,
    ) -> None:
        wo = await WorkOrderService._get_owned(db, work_order_id, organisation_id)
        result = await db.execute(
            select(WorkOrderAssignment).where(
                and_(
                    WorkOrderAssignment.work_order_id == work_order_id,
                    WorkOrderAssignment.user_id == user_id,
                )
            )
        )
        assignment = result.scalar_one_or_none()
        if not assignment:
            raise NotFound("Assignment not found")

        await db.delete(assignment)
        record_audit(
            db,
            action=AuditAction.ASSIGNMENT,
            entity_type="WorkOrder",
            entity_id=work_order_id,
            actor_id=actor_id,
            organisation_id=organisation_id,
            description=f"Unassigned user {user_id} from {wo.reference_number}",
        )
        await db.commit()

    @staticmethod
    async def soft_delete(db: AsyncSession, work_order_id: str, organisation_id: str, actor_id: str) -> None:
        wo = await WorkOrderService._get_owned(db, work_order_id, organisation_id)
        wo.is_deleted = True
        record_audit(
            db,
            action=AuditAction.DELETE,
            entity_type="WorkOrder",
            entity_id=wo.id,
            actor_id=actor_id,
            organisation_id=organisation_id,
            description=f"Soft-deleted work order {wo.reference_number}",
        )
        await db.commit()

    # ── Comments ─────────────────────────────────────────────

    @staticmethod
    async def list_comments(db: AsyncSession, work_order_id: str) -> List[Comment]:
        """Oldest first. Callers check view access."""
        result = await db.execute(
            select(Comment)
            .where(Comment.work_order_id == work_order_id)
            .options(selectinload(Comment.author))
            .order_by(Comment.created_at.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def add_comment(
        db: AsyncSession,
        work_order_id: str,
        author_id: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> Comment:
        """Callers check write access. A reply's parent must be on the same work order."""
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment content is required")
        wo = await db.get(WorkOrder, work_order_id)
        if not wo or wo.is_deleted:
            raise NotFound("Work order not found")
        if parent_id:
            parent = await db.get(Comment, parent_id)
            if not parent or parent.work_order_id != work_order_id:
                raise NotFound("Parent comment not found")

        comment = Comment(
            work_order_id=work_order_id, author_id=author_id, content=content, parent_id=parent_id,
        )
        db.add(comment)
        await db.commit()

        result = await db.execute(
            select(Comment).where(Comment.id == comment.id).options(selectinload(Comment.author))
        )
        return result.scalar_one()
