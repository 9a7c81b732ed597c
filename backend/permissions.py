# permissions.py — Who may see or change a work order.
#
# Access comes from two independent sources:
#   1. organisation scope: the work order belongs to the caller's organisation
#      and the caller's role grants the relevant permission scope;
#   2. collaborator assignment: a WorkOrderAssignment row, whose role maps to
#      a fixed capability set. This is what lets users from other
#      organisations collaborate on a single work order.
from typing import Optional

from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from errors import Forbidden, NotFound
from models import WorkOrder, WorkOrderAssignment, AssignmentRole

VIEW = "view"
WRITE = "write"
ADMIN = "admin"

COLLABORATOR_CAPABILITIES = {
    AssignmentRole.LEAD: frozenset({VIEW, WRITE, ADMIN}),
    AssignmentRole.TEAM_MEMBER: frozenset({VIEW, WRITE}),
    AssignmentRole.REVIEWER: frozenset({VIEW, WRITE}),
    AssignmentRole.OBSERVER: frozenset({VIEW}),
}


async def can_view(
    db: AsyncSession,
    work_order_id: str,
    user_id: str,
    organisation_id: str,
    include_org_scope: bool = True,
) -> bool:
    access = [
        WorkOrder.assignments.any(WorkOrderAssignment.user_id == user_id),
    ]
    if include_org_scope:
        access.append(WorkOrder.organisation_id == organisation_id)

    result = await db.execute(
        select(WorkOrder.id).where(
            and_(
                WorkOrder.id == work_order_id,
                WorkOrder.is_deleted.is_(False),
                or_(*access),
            )
        )
    )
    return result.scalar_one_or_none() is not None


async def exists_in_organisation(db: AsyncSession, work_order_id: str, organisation_id: str) -> bool:
    result = await db.execute(
        select(WorkOrder.id).where(
            and_(
                WorkOrder.id == work_order_id,
                WorkOrder.organisation_id == organisation_id,
                WorkOrder.is_deleted.is_(False),
            )
        )
    )
    return result.scalar_one_or_none() is not None


async def get_assignment_role(db: AsyncSession, work_order_id: str, user_id: str) -> Optional[AssignmentRole]:
    result = await db.execute(
        select(WorkOrderAssignment.role).where(
            and_(
                WorkOrderAssignment.work_order_id == work_order_id,
                WorkOrderAssignment.user_id == user_id,
            )
        )
    )
    return result.scalar_one_or_none()


async def has_capability(db: AsyncSession, work_order_id: str, user_id: str, capability: str) -> bool:
    role = await get_assignment_role(db, work_order_id, user_id)
    if role is None:
        return False
    return capability in COLLABORATOR_CAPABILITIES.get(AssignmentRole(role), frozenset())


async def can_write_as_collaborator(db: AsyncSession, work_order_id: str, user_id: str) -> bool:
    return await has_capability(db, work_order_id, user_id, WRITE)


async def can_admin_as_collaborator(db: AsyncSession, work_order_id: str, user_id: str) -> bool:
    return await has_capability(db, work_order_id, user_id, ADMIN)


# ── Request-level guards ─────────────────────────────────────

async def ensure_can_view(db: AsyncSession, work_order_id: str, user: CurrentUser) -> None:
    allowed = await can_view(
        db, work_order_id, user.id, user.organisation_id,
        include_org_scope=user.has_scope("work_orders:view", "work_orders:edit"),
    )
    if not allowed:
        raise NotFound("Work order not found")


async def can_write(db: AsyncSession, work_order_id: str, user: CurrentUser) -> bool:
    """Edit scope within the owning organisation, or a writing collaborator role."""
    if user.has_scope("work_orders:edit") and await exists_in_organisation(
        db, work_order_id, user.organisation_id,
    ):
        return True
    return await can_write_as_collaborator(db, work_order_id, user.id)


async def ensure_can_write(db: AsyncSession, work_order_id: str, user: CurrentUser) -> None:
    """View access first (NotFound), then write access (Forbidden)."""
    await ensure_can_view(db, work_order_id, user)
    if not await can_write(db, work_order_id, user):
        raise Forbidden("Insufficient permissions")
