# audit.py — Append-only audit trail for work order and workflow changes
import logging
from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog, AuditAction

logger = logging.getLogger("berthwise.audit")


def record_audit(
    db: AsyncSession,
    *,
    action: AuditAction,
    entity_type: str,
    entity_id: str,
    description: str,
    actor_id: Optional[str] = None,
    organisation_id: Optional[str] = None,
    previous_data: Optional[Any] = None,
    new_data: Optional[Any] = None,
    changed_fields: Optional[List[str]] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction.

    The row commits (or rolls back) together with the change it describes.
    """
    entry = AuditLog(
        actor_id=actor_id,
        organisation_id=organisation_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        previous_data=previous_data,
        new_data=new_data,
        changed_fields=changed_fields or [],
    )
    db.add(entry)
    logger.debug(f"audit {action.value} {entity_type}:{entity_id[:8]} by {actor_id}")
    return entry
