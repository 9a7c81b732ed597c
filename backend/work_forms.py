# work_forms.py — Per-component inspection form for a work order.
#
# One WorkFormEntry per vessel component, generated on demand. Entries are
# edited either through REST (update_entry) or field-by-field by the
# real-time collaboration layer (update_field, add/remove_screenshot).
import re
import base64
import binascii
import logging
import mimetypes
from typing import Optional, Dict, Any, List

from sqlalchemy import select, and_, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import record_audit
from errors import NotFound, ValidationError, InvalidField
from models import (
    WorkOrder, WorkOrderAssignment, Vessel, WorkFormEntry, VesselComponent, Media,
    FormEntryStatus, AuditAction, utcnow,
)

logger = logging.getLogger("berthwise.forms")

# Stored column -> coercion applied to incoming values (None clears all but REQUIRED_FIELDS)
FIELD_TYPES = {
    "condition": str,
    "fouling_rating": int,
    "fouling_type": str,
    "coverage": float,
    "coating_condition": str,
    "corrosion_type": str,
    "corrosion_severity": str,
    "notes": str,
    "recommendation": str,
    "action_required": bool,
    "status": FormEntryStatus,
    "measurement_type": str,
    "measurement_value": float,
    "measurement_unit": str,
}

UPDATABLE_FIELDS = frozenset(FIELD_TYPES)
REQUIRED_FIELDS = frozenset({"status"})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# Browser clients send camelCase names
FIELD_ALIASES = {_camel(name): name for name in FIELD_TYPES if "_" in name}

DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?:;[\w=.+-]+)*;base64,(?P<data>.+)$", re.DOTALL)


def normalise_field(field: str) -> str:
    name = FIELD_ALIASES.get(field, field)
    if name not in UPDATABLE_FIELDS:
        raise InvalidField(f"Field '{field}' cannot be updated", details={"field": field})
    return name


def coerce_value(field: str, value: Any) -> Any:
    if value is None:
        if field in REQUIRED_FIELDS:
            raise ValidationError(f"'{field}' cannot be null", details={"field": field})
        return None
    kind = FIELD_TYPES[field]
    try:
        if kind is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1", "yes", "on")
            return bool(value)
        if kind is int and isinstance(value, bool):
            raise ValueError(value)
        return kind(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid value for '{field}'", details={"field": field, "value": value})


def decode_data_url(data_url: str):
    """Split a base64 data: URL into (mime_type, bytes)."""
    match = DATA_URL_RE.match(data_url or "")
    if not match:
        raise ValidationError("Screenshot must be a base64 data URL")
    mime_type = match.group("mime").lower()
    if not mime_type.startswith("image/"):
        raise ValidationError(f"Unsupported screenshot type {mime_type}")
    try:
        content = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Screenshot data is not valid base64")
    if not content:
        raise ValidationError("Screenshot is empty")
    return mime_type, content


def _iso(value):
    return value.isoformat() if value else None


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def stored_value(entry: WorkFormEntry, field: str) -> Any:
    return _enum_value(getattr(entry, field))


def serialize_entry(entry: WorkFormEntry) -> Dict[str, Any]:
    component = entry.vessel_component
    data = {
        "id": entry.id,
        "work_order_id": entry.work_order_id,
        "vessel_component_id": entry.vessel_component_id,
        "component": {
            "name": component.name,
            "category": component.category,
            "location": component.location,
            "sort_order": component.sort_order,
        } if component else None,
        "attachments": list(entry.attachments or []),
        "completed_at": _iso(entry.completed_at),
        "completed_by": entry.completed_by,
        "updated_at": _iso(entry.updated_at),
    }
    for field in FIELD_TYPES:
        data[field] = stored_value(entry, field)
    return data


class WorkFormService:

    @staticmethod
    async def get_entry(db: AsyncSession, entry_id: str, work_order_id: Optional[str] = None) -> WorkFormEntry:
        conditions = [WorkFormEntry.id == entry_id]
        if work_order_id:
            conditions.append(WorkFormEntry.work_order_id == work_order_id)
        result = await db.execute(
            select(WorkFormEntry)
            .where(and_(*conditions))
            .options(selectinload(WorkFormEntry.vessel_component))
        )
        entry = result.scalar_one_or_none()
        if not entry:
            raise NotFound("Form entry not found")
        return entry

    @staticmethod
    async def get_form_entries(db: AsyncSession, work_order_id: str) -> List[WorkFormEntry]:
        result = await db.execute(
            select(WorkFormEntry)
            .join(VesselComponent, WorkFormEntry.vessel_component_id == VesselComponent.id)
            .where(WorkFormEntry.work_order_id == work_order_id)
            .options(selectinload(WorkFormEntry.vessel_component))
            .order_by(VesselComponent.sort_order, VesselComponent.name)
        )
        return list(result.scalars().all())

    @staticmethod
    async def generate_form(db: AsyncSession, work_order_id: str, actor_id: str) -> List[WorkFormEntry]:
        """Create one PENDING entry per vessel component.

        Calling it again returns the entries already generated.
        """
        result = await db.execute(
            select(WorkOrder)
            .where(and_(WorkOrder.id == work_order_id, WorkOrder.is_deleted.is_(False)))
            .options(selectinload(WorkOrder.vessel).selectinload(Vessel.components))
        )
        wo = result.scalar_one_or_none()
        if not wo:
            raise NotFound("Work order not found")
        components = list(wo.vessel.components)
        if not components:
            raise ValidationError(
                "Vessel has no components defined in its general arrangement",
                code="NO_COMPONENTS",
            )

        existing = await WorkFormService.get_form_entries(db, work_order_id)
        if existing:
            return existing

        for component in components:
            db.add(WorkFormEntry(
                work_order_id=work_order_id,
                vessel_component_id=component.id,
                status=FormEntryStatus.PENDING,
                attachments=[],
            ))
        record_audit(
            db,
            action=AuditAction.CREATE,
            entity_type="WorkOrder",
            entity_id=work_order_id,
            actor_id=actor_id,
            organisation_id=wo.organisation_id,
            description=f"Generated work form with {len(components)} entries for {wo.vessel.name}",
        )
        await db.commit()
        logger.info(f"Generated {len(components)} form entries for {wo.reference_number}")
        return await WorkFormService.get_form_entries(db, work_order_id)

    @staticmethod
    def _apply(entry: WorkFormEntry, field: str, value: Any, actor_id: str) -> None:
        setattr(entry, field, value)
        if field == "status" and value == FormEntryStatus.COMPLETED and not entry.completed_at:
            entry.completed_at = utcnow()
            entry.completed_by = actor_id

    @staticmethod
    async def update_entry(db: AsyncSession, entry_id: str, data: Dict[str, Any], actor_id: str) -> WorkFormEntry:
        entry = await WorkFormService.get_entry(db, entry_id)
        for field, value in data.items():
            name = normalise_field(field)
            WorkFormService._apply(entry, name, coerce_value(name, value), actor_id)
        await db.commit()
        return entry

    @staticmethod
    async def update_field(
        db: AsyncSession,
        entry_id: str,
        field: str,
        value: Any,
        actor_id: str,
        work_order_id: Optional[str] = None,
    ) -> WorkFormEntry:
        """Persist a single allow-listed field.

        Setting status to COMPLETED stamps completed_at/completed_by the
        first time only.
        """
        name = normalise_field(field)
        coerced = coerce_value(name, value)
        entry = await WorkFormService.get_entry(db, entry_id, work_order_id)
        WorkFormService._apply(entry, name, coerced, actor_id)
        await db.commit()
        return entry

    @staticmethod
    async def add_screenshot(
        db: AsyncSession,
        entry_id: str,
        data_url: str,
        actor_id: Optional[str] = None,
        work_order_id: Optional[str] = None,
    ) -> WorkFormEntry:
        mime_type, content = decode_data_url(data_url)
        entry = await WorkFormService.get_entry(db, entry_id, work_order_id)

        extension = mimetypes.guess_extension(mime_type) or ".bin"
        media = Media(
            work_order_id=entry.work_order_id,
            form_entry_id=entry.id,
            uploaded_by=actor_id,
            filename=f"screenshot-{utcnow().strftime('%Y%m%dT%H%M%S')}{extension}",
            mime_type=mime_type,
            size_bytes=len(content),
            content=content,
        )
        db.add(media)
        await db.flush()

        entry.attachments = [*(entry.attachments or []), media.id]
        await db.commit()
        logger.debug(f"Attached {media.filename} ({len(content)} bytes) to entry {entry_id[:8]}")
        return entry

    @staticmethod
    async def remove_screenshot(
        db: AsyncSession,
        entry_id: str,
        index: int,
        work_order_id: Optional[str] = None,
    ) -> WorkFormEntry:
        entry = await WorkFormService.get_entry(db, entry_id, work_order_id)
        attachments = list(entry.attachments or [])
        if 0 <= index < len(attachments):
            media_id = attachments.pop(index)
            entry.attachments = attachments
            await db.execute(
                delete(Media).where(and_(Media.id == media_id, Media.form_entry_id == entry.id))
            )
            await db.commit()
        return entry

    @staticmethod
    async def add_attachment(db: AsyncSession, entry_id: str, media_id: str) -> WorkFormEntry:
        """Link an uploaded media item to an entry.

        The media must belong to the entry's work order (or to none yet).
        Linking the same item twice keeps a single reference.
        """
        entry = await WorkFormService.get_entry(db, entry_id)
        media = await db.get(Media, media_id)
        if not media or media.work_order_id not in (None, entry.work_order_id):
            raise NotFound("Media not found")
        if media.form_entry_id not in (None, entry.id):
            raise ValidationError("Media is already attached to another entry")

        media.work_order_id = entry.work_order_id
        media.form_entry_id = entry.id
        attachments = list(entry.attachments or [])
        if media.id not in attachments:
            entry.attachments = [*attachments, media.id]
        await db.commit()
        return entry

    @staticmethod
    async def get_form_data(db: AsyncSession, work_order_id: str) -> Dict[str, Any]:
        """Report-ready snapshot of the work order and its form"""
        result = await db.execute(
            select(WorkOrder)
            .where(and_(WorkOrder.id == work_order_id, WorkOrder.is_deleted.is_(False)))
            .options(
                selectinload(WorkOrder.vessel),
                selectinload(WorkOrder.organisation),
                selectinload(WorkOrder.assignments).selectinload(WorkOrderAssignment.user),
            )
        )
        wo = result.scalar_one_or_none()
        if not wo:
            raise NotFound("Work order not found")

        entries = await WorkFormService.get_form_entries(db, work_order_id)
        vessel = wo.vessel
        return {
            "workOrder": {
                "referenceNumber": wo.reference_number,
                "title": wo.title,
                "type": wo.type,
                "status": _enum_value(wo.status),
                "location": wo.location,
                "scheduledStart": _iso(wo.scheduled_start),
                "scheduledEnd": _iso(wo.scheduled_end),
                "actualStart": _iso(wo.actual_start),
                "actualEnd": _iso(wo.actual_end),
                "completedAt": _iso(wo.completed_at),
            },
            "vessel": {
                "name": vessel.name,
                "vesselType": vessel.vessel_type,
                "imoNumber": vessel.imo_number,
                "homePort": vessel.home_port,
                "lengthOverall": vessel.length_overall,
                "beam": vessel.beam,
                "maxDraft": vessel.max_draft,
                "grossTonnage": vessel.gross_tonnage,
                "yearBuilt": vessel.year_built,
            },
            "organisation": {"name": wo.organisation.name},
            "team": [
                {
                    "name": a.user.display_name,
                    "email": a.user.email,
                    "role": _enum_value(a.role),
                }
                for a in wo.assignments
            ],
            "entries": [
                {
                    "id": e.id,
                    "component": e.vessel_component.name,
                    "category": e.vessel_component.category,
                    "location": e.vessel_component.location,
                    **{_camel(field): _enum_value(getattr(e, field)) for field in FIELD_TYPES},
                    "attachments": list(e.attachments or []),
                }
                for e in entries
            ],
            "generatedAt": utcnow().isoformat(),
        }
