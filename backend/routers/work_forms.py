# routers/work_forms.py — Inspection form generation and entry editing
from typing import Optional, Any, Dict
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from permissions import ensure_can_view, ensure_can_write
from work_forms import WorkFormService, serialize_entry

router = APIRouter(prefix="/api/v1", tags=["Work Forms"])


class EntryUpdate(BaseModel):
    condition: Optional[str] = None
    fouling_rating: Optional[int] = None
    fouling_type: Optional[str] = None
    coverage: Optional[float] = None
    coating_condition: Optional[str] = None
    corrosion_type: Optional[str] = None
    corrosion_severity: Optional[str] = None
    notes: Optional[str] = None
    recommendation: Optional[str] = None
    action_required: Optional[bool] = None
    status: Optional[str] = None
    measurement_type: Optional[str] = None
    measurement_value: Optional[float] = None
    measurement_unit: Optional[str] = None


@router.post("/work-orders/{work_order_id}/form/generate", status_code=201)
async def generate_form(
    work_order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """One entry per vessel component; repeat calls return the existing form"""
    await ensure_can_write(db, work_order_id, user)
    entries = await WorkFormService.generate_form(db, work_order_id, user.id)
    return [serialize_entry(e) for e in entries]


@router.get("/work-orders/{work_order_id}/form")
async def get_form(
    work_order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await ensure_can_view(db, work_order_id, user)
    entries = await WorkFormService.get_form_entries(db, work_order_id)
    return [serialize_entry(e) for e in entries]


@router.get("/work-orders/{work_order_id}/form/data")
async def get_form_data(
    work_order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    """Report-ready snapshot"""
    await ensure_can_view(db, work_order_id, user)
    return await WorkFormService.get_form_data(db, work_order_id)


@router.put("/form-entries/{entry_id}")
async def update_entry(
    entry_id: str,
    data: EntryUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    entry = await WorkFormService.get_entry(db, entry_id)
    await ensure_can_write(db, entry.work_order_id, user)
    entry = await WorkFormService.update_entry(db, entry_id, data.model_dump(exclude_unset=True), user.id)
    return serialize_entry(entry)


class FieldUpdate(BaseModel):
    field: str = Field(..., min_length=1)
    value: Any = None


class AttachmentLink(BaseModel):
    media_id: str = Field(..., min_length=1)


@router.patch("/form-entries/{entry_id}/field")
async def update_entry_field(
    entry_id: str,
    data: FieldUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Single-field edit; accepts the same names and values as the live form"""
    entry = await WorkFormService.get_entry(db, entry_id)
    await ensure_can_write(db, entry.work_order_id, user)
    entry = await WorkFormService.update_field(db, entry_id, data.field, data.value, user.id)
    return serialize_entry(entry)


@router.post("/form-entries/{entry_id}/attachments")
async def add_attachment(
    entry_id: str,
    data: AttachmentLink,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    entry = await WorkFormService.get_entry(db, entry_id)
    await ensure_can_write(db, entry.work_order_id, user)
    entry = await WorkFormService.add_attachment(db, entry_id, data.media_id)
    return serialize_entry(entry)
