# tests/test_work_forms.py — Inspection form generation and editing
import base64

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select, func

from collaboration import StoreBridge
from errors import NotFound, ValidationError, InvalidField
from models import Media, FormEntryStatus, AssignmentRole
from work_forms import WorkFormService, coerce_value, decode_data_url, normalise_field
from work_orders import WorkOrderService
from tests.conftest import get_auth_headers, as_current_user

PNG = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode()


async def _work_order(db, org, user, vessel):
    return await WorkOrderService.create(db, {
        "vessel_id": vessel.id, "title": "Hull survey", "type": "INSPECTION",
    }, org.id, user.id)


@pytest_asyncio.fixture
async def form(db_session, test_org, manager_user, test_vessel):
    wo = await _work_order(db_session, test_org, manager_user, test_vessel)
    entries = await WorkFormService.generate_form(db_session, wo.id, manager_user.id)
    return wo, entries


# ── Helpers ──────────────────────────────────────────────────

def test_camel_case_field_names_are_accepted():
    assert normalise_field("foulingRating") == "fouling_rating"
    assert normalise_field("notes") == "notes"
    with pytest.raises(InvalidField):
        normalise_field("hullColour")
    with pytest.raises(InvalidField):
        normalise_field("work_order_id")


def test_decode_data_url():
    mime, content = decode_data_url(PNG)
    assert mime == "image/png"
    assert content.startswith(b"\x89PNG")

    for bad in ("not a url", "data:text/plain;base64,aGVsbG8=", "data:image/png;base64,@@@@"):
        with pytest.raises(ValidationError):
            decode_data_url(bad)


def test_null_clears_optional_fields_but_not_status():
    assert coerce_value("notes", None) is None
    assert coerce_value("fouling_rating", None) is None
    with pytest.raises(ValidationError) as exc:
        coerce_value("status", None)
    assert exc.value.details == {"field": "status"}


# ── Service ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_creates_one_entry_per_component(db_session, form, manager_user):
    wo, entries = form
    assert [e.vessel_component.name for e in entries] == [
        "Bow thruster tunnel", "Sea chest (port)", "Flat bottom",
    ]
    assert all(e.status == FormEntryStatus.PENDING for e in entries)
    assert all(e.attachments == [] for e in entries)

    again = await WorkFormService.generate_form(db_session, wo.id, manager_user.id)
    assert [e.id for e in again] == [e.id for e in entries]


@pytest.mark.asyncio
async def test_generate_requires_components(db_session, test_org, manager_user, bare_vessel):
    wo = await _work_order(db_session, test_org, manager_user, bare_vessel)
    with pytest.raises(ValidationError) as exc:
        await WorkFormService.generate_form(db_session, wo.id, manager_user.id)
    assert exc.value.code == "NO_COMPONENTS"


@pytest.mark.asyncio
async def test_generate_for_missing_work_order(db_session, manager_user):
    with pytest.raises(NotFound):
        await WorkFormService.generate_form(db_session, "missing", manager_user.id)


@pytest.mark.asyncio
async def test_update_field_coerces_values(db_session, form, manager_user):
    _, entries = form
    entry = entries[0]
    await WorkFormService.update_field(db_session, entry.id, "foulingRating", "3", manager_user.id)
    await WorkFormService.update_field(db_session, entry.id, "coverage", "12.5", manager_user.id)
    await WorkFormService.update_field(db_session, entry.id, "actionRequired", "true", manager_user.id)
    await db_session.refresh(entry)
    assert entry.fouling_rating == 3
    assert entry.coverage == 12.5
    assert entry.action_required is True

    with pytest.raises(ValidationError):
        await WorkFormService.update_field(db_session, entry.id, "fouling_rating", "heavy", manager_user.id)
    with pytest.raises(InvalidField):
        await WorkFormService.update_field(db_session, entry.id, "completed_by", "x", manager_user.id)


@pytest.mark.asyncio
async def test_update_field_is_scoped_to_work_order(db_session, form, manager_user):
    _, entries = form
    with pytest.raises(NotFound):
        await WorkFormService.update_field(
            db_session, entries[0].id, "notes", "x", manager_user.id, work_order_id="other",
        )


@pytest.mark.asyncio
async def test_completion_is_stamped_once(db_session, form, manager_user, inspector_user):
    _, entries = form
    entry = await WorkFormService.update_field(db_session, entries[0].id, "status", "COMPLETED", manager_user.id)
    stamped = entry.completed_at
    assert entry.status == FormEntryStatus.COMPLETED
    assert entry.completed_by == manager_user.id
    assert stamped is not None

    entry = await WorkFormService.update_field(db_session, entries[0].id, "status", "COMPLETED", inspector_user.id)
    assert entry.completed_at == stamped
    assert entry.completed_by == manager_user.id


@pytest.mark.asyncio
async def test_screenshots_are_stored_as_media(db_session, form, manager_user):
    _, entries = form
    entry_id = entries[1].id
    first = await WorkFormService.add_screenshot(db_session, entry_id, PNG, manager_user.id)
    second = await WorkFormService.add_screenshot(db_session, entry_id, PNG, manager_user.id)
    attachments = list(second.attachments)
    assert len(attachments) == 2
    assert first.id == second.id

    media = await db_session.get(Media, attachments[0])
    assert media.mime_type == "image/png"
    assert media.form_entry_id == entry_id
    assert media.filename.endswith(".png")

    entry = await WorkFormService.remove_screenshot(db_session, entry_id, 0)
    assert entry.attachments == [attachments[1]]
    remaining = (await db_session.execute(select(func.count(Media.id)))).scalar()
    assert remaining == 1

    # Out-of-range index leaves the entry untouched
    entry = await WorkFormService.remove_screenshot(db_session, entry_id, 5)
    assert entry.attachments == [attachments[1]]


@pytest.mark.asyncio
async def test_malformed_screenshot_is_rejected(db_session, form, manager_user):
    _, entries = form
    with pytest.raises(ValidationError):
        await WorkFormService.add_screenshot(db_session, entries[0].id, "data:image/png;base64,", manager_user.id)
    assert (await db_session.execute(select(func.count(Media.id)))).scalar() == 0


@pytest.mark.asyncio
async def test_uploaded_media_can_be_linked_once(db_session, form, test_org, manager_user, test_vessel):
    wo, entries = form
    upload = Media(uploaded_by=manager_user.id, filename="hull.jpg", mime_type="image/jpeg", size_bytes=4, content=b"jpeg")
    db_session.add(upload)
    await db_session.commit()

    entry = await WorkFormService.add_attachment(db_session, entries[0].id, upload.id)
    entry = await WorkFormService.add_attachment(db_session, entries[0].id, upload.id)
    assert entry.attachments == [upload.id]
    await db_session.refresh(upload)
    assert (upload.work_order_id, upload.form_entry_id) == (wo.id, entries[0].id)

    with pytest.raises(ValidationError):
        await WorkFormService.add_attachment(db_session, entries[1].id, upload.id)
    with pytest.raises(NotFound):
        await WorkFormService.add_attachment(db_session, entries[0].id, "no-such-media")

    other = await _work_order(db_session, test_org, manager_user, test_vessel)
    foreign = Media(work_order_id=other.id, filename="x.png", mime_type="image/png", size_bytes=1, content=b"x")
    db_session.add(foreign)
    await db_session.commit()
    with pytest.raises(NotFound):
        await WorkFormService.add_attachment(db_session, entries[0].id, foreign.id)


@pytest.mark.asyncio
async def test_form_data_snapshot(db_session, form, test_org, manager_user, inspector_user):
    wo, entries = form
    await WorkOrderService.assign(db_session, wo.id, test_org.id, inspector_user.id, AssignmentRole.LEAD, manager_user.id)
    await WorkFormService.update_field(db_session, entries[0].id, "foulingRating", 2, manager_user.id)

    data = await WorkFormService.get_form_data(db_session, wo.id)
    assert data["workOrder"]["referenceNumber"] == wo.reference_number
    assert data["vessel"]["name"] == "MV Kestrel"
    assert data["vessel"]["imoNumber"] == "9876543"
    assert data["organisation"] == {"name": "Harbour Marine Services"}
    assert data["team"] == [{"name": "Ira Inspector", "email": "inspector@berthwise.test", "role": "LEAD"}]
    assert data["entries"][0]["component"] == "Bow thruster tunnel"
    assert data["entries"][0]["foulingRating"] == 2
    assert data["entries"][0]["status"] == "PENDING"
    assert "generatedAt" in data


# ── Store bridge ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_store_bridge_checks_access(session_factory, db_session, form, manager_user, viewer_user, outsider_user):
    wo, _ = form
    store = StoreBridge(session_factory)

    assert await store.has_access(wo.id, as_current_user(manager_user)) is True
    assert await store.can_write(wo.id, as_current_user(manager_user)) is True
    assert await store.has_access(wo.id, as_current_user(viewer_user)) is True
    assert await store.can_write(wo.id, as_current_user(viewer_user)) is False
    assert await store.has_access(wo.id, as_current_user(outsider_user)) is False

    loaded = await store.load_user({"sub": manager_user.id})
    assert loaded.display_name == "Morgan Manager"
    assert "work_orders:edit" in loaded.permissions
    assert await store.load_user({"sub": "ghost"}) is None


@pytest.mark.asyncio
async def test_store_bridge_persists_edits(session_factory, db_session, form, manager_user):
    wo, entries = form
    store = StoreBridge(session_factory)
    user = as_current_user(manager_user)

    stored = await store.update_field(wo.id, entries[0].id, "notes", "Heavy weed at waterline", user)
    assert stored == ("notes", "Heavy weed at waterline")
    assert await store.update_field(wo.id, entries[0].id, "foulingRating", "4", user) == ("fouling_rating", 4)
    attachments = await store.add_screenshot(wo.id, entries[0].id, PNG, user)
    assert len(attachments) == 1
    assert await store.remove_screenshot(wo.id, entries[0].id, 0, user) == []

    entry = await WorkFormService.get_entry(db_session, entries[0].id)
    await db_session.refresh(entry)
    assert entry.notes == "Heavy weed at waterline"


# ── HTTP ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_form_endpoints(client: AsyncClient, manager_user, viewer_user, test_vessel):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Form over HTTP", "type": "INSPECTION",
    }, headers=headers)).json()

    resp = await client.post(f"/api/v1/work-orders/{wo['id']}/form/generate", headers=get_auth_headers(viewer_user))
    assert resp.status_code == 403

    resp = await client.post(f"/api/v1/work-orders/{wo['id']}/form/generate", headers=headers)
    assert resp.status_code == 201
    entries = resp.json()
    assert len(entries) == 3

    resp = await client.put(f"/api/v1/form-entries/{entries[0]['id']}", json={
        "condition": "Fair", "fouling_rating": 2, "status": "COMPLETED",
    }, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["condition"] == "Fair"
    assert body["status"] == "COMPLETED"
    assert body["completed_by"] == manager_user.id

    resp = await client.get(f"/api/v1/work-orders/{wo['id']}/form", headers=get_auth_headers(viewer_user))
    assert resp.status_code == 200
    assert resp.json()[0]["fouling_rating"] == 2

    resp = await client.get(f"/api/v1/work-orders/{wo['id']}/form/data", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["entries"][0]["condition"] == "Fair"


@pytest.mark.asyncio
async def test_outsider_cannot_edit_entries(client: AsyncClient, manager_user, outsider_user, test_vessel):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Private", "type": "INSPECTION",
    }, headers=headers)).json()
    entries = (await client.post(f"/api/v1/work-orders/{wo['id']}/form/generate", headers=headers)).json()

    resp = await client.put(
        f"/api/v1/form-entries/{entries[0]['id']}", json={"notes": "x"}, headers=get_auth_headers(outsider_user),
    )
    assert resp.status_code == 404
    resp = await client.get(f"/api/v1/work-orders/{wo['id']}/form", headers=get_auth_headers(outsider_user))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_no_components_over_http(client: AsyncClient, manager_user, bare_vessel):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": bare_vessel.id, "title": "Empty GA", "type": "INSPECTION",
    }, headers=headers)).json()
    resp = await client.post(f"/api/v1/work-orders/{wo['id']}/form/generate", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "NO_COMPONENTS"


@pytest.mark.asyncio
async def test_single_field_and_attachment_endpoints(client: AsyncClient, manager_user, viewer_user, test_vessel, db_session):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Field edits", "type": "INSPECTION",
    }, headers=headers)).json()
    entries = (await client.post(f"/api/v1/work-orders/{wo['id']}/form/generate", headers=headers)).json()
    url = f"/api/v1/form-entries/{entries[0]['id']}"

    resp = await client.patch(f"{url}/field", json={"field": "foulingRating", "value": "2"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["fouling_rating"] == 2

    resp = await client.patch(
        f"{url}/field", json={"field": "notes", "value": "x"}, headers=get_auth_headers(viewer_user),
    )
    assert resp.status_code == 403

    resp = await client.patch(f"{url}/field", json={"field": "hullColour", "value": "red"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_FIELD"

    resp = await client.patch(f"{url}/field", json={"field": "status", "value": None}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    upload = Media(uploaded_by=manager_user.id, filename="bow.jpg", mime_type="image/jpeg", size_bytes=3, content=b"bow")
    db_session.add(upload)
    await db_session.commit()

    resp = await client.post(f"{url}/attachments", json={"media_id": upload.id}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["attachments"] == [upload.id]

    resp = await client.post(f"{url}/attachments", json={"media_id": "missing"}, headers=headers)
    assert resp.status_code == 404
