# tests/test_work_orders.py — Work order lifecycle and REST surface
from datetime import datetime, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from errors import NotFound, InvalidTransition, ValidationError
from models import (
    WorkOrder, WorkOrderStatus, AssignmentRole, AuditLog, AuditAction, WorkOrderAssignment,
)
from work_orders import WorkOrderService, VALID_TRANSITIONS, generate_reference_number
from workflow_engine import WorkflowEngine
from tests.conftest import get_auth_headers

S = WorkOrderStatus
DAY = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


def _payload(vessel, **extra):
    data = {"vessel_id": vessel.id, "title": "Niche area inspection", "type": "INSPECTION"}
    data.update(extra)
    return data


async def _create(db, org, user, vessel, **extra):
    return await WorkOrderService.create(db, _payload(vessel, **extra), org.id, user.id)


async def _force_status(db, wo, status):
    wo.status = status
    await db.commit()


# ── Reference numbers ────────────────────────────────────────

@pytest.mark.asyncio
async def test_reference_numbers_are_sequential_per_day(db_session, test_org, manager_user, test_vessel):
    first = await WorkOrderService.create(db_session, _payload(test_vessel), test_org.id, manager_user.id, now=DAY)
    second = await WorkOrderService.create(db_session, _payload(test_vessel), test_org.id, manager_user.id, now=DAY)
    assert first.reference_number == "WO-20260314-0001"
    assert second.reference_number == "WO-20260314-0002"


@pytest.mark.asyncio
async def test_reference_counter_seeds_from_existing_numbers(db_session, test_org, manager_user, test_vessel):
    db_session.add(WorkOrder(
        reference_number="WO-20260314-0007",
        organisation_id=test_org.id,
        vessel_id=test_vessel.id,
        title="Imported",
        type="CLEANING",
    ))
    await db_session.commit()

    assert await generate_reference_number(db_session, DAY) == "WO-20260314-0008"
    assert await generate_reference_number(db_session, DAY) == "WO-20260314-0009"
    await db_session.rollback()


# ── Creation ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_always_starts_in_draft(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel, status="COMPLETED")
    assert wo.status == S.DRAFT
    assert wo.created_by == manager_user.id

    audit = (await db_session.execute(
        select(AuditLog).where(AuditLog.entity_id == wo.id)
    )).scalars().all()
    assert [a.action for a in audit] == [AuditAction.CREATE]


@pytest.mark.asyncio
async def test_create_rejects_foreign_vessel(db_session, other_org, outsider_user, test_vessel):
    with pytest.raises(NotFound):
        await _create(db_session, other_org, outsider_user, test_vessel)


# ── Status machine ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_every_transition_follows_the_table(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    for current in S:
        for target in S:
            await _force_status(db_session, wo, current)
            if target in VALID_TRANSITIONS[current]:
                updated = await WorkOrderService.change_status(
                    db_session, wo.id, test_org.id, target, manager_user.id,
                )
                assert updated.status == target
            else:
                with pytest.raises(InvalidTransition):
                    await WorkOrderService.change_status(
                        db_session, wo.id, test_org.id, target, manager_user.id,
                    )
                await db_session.refresh(wo)
                assert wo.status == current


@pytest.mark.asyncio
async def test_rejected_transition_leaves_timestamps(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    with pytest.raises(InvalidTransition) as exc:
        await WorkOrderService.change_status(db_session, wo.id, test_org.id, S.COMPLETED, manager_user.id)
    assert exc.value.details == {"from": "DRAFT", "to": "COMPLETED"}
    await db_session.refresh(wo)
    assert wo.completed_at is None
    assert wo.actual_end is None


@pytest.mark.asyncio
async def test_lifecycle_stamps_timestamps(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    for target in (S.PENDING_APPROVAL, S.APPROVED, S.IN_PROGRESS):
        wo = await WorkOrderService.change_status(db_session, wo.id, test_org.id, target, manager_user.id)
    started = wo.actual_start
    assert started is not None

    for target in (S.ON_HOLD, S.IN_PROGRESS):
        wo = await WorkOrderService.change_status(db_session, wo.id, test_org.id, target, manager_user.id)
    assert wo.actual_start == started

    for target in (S.AWAITING_REVIEW, S.UNDER_REVIEW, S.COMPLETED):
        wo = await WorkOrderService.change_status(
            db_session, wo.id, test_org.id, target, manager_user.id, reason="Signed off",
        )
    assert wo.completed_at is not None
    assert wo.actual_end is not None

    changes = (await db_session.execute(
        select(AuditLog).where(
            AuditLog.entity_id == wo.id, AuditLog.action == AuditAction.STATUS_CHANGE,
        )
    )).scalars().all()
    assert len(changes) == 8
    assert any("Signed off" in c.description for c in changes)


@pytest.mark.asyncio
async def test_status_change_is_scoped_to_organisation(db_session, test_org, other_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    with pytest.raises(NotFound):
        await WorkOrderService.change_status(db_session, wo.id, other_org.id, S.CANCELLED, manager_user.id)


@pytest.mark.asyncio
async def test_deleted_work_order_is_invisible(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    await WorkOrderService.soft_delete(db_session, wo.id, test_org.id, manager_user.id)
    with pytest.raises(NotFound):
        await WorkOrderService.change_status(db_session, wo.id, test_org.id, S.CANCELLED, manager_user.id)
    with pytest.raises(NotFound):
        await WorkOrderService.get_by_id(db_session, wo.id, test_org.id, manager_user.id)


# ── Assignment & update ──────────────────────────────────────

@pytest.mark.asyncio
async def test_assign_is_an_upsert_across_organisations(db_session, test_org, manager_user, outsider_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    await WorkOrderService.assign(db_session, wo.id, test_org.id, outsider_user.id, AssignmentRole.OBSERVER, manager_user.id)
    await WorkOrderService.assign(db_session, wo.id, test_org.id, outsider_user.id, AssignmentRole.LEAD, manager_user.id)

    rows = (await db_session.execute(
        select(WorkOrderAssignment).where(WorkOrderAssignment.work_order_id == wo.id)
    )).scalars().all()
    assert len(rows) == 1
    assert rows[0].role == AssignmentRole.LEAD

    await WorkOrderService.unassign(db_session, wo.id, test_org.id, outsider_user.id, manager_user.id)
    with pytest.raises(NotFound):
        await WorkOrderService.unassign(db_session, wo.id, test_org.id, outsider_user.id, manager_user.id)


@pytest.mark.asyncio
async def test_update_applies_allowlisted_fields_only(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    updated = await WorkOrderService.update(db_session, wo.id, test_org.id, {
        "title": "Sea chest inspection",
        "priority": "URGENT",
        "metadata": {"berth": "B4"},
        "status": "COMPLETED",
        "reference_number": "WO-HACKED",
    }, manager_user.id)

    assert updated.title == "Sea chest inspection"
    assert updated.priority.value == "URGENT"
    assert updated.extra_data == {"berth": "B4"}
    assert updated.status == S.DRAFT
    assert updated.reference_number != "WO-HACKED"

    entry = (await db_session.execute(
        select(AuditLog).where(AuditLog.entity_id == wo.id, AuditLog.action == AuditAction.UPDATE)
    )).scalar_one()
    assert sorted(entry.changed_fields) == ["metadata", "priority", "title"]


@pytest.mark.asyncio
async def test_detaching_workflow_clears_current_step(db_session, test_org, manager_user, test_vessel, inspection_workflow):
    wo = await _create(db_session, test_org, manager_user, test_vessel, workflow_id=inspection_workflow.id)
    assert wo.current_step_id == inspection_workflow.steps[0].id

    updated = await WorkOrderService.update(db_session, wo.id, test_org.id, {"workflow_id": None}, manager_user.id)
    assert updated.workflow_id is None
    assert updated.current_step_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["title", "type", "vessel_id", "priority"])
async def test_update_rejects_null_for_required_fields(db_session, test_org, manager_user, test_vessel, field):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    with pytest.raises(ValidationError) as exc:
        await WorkOrderService.update(db_session, wo.id, test_org.id, {field: None}, manager_user.id)
    assert exc.value.details == {"fields": [field]}

    fresh = await db_session.get(WorkOrder, wo.id, populate_existing=True)
    assert fresh.title == "Niche area inspection"
    assert fresh.vessel_id == test_vessel.id


@pytest.mark.asyncio
async def test_update_null_compliance_framework_clears_it(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel, compliance_framework=["IMO_BIOFOULING"])
    updated = await WorkOrderService.update(
        db_session, wo.id, test_org.id, {"compliance_framework": None}, manager_user.id,
    )
    assert updated.compliance_framework == []


@pytest.mark.asyncio
async def test_attaching_stepless_workflow_changes_nothing(db_session, test_org, manager_user, test_vessel):
    empty = await WorkflowEngine.create_template(db_session, {"name": "Placeholder", "steps": []})
    wo = await _create(db_session, test_org, manager_user, test_vessel)

    updated = await WorkOrderService.update(db_session, wo.id, test_org.id, {"workflow_id": empty.id}, manager_user.id)
    assert updated.workflow_id is None
    assert updated.current_step_id is None

    audits = (await db_session.execute(
        select(AuditLog).where(AuditLog.entity_id == wo.id, AuditLog.action == AuditAction.UPDATE)
    )).scalars().all()
    assert audits == []


# ── Comments ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_comments_thread_in_order(db_session, test_org, manager_user, inspector_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    first = await WorkOrderService.add_comment(db_session, wo.id, manager_user.id, "  Check the sea chest grating  ")
    reply = await WorkOrderService.add_comment(
        db_session, wo.id, inspector_user.id, "Grating removed and photographed", parent_id=first.id,
    )

    assert first.content == "Check the sea chest grating"
    assert reply.parent_id == first.id
    assert reply.author.display_name == "Ira Inspector"
    comments = await WorkOrderService.list_comments(db_session, wo.id)
    assert [c.id for c in comments] == [first.id, reply.id]


@pytest.mark.asyncio
async def test_comment_parent_must_share_work_order(db_session, test_org, manager_user, test_vessel):
    wo = await _create(db_session, test_org, manager_user, test_vessel)
    other = await _create(db_session, test_org, manager_user, test_vessel)
    elsewhere = await WorkOrderService.add_comment(db_session, other.id, manager_user.id, "Different job")

    with pytest.raises(NotFound):
        await WorkOrderService.add_comment(db_session, wo.id, manager_user.id, "Reply", parent_id=elsewhere.id)
    with pytest.raises(ValidationError):
        await WorkOrderService.add_comment(db_session, wo.id, manager_user.id, "   ")


# ── HTTP ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_and_get_over_http(client: AsyncClient, manager_user, test_vessel, inspection_workflow):
    headers = get_auth_headers(manager_user)
    resp = await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id,
        "workflow_id": inspection_workflow.id,
        "title": "Pre-arrival biofouling check",
        "type": "INSPECTION",
        "priority": "HIGH",
        "compliance_framework": ["IMO_BIOFOULING"],
    }, headers=headers)
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "DRAFT"
    assert data["reference_number"].startswith("WO-")
    assert data["current_step_id"] == inspection_workflow.steps[0].id
    assert [s["name"] for s in data["workflow"]["steps"]] == ["Capture", "Review", "Report"]

    resp = await client.get(f"/api/v1/work-orders/{data['id']}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["priority"] == "HIGH"


@pytest.mark.asyncio
async def test_viewer_cannot_create(client: AsyncClient, viewer_user, test_vessel):
    resp = await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Nope", "type": "INSPECTION",
    }, headers=get_auth_headers(viewer_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_list_is_paginated(client: AsyncClient, manager_user, test_vessel):
    headers = get_auth_headers(manager_user)
    for i in range(3):
        await client.post("/api/v1/work-orders", json={
            "vessel_id": test_vessel.id, "title": f"Dive {i}", "type": "CLEANING",
        }, headers=headers)

    resp = await client.get("/api/v1/work-orders?limit=2&page=1", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

    resp = await client.get("/api/v1/work-orders?search=Dive%201", headers=headers)
    assert [w["title"] for w in resp.json()["data"]] == ["Dive 1"]


@pytest.mark.asyncio
async def test_outsider_sees_only_assigned_work(client: AsyncClient, manager_user, outsider_user, test_vessel):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Shared job", "type": "INSPECTION",
    }, headers=headers)).json()

    outsider = get_auth_headers(outsider_user)
    resp = await client.get(f"/api/v1/work-orders/{wo['id']}", headers=outsider)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"

    resp = await client.post(f"/api/v1/work-orders/{wo['id']}/assign", json={
        "user_id": outsider_user.id, "role": "TEAM_MEMBER",
    }, headers=headers)
    assert resp.status_code == 201

    resp = await client.get(f"/api/v1/work-orders/{wo['id']}", headers=outsider)
    assert resp.status_code == 200
    listed = (await client.get("/api/v1/work-orders", headers=outsider)).json()
    assert [w["id"] for w in listed["data"]] == [wo["id"]]


@pytest.mark.asyncio
async def test_invalid_transition_envelope(client: AsyncClient, manager_user, test_vessel):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Envelope", "type": "INSPECTION",
    }, headers=headers)).json()

    resp = await client.patch(f"/api/v1/work-orders/{wo['id']}/status", json={"status": "IN_PROGRESS"}, headers=headers)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "INVALID_TRANSITION"
    assert body["error"]["details"] == {"from": "DRAFT", "to": "IN_PROGRESS"}
    assert body["request_id"]

    resp = await client.patch(f"/api/v1/work-orders/{wo['id']}/status", json={"status": "PENDING_APPROVAL"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "PENDING_APPROVAL"


@pytest.mark.asyncio
async def test_delete_hides_work_order(client: AsyncClient, manager_user, inspector_user, test_vessel):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Temporary", "type": "INSPECTION",
    }, headers=headers)).json()

    resp = await client.delete(f"/api/v1/work-orders/{wo['id']}", headers=get_auth_headers(inspector_user))
    assert resp.status_code == 403

    resp = await client.delete(f"/api/v1/work-orders/{wo['id']}", headers=headers)
    assert resp.status_code == 200
    resp = await client.get(f"/api/v1/work-orders/{wo['id']}", headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_task_review_over_http(client: AsyncClient, manager_user, inspector_user, test_vessel, inspection_workflow):
    wf = inspection_workflow
    manager = get_auth_headers(manager_user)
    inspector = get_auth_headers(inspector_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "workflow_id": wf.id, "title": "Reviewed job", "type": "INSPECTION",
    }, headers=manager)).json()
    capture_task = wf.steps[0].tasks[0].id
    review_task = wf.steps[1].tasks[0].id

    resp = await client.post(
        f"/api/v1/work-orders/{wo['id']}/tasks/{capture_task}/submit",
        json={"data": {"fouling_rating": 2}, "notes": "Light slime"}, headers=inspector,
    )
    assert resp.status_code == 201
    assert resp.json()["status"] == "SUBMITTED"

    resp = await client.post(f"/api/v1/work-orders/{wo['id']}/tasks/{review_task}/approve", json={}, headers=manager)
    assert resp.status_code == 404

    await client.post(f"/api/v1/work-orders/{wo['id']}/tasks/{review_task}/submit", json={}, headers=inspector)
    resp = await client.post(f"/api/v1/work-orders/{wo['id']}/tasks/{review_task}/approve", json={}, headers=inspector)
    assert resp.status_code == 403

    resp = await client.post(
        f"/api/v1/work-orders/{wo['id']}/tasks/{review_task}/approve", json={"notes": "OK"}, headers=manager,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "APPROVED"

    detail = (await client.get(f"/api/v1/work-orders/{wo['id']}", headers=manager)).json()
    assert detail["current_step_id"] == wf.steps[2].id
    assert len(detail["task_submissions"]) == 2


@pytest.mark.asyncio
async def test_api_rejects_null_title(client: AsyncClient, manager_user, test_vessel):
    headers = get_auth_headers(manager_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Anode check", "type": "INSPECTION",
    }, headers=headers)).json()

    resp = await client.put(f"/api/v1/work-orders/{wo['id']}", json={"title": None}, headers=headers)
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"] == {"fields": ["title"]}

    detail = (await client.get(f"/api/v1/work-orders/{wo['id']}", headers=headers)).json()
    assert detail["title"] == "Anode check"


@pytest.mark.asyncio
async def test_api_comments(client: AsyncClient, manager_user, viewer_user, outsider_user, test_vessel):
    manager = get_auth_headers(manager_user)
    viewer = get_auth_headers(viewer_user)
    wo = (await client.post("/api/v1/work-orders", json={
        "vessel_id": test_vessel.id, "title": "Propeller polish", "type": "CLEANING",
    }, headers=manager)).json()
    url = f"/api/v1/work-orders/{wo['id']}/comments"

    resp = await client.post(url, json={"content": "Divers on site 0800"}, headers=manager)
    assert resp.status_code == 201
    first = resp.json()
    assert first["author"]["display_name"] == "Morgan Manager"
    assert first["parent_id"] is None

    resp = await client.post(url, json={"content": "Confirmed", "parent_id": first["id"]}, headers=manager)
    assert resp.status_code == 201

    resp = await client.post(url, json={"content": "Can I comment?"}, headers=viewer)
    assert resp.status_code == 403

    resp = await client.get(url, headers=viewer)
    assert resp.status_code == 200
    assert [c["content"] for c in resp.json()] == ["Divers on site 0800", "Confirmed"]
    assert resp.json()[1]["parent_id"] == first["id"]

    resp = await client.get(url, headers=get_auth_headers(outsider_user))
    assert resp.status_code == 404

    resp = await client.post(url, json={"content": ""}, headers=manager)
    assert resp.status_code == 422
