# models.py — Database models for Berthwise
# - UUID string primary keys everywhere
# - Work orders are soft-deleted only (is_deleted flag)
# - Workflow templates own ordered steps, steps own ordered tasks
# - Audit log is append-only

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Float, LargeBinary,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    SUPER_ADMIN = "super_admin"
    ORG_ADMIN = "org_admin"
    MANAGER = "manager"
    INSPECTOR = "inspector"
    VIEWER = "viewer"


class WorkOrderStatus(str, PyEnum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    UNDER_REVIEW = "UNDER_REVIEW"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class WorkOrderPriority(str, PyEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class AssignmentRole(str, PyEnum):
    LEAD = "LEAD"
    TEAM_MEMBER = "TEAM_MEMBER"
    REVIEWER = "REVIEWER"
    OBSERVER = "OBSERVER"


class StepType(str, PyEnum):
    DATA_CAPTURE = "DATA_CAPTURE"
    REVIEW = "REVIEW"
    PARALLEL_REVIEW = "PARALLEL_REVIEW"
    REPORT_GENERATION = "REPORT_GENERATION"
    NOTIFICATION = "NOTIFICATION"


class TaskType(str, PyEnum):
    CHECKLIST = "CHECKLIST"
    FILE_UPLOAD = "FILE_UPLOAD"
    INSPECTION_RECORD = "INSPECTION_RECORD"
    PHOTO_CAPTURE = "PHOTO_CAPTURE"
    NOTE = "NOTE"
    FORM_FILL = "FORM_FILL"
    APPROVAL = "APPROVAL"
    SIGNATURE = "SIGNATURE"


class SubmissionStatus(str, PyEnum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class FormEntryStatus(str, PyEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class AuditAction(str, PyEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    ASSIGNMENT = "ASSIGNMENT"
    SUBMISSION = "SUBMISSION"
    APPROVAL = "APPROVAL"
    REJECTION = "REJECTION"
    WORKFLOW_ADVANCE = "WORKFLOW_ADVANCE"
    WORKFLOW_COMPLETE = "WORKFLOW_COMPLETE"


# ============================================================
# ORGANISATIONS & USERS
# ============================================================

class Organisation(Base):
    __tablename__ = "organisations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    users = relationship("User", back_populates="organisation")
    vessels = relationship("Vessel", back_populates="organisation")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.VIEWER, nullable=False, index=True)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    organisation = relationship("Organisation", back_populates="users")

    __table_args__ = (
        Index("idx_user_org_active", "organisation_id", "is_active"),
    )


# ============================================================
# VESSELS (general arrangement)
# ============================================================

class Vessel(Base):
    __tablename__ = "vessels"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    vessel_type = Column(String, nullable=True)
    imo_number = Column(String, nullable=True, index=True)
    home_port = Column(String, nullable=True)
    length_overall = Column(Float, nullable=True)
    beam = Column(Float, nullable=True)
    max_draft = Column(Float, nullable=True)
    gross_tonnage = Column(Float, nullable=True)
    year_built = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    organisation = relationship("Organisation", back_populates="vessels")
    components = relationship(
        "VesselComponent", back_populates="vessel", order_by="VesselComponent.sort_order",
    )


class VesselComponent(Base):
    """One niche area or hull section from the vessel's general arrangement"""
    __tablename__ = "vessel_components"

    id = Column(String, primary_key=True, default=new_uuid)
    vessel_id = Column(String, ForeignKey("vessels.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=True)
    location = Column(String, nullable=True)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    vessel = relationship("Vessel", back_populates="components")


# ============================================================
# WORKFLOWS
# ============================================================

class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=True, index=True)
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    is_template = Column(Boolean, default=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    steps = relationship(
        "WorkflowStep", back_populates="workflow",
        order_by="WorkflowStep.order", cascade="all, delete-orphan",
    )


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"

    id = Column(String, primary_key=True, default=new_uuid)
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    order = Column(Integer, nullable=False)
    type = Column(SQLEnum(StepType), nullable=False, default=StepType.DATA_CAPTURE)
    required_role = Column(String, nullable=True)
    auto_advance = Column(Boolean, default=False)
    config = Column(JSON, nullable=False, default=dict)

    workflow = relationship("Workflow", back_populates="steps")
    tasks = relationship(
        "Task", back_populates="step", order_by="Task.order", cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("workflow_id", "order", name="uq_step_workflow_order"),
    )


class Task(Base):
    """A unit of work inside a workflow step"""
    __tablename__ = "workflow_tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    step_id = Column(String, ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    order = Column(Integer, nullable=False, default=0)
    task_type = Column(SQLEnum(TaskType), nullable=False, default=TaskType.CHECKLIST)
    is_required = Column(Boolean, default=True, nullable=False)
    config = Column(JSON, nullable=False, default=dict)

    step = relationship("WorkflowStep", back_populates="tasks")


# ============================================================
# WORK ORDERS
# ============================================================

class WorkOrder(Base):
    __tablename__ = "work_orders"

    id = Column(String, primary_key=True, default=new_uuid)
    reference_number = Column(String, unique=True, nullable=False, index=True)  # e.g. "WO-20260101-0001"
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    vessel_id = Column(String, ForeignKey("vessels.id"), nullable=False, index=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=True, index=True)
    current_step_id = Column(String, ForeignKey("workflow_steps.id"), nullable=True)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String, nullable=False)
    priority = Column(SQLEnum(WorkOrderPriority), default=WorkOrderPriority.NORMAL, nullable=False)
    status = Column(SQLEnum(WorkOrderStatus), default=WorkOrderStatus.DRAFT, nullable=False, index=True)
    location = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    regulatory_ref = Column(String, nullable=True)
    compliance_framework = Column(JSON, nullable=False, default=list)
    extra_data = Column("metadata", JSON, nullable=True)

    scheduled_start = Column(DateTime(timezone=True), nullable=True)
    scheduled_end = Column(DateTime(timezone=True), nullable=True)
    actual_start = Column(DateTime(timezone=True), nullable=True)
    actual_end = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    vessel = relationship("Vessel")
    organisation = relationship("Organisation")
    workflow = relationship("Workflow")
    assignments = relationship("WorkOrderAssignment", back_populates="work_order", cascade="all, delete-orphan")
    task_submissions = relationship(
        "TaskSubmission", back_populates="work_order", order_by="TaskSubmission.created_at",
    )
    form_entries = relationship("WorkFormEntry", back_populates="work_order")

    __table_args__ = (
        Index("idx_wo_org_status", "organisation_id", "status"),
        Index("idx_wo_org_deleted", "organisation_id", "is_deleted"),
    )


class WorkOrderAssignment(Base):
    """Collaborator access to a single work order, independent of organisation"""
    __tablename__ = "work_order_assignments"

    id = Column(String, primary_key=True, default=new_uuid)
    work_order_id = Column(String, ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(SQLEnum(AssignmentRole), nullable=False, default=AssignmentRole.TEAM_MEMBER)
    assigned_at = Column(DateTime(timezone=True), default=utcnow)

    work_order = relationship("WorkOrder", back_populates="assignments")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("work_order_id", "user_id", name="uq_assignment_work_order_user"),
    )


class Comment(Base):
    """Discussion on a work order; replies point at their parent"""
    __tablename__ = "work_order_comments"

    id = Column(String, primary_key=True, default=new_uuid)
    work_order_id = Column(String, ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False)
    author_id = Column(String, ForeignKey("users.id"), nullable=False)
    parent_id = Column(String, ForeignKey("work_order_comments.id"), nullable=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    author = relationship("User")

    __table_args__ = (
        Index("idx_comment_wo_created", "work_order_id", "created_at"),
    )


class TaskSubmission(Base):
    __tablename__ = "task_submissions"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("workflow_tasks.id"), nullable=False, index=True)
    work_order_id = Column(String, ForeignKey("work_orders.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(SQLEnum(SubmissionStatus), default=SubmissionStatus.SUBMITTED, nullable=False, index=True)
    data = Column(JSON, nullable=False, default=dict)
    notes = Column(Text, nullable=True)
    signature = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), default=utcnow)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(String, ForeignKey("users.id"), nullable=True)
    review_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    work_order = relationship("WorkOrder", back_populates="task_submissions")
    task = relationship("Task")

    __table_args__ = (
        Index("idx_submission_task_wo_status", "task_id", "work_order_id", "status"),
    )


class ReferenceCounter(Base):
    """Per-day sequence backing work order reference numbers"""
    __tablename__ = "reference_counters"

    day = Column(String, primary_key=True)  # YYYYMMDD
    last_value = Column(Integer, nullable=False, default=0)


# ============================================================
# WORK FORMS & MEDIA
# ============================================================

class WorkFormEntry(Base):
    """Inspection data for one vessel component on one work order"""
    __tablename__ = "work_form_entries"

    id = Column(String, primary_key=True, default=new_uuid)
    work_order_id = Column(String, ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    vessel_component_id = Column(String, ForeignKey("vessel_components.id"), nullable=False, index=True)
    status = Column(SQLEnum(FormEntryStatus), default=FormEntryStatus.PENDING, nullable=False)

    condition = Column(String, nullable=True)
    fouling_rating = Column(Integer, nullable=True)
    fouling_type = Column(String, nullable=True)
    coverage = Column(Float, nullable=True)
    coating_condition = Column(String, nullable=True)
    corrosion_type = Column(String, nullable=True)
    corrosion_severity = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    recommendation = Column(Text, nullable=True)
    action_required = Column(Boolean, default=False)
    measurement_type = Column(String, nullable=True)
    measurement_value = Column(Float, nullable=True)
    measurement_unit = Column(String, nullable=True)
    attachments = Column(JSON, nullable=False, default=list)  # Media ids, in capture order

    completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    work_order = relationship("WorkOrder", back_populates="form_entries")
    vessel_component = relationship("VesselComponent")

    __table_args__ = (
        UniqueConstraint("work_order_id", "vessel_component_id", name="uq_form_entry_component"),
    )


class Media(Base):
    __tablename__ = "media"

    id = Column(String, primary_key=True, default=new_uuid)
    work_order_id = Column(String, ForeignKey("work_orders.id"), nullable=True, index=True)
    form_entry_id = Column(String, ForeignKey("work_form_entries.id"), nullable=True, index=True)
    uploaded_by = Column(String, ForeignKey("users.id"), nullable=True)
    filename = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    content = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# AUDIT LOG (Append-only — never update or delete)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    actor_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    organisation_id = Column(String, nullable=True, index=True)
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False, index=True)
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    description = Column(Text, nullable=False)
    previous_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)
    changed_fields = Column(JSON, nullable=False, default=list)
    request_id = Column(String, index=True, unique=True, default=new_uuid)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_org_timestamp", "organisation_id", "timestamp"),
    )
