"""Initial Berthwise schema (organisations, vessels, workflows, work orders, forms, audit)

Revision ID: a1f4c2e8d7b3
Revises:
Create Date: 2026-10-19T09:12:44.318204
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1f4c2e8d7b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


USER_ROLE = sa.Enum('SUPER_ADMIN', 'ORG_ADMIN', 'MANAGER', 'INSPECTOR', 'VIEWER', name='userrole')
STEP_TYPE = sa.Enum('DATA_CAPTURE', 'REVIEW', 'PARALLEL_REVIEW', 'REPORT_GENERATION', 'NOTIFICATION', name='steptype')
TASK_TYPE = sa.Enum(
    'CHECKLIST', 'FILE_UPLOAD', 'INSPECTION_RECORD', 'PHOTO_CAPTURE', 'NOTE', 'FORM_FILL', 'APPROVAL', 'SIGNATURE',
    name='tasktype',
)
WO_PRIORITY = sa.Enum('LOW', 'NORMAL', 'HIGH', 'URGENT', name='workorderpriority')
WO_STATUS = sa.Enum(
    'DRAFT', 'PENDING_APPROVAL', 'APPROVED', 'IN_PROGRESS', 'AWAITING_REVIEW', 'UNDER_REVIEW',
    'ON_HOLD', 'COMPLETED', 'CANCELLED',
    name='workorderstatus',
)
ASSIGNMENT_ROLE = sa.Enum('LEAD', 'TEAM_MEMBER', 'REVIEWER', 'OBSERVER', name='assignmentrole')
SUBMISSION_STATUS = sa.Enum('SUBMITTED', 'APPROVED', 'REJECTED', name='submissionstatus')
FORM_ENTRY_STATUS = sa.Enum('PENDING', 'IN_PROGRESS', 'COMPLETED', name='formentrystatus')
AUDIT_ACTION = sa.Enum(
    'CREATE', 'UPDATE', 'DELETE', 'STATUS_CHANGE', 'ASSIGNMENT', 'SUBMISSION', 'APPROVAL', 'REJECTION',
    'WORKFLOW_ADVANCE', 'WORKFLOW_COMPLETE',
    name='auditaction',
)


def upgrade() -> None:
    # --- organisations ---
    op.create_table(
        'organisations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_organisations_name', 'organisations', ['name'])
    op.create_index('ix_organisations_slug', 'organisations', ['slug'], unique=True)
    op.create_index('ix_organisations_is_active', 'organisations', ['is_active'])

    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False, server_default=''),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', USER_ROLE, nullable=False, server_default='VIEWER'),
        sa.Column('organisation_id', sa.String(), sa.ForeignKey('organisations.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_organisation_id', 'users', ['organisation_id'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])
    op.create_index('idx_user_org_active', 'users', ['organisation_id', 'is_active'])

    # --- vessels ---
    op.create_table(
        'vessels',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organisation_id', sa.String(), sa.ForeignKey('organisations.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('vessel_type', sa.String(), nullable=True),
        sa.Column('imo_number', sa.String(), nullable=True),
        sa.Column('home_port', sa.String(), nullable=True),
        sa.Column('length_overall', sa.Float(), nullable=True),
        sa.Column('beam', sa.Float(), nullable=True),
        sa.Column('max_draft', sa.Float(), nullable=True),
        sa.Column('gross_tonnage', sa.Float(), nullable=True),
        sa.Column('year_built', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_vessels_organisation_id', 'vessels', ['organisation_id'])
    op.create_index('ix_vessels_name', 'vessels', ['name'])
    op.create_index('ix_vessels_imo_number', 'vessels', ['imo_number'])

    # --- vessel_components ---
    op.create_table(
        'vessel_components',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('vessel_id', sa.String(), sa.ForeignKey('vessels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_vessel_components_vessel_id', 'vessel_components', ['vessel_id'])

    # --- workflows ---
    op.create_table(
        'workflows',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organisation_id', sa.String(), sa.ForeignKey('organisations.id'), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_template', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflows_organisation_id', 'workflows', ['organisation_id'])
    op.create_index('ix_workflows_name', 'workflows', ['name'])
    op.create_index('ix_workflows_is_template', 'workflows', ['is_template'])
    op.create_index('ix_workflows_is_active', 'workflows', ['is_active'])

    # --- workflow_steps ---
    op.create_table(
        'workflow_steps',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('workflow_id', sa.String(), sa.ForeignKey('workflows.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.Column('type', STEP_TYPE, nullable=False, server_default='DATA_CAPTURE'),
        sa.Column('required_role', sa.String(), nullable=True),
        sa.Column('auto_advance', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('config', sa.JSON(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('workflow_id', 'order', name='uq_step_workflow_order'),
    )
    op.create_index('ix_workflow_steps_workflow_id', 'workflow_steps', ['workflow_id'])

    # --- workflow_tasks ---
    op.create_table(
        'workflow_tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('step_id', sa.String(), sa.ForeignKey('workflow_steps.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('task_type', TASK_TYPE, nullable=False, server_default='CHECKLIST'),
        sa.Column('is_required', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('config', sa.JSON(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_tasks_step_id', 'workflow_tasks', ['step_id'])

    # --- work_orders ---
    op.create_table(
        'work_orders',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('reference_number', sa.String(), nullable=False),
        sa.Column('organisation_id', sa.String(), sa.ForeignKey('organisations.id'), nullable=False),
        sa.Column('vessel_id', sa.String(), sa.ForeignKey('vessels.id'), nullable=False),
        sa.Column('workflow_id', sa.String(), sa.ForeignKey('workflows.id'), nullable=True),
        sa.Column('current_step_id', sa.String(), sa.ForeignKey('workflow_steps.id'), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('priority', WO_PRIORITY, nullable=False, server_default='NORMAL'),
        sa.Column('status', WO_STATUS, nullable=False, server_default='DRAFT'),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('regulatory_ref', sa.String(), nullable=True),
        sa.Column('compliance_framework', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('scheduled_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scheduled_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_work_orders_reference_number', 'work_orders', ['reference_number'], unique=True)
    op.create_index('ix_work_orders_organisation_id', 'work_orders', ['organisation_id'])
    op.create_index('ix_work_orders_vessel_id', 'work_orders', ['vessel_id'])
    op.create_index('ix_work_orders_workflow_id', 'work_orders', ['workflow_id'])
    op.create_index('ix_work_orders_status', 'work_orders', ['status'])
    op.create_index('ix_work_orders_is_deleted', 'work_orders', ['is_deleted'])
    op.create_index('ix_work_orders_created_at', 'work_orders', ['created_at'])
    op.create_index('idx_wo_org_status', 'work_orders', ['organisation_id', 'status'])
    op.create_index('idx_wo_org_deleted', 'work_orders', ['organisation_id', 'is_deleted'])

    # --- work_order_assignments ---
    op.create_table(
        'work_order_assignments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('work_order_id', sa.String(), sa.ForeignKey('work_orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', ASSIGNMENT_ROLE, nullable=False, server_default='TEAM_MEMBER'),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('work_order_id', 'user_id', name='uq_assignment_work_order_user'),
    )
    op.create_index('ix_work_order_assignments_work_order_id', 'work_order_assignments', ['work_order_id'])
    op.create_index('ix_work_order_assignments_user_id', 'work_order_assignments', ['user_id'])

    # --- task_submissions ---
    op.create_table(
        'task_submissions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('workflow_tasks.id'), nullable=False),
        sa.Column('work_order_id', sa.String(), sa.ForeignKey('work_orders.id'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', SUBMISSION_STATUS, nullable=False, server_default='SUBMITTED'),
        sa.Column('data', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('signature', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_submissions_task_id', 'task_submissions', ['task_id'])
    op.create_index('ix_task_submissions_work_order_id', 'task_submissions', ['work_order_id'])
    op.create_index('ix_task_submissions_status', 'task_submissions', ['status'])
    op.create_index('ix_task_submissions_created_at', 'task_submissions', ['created_at'])
    op.create_index('idx_submission_task_wo_status', 'task_submissions', ['task_id', 'work_order_id', 'status'])

    # --- reference_counters ---
    op.create_table(
        'reference_counters',
        sa.Column('day', sa.String(), nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('day'),
    )

    # --- work_form_entries ---
    op.create_table(
        'work_form_entries',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('work_order_id', sa.String(), sa.ForeignKey('work_orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('vessel_component_id', sa.String(), sa.ForeignKey('vessel_components.id'), nullable=False),
        sa.Column('status', FORM_ENTRY_STATUS, nullable=False, server_default='PENDING'),
        sa.Column('condition', sa.String(), nullable=True),
        sa.Column('fouling_rating', sa.Integer(), nullable=True),
        sa.Column('fouling_type', sa.String(), nullable=True),
        sa.Column('coverage', sa.Float(), nullable=True),
        sa.Column('coating_condition', sa.String(), nullable=True),
        sa.Column('corrosion_type', sa.String(), nullable=True),
        sa.Column('corrosion_severity', sa.String(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('recommendation', sa.Text(), nullable=True),
        sa.Column('action_required', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('measurement_type', sa.String(), nullable=True),
        sa.Column('measurement_value', sa.Float(), nullable=True),
        sa.Column('measurement_unit', sa.String(), nullable=True),
        sa.Column('attachments', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('work_order_id', 'vessel_component_id', name='uq_form_entry_component'),
    )
    op.create_index('ix_work_form_entries_work_order_id', 'work_form_entries', ['work_order_id'])
    op.create_index('ix_work_form_entries_vessel_component_id', 'work_form_entries', ['vessel_component_id'])

    # --- media ---
    op.create_table(
        'media',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('work_order_id', sa.String(), sa.ForeignKey('work_orders.id'), nullable=True),
        sa.Column('form_entry_id', sa.String(), sa.ForeignKey('work_form_entries.id'), nullable=True),
        sa.Column('uploaded_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('filename', sa.String(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('size_bytes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('content', sa.LargeBinary(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_media_work_order_id', 'media', ['work_order_id'])
    op.create_index('ix_media_form_entry_id', 'media', ['form_entry_id'])

    # --- audit_logs (append-only) ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actor_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('organisation_id', sa.String(), nullable=True),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('action', AUDIT_ACTION, nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('previous_data', sa.JSON(), nullable=True),
        sa.Column('new_data', sa.JSON(), nullable=True),
        sa.Column('changed_fields', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    op.create_index('ix_audit_logs_organisation_id', 'audit_logs', ['organisation_id'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_entity_id', 'audit_logs', ['entity_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'], unique=True)
    op.create_index('idx_audit_entity', 'audit_logs', ['entity_type', 'entity_id'])
    op.create_index('idx_audit_org_timestamp', 'audit_logs', ['organisation_id', 'timestamp'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('media')
    op.drop_table('work_form_entries')
    op.drop_table('reference_counters')
    op.drop_table('task_submissions')
    op.drop_table('work_order_assignments')
    op.drop_table('work_orders')
    op.drop_table('workflow_tasks')
    op.drop_table('workflow_steps')
    op.drop_table('workflows')
    op.drop_table('vessel_components')
    op.drop_table('vessels')
    op.drop_table('users')
    op.drop_table('organisations')
    for enum_name in (
        'auditaction', 'formentrystatus', 'submissionstatus', 'assignmentrole', 'workorderstatus',
        'workorderpriority', 'tasktype', 'steptype', 'userrole',
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
