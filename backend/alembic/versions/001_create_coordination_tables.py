"""create_coordination_tables

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        'workspaces',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False, unique=True),
        sa.Column('working_directory', sa.String(1000), nullable=True),
        sa.Column('status', sa.Enum('ACTIVE', 'CLOSED', name='workspacestatus'), nullable=False, index=True),
        sa.Column('mayor_id', sa.String(36), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(), nullable=False),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'agents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workspace_id', sa.String(36), nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('role', sa.Enum('MAYOR', 'DEACON', 'REFINERY', 'REVIEWER', 'WITNESS', 'SPECIALIST', 'EXPLORER', 'OTHER', name='agentrole'), nullable=False, index=True),
        sa.Column('model', sa.String(50), nullable=True),
        sa.Column('parent_id', sa.String(36), nullable=True, index=True),
        sa.Column('can_spawn', sa.Boolean(), nullable=False),
        sa.Column('spawn_depth', sa.Integer(), nullable=False),
        sa.Column('state', sa.Enum('SPAWNED', 'WORKING', 'BLOCKED', 'COMPLETED', 'FAILED', 'TERMINATED', name='agentstate'), nullable=False, index=True),
        sa.Column('branch_ref', sa.String(500), nullable=True),
        sa.Column('owned_paths', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'name', name='uq_agent_workspace_name'),
    )
    op.create_index('ix_agent_workspace_state', 'agents', ['workspace_id', 'state'])

    op.create_table(
        'beads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workspace_id', sa.String(36), nullable=False, index=True),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('created_by', sa.String(36), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'IN_PROGRESS', 'DONE', 'FAILED', 'BLOCKED', name='beadstatus'), nullable=False, index=True),
        sa.Column('assignee_id', sa.String(36), nullable=True, index=True),
        sa.Column('blocked_by', sa.JSON(), nullable=False),
        sa.Column('test_status', sa.Enum('PENDING', 'RUNNING', 'PASSED', 'FAILED', 'SKIPPED', name='teststatus'), nullable=False),
        sa.Column('test_command', sa.Text(), nullable=True),
        sa.Column('test_output', sa.Text(), nullable=True),
        sa.Column('test_run_at', sa.DateTime(), nullable=True),
        sa.Column('test_runs', sa.JSON(), nullable=False),
        sa.Column('status_history', sa.JSON(), nullable=False),
        sa.Column('audit', sa.JSON(), nullable=False),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_bead_workspace_status', 'beads', ['workspace_id', 'status'])

    op.create_table(
        'agent_messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(36), nullable=False, index=True),
        sa.Column('from_agent', sa.String(100), nullable=False, index=True),
        sa.Column('to_agent', sa.String(100), nullable=False, index=True),
        sa.Column('message_type', sa.Enum('STATUS', 'COMPLETION', 'BLOCKER', 'NUDGE', 'ESCALATION', name='messagetype'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('read', sa.Boolean(), nullable=False, index=True),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=False, index=True),
    )
    op.create_index('ix_agent_message_workspace_to_read', 'agent_messages', ['workspace_id', 'to_agent', 'read'])

    op.create_table(
        'progress_entries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(36), nullable=False, index=True),
        sa.Column('agent_id', sa.String(36), nullable=False, index=True),
        sa.Column('agent_name', sa.String(100), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('completed', sa.JSON(), nullable=False),
        sa.Column('next', sa.JSON(), nullable=False),
        sa.Column('artifacts', sa.JSON(), nullable=False),
        sa.Column('blockers', sa.JSON(), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False, index=True),
    )
    op.create_index('ix_progress_agent_recorded', 'progress_entries', ['agent_id', 'recorded_at'])

    op.create_table(
        'merge_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workspace_id', sa.String(36), nullable=False, index=True),
        sa.Column('agent_id', sa.String(36), nullable=False, index=True),
        sa.Column('branch_ref', sa.String(500), nullable=False),
        sa.Column('target_branch', sa.String(200), nullable=False),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('files_changed', sa.JSON(), nullable=False),
        sa.Column('bead_id', sa.String(36), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('conflicts_with', sa.JSON(), nullable=False),
        sa.Column('review_status', sa.Enum('PENDING', 'APPROVED', 'CHANGES_REQUESTED', name='reviewstatus'), nullable=False),
        sa.Column('reviewed_by', sa.String(36), nullable=True),
        sa.Column('review_comments', sa.Text(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('build_status', sa.Enum('PENDING', 'PASSED', 'FAILED', name='buildstatus'), nullable=False),
        sa.Column('build_output', sa.Text(), nullable=True),
        sa.Column('build_checked_at', sa.DateTime(), nullable=True),
        sa.Column('merge_status', sa.Enum('QUEUED', 'MERGED', 'REJECTED', 'STALLED', name='mergestatus'), nullable=False, index=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('merged_at', sa.DateTime(), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_merge_request_workspace_status', 'merge_requests', ['workspace_id', 'merge_status'])


def downgrade():
    op.drop_table('merge_requests')
    op.drop_table('progress_entries')
    op.drop_table('agent_messages')
    op.drop_table('beads')
    op.drop_table('agents')
    op.drop_table('workspaces')
