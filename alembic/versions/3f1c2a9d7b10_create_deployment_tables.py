"""create deployment tables

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 10:12:41.208133

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'model_versions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('model_name', sa.String(length=100), nullable=False),
        sa.Column('version', sa.String(length=50), nullable=False),
        sa.Column('artifact_uri', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_model_versions_id'), 'model_versions', ['id'], unique=False)
    op.create_index(op.f('ix_model_versions_model_name'), 'model_versions', ['model_name'], unique=False)

    op.create_table(
        'deployments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.Column('environment', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('strategy', sa.String(length=20), nullable=False),
        sa.Column('configuration', sa.JSON(), nullable=False),
        sa.Column('slo_targets', sa.JSON(), nullable=False),
        sa.Column('drift_thresholds', sa.JSON(), nullable=False),
        sa.Column('deployed_by', sa.String(length=64), nullable=False),
        sa.Column('deployed_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['version_id'], ['model_versions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_deployments_id'), 'deployments', ['id'], unique=False)
    op.create_index(op.f('ix_deployments_version_id'), 'deployments', ['version_id'], unique=False)
    op.create_index(op.f('ix_deployments_environment'), 'deployments', ['environment'], unique=False)
    op.create_index(op.f('ix_deployments_status'), 'deployments', ['status'], unique=False)
    op.create_index(op.f('ix_deployments_deployed_at'), 'deployments', ['deployed_at'], unique=False)

    op.create_table(
        'traffic_splits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('deployment_id', sa.Integer(), nullable=False),
        sa.Column('percentage', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('percentage >= 0 AND percentage <= 100', name='ck_traffic_splits_percentage'),
        sa.ForeignKeyConstraint(['deployment_id'], ['deployments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_traffic_splits_id'), 'traffic_splits', ['id'], unique=False)
    op.create_index(op.f('ix_traffic_splits_deployment_id'), 'traffic_splits', ['deployment_id'], unique=False)
    op.create_index(op.f('ix_traffic_splits_started_at'), 'traffic_splits', ['started_at'], unique=False)

    op.create_table(
        'rollback_operations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('deployment_id', sa.Integer(), nullable=False),
        sa.Column('target_version_id', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('initiated_by', sa.String(length=64), nullable=False),
        sa.Column('initiated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['deployment_id'], ['deployments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['target_version_id'], ['model_versions.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_rollback_operations_id'), 'rollback_operations', ['id'], unique=False)
    op.create_index(op.f('ix_rollback_operations_deployment_id'), 'rollback_operations', ['deployment_id'], unique=False)
    op.create_index(op.f('ix_rollback_operations_status'), 'rollback_operations', ['status'], unique=False)
    op.create_index(op.f('ix_rollback_operations_initiated_at'), 'rollback_operations', ['initiated_at'], unique=False)

    op.create_table(
        'deployment_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('deployment_id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('availability', sa.Float(), nullable=False),
        sa.Column('latency_p95', sa.Float(), nullable=False),
        sa.Column('latency_p99', sa.Float(), nullable=False),
        sa.Column('error_rate', sa.Float(), nullable=False),
        sa.Column('input_drift', sa.Float(), nullable=True),
        sa.Column('output_drift', sa.Float(), nullable=True),
        sa.Column('performance_drift', sa.Float(), nullable=True),
        sa.Column('request_count', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['deployment_id'], ['deployments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_deployment_metrics_id'), 'deployment_metrics', ['id'], unique=False)
    op.create_index(op.f('ix_deployment_metrics_deployment_id'), 'deployment_metrics', ['deployment_id'], unique=False)
    op.create_index(op.f('ix_deployment_metrics_timestamp'), 'deployment_metrics', ['timestamp'], unique=False)

    op.create_table(
        'deployment_alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('deployment_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=30), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('threshold', sa.Float(), nullable=False),
        sa.Column('actual_value', sa.Float(), nullable=False),
        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('acknowledged', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['deployment_id'], ['deployments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_deployment_alerts_id'), 'deployment_alerts', ['id'], unique=False)
    op.create_index(op.f('ix_deployment_alerts_deployment_id'), 'deployment_alerts', ['deployment_id'], unique=False)
    op.create_index(op.f('ix_deployment_alerts_severity'), 'deployment_alerts', ['severity'], unique=False)
    op.create_index(op.f('ix_deployment_alerts_triggered_at'), 'deployment_alerts', ['triggered_at'], unique=False)
    op.create_index(op.f('ix_deployment_alerts_acknowledged'), 'deployment_alerts', ['acknowledged'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('deployment_alerts')
    op.drop_table('deployment_metrics')
    op.drop_table('rollback_operations')
    op.drop_table('traffic_splits')
    op.drop_table('deployments')
    op.drop_table('model_versions')
