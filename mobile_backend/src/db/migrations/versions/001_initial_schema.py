"""Initial mobile backend schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-16

Creates:
- cloud_entities / cloud_entity_properties: records and their queryable
  per-property projection
- device_subscriptions: continuous-query ids held per device
- prospective_subscriptions: registered continuous queries
- backend_configuration: clear-all marker
- queued_tasks: durable pull/push task queue
- processed_notification_tasks: delivery dedupe markers
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _json_type():
    """JSONB on PostgreSQL, JSON elsewhere."""
    return sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _uuid_type():
    """Native UUID on PostgreSQL, 16 bytes elsewhere."""
    return sa.LargeBinary(length=16).with_variant(postgresql.UUID(as_uuid=True), 'postgresql')


def upgrade() -> None:
    """
    Create all mobile backend tables.
    """

    # Records
    op.create_table(
        'cloud_entities',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind_name', sa.String(length=255), nullable=False),
        sa.Column('entity_id', sa.String(length=255), nullable=False),
        sa.Column('namespace', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('owner', sa.String(length=255), nullable=True),
        sa.Column('properties', _json_type(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('updated_by', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'namespace', 'kind_name', 'entity_id',
            name='uq_cloud_entities_namespace_kind_id'
        )
    )
    op.create_index(
        'ix_cloud_entities_namespace_kind', 'cloud_entities',
        ['namespace', 'kind_name'], unique=False
    )

    op.create_table(
        'cloud_entity_properties',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('entity_pk', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('str_value', sa.Text(), nullable=True),
        sa.Column('num_value', sa.Float(), nullable=True),
        sa.Column('bool_value', sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['entity_pk'], ['cloud_entities.id'], ondelete='CASCADE')
    )
    op.create_index(
        'ix_cloud_entity_properties_entity_pk', 'cloud_entity_properties',
        ['entity_pk'], unique=False
    )
    op.create_index(
        'ix_entity_properties_name_num', 'cloud_entity_properties',
        ['name', 'num_value'], unique=False
    )
    op.create_index(
        'ix_entity_properties_name_bool', 'cloud_entity_properties',
        ['name', 'bool_value'], unique=False
    )

    # Subscription bookkeeping
    op.create_table(
        'device_subscriptions',
        sa.Column('device_id', sa.String(length=512), nullable=False),
        sa.Column('device_type', sa.String(length=7), nullable=False),
        sa.Column('subscription_ids_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('device_id')
    )
    op.create_index(
        'ix_device_subscriptions_updated_at', 'device_subscriptions',
        ['updated_at'], unique=False
    )

    op.create_table(
        'prospective_subscriptions',
        sa.Column('topic', sa.String(length=100), nullable=False),
        sa.Column('subscription_id', sa.String(length=1024), nullable=False),
        sa.Column('query', sa.Text(), nullable=False),
        sa.Column('schema', _json_type(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('topic', 'subscription_id')
    )
    op.create_index(
        'ix_prospective_subscriptions_expires_at', 'prospective_subscriptions',
        ['expires_at'], unique=False
    )

    op.create_table(
        'backend_configuration',
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('last_subscription_delete_all_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('name')
    )

    # Task queue and delivery
    op.create_table(
        'queued_tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', _uuid_type(), nullable=False),
        sa.Column('queue_name', sa.String(length=100), nullable=False),
        sa.Column('method', sa.String(length=4), nullable=False),
        sa.Column('url', sa.String(length=500), nullable=True),
        sa.Column('params', _json_type(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('eta', sa.DateTime(), nullable=False),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('lease_count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_queued_tasks_uuid', 'queued_tasks', ['uuid'], unique=True)
    op.create_index(
        'ix_queued_tasks_queue_eta', 'queued_tasks',
        ['queue_name', 'eta'], unique=False
    )

    op.create_table(
        'processed_notification_tasks',
        sa.Column('task_name', sa.String(length=64), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('task_name')
    )
    op.create_index(
        'ix_processed_notification_tasks_processed_at', 'processed_notification_tasks',
        ['processed_at'], unique=False
    )


def downgrade() -> None:
    """
    Drop all mobile backend tables.
    """
    op.drop_index('ix_processed_notification_tasks_processed_at', table_name='processed_notification_tasks')
    op.drop_table('processed_notification_tasks')

    op.drop_index('ix_queued_tasks_queue_eta', table_name='queued_tasks')
    op.drop_index('ix_queued_tasks_uuid', table_name='queued_tasks')
    op.drop_table('queued_tasks')

    op.drop_table('backend_configuration')

    op.drop_index('ix_prospective_subscriptions_expires_at', table_name='prospective_subscriptions')
    op.drop_table('prospective_subscriptions')

    op.drop_index('ix_device_subscriptions_updated_at', table_name='device_subscriptions')
    op.drop_table('device_subscriptions')

    op.drop_index('ix_entity_properties_name_bool', table_name='cloud_entity_properties')
    op.drop_index('ix_entity_properties_name_num', table_name='cloud_entity_properties')
    op.drop_index('ix_cloud_entity_properties_entity_pk', table_name='cloud_entity_properties')
    op.drop_table('cloud_entity_properties')

    op.drop_index('ix_cloud_entities_namespace_kind', table_name='cloud_entities')
    op.drop_table('cloud_entities')
