"""Initial schema with revision sets, revision infos, deprecations and changes.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


REVISION_STATUSES = (
    'PRIMARY_DRAFT',
    'TEMPORARY_DRAFT',
    'LATEST_RELEASE',
    'EXPIRED',
    'DEPRECATED',
    'DEPRECATING_DRAFT',
    'DELETED',
)


def upgrade() -> None:
    # Create revision_sets table
    op.create_table(
        'revision_sets',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('entity_type', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_revision_sets_entity_type', 'revision_sets', ['entity_type'])

    # Create revision_infos table
    op.create_table(
        'revision_infos',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('status', sa.Enum(*REVISION_STATUSES, name='revisionstatus'), nullable=False, server_default='PRIMARY_DRAFT'),
        sa.Column('released_at', sa.DateTime, nullable=True),
        sa.Column('released_by', sa.Integer, nullable=True),
        sa.Column('expired_at', sa.DateTime, nullable=True),
        sa.Column('deprecated_at', sa.DateTime, nullable=True),
        sa.Column('revision_set_id', sa.Integer, sa.ForeignKey('revision_sets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('revision_type', sa.String(255), nullable=False),
        sa.Column('revision_id', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )

    # Create indexes
    op.create_index('ix_revision_infos_status', 'revision_infos', ['status'])
    op.create_index('ix_revision_infos_released_at', 'revision_infos', ['released_at'])
    op.create_index('ix_revision_infos_revision_set_id', 'revision_infos', ['revision_set_id'])
    op.create_index('idx_revision_infos_revision', 'revision_infos', ['revision_type', 'revision_id'])

    # At most one primary draft and one latest release per revision set
    op.create_index(
        'uq_revision_infos_primary_draft',
        'revision_infos',
        ['revision_set_id'],
        unique=True,
        sqlite_where=sa.text("status = 'PRIMARY_DRAFT'"),
        postgresql_where=sa.text("status = 'PRIMARY_DRAFT'"),
    )
    op.create_index(
        'uq_revision_infos_latest_release',
        'revision_infos',
        ['revision_set_id'],
        unique=True,
        sqlite_where=sa.text("status = 'LATEST_RELEASE'"),
        postgresql_where=sa.text("status = 'LATEST_RELEASE'"),
    )

    # Create revision_info_deprecations join table (deprecation graph)
    op.create_table(
        'revision_info_deprecations',
        sa.Column('deprecator_id', sa.Integer, sa.ForeignKey('revision_infos.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('deprecated_id', sa.Integer, sa.ForeignKey('revision_infos.id', ondelete='CASCADE'), primary_key=True),
    )
    op.create_index('ix_revision_info_deprecations_deprecator_id', 'revision_info_deprecations', ['deprecator_id'])
    op.create_index('ix_revision_info_deprecations_deprecated_id', 'revision_info_deprecations', ['deprecated_id'])

    # Create revision_changes table (append-only audit log)
    op.create_table(
        'revision_changes',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('revision_info_id', sa.Integer, sa.ForeignKey('revision_infos.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer, nullable=True),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('payload', sa.Text, nullable=False, server_default=''),
        sa.Column('change_date', sa.DateTime, nullable=False),
    )
    op.create_index('ix_revision_changes_revision_info_id', 'revision_changes', ['revision_info_id'])


def downgrade() -> None:
    # Drop tables
    op.drop_table('revision_changes')
    op.drop_table('revision_info_deprecations')
    op.drop_table('revision_infos')
    op.drop_table('revision_sets')

    # Drop enums (only PostgreSQL has a named type)
    if op.get_bind().dialect.name == 'postgresql':
        op.execute('DROP TYPE IF EXISTS revisionstatus')
