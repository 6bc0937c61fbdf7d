"""initial portal schema

Revision ID: 001
Revises:
Create Date: 2026-02-01 10:15:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Organizações com a política de acesso do portal
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('require_factor_for_token', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('require_factor_for_login', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('portal_max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('portal_lock_minutes', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )

    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('access_code', sa.String(length=16), nullable=False),
        sa.Column('start_date', sa.String(length=10), nullable=True),
        sa.Column('end_date', sa.String(length=10), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('access_code'),
    )
    op.create_index('ix_events_organization_id', 'events', ['organization_id'])

    op.create_table(
        'participants',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.Integer(), nullable=False),
        sa.Column('full_name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=200), nullable=True),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('identity_number', sa.String(length=20), nullable=True),
        sa.Column('check_in_code', sa.String(length=16), nullable=False),
        sa.Column('portal_failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('portal_locked_until', sa.DateTime(), nullable=True),
        sa.Column('portal_last_failed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('check_in_code'),
    )
    op.create_index('ix_participants_organization_id', 'participants', ['organization_id'])
    op.create_index('ix_participants_event_id', 'participants', ['event_id'])
    op.create_index('ix_participants_event_identity', 'participants', ['event_id', 'identity_number'])

    # Tokens de acesso: somente o hash do segredo
    op.create_table(
        'participant_access_tokens',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('participant_id', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('secret_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['participant_id'], ['participants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('participant_id', 'version', name='uq_access_tokens_participant_version'),
    )
    op.create_index('ix_participant_access_tokens_participant_id', 'participant_access_tokens', ['participant_id'])

    op.create_table(
        'portal_sessions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.Integer(), nullable=False),
        sa.Column('participant_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['participant_id'], ['participants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_hash'),
    )
    op.create_index('ix_portal_sessions_participant_id', 'portal_sessions', ['participant_id'])

    # Check-ins: a restrição única é a deduplicação oficial
    op.create_table(
        'check_ins',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.Integer(), nullable=False),
        sa.Column('participant_id', sa.Integer(), nullable=False),
        sa.Column('checked_in_at', sa.DateTime(), nullable=False),
        sa.Column('method', sa.String(length=16), nullable=False, server_default='manual'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['participant_id'], ['participants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'participant_id', name='uq_check_ins_event_participant'),
    )
    op.create_index('ix_check_ins_organization_id', 'check_ins', ['organization_id'])
    op.create_index('ix_check_ins_event_id', 'check_ins', ['event_id'])


def downgrade() -> None:
    # Remover na ordem inversa das dependências
    op.drop_index('ix_check_ins_event_id', table_name='check_ins')
    op.drop_index('ix_check_ins_organization_id', table_name='check_ins')
    op.drop_table('check_ins')

    op.drop_index('ix_portal_sessions_participant_id', table_name='portal_sessions')
    op.drop_table('portal_sessions')

    op.drop_index('ix_participant_access_tokens_participant_id', table_name='participant_access_tokens')
    op.drop_table('participant_access_tokens')

    op.drop_index('ix_participants_event_identity', table_name='participants')
    op.drop_index('ix_participants_event_id', table_name='participants')
    op.drop_index('ix_participants_organization_id', table_name='participants')
    op.drop_table('participants')

    op.drop_index('ix_events_organization_id', table_name='events')
    op.drop_table('events')

    op.drop_table('organizations')
