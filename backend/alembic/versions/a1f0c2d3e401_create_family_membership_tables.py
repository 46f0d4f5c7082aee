"""create family membership tables

Revision ID: a1f0c2d3e401
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1f0c2d3e401'
down_revision = None
branch_labels = None
depends_on = None

PENDING_STATUSES = ('pending', 'applied', 'canceled')


def upgrade() -> None:
    op.create_table(
        'families',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'profiles',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('role', sa.Enum('parent', 'child', name='profile_role'), nullable=False),
        sa.Column('family_id', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['family_id'], ['families.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_profiles_email', 'profiles', ['email'], unique=True)
    op.create_index('ix_profiles_family_id', 'profiles', ['family_id'])

    # plans: one row per seat count
    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('max_children', sa.Integer(), nullable=False, comment='Child seats in this tier'),
        sa.Column('price_monthly', sa.Integer(), nullable=False, comment='List price per month (USD)'),
        sa.Column('price_yearly', sa.Integer(), nullable=False, comment='List price per year (USD)'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('max_children'),
    )

    op.create_table(
        'memberships',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('family_id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column(
            'status',
            sa.Enum('active', 'past_due', 'canceled', 'expired', name='membership_status'),
            nullable=False,
        ),
        sa.Column('billing_cycle', sa.Enum('monthly', 'yearly', name='billing_cycle'), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['family_id'], ['families.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_subscription_id'),
    )
    op.create_index('ix_memberships_family_id', 'memberships', ['family_id'])
    op.create_index('ix_memberships_plan_id', 'memberships', ['plan_id'])
    op.create_index('ix_memberships_stripe_customer_id', 'memberships', ['stripe_customer_id'])

    op.create_table(
        'family_codes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(10), nullable=False, comment='P-XXXXXXXX / E-XXXXXXXX'),
        sa.Column('code_type', sa.Enum('parent', 'child', name='family_code_type'), nullable=False),
        sa.Column('family_id', sa.Integer(), nullable=False),
        sa.Column('profile_id', sa.Integer(), nullable=True),
        sa.Column(
            'status',
            sa.Enum('active', 'suspended', 'revoked', name='family_code_status'),
            nullable=False,
        ),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['family_id'], ['families.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
    )
    op.create_index('ix_family_codes_family_id', 'family_codes', ['family_id'])

    op.create_table(
        'children',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('family_id', sa.Integer(), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('birth_date', sa.Date(), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('country', sa.String(100), nullable=True),
        sa.Column('family_code_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['family_id'], ['families.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['family_code_id'], ['family_codes.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_children_family_id', 'children', ['family_id'])

    # pending changes: at most one 'pending' row per membership (enforced in code)
    op.create_table(
        'pending_downgrades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('membership_id', sa.Integer(), nullable=False),
        sa.Column('new_children_count', sa.Integer(), nullable=False),
        sa.Column('children_to_keep', sa.JSON(), nullable=False, comment='Child ids that keep their access codes'),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False, comment='Period end at the time of the request'),
        sa.Column('status', sa.Enum(*PENDING_STATUSES, name='pending_downgrade_status'), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['membership_id'], ['memberships.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pending_downgrades_membership_id', 'pending_downgrades', ['membership_id'])

    op.create_table(
        'pending_billing_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('membership_id', sa.Integer(), nullable=False),
        sa.Column(
            'new_billing_cycle',
            sa.Enum('monthly', 'yearly', name='pending_billing_cycle'),
            nullable=False,
        ),
        sa.Column('new_children_count', sa.Integer(), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('status', sa.Enum(*PENDING_STATUSES, name='pending_billing_change_status'), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['membership_id'], ['memberships.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pending_billing_changes_membership_id', 'pending_billing_changes', ['membership_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('profile_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(100), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_profile_id', 'notifications', ['profile_id'])
    op.create_index('ix_notifications_type', 'notifications', ['type'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])

    # processed_stripe_events (webhook idempotency)
    op.create_table(
        'processed_stripe_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processed_stripe_events_event_id', 'processed_stripe_events', ['event_id'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_processed_stripe_events_event_id', 'processed_stripe_events')
    op.drop_table('processed_stripe_events')
    op.drop_index('ix_notifications_created_at', 'notifications')
    op.drop_index('ix_notifications_type', 'notifications')
    op.drop_index('ix_notifications_profile_id', 'notifications')
    op.drop_table('notifications')
    op.drop_index('ix_pending_billing_changes_membership_id', 'pending_billing_changes')
    op.drop_table('pending_billing_changes')
    op.drop_index('ix_pending_downgrades_membership_id', 'pending_downgrades')
    op.drop_table('pending_downgrades')
    op.drop_index('ix_children_family_id', 'children')
    op.drop_table('children')
    op.drop_index('ix_family_codes_family_id', 'family_codes')
    op.drop_table('family_codes')
    op.drop_index('ix_memberships_stripe_customer_id', 'memberships')
    op.drop_index('ix_memberships_plan_id', 'memberships')
    op.drop_index('ix_memberships_family_id', 'memberships')
    op.drop_table('memberships')
    op.drop_table('plans')
    op.drop_index('ix_profiles_family_id', 'profiles')
    op.drop_index('ix_profiles_email', 'profiles')
    op.drop_table('profiles')
    op.drop_table('families')
