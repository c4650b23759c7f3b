"""initial consultation schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('country', sa.String(), nullable=True),
    )
    op.create_index('ix_users_id', 'users', ['id'])

    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('text_sessions', sa.Integer(), nullable=False),
        sa.Column('voice_calls', sa.Integer(), nullable=False),
        sa.Column('video_calls', sa.Integer(), nullable=False),
        sa.Column('session_minutes', sa.Integer(), nullable=True),
        sa.Column('duration_days', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.UniqueConstraint('name', 'currency', name='_plan_name_currency_uc'),
    )
    op.create_index('ix_plans_id', 'plans', ['id'])

    op.create_table(
        'appointments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('scheduled_date', sa.Date(), nullable=False),
        sa.Column('scheduled_time', sa.Time(), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consultation_type', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.String(), nullable=True),
        sa.Column('reschedule_pending', sa.Boolean(), nullable=False),
        sa.Column('reschedule_proposed_date', sa.Date(), nullable=True),
        sa.Column('reschedule_proposed_time', sa.Time(), nullable=True),
        sa.Column('reschedule_proposed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reschedule_reason', sa.Text(), nullable=True),
    )
    op.create_index('ix_appointments_id', 'appointments', ['id'])
    op.create_index('idx_appointment_status_scheduled', 'appointments', ['status', 'scheduled_at'])
    op.create_index('idx_appointment_doctor', 'appointments', ['doctor_id'])
    op.create_index('idx_appointment_patient', 'appointments', ['patient_id'])

    op.create_table(
        'appointment_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('appointment_id', sa.Integer(), nullable=False),
        sa.Column('from_status', sa.String(), nullable=True),
        sa.Column('to_status', sa.String(), nullable=False),
        sa.Column('actor', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_appointment_events_id', 'appointment_events', ['id'])
    op.create_index('ix_appointment_events_appointment_id', 'appointment_events', ['appointment_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('text_sessions_remaining', sa.Integer(), nullable=False),
        sa.Column('voice_calls_remaining', sa.Integer(), nullable=False),
        sa.Column('video_calls_remaining', sa.Integer(), nullable=False),
        sa.Column('total_text_sessions', sa.Integer(), nullable=False),
        sa.Column('total_voice_calls', sa.Integer(), nullable=False),
        sa.Column('total_video_calls', sa.Integer(), nullable=False),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('idx_subscription_patient_active', 'subscriptions', ['patient_id', 'is_active'])

    op.create_table(
        'sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('appointment_id', sa.Integer(), sa.ForeignKey('appointments.id'), nullable=False, unique=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('consultation_type', sa.String(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('allotted_minutes', sa.Integer(), nullable=False),
        sa.Column('remaining_time_minutes', sa.Integer(), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('end_reason', sa.String(), nullable=True),
        sa.Column('billable', sa.Boolean(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
    )
    op.create_index('ix_sessions_id', 'sessions', ['id'])
    op.create_index('idx_session_status', 'sessions', ['status'])

    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('balance', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
    )
    op.create_index('ix_wallets_id', 'wallets', ['id'])

    op.create_table(
        'wallet_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('wallet_id', sa.Integer(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('related_session_id', sa.Integer(), sa.ForeignKey('sessions.id'), nullable=True),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('wallet_id', 'idempotency_key', name='uq_wallet_tx_idempotency'),
    )
    op.create_index('ix_wallet_transactions_id', 'wallet_transactions', ['id'])
    op.create_index('idx_wallet_tx_wallet_created', 'wallet_transactions', ['wallet_id', 'created_at'])


def downgrade():
    op.drop_table('wallet_transactions')
    op.drop_table('wallets')
    op.drop_table('sessions')
    op.drop_table('subscriptions')
    op.drop_table('appointment_events')
    op.drop_table('appointments')
    op.drop_table('plans')
    op.drop_table('users')
