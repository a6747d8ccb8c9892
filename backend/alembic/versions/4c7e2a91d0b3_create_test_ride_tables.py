"""create_test_ride_tables

Revision ID: 4c7e2a91d0b3
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c7e2a91d0b3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create customers, test_drives, notifications, audit_logs and error_logs."""
    op.create_table('customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('phone', sa.String(length=30), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('id_photo_url', sa.Text(), nullable=False),
        sa.Column('signature_data', sa.Text(), nullable=False),
        sa.Column('waiver_url', sa.Text(), nullable=True),
        sa.Column('waiver_signed', sa.Boolean(), nullable=False),
        sa.Column('submission_ip', sa.String(length=45), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_customers_id'), 'customers', ['id'], unique=False)
    op.create_index(op.f('ix_customers_phone'), 'customers', ['phone'], unique=False)

    op.create_table('test_drives',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('bike_model', sa.String(length=100), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('status', sa.Enum('active', 'completed', name='testdrivestatus'), nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('authorization_amount_cents', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('end_time > start_time', name='ck_test_drives_end_after_start'),
        sa.CheckConstraint(
            "bike_model IN ('rad-power-bikes', 'aventon', 'other')",
            name='ck_test_drives_bike_model'
        ),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_test_drives_id'), 'test_drives', ['id'], unique=False)
    op.create_index(op.f('ix_test_drives_customer_id'), 'test_drives', ['customer_id'], unique=False)
    op.create_index(op.f('ix_test_drives_status'), 'test_drives', ['status'], unique=False)
    op.create_index(op.f('ix_test_drives_stripe_payment_intent_id'), 'test_drives', ['stripe_payment_intent_id'], unique=False)
    op.create_index(op.f('ix_test_drives_created_at'), 'test_drives', ['created_at'], unique=False)

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('test_drive_id', sa.Integer(), nullable=True),
        sa.Column('customer_phone', sa.String(length=30), nullable=False),
        sa.Column('message_content', sa.Text(), nullable=False),
        sa.Column('message_type', sa.Enum('confirmation', 'completion', name='notificationtype'), nullable=False),
        sa.Column('delivery_status', sa.Enum('sent', 'failed', name='deliverystatus'), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=True),
        sa.Column('provider_message_id', sa.String(length=100), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['test_drive_id'], ['test_drives.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_notifications_id'), 'notifications', ['id'], unique=False)
    op.create_index(op.f('ix_notifications_customer_id'), 'notifications', ['customer_id'], unique=False)
    op.create_index(op.f('ix_notifications_test_drive_id'), 'notifications', ['test_drive_id'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('session_id', sa.String(length=100), nullable=True),
        sa.Column('test_drive_id', sa.Integer(), nullable=True),
        sa.Column('event', sa.Enum(
            'session_started', 'contact_entered', 'bike_selected',
            'id_photo_uploaded', 'signature_captured', 'waiver_accepted',
            'payment_initiated', 'payment_succeeded', 'payment_failed',
            'booking_confirmed', 'session_reset', 'hold_placed',
            'hold_canceled', 'test_drive_completed',
            name='auditlogevent'
        ), nullable=False),
        sa.Column('event_data', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_logs_id'), 'audit_logs', ['id'], unique=False)
    op.create_index(op.f('ix_audit_logs_session_id'), 'audit_logs', ['session_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_test_drive_id'), 'audit_logs', ['test_drive_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_event'), 'audit_logs', ['event'], unique=False)
    op.create_index(op.f('ix_audit_logs_created_at'), 'audit_logs', ['created_at'], unique=False)

    op.create_table('error_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('severity', sa.Enum(
            'debug', 'info', 'warning', 'error', 'critical',
            name='errorseverity'
        ), nullable=False),
        sa.Column('error_type', sa.String(length=100), nullable=False),
        sa.Column('error_code', sa.String(length=50), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('stack_trace', sa.Text(), nullable=True),
        sa.Column('request_data', sa.Text(), nullable=True),
        sa.Column('endpoint', sa.String(length=200), nullable=True),
        sa.Column('session_id', sa.String(length=100), nullable=True),
        sa.Column('test_drive_id', sa.Integer(), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_error_logs_id'), 'error_logs', ['id'], unique=False)
    op.create_index(op.f('ix_error_logs_severity'), 'error_logs', ['severity'], unique=False)
    op.create_index(op.f('ix_error_logs_error_type'), 'error_logs', ['error_type'], unique=False)
    op.create_index(op.f('ix_error_logs_endpoint'), 'error_logs', ['endpoint'], unique=False)
    op.create_index(op.f('ix_error_logs_test_drive_id'), 'error_logs', ['test_drive_id'], unique=False)
    op.create_index(op.f('ix_error_logs_customer_id'), 'error_logs', ['customer_id'], unique=False)
    op.create_index(op.f('ix_error_logs_created_at'), 'error_logs', ['created_at'], unique=False)


def downgrade() -> None:
    """Drop all test ride tables."""
    op.drop_table('error_logs')
    op.drop_table('audit_logs')
    op.drop_table('notifications')
    op.drop_table('test_drives')
    op.drop_table('customers')
    sa.Enum(name='errorseverity').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='auditlogevent').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='deliverystatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='notificationtype').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='testdrivestatus').drop(op.get_bind(), checkfirst=True)
