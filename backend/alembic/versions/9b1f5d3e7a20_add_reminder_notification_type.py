"""add_reminder_notification_type

Revision ID: 9b1f5d3e7a20
Revises: 4c7e2a91d0b3
Create Date: 2026-10-17 16:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9b1f5d3e7a20'
down_revision: Union[str, None] = '4c7e2a91d0b3'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Return reminders are logged as their own notification type."""
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(sa.text("ALTER TYPE notificationtype ADD VALUE IF NOT EXISTS 'reminder'"))


def downgrade() -> None:
    # PostgreSQL cannot drop a single enum value; reminder rows are removed instead
    op.execute(sa.text("DELETE FROM notifications WHERE message_type = 'reminder'"))
