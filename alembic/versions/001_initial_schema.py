"""initial schema - service orders, items, sync bookkeeping, aggregates

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

For EXISTING databases: run `alembic stamp 001_initial` (skip DDL, just mark as current).
For NEW databases: run `alembic upgrade head` (creates all tables from models).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from SQLAlchemy models, then seed the state row.

    Uses metadata.create_all with checkfirst=True so it's safe to run
    even if some tables already exist (idempotent).
    """
    from fleetsync.models import Base

    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)
    op.execute(
        sa.text(
            "INSERT INTO service_order_sync_state "
            "(id, current_phase, status, total_synced, total_details_synced) "
            "SELECT 1, 'headers', 'idle', 0, 0 "
            "WHERE NOT EXISTS (SELECT 1 FROM service_order_sync_state WHERE id = 1)"
        )
    )


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE — only for dev/test environments."""
    from fleetsync.models import Base

    Base.metadata.drop_all(bind=op.get_bind())
