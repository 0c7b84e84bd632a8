"""Initial schema with queue_job and queue_job_buried tables

Revision ID: 001
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RowId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    # Live jobs of the polling engine
    op.create_table(
        "queue_job",
        sa.Column("id", RowId, nullable=False, autoincrement=True),
        sa.Column("state", sa.String(16), nullable=False, server_default="ready"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("data", sa.Text, nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("priority", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column("until", sa.DateTime, nullable=True),
        sa.Column("reserved_at", sa.DateTime, nullable=True),
        sa.Column("reserved_until", sa.DateTime, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "state IN ('ready', 'reserved', 'buried')",
            name="job_state",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 0 AND 5",
            name="ck_queue_job_priority",
        ),
    )

    # Selection order: priority desc, until asc, id asc
    op.create_index(
        "ix_queue_job_select",
        "queue_job",
        ["state", "priority", "until", "id"],
    )
    op.create_index(
        "ix_queue_job_lease",
        "queue_job",
        ["state", "reserved_until"],
    )

    # Buried jobs of the broker engine
    op.create_table(
        "queue_job_buried",
        sa.Column("id", RowId, nullable=False, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("data", sa.Text, nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("priority", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column(
            "buried_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("queue_job_buried")

    op.drop_index("ix_queue_job_lease", table_name="queue_job")
    op.drop_index("ix_queue_job_select", table_name="queue_job")
    op.drop_table("queue_job")
