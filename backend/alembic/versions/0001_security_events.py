"""security events log."""

from alembic import op
import sqlalchemy as sa


revision = "0001_security_events"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "security_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("hospital_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_security_events_severity",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_security_events_hospital_time",
        "security_events",
        ["hospital_id", "occurred_at"],
        unique=False,
    )
    op.create_index("ix_security_events_type", "security_events", ["event_type"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_security_events_type", table_name="security_events")
    op.drop_index("ix_security_events_hospital_time", table_name="security_events")
    op.drop_table("security_events")
