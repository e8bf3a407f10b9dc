"""Create user and security event tables

Revision ID: 7c3e1a9d4b20
Revises:
Create Date: 2025-11-20 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

from guardapi.models import GUID


# revision identifiers, used by Alembic.
revision = "7c3e1a9d4b20"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("password", sa.String(length=200), nullable=False),
        sa.Column("role", sa.String(length=10), nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "security_event",
        sa.Column("id", GUID(), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_security_event_type", "security_event", ["type"])
    op.create_index("ix_security_event_severity", "security_event", ["severity"])
    op.create_index("ix_security_event_ip_address", "security_event", ["ip_address"])
    op.create_index("ix_security_event_user_id", "security_event", ["user_id"])
    op.create_index("ix_security_event_created_at", "security_event", ["created_at"])
    # Threshold and pattern queries filter on type and time together
    op.create_index(
        "ix_security_event_type_created_at",
        "security_event",
        ["type", "created_at"],
    )


def downgrade():
    op.drop_index("ix_security_event_type_created_at", table_name="security_event")
    op.drop_index("ix_security_event_created_at", table_name="security_event")
    op.drop_index("ix_security_event_user_id", table_name="security_event")
    op.drop_index("ix_security_event_ip_address", table_name="security_event")
    op.drop_index("ix_security_event_severity", table_name="security_event")
    op.drop_index("ix_security_event_type", table_name="security_event")
    op.drop_table("security_event")
    op.drop_table("user")
