"""Per-organization WhatsApp instances."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20250315001"
down_revision = "20250301001"
branch_labels = None
depends_on = None


whatsapp_instance_status_enum = postgresql.ENUM(
    "inactive",
    "connecting",
    "active",
    "error",
    "suspended",
    name="whatsapp_instance_status",
    create_type=False,
)


def upgrade() -> None:
    whatsapp_instance_status_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "whatsapp_instances",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("instance_name", sa.String(length=100), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column(
            "status",
            whatsapp_instance_status_enum,
            nullable=False,
            server_default="inactive",
        ),
        sa.Column("qr_code", sa.Text(), nullable=True),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("evolution_api_config", postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_whatsapp_instances"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_whatsapp_instances_organization_id_organizations",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("instance_name", name="uq_whatsapp_instances_instance_name"),
    )
    op.create_index(
        "ix_whatsapp_instances_organization_id", "whatsapp_instances", ["organization_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_whatsapp_instances_organization_id", table_name="whatsapp_instances")
    op.drop_table("whatsapp_instances")
    whatsapp_instance_status_enum.drop(op.get_bind(), checkfirst=True)
