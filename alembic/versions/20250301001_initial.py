"""Initial AgentSalud schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20250301001"
down_revision = None
branch_labels = None
depends_on = None


user_role_enum = postgresql.ENUM(
    "patient", "doctor", "staff", "admin", "superadmin", name="user_role", create_type=False
)
subscription_plan_enum = postgresql.ENUM(
    "basic", "premium", "enterprise", name="subscription_plan", create_type=False
)
appointment_status_enum = postgresql.ENUM(
    "pending",
    "pendiente_pago",
    "confirmed",
    "reagendada",
    "en_curso",
    "completed",
    "cancelada_paciente",
    "cancelada_clinica",
    "cancelled",
    "no_show",
    name="appointment_status",
    create_type=False,
)
appointment_origin_enum = postgresql.ENUM(
    "web", "whatsapp", "staff", "ai", name="appointment_origin", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (
        user_role_enum,
        subscription_plan_enum,
        appointment_status_enum,
        appointment_origin_enum,
    ):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("country", sa.String(length=120), nullable=True),
        sa.Column(
            "subscription_plan", subscription_plan_enum, nullable=False, server_default="basic"
        ),
        sa.Column(
            "timezone",
            sa.String(length=64),
            nullable=False,
            server_default=sa.text("'America/Bogota'"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("booking_settings", postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_organizations"),
        sa.UniqueConstraint("slug", name="uq_organizations_slug"),
    )

    op.create_table(
        "profiles",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("role", user_role_enum, nullable=False, server_default="patient"),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_sign_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_profiles"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_profiles_organization_id_organizations",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("email", name="uq_profiles_email"),
    )
    op.create_index("ix_profiles_organization_id", "profiles", ["organization_id"])
    op.create_index("ix_profiles_phone", "profiles", ["phone"])

    op.create_table(
        "locations",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("id", name="pk_locations"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_locations_organization_id_organizations",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_locations_organization_id", "locations", ["organization_id"])

    op.create_table(
        "services",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=120), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("id", name="pk_services"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_services_organization_id_organizations",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_services_organization_id", "services", ["organization_id"])

    op.create_table(
        "doctors",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("profile_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("specialization", sa.String(length=255), nullable=True),
        sa.Column("license_number", sa.String(length=64), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("id", name="pk_doctors"),
        sa.ForeignKeyConstraint(
            ["profile_id"], ["profiles.id"], name="fk_doctors_profile_id_profiles", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_doctors_organization_id_organizations",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("profile_id", name="uq_doctors_profile_id"),
    )
    op.create_index("ix_doctors_organization_id", "doctors", ["organization_id"])

    op.create_table(
        "doctor_services",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("doctor_id", sa.Uuid(), nullable=False),
        sa.Column("service_id", sa.Uuid(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_doctor_services"),
        sa.ForeignKeyConstraint(
            ["doctor_id"], ["doctors.id"], name="fk_doctor_services_doctor_id_doctors", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["service_id"],
            ["services.id"],
            name="fk_doctor_services_service_id_services",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("doctor_id", "service_id", name="uq_doctor_services_pair"),
    )
    op.create_index("ix_doctor_services_doctor_id", "doctor_services", ["doctor_id"])
    op.create_index("ix_doctor_services_service_id", "doctor_services", ["service_id"])

    op.create_table(
        "doctor_availability",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("doctor_id", sa.Uuid(), nullable=False),
        sa.Column("location_id", sa.Uuid(), nullable=True),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_doctor_availability"),
        sa.ForeignKeyConstraint(
            ["doctor_id"],
            ["doctors.id"],
            name="fk_doctor_availability_doctor_id_doctors",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["location_id"],
            ["locations.id"],
            name="fk_doctor_availability_location_id_locations",
            ondelete="SET NULL",
        ),
        sa.CheckConstraint(
            "day_of_week BETWEEN 0 AND 6", name="ck_doctor_availability_day_of_week_range"
        ),
        sa.CheckConstraint("start_time < end_time", name="ck_doctor_availability_time_order"),
    )
    op.create_index("ix_doctor_availability_doctor_id", "doctor_availability", ["doctor_id"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("patient_id", sa.Uuid(), nullable=False),
        sa.Column("doctor_id", sa.Uuid(), nullable=False),
        sa.Column("service_id", sa.Uuid(), nullable=True),
        sa.Column("location_id", sa.Uuid(), nullable=True),
        sa.Column("appointment_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("status", appointment_status_enum, nullable=False, server_default="pending"),
        sa.Column("origin", appointment_origin_enum, nullable=False, server_default="web"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_appointments"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_appointments_organization_id_organizations",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["patient_id"], ["profiles.id"], name="fk_appointments_patient_id_profiles", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["doctor_id"], ["doctors.id"], name="fk_appointments_doctor_id_doctors", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["service_id"], ["services.id"], name="fk_appointments_service_id_services", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["location_id"],
            ["locations.id"],
            name="fk_appointments_location_id_locations",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["created_by"], ["profiles.id"], name="fk_appointments_created_by_profiles", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_appointments_organization_id", "appointments", ["organization_id"])
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("ix_appointments_doctor_id", "appointments", ["doctor_id"])
    op.create_index("ix_appointments_doctor_day", "appointments", ["doctor_id", "appointment_date"])

    op.create_table(
        "appointment_status_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("previous_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.Uuid(), nullable=True),
        sa.Column("user_role", sa.String(length=32), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_appointment_status_history"),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_appointment_status_history_appointment_id_appointments",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["changed_by"],
            ["profiles.id"],
            name="fk_appointment_status_history_changed_by_profiles",
            ondelete="SET NULL",
        ),
    )
    op.create_index(
        "ix_appointment_status_history_appointment_id",
        "appointment_status_history",
        ["appointment_id"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("actor", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("resource", sa.String(length=255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_audit_logs"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_audit_logs_organization_id_organizations",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])

    op.create_table(
        "message_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("appointment_id", sa.Uuid(), nullable=True),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False, server_default="outbound"),
        sa.Column("recipient", sa.String(length=255), nullable=True),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_message_logs"),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_message_logs_organization_id_organizations",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_message_logs_appointment_id_appointments",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_message_logs_organization_id", "message_logs", ["organization_id"])
    op.create_index("ix_message_logs_external_id", "message_logs", ["external_id"])

    op.create_table(
        "system_config",
        sa.Column("id", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.Column("maintenance_mode", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("registration_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_notifications", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("backup_frequency", sa.String(length=16), nullable=False, server_default="daily"),
        sa.Column("max_organizations", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("max_users_per_org", sa.Integer(), nullable=False, server_default=sa.text("1000")),
        sa.Column("session_timeout", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.PrimaryKeyConstraint("id", name="pk_system_config"),
    )


def downgrade() -> None:
    op.drop_table("system_config")
    op.drop_index("ix_message_logs_external_id", table_name="message_logs")
    op.drop_index("ix_message_logs_organization_id", table_name="message_logs")
    op.drop_table("message_logs")
    op.drop_index("ix_audit_logs_organization_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index(
        "ix_appointment_status_history_appointment_id", table_name="appointment_status_history"
    )
    op.drop_table("appointment_status_history")
    for index_name in (
        "ix_appointments_doctor_day",
        "ix_appointments_doctor_id",
        "ix_appointments_patient_id",
        "ix_appointments_organization_id",
    ):
        op.drop_index(index_name, table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_doctor_availability_doctor_id", table_name="doctor_availability")
    op.drop_table("doctor_availability")
    op.drop_index("ix_doctor_services_service_id", table_name="doctor_services")
    op.drop_index("ix_doctor_services_doctor_id", table_name="doctor_services")
    op.drop_table("doctor_services")
    op.drop_index("ix_doctors_organization_id", table_name="doctors")
    op.drop_table("doctors")
    op.drop_index("ix_services_organization_id", table_name="services")
    op.drop_table("services")
    op.drop_index("ix_locations_organization_id", table_name="locations")
    op.drop_table("locations")
    op.drop_index("ix_profiles_phone", table_name="profiles")
    op.drop_index("ix_profiles_organization_id", table_name="profiles")
    op.drop_table("profiles")
    op.drop_table("organizations")

    bind = op.get_bind()
    for enum_type in (
        appointment_origin_enum,
        appointment_status_enum,
        subscription_plan_enum,
        user_role_enum,
    ):
        enum_type.drop(bind, checkfirst=True)
