"""initial_compcycle_schema

Tenants, users, employees, rule sets, compensation cycles with their budgets,
recommendations and calibration sessions, plus notifications, audit log and
the job queue tables.

Revision ID: 5c1e0a7d9b21
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5c1e0a7d9b21"
down_revision = None
branch_labels = None
depends_on = None


def _tz():
    return sa.DateTime(timezone=True)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # ── Tenancy ──────────────────────────────────────────────────────────
    if "tenants" not in existing_tables:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("plan", sa.String(length=50), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        )
        op.create_index("ix_users_tenant_role", "users", ["tenant_id", "role"])

    # ── Collaborator data ────────────────────────────────────────────────
    if "employees" not in existing_tables:
        op.create_table(
            "employees",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("employee_code", sa.String(length=50), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column("department", sa.String(length=100), nullable=False),
            sa.Column("level", sa.String(length=50), nullable=False, server_default=""),
            sa.Column("location", sa.String(length=100), nullable=True),
            sa.Column("base_salary", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_comp", sa.Float(), nullable=True),
            sa.Column("compa_ratio", sa.Float(), nullable=True),
            sa.Column("performance_rating", sa.Float(), nullable=True),
            sa.Column("currency", sa.String(length=3), nullable=True),
            sa.Column("manager_id", sa.String(length=36), nullable=True),
            sa.Column("hire_date", sa.Date(), nullable=True),
            sa.Column("termination_date", sa.Date(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "employee_code", name="uq_employee_tenant_code"),
        )
        op.create_index("ix_employees_tenant_id", "employees", ["tenant_id"])
        op.create_index("ix_employees_tenant_department", "employees", ["tenant_id", "department"])

    if "rule_sets" not in existing_tables:
        op.create_table(
            "rule_sets",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
            sa.Column("version", sa.Integer(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rule_sets_tenant_id", "rule_sets", ["tenant_id"])

    if "rules" not in existing_tables:
        op.create_table(
            "rules",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("rule_set_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("rule_type", sa.String(length=20), nullable=False, server_default="CUSTOM"),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("conditions", sa.JSON(), nullable=True),
            sa.Column("actions", sa.JSON(), nullable=True),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.ForeignKeyConstraint(["rule_set_id"], ["rule_sets.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rules_rule_set_id", "rules", ["rule_set_id"])

    # ── Cycles ───────────────────────────────────────────────────────────
    if "comp_cycles" not in existing_tables:
        op.create_table(
            "comp_cycles",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("cycle_type", sa.String(length=20), nullable=False, server_default="MERIT"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
            sa.Column("budget_total", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
            sa.Column("start_date", _tz(), nullable=False),
            sa.Column("end_date", _tz(), nullable=False),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_comp_cycles_tenant_id", "comp_cycles", ["tenant_id"])
        op.create_index("ix_comp_cycles_tenant_status", "comp_cycles", ["tenant_id", "status"])

    if "cycle_budgets" not in existing_tables:
        op.create_table(
            "cycle_budgets",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("cycle_id", sa.String(length=36), nullable=False),
            sa.Column("department", sa.String(length=100), nullable=False),
            sa.Column("manager_id", sa.String(length=36), nullable=True),
            sa.Column("allocated", sa.Float(), nullable=False, server_default="0"),
            sa.Column("spent", sa.Float(), nullable=False, server_default="0"),
            sa.Column("remaining", sa.Float(), nullable=False, server_default="0"),
            sa.Column("drift_pct", sa.Float(), nullable=False, server_default="0"),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["cycle_id"], ["comp_cycles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_cycle_budgets_cycle_department", "cycle_budgets",
                        ["cycle_id", "department"])

    if "comp_recommendations" not in existing_tables:
        op.create_table(
            "comp_recommendations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("cycle_id", sa.String(length=36), nullable=False),
            sa.Column("employee_id", sa.String(length=36), nullable=False),
            sa.Column("rec_type", sa.String(length=30), nullable=False),
            sa.Column("current_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("proposed_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
            sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("approver_user_id", sa.String(length=36), nullable=True),
            sa.Column("approved_at", _tz(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["cycle_id"], ["comp_cycles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("cycle_id", "employee_id", "rec_type",
                                name="uq_recommendation_cycle_employee_type"),
        )
        op.create_index("ix_comp_recommendations_cycle_status", "comp_recommendations",
                        ["cycle_id", "status"])
        op.create_index("ix_comp_recommendations_approver_user_id", "comp_recommendations",
                        ["approver_user_id"])

    if "calibration_sessions" not in existing_tables:
        op.create_table(
            "calibration_sessions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("cycle_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
            sa.Column("participants", sa.JSON(), nullable=True),
            sa.Column("outcomes", sa.JSON(), nullable=True),
            sa.Column("created_by", sa.String(length=36), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["cycle_id"], ["comp_cycles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_calibration_sessions_cycle_id", "calibration_sessions", ["cycle_id"])

    # ── Notifications & audit ────────────────────────────────────────────
    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("entity_type", sa.String(length=40), nullable=True),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", _tz(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_tenant_id", "notifications", ["tenant_id"])
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
        op.create_index("ix_notifications_entity", "notifications", ["entity_type", "entity_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("changes_json", sa.Text(), nullable=True),
            sa.Column("timestamp", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
        op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    # ── Job queue ────────────────────────────────────────────────────────
    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", _tz(), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )

    if "queued_jobs" not in existing_tables:
        op.create_table(
            "queued_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("dedupe_key", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("run_at", _tz(), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("result", sa.JSON(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("finished_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_queued_jobs_job_name", "queued_jobs", ["job_name"])
        op.create_index("ix_queued_jobs_dedupe_key", "queued_jobs", ["dedupe_key"])
        op.create_index("ix_queued_jobs_status_run_at", "queued_jobs", ["status", "run_at"])


def downgrade():
    for table in (
        "queued_jobs",
        "scheduled_jobs",
        "audit_logs",
        "notifications",
        "calibration_sessions",
        "comp_recommendations",
        "cycle_budgets",
        "comp_cycles",
        "rules",
        "rule_sets",
        "employees",
        "users",
        "tenants",
    ):
        op.drop_table(table)
