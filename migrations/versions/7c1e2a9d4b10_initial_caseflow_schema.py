"""initial_caseflow_schema

Workflow definitions and executions, SLA clocks and escalation events,
conflict-of-interest records and overrides, audit trail, scheduled jobs.

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e2a9d4b10"
down_revision = None
branch_labels = None
depends_on = None


def _tz():
    return sa.DateTime(timezone=True)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # ── Workflow graph ───────────────────────────────────────────────────
    if "workflow_definitions" not in existing_tables:
        op.create_table(
            "workflow_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=60), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("published_at", _tz(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entity_type", "version", name="uq_wf_def_entity_version"),
        )
        op.create_index("ix_wf_def_entity_active", "workflow_definitions", ["entity_type", "is_active"])

    if "workflow_states" not in existing_tables:
        op.create_table(
            "workflow_states",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("definition_id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=40), nullable=False),
            sa.Column("label_en", sa.String(length=120), nullable=False),
            sa.Column("label_fr", sa.String(length=120), nullable=False),
            sa.Column("is_initial", sa.Boolean(), nullable=False),
            sa.Column("is_terminal", sa.Boolean(), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            sa.Column("default_sla_days", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["definition_id"], ["workflow_definitions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("definition_id", "code", name="uq_wf_state_def_code"),
        )
        op.create_index("ix_workflow_states_definition_id", "workflow_states", ["definition_id"])

    if "workflow_transitions" not in existing_tables:
        op.create_table(
            "workflow_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("definition_id", sa.Integer(), nullable=False),
            sa.Column("from_state_id", sa.Integer(), nullable=False),
            sa.Column("to_state_id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=60), nullable=False),
            sa.Column("label_en", sa.String(length=120), nullable=False),
            sa.Column("label_fr", sa.String(length=120), nullable=False),
            sa.Column("trigger", sa.String(length=20), nullable=False),
            sa.Column("allowed_roles", sa.JSON(), nullable=False),
            sa.Column("guards", sa.JSON(), nullable=False),
            sa.ForeignKeyConstraint(["definition_id"], ["workflow_definitions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["from_state_id"], ["workflow_states.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["to_state_id"], ["workflow_states.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("definition_id", "from_state_id", "code", name="uq_wf_transition_from_code"),
        )
        op.create_index("ix_workflow_transitions_definition_id", "workflow_transitions", ["definition_id"])

    if "escalation_rules" not in existing_tables:
        op.create_table(
            "escalation_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("definition_id", sa.Integer(), nullable=False),
            sa.Column("state_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("trigger", sa.String(length=20), nullable=False),
            sa.Column("threshold_days", sa.Integer(), nullable=False),
            sa.Column("notify_target", sa.String(length=150), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("fire_once", sa.Boolean(), nullable=False),
            sa.Column("repeat_interval_days", sa.Integer(), nullable=True),
            sa.Column("max_repeats", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.ForeignKeyConstraint(["definition_id"], ["workflow_definitions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["state_id"], ["workflow_states.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_escalation_rules_definition_id", "escalation_rules", ["definition_id"])
        op.create_index("ix_escalation_rules_state_id", "escalation_rules", ["state_id"])

    # ── Executions & history ─────────────────────────────────────────────
    if "workflow_executions" not in existing_tables:
        op.create_table(
            "workflow_executions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("definition_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("organization_id", sa.String(length=64), nullable=True),
            sa.Column("current_state_code", sa.String(length=40), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", _tz(), nullable=False),
            sa.Column("updated_at", _tz(), nullable=False),
            sa.Column("completed_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["definition_id"], ["workflow_definitions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entity_type", "entity_id", name="uq_wf_execution_entity"),
        )
        op.create_index("ix_workflow_executions_definition_id", "workflow_executions", ["definition_id"])
        op.create_index("ix_workflow_executions_organization_id", "workflow_executions", ["organization_id"])
        op.create_index("ix_wf_execution_state", "workflow_executions", ["definition_id", "current_state_code"])

    if "workflow_history" not in existing_tables:
        op.create_table(
            "workflow_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("execution_id", sa.Integer(), nullable=False),
            sa.Column("from_state_code", sa.String(length=40), nullable=True),
            sa.Column("to_state_code", sa.String(length=40), nullable=False),
            sa.Column("transition_code", sa.String(length=60), nullable=True),
            sa.Column("trigger", sa.String(length=20), nullable=False),
            sa.Column("performed_by", sa.String(length=150), nullable=False),
            sa.Column("performer_role", sa.String(length=60), nullable=True),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("performed_at", _tz(), nullable=False),
            sa.Column("duration_in_state", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["execution_id"], ["workflow_executions.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_wf_history_execution", "workflow_history", ["execution_id", "performed_at"])
        op.create_index("ix_wf_history_from_state", "workflow_history", ["from_state_code"])

    # ── SLA ──────────────────────────────────────────────────────────────
    if "sla_clocks" not in existing_tables:
        op.create_table(
            "sla_clocks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("execution_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("state_code", sa.String(length=40), nullable=False),
            sa.Column("target_days", sa.Integer(), nullable=False),
            sa.Column("started_at", _tz(), nullable=False),
            sa.Column("due_at", _tz(), nullable=False),
            sa.Column("paused_at", _tz(), nullable=True),
            sa.Column("total_paused_seconds", sa.Integer(), nullable=False),
            sa.Column("extended_days", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("breached_at", _tz(), nullable=True),
            sa.Column("closed_at", _tz(), nullable=True),
            sa.Column("open_key", sa.String(length=120), nullable=True),
            sa.ForeignKeyConstraint(["execution_id"], ["workflow_executions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("open_key"),
        )
        op.create_index("ix_sla_clocks_execution_id", "sla_clocks", ["execution_id"])
        op.create_index("ix_sla_clock_entity", "sla_clocks", ["entity_type", "entity_id"])
        op.create_index("ix_sla_clock_status_due", "sla_clocks", ["status", "due_at"])

    if "sla_escalation_marks" not in existing_tables:
        op.create_table(
            "sla_escalation_marks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("clock_id", sa.Integer(), nullable=False),
            sa.Column("threshold_key", sa.String(length=60), nullable=False),
            sa.Column("fire_count", sa.Integer(), nullable=False),
            sa.Column("first_fired_at", _tz(), nullable=False),
            sa.Column("last_fired_at", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["clock_id"], ["sla_clocks.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("clock_id", "threshold_key", name="uq_sla_mark_clock_threshold"),
        )

    if "escalation_events" not in existing_tables:
        op.create_table(
            "escalation_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("clock_id", sa.Integer(), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("state_code", sa.String(length=40), nullable=False),
            sa.Column("trigger", sa.String(length=20), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("notify_target", sa.String(length=150), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("created_at", _tz(), nullable=False),
            sa.Column("dispatched_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["clock_id"], ["sla_clocks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["rule_id"], ["escalation_rules.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_escalation_events_clock_id", "escalation_events", ["clock_id"])
        op.create_index("ix_escalation_event_pending", "escalation_events", ["dispatched_at", "created_at"])

    # ── Conflict of interest ─────────────────────────────────────────────
    if "actor_profiles" not in existing_tables:
        op.create_table(
            "actor_profiles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("home_organization_id", sa.String(length=64), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("actor_id"),
        )
        op.create_index("ix_actor_profiles_home_organization_id", "actor_profiles", ["home_organization_id"])

    if "actor_disclosures" not in existing_tables:
        op.create_table(
            "actor_disclosures",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("profile_id", sa.Integer(), nullable=False),
            sa.Column("kind", sa.String(length=30), nullable=False),
            sa.Column("organization_id", sa.String(length=64), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.ForeignKeyConstraint(["profile_id"], ["actor_profiles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_actor_disclosures_profile_id", "actor_disclosures", ["profile_id"])
        op.create_index("ix_actor_disclosures_organization_id", "actor_disclosures", ["organization_id"])

    if "reviewer_cois" not in existing_tables:
        op.create_table(
            "reviewer_cois",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("organization_id", sa.String(length=64), nullable=False),
            sa.Column("coi_type", sa.String(length=40), nullable=False),
            sa.Column("severity", sa.String(length=20), nullable=False),
            sa.Column("is_auto_detected", sa.Boolean(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("source_ref", sa.String(length=120), nullable=True),
            sa.Column("declared_by", sa.String(length=64), nullable=True),
            sa.Column("start_date", _tz(), nullable=False),
            sa.Column("end_date", _tz(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_coi_actor_org", "reviewer_cois", ["actor_id", "organization_id", "is_active"])

    if "coi_overrides" not in existing_tables:
        op.create_table(
            "coi_overrides",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("organization_id", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=True),
            sa.Column("justification", sa.Text(), nullable=False),
            sa.Column("approved_by", sa.String(length=64), nullable=False),
            sa.Column("approved_at", _tz(), nullable=False),
            sa.Column("expires_at", _tz(), nullable=True),
            sa.Column("revoked_at", _tz(), nullable=True),
            sa.Column("revoked_by", sa.String(length=64), nullable=True),
            sa.Column("revoke_reason", sa.Text(), nullable=True),
            sa.Column("active_scope_key", sa.String(length=220), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("active_scope_key"),
        )
        op.create_index("ix_coi_override_actor_org", "coi_overrides", ["actor_id", "organization_id"])

    # ── Audit & scheduler ────────────────────────────────────────────────
    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("actor_role", sa.String(length=60), nullable=True),
            sa.Column("organization_id", sa.String(length=64), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", _tz(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("interval_minutes", sa.Integer(), nullable=False),
            sa.Column("is_enabled", sa.Boolean(), nullable=False),
            sa.Column("last_run_at", _tz(), nullable=True),
            sa.Column("last_as_of", _tz(), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=False),
            sa.Column("error_count", sa.Integer(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "audit_logs",
        "coi_overrides",
        "reviewer_cois",
        "actor_disclosures",
        "actor_profiles",
        "escalation_events",
        "sla_escalation_marks",
        "sla_clocks",
        "workflow_history",
        "workflow_executions",
        "escalation_rules",
        "workflow_transitions",
        "workflow_states",
        "workflow_definitions",
    ):
        op.drop_table(table)
