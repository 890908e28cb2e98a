"""
Workflow engine tests.

Covers:
  - start_execution (initial state, idempotent get-or-create, history row, clock)
  - role check, unknown transition, AUTOMATIC edges
  - history ordering and duration_in_state
  - optimistic concurrency (expected_version, lost CAS)
  - COI gate: hard block, override, revoke, subject actor, missing organization
  - guards (comment_required, custom registered guards, guards removed after publish)
  - definition pinning across publishes
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from caseflow.core.exceptions import (
    ConflictOfInterestError,
    ForbiddenError,
    GuardFailedError,
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
)
from caseflow.models import db
from caseflow.models.audit import AuditLog
from caseflow.models.workflow import WorkflowExecution, WorkflowHistory
from caseflow.services import coi_override_service, coi_service
from caseflow.services import workflow_engine as engine
from caseflow.services.graph_store import clone_definition, create_definition, publish_definition
from caseflow.services.guards import register_guard, unregister_guard

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────────

SIMPLE_CAP = {
    "code": "SIMPLE_CAP",
    "entity_type": "CAP",
    "name": "Simple CAP",
    "states": [
        {"code": "DRAFT", "is_initial": True},
        {"code": "SUBMITTED", "default_sla_days": 5},
        {"code": "ACCEPTED"},
        {"code": "CLOSED", "is_terminal": True},
    ],
    "transitions": [
        {"code": "submit", "from": "DRAFT", "to": "SUBMITTED", "allowed_roles": ["ORG_ADMIN"]},
        {"code": "accept", "from": "SUBMITTED", "to": "ACCEPTED", "allowed_roles": ["REVIEWER"],
         "guards": {"requires_coi_clearance": True}},
        {"code": "auto_close", "from": "ACCEPTED", "to": "CLOSED", "trigger": "AUTOMATIC"},
        {"code": "close", "from": "ACCEPTED", "to": "CLOSED", "allowed_roles": []},
    ],
}


def _publish(payload=SIMPLE_CAP):
    definition = create_definition(payload, created_by="admin")
    return publish_definition(definition.id, published_by="admin")


def _start(entity_id="cap-1", org="ORG-1", now=T0):
    execution, _created = engine.start_execution("CAP", entity_id, organization_id=org,
                                                 performed_by="u-admin", now=now)
    return execution


def _submit(entity_id="cap-1", now=T0):
    return engine.execute_transition("CAP", entity_id, "submit", performed_by="u-admin",
                                     performer_role="ORG_ADMIN", now=now)


def _recently():
    """An end date well inside the recent-employment window."""
    return (date.today() - timedelta(days=200)).isoformat()


# ═══════════════════════════════════════════════════════════════════════════════
# A — Start
# ═══════════════════════════════════════════════════════════════════════════════


class TestStartExecution:

    def test_starts_in_initial_state(self):
        _publish()
        execution, created = engine.start_execution("CAP", "cap-1", organization_id="ORG-1", now=T0)
        assert created is True
        assert execution.current_state_code == "DRAFT"
        assert execution.version == 1
        assert engine.get_current_state("CAP", "cap-1").code == "DRAFT"

    def test_start_is_get_or_create(self):
        _publish()
        first = _start()
        again, created = engine.start_execution("CAP", "cap-1", organization_id="ORG-9")
        assert created is False
        assert again.id == first.id
        assert again.organization_id == "ORG-1"

    def test_start_writes_initial_history_row(self):
        _publish()
        _start()
        history = engine.get_history("CAP", "cap-1")
        assert len(history) == 1
        assert history[0].from_state_code is None
        assert history[0].to_state_code == "DRAFT"
        assert history[0].trigger == "AUTOMATIC"

    def test_start_without_active_definition(self):
        with pytest.raises(NotFoundError):
            engine.start_execution("CAP", "cap-1")

    def test_start_audited(self):
        _publish()
        _start()
        assert AuditLog.query.filter_by(action="workflow.start", entity_id="cap-1").count() == 1

    def test_unknown_execution_raises_not_found(self):
        with pytest.raises(NotFoundError):
            engine.get_current_state("CAP", "missing")


# ═══════════════════════════════════════════════════════════════════════════════
# B — Roles and legality
# ═══════════════════════════════════════════════════════════════════════════════


class TestTransitionRules:

    def test_wrong_role_is_forbidden(self):
        _publish()
        _start()
        with pytest.raises(ForbiddenError) as exc:
            engine.execute_transition("CAP", "cap-1", "submit", performed_by="u-staff", performer_role="STAFF")
        assert exc.value.details["allowed_roles"] == ["ORG_ADMIN"]
        assert engine.get_current_state("CAP", "cap-1").code == "DRAFT"

    def test_allowed_role_succeeds(self):
        _publish()
        _start()
        result = _submit()
        assert result.previous_state == "DRAFT"
        assert result.new_state == "SUBMITTED"
        assert result.version == 2
        assert engine.get_current_state("CAP", "cap-1").code == "SUBMITTED"

    def test_transition_not_from_current_state(self):
        _publish()
        _start()
        with pytest.raises(InvalidTransitionError) as exc:
            engine.execute_transition("CAP", "cap-1", "close", performed_by="u1", performer_role="ORG_ADMIN")
        assert exc.value.details["current_state"] == "DRAFT"

    def test_unknown_transition_code(self):
        _publish()
        _start()
        with pytest.raises(InvalidTransitionError):
            engine.execute_transition("CAP", "cap-1", "teleport", performed_by="u1", performer_role="ORG_ADMIN")

    def test_available_transitions_filtered_by_role(self):
        _publish()
        _start()
        assert [t.code for t in engine.get_available_transitions("CAP", "cap-1", "ORG_ADMIN")] == ["submit"]
        assert engine.get_available_transitions("CAP", "cap-1", "STAFF") == []

    def test_automatic_edge_reserved_for_system_role(self, app):
        _publish()
        _start()
        _submit(now=T0)
        coi_service.update_actor_profile("rev-1", home_organization_id="ORG-OTHER")
        engine.execute_transition("CAP", "cap-1", "accept", performed_by="rev-1", performer_role="REVIEWER",
                                  now=T0 + timedelta(days=1))

        codes = {t.code for t in engine.get_available_transitions("CAP", "cap-1", "ORG_ADMIN")}
        assert codes == {"close"}
        system = app.config["SYSTEM_ROLE"]
        codes = {t.code for t in engine.get_available_transitions("CAP", "cap-1", system)}
        assert codes == {"auto_close", "close"}

        with pytest.raises(ForbiddenError):
            engine.execute_transition("CAP", "cap-1", "auto_close", performed_by="u1", performer_role="ORG_ADMIN")
        result = engine.execute_automatic_transition("CAP", "cap-1", "auto_close")
        assert result.new_state == "CLOSED"
        assert result.is_terminal is True

    def test_terminal_state_has_no_transitions(self):
        _publish()
        _start()
        _submit()
        coi_service.update_actor_profile("rev-1", home_organization_id="ORG-OTHER")
        engine.execute_transition("CAP", "cap-1", "accept", performed_by="rev-1", performer_role="REVIEWER")
        engine.execute_transition("CAP", "cap-1", "close", performed_by="u1", performer_role="ANYONE")
        assert engine.get_available_transitions("CAP", "cap-1", "ORG_ADMIN") == []
        execution = engine.get_execution("CAP", "cap-1")
        assert execution.completed_at is not None


# ═══════════════════════════════════════════════════════════════════════════════
# C — History
# ═══════════════════════════════════════════════════════════════════════════════


class TestHistory:

    def test_history_records_every_transition_in_order(self):
        _publish()
        _start(now=T0)
        _submit(now=T0 + timedelta(hours=5))
        history = engine.get_history("CAP", "cap-1")
        assert [(h.from_state_code, h.to_state_code) for h in history] == [
            (None, "DRAFT"), ("DRAFT", "SUBMITTED"),
        ]
        assert history[1].duration_in_state == 5 * 3600
        assert history[1].performed_by == "u-admin"
        assert history[1].performer_role == "ORG_ADMIN"

    def test_comment_and_metadata_round_trip(self):
        _publish()
        _start()
        engine.execute_transition("CAP", "cap-1", "submit", performed_by="u1", performer_role="ORG_ADMIN",
                                  comment="ready for review", metadata={"attachments": 3})
        last = engine.get_history("CAP", "cap-1")[-1]
        assert last.comment == "ready for review"
        assert last.to_dict()["metadata"] == {"attachments": 3}

    def test_transition_audited_with_versions(self):
        _publish()
        _start()
        _submit()
        log = AuditLog.query.filter_by(action="workflow.transition").one()
        assert log.diff["before"] == {"state": "DRAFT", "version": 1}
        assert log.diff["after"]["state"] == "SUBMITTED"
        assert log.organization_id == "ORG-1"


# ═══════════════════════════════════════════════════════════════════════════════
# D — Concurrency
# ═══════════════════════════════════════════════════════════════════════════════


class TestOptimisticConcurrency:

    def test_stale_expected_version_rejected(self):
        _publish()
        _start()
        _submit()
        with pytest.raises(StateConflictError):
            engine.execute_transition("CAP", "cap-1", "submit", performed_by="u1",
                                      performer_role="ORG_ADMIN", expected_version=1)

    def test_matching_expected_version_accepted(self):
        _publish()
        _start()
        result = engine.execute_transition("CAP", "cap-1", "submit", performed_by="u1",
                                           performer_role="ORG_ADMIN", expected_version=1)
        assert result.version == 2

    def test_lost_race_leaves_one_history_entry(self):
        """A competing writer bumps the version between read and swap."""

        @register_guard("race")
        def _race(ctx):
            db.session.execute(
                update(WorkflowExecution)
                .where(WorkflowExecution.entity_type == ctx.entity_type,
                       WorkflowExecution.entity_id == ctx.entity_id)
                .values(version=WorkflowExecution.version + 1)
                .execution_options(synchronize_session=False)
            )
            return True

        payload = {**SIMPLE_CAP, "transitions": [
            {**SIMPLE_CAP["transitions"][0], "guards": {"checks": ["race"]}},
            *SIMPLE_CAP["transitions"][1:],
        ]}
        try:
            _publish(payload)
            _start()
            with pytest.raises(StateConflictError):
                _submit()
        finally:
            unregister_guard("race")

        assert db.session.query(WorkflowHistory).count() == 1
        assert engine.get_current_state("CAP", "cap-1").code == "DRAFT"
        assert engine.get_execution("CAP", "cap-1", refresh=True).version == 1

    def test_second_caller_with_same_read_version_conflicts(self):
        _publish()
        _start()
        _submit()
        # second caller read version 1 before the first one committed
        with pytest.raises(StateConflictError):
            engine.execute_transition("CAP", "cap-1", "submit", performed_by="u2",
                                      performer_role="ORG_ADMIN", expected_version=1)
        transitions = [h for h in engine.get_history("CAP", "cap-1") if h.transition_code == "submit"]
        assert len(transitions) == 1


# ═══════════════════════════════════════════════════════════════════════════════
# E — COI gate
# ═══════════════════════════════════════════════════════════════════════════════


class TestCoiGate:

    def _to_submitted(self, org="ORG-1"):
        _publish()
        _start(org=org)
        _submit()

    def _accept(self, actor="rev-1", **kw):
        return engine.execute_transition("CAP", "cap-1", "accept", performed_by=actor,
                                         performer_role="REVIEWER", **kw)

    def test_clear_reviewer_passes(self):
        self._to_submitted()
        assert self._accept().new_state == "ACCEPTED"

    def test_hard_block_rejected(self):
        self._to_submitted()
        coi_service.update_actor_profile("rev-1", home_organization_id="ORG-1")
        with pytest.raises(ConflictOfInterestError) as exc:
            self._accept()
        assert exc.value.details["overridable"] is False
        assert engine.get_current_state("CAP", "cap-1").code == "SUBMITTED"

    def test_hard_block_hides_guarded_transition(self):
        self._to_submitted()
        coi_service.update_actor_profile("rev-1", home_organization_id="ORG-1")
        assert engine.get_available_transitions("CAP", "cap-1", "REVIEWER", actor_id="rev-1") == []
        assert [t.code for t in engine.get_available_transitions("CAP", "cap-1", "REVIEWER")] == ["accept"]

    def test_overridable_requires_override(self):
        self._to_submitted()
        coi_service.update_actor_profile("rev-1", disclosures=[
            {"kind": "EMPLOYMENT", "organization_id": "ORG-1", "end_date": _recently()},
        ])
        with pytest.raises(ConflictOfInterestError) as exc:
            self._accept()
        assert exc.value.details["overridable"] is True

    def test_override_then_revoke(self):
        self._to_submitted()
        coi_service.update_actor_profile("rev-1", disclosures=[
            {"kind": "EMPLOYMENT", "organization_id": "ORG-1", "end_date": _recently()},
        ])
        report = coi_service.evaluate("rev-1", "ORG-1")
        assert report.has_conflict is True
        assert report.has_hard_block is False

        override = coi_override_service.create_override(
            "rev-1", "ORG-1", "Left the organization years ago, no ongoing ties", "admin-1",
        )
        assert coi_service.evaluate("rev-1", "ORG-1").has_conflict is True

        result = self._accept()
        assert result.new_state == "ACCEPTED"
        assert result.coi_override_id == override.id
        assert engine.get_history("CAP", "cap-1")[-1].to_dict()["metadata"]["coi_override_id"] == override.id

    def test_revoked_override_no_longer_clears(self):
        _publish({**SIMPLE_CAP, "transitions": SIMPLE_CAP["transitions"] + [
            {"code": "reopen", "from": "ACCEPTED", "to": "SUBMITTED", "allowed_roles": []},
        ]})
        _start()
        _submit()
        coi_service.update_actor_profile("rev-1", disclosures=[
            {"kind": "FINANCIAL", "organization_id": "ORG-1"},
        ])
        override = coi_override_service.create_override(
            "rev-1", "ORG-1", "Shareholding held in a blind trust since 2024", "admin-1",
        )
        self._accept()
        engine.execute_transition("CAP", "cap-1", "reopen", performed_by="u1", performer_role="ANY")

        coi_override_service.revoke_override(override.id, "Trust arrangement ended", "admin-1")
        with pytest.raises(ConflictOfInterestError):
            self._accept()

    def test_subject_actor_taken_from_metadata(self):
        self._to_submitted()
        coi_service.update_actor_profile("rev-2", home_organization_id="ORG-1")
        with pytest.raises(ConflictOfInterestError) as exc:
            self._accept(actor="coordinator", metadata={"subject_actor_id": "rev-2"})
        assert exc.value.actor_id == "rev-2"

    def test_blocked_performer_cannot_name_clean_subject(self):
        self._to_submitted()
        coi_service.update_actor_profile("rev-1", home_organization_id="ORG-1")
        assert engine.get_available_transitions("CAP", "cap-1", "REVIEWER", actor_id="rev-1") == []
        with pytest.raises(ConflictOfInterestError) as exc:
            self._accept(metadata={"subject_actor_id": "clean-nobody"})
        assert exc.value.actor_id == "rev-1"
        assert engine.get_current_state("CAP", "cap-1").code == "SUBMITTED"

    def test_clean_performer_and_subject_pass(self):
        self._to_submitted()
        result = self._accept(actor="coordinator", metadata={"subject_actor_id": "rev-2"})
        assert result.new_state == "ACCEPTED"

    def test_missing_organization_fails_guard(self):
        self._to_submitted(org=None)
        with pytest.raises(GuardFailedError):
            self._accept()


# ═══════════════════════════════════════════════════════════════════════════════
# F — Guards
# ═══════════════════════════════════════════════════════════════════════════════


class TestGuards:

    def _payload(self, checks):
        return {**SIMPLE_CAP, "transitions": [
            {**SIMPLE_CAP["transitions"][0], "guards": {"checks": checks}},
            *SIMPLE_CAP["transitions"][1:],
        ]}

    def test_comment_required(self):
        _publish(self._payload(["comment_required"]))
        _start()
        with pytest.raises(GuardFailedError) as exc:
            _submit()
        assert exc.value.details["guard"] == "comment_required"
        result = engine.execute_transition("CAP", "cap-1", "submit", performed_by="u1",
                                           performer_role="ORG_ADMIN", comment="done")
        assert result.new_state == "SUBMITTED"

    def test_registered_guard_reason_surfaces(self):
        @register_guard("no_open_findings")
        def _no_open_findings(ctx):
            return "2 findings still open"

        try:
            _publish(self._payload(["no_open_findings"]))
            _start()
            with pytest.raises(GuardFailedError) as exc:
                _submit()
            assert "2 findings still open" in str(exc.value)
        finally:
            unregister_guard("no_open_findings")

    def test_guard_removed_after_publish_fails_closed(self):
        register_guard("evidence_uploaded")(lambda ctx: True)
        try:
            _publish(self._payload(["evidence_uploaded"]))
        finally:
            unregister_guard("evidence_uploaded")
        _start()
        with pytest.raises(GuardFailedError) as exc:
            _submit()
        assert exc.value.details["guard"] == "evidence_uploaded"


# ═══════════════════════════════════════════════════════════════════════════════
# G — Definition pinning
# ═══════════════════════════════════════════════════════════════════════════════


class TestDefinitionPinning:

    def test_in_flight_execution_keeps_its_version(self):
        v1 = _publish()
        _start()
        clone = clone_definition(v1.id, cloned_by="admin")
        publish_definition(clone.id, published_by="admin")

        execution = engine.get_execution("CAP", "cap-1")
        assert execution.definition_id == v1.id
        _submit()

        engine.start_execution("CAP", "cap-new", organization_id="ORG-1")
        assert engine.get_execution("CAP", "cap-new").definition_id == clone.id
