"""
HTTP API tests (Flask test client).

Covers:
  - authentication (401) and elevated-role checks (403)
  - workflow execution endpoints and the JSON error envelope per failure mode
  - definition authoring endpoints
  - COI checks, declarations and overrides
  - SLA clock endpoints
  - audit trail, scheduled jobs, health probes
"""

from datetime import timedelta

import pytest

from caseflow.models import db
from caseflow.models.scheduling import ScheduledJob
from caseflow.services import coi_service
from caseflow.services.scheduler_service import SchedulerService
from caseflow.utils.helpers import utcnow

ADMIN = ("admin-1", "PLATFORM_ADMIN")
EDITOR = ("ansp-1", "ANSP_ADMIN")
LEAD = ("lead-1", "LEAD_REVIEWER")
COORDINATOR = ("coord-1", "PROGRAMME_COORDINATOR")
STEERING = ("sc-1", "STEERING_COMMITTEE")

JUSTIFICATION = "Left the organization over two years ago; no ongoing ties"


@pytest.fixture()
def api(client, auth_headers):
    """``api("post", url, who, json)`` → response."""

    def _call(method, url, who=ADMIN, json=None):
        headers = auth_headers(*who)
        return getattr(client, method)(url, headers=headers, json=json)

    return _call


def _start(api, entity_type="CAP", entity_id="cap-1", org="ORG-1"):
    return api("post", f"/api/v1/workflow/{entity_type}/{entity_id}/start", EDITOR, {"organization_id": org})


def _transition(api, who, code, entity_type="CAP", entity_id="cap-1", **body):
    return api("post", f"/api/v1/workflow/{entity_type}/{entity_id}/transitions", who,
               {"transition_code": code, **body})


# ═══════════════════════════════════════════════════════════════════════════════
# A — Authentication
# ═══════════════════════════════════════════════════════════════════════════════


class TestAuth:

    def test_missing_token(self, client):
        res = client.get("/api/v1/workflow/CAP/cap-1/state")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_invalid_token(self, client):
        res = client.get("/api/v1/workflow/CAP/cap-1/state", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401
        assert res.get_json()["error"] == "Invalid token"

    def test_expired_token(self, client):
        from caseflow.services.jwt_service import generate_access_token
        token = generate_access_token("u1", "ANSP_ADMIN", expires_in=-10)
        res = client.get("/api/v1/workflow/CAP/cap-1/state", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401
        assert res.get_json()["error"] == "Token expired"

    def test_elevated_endpoint_rejects_plain_role(self, api):
        res = api("get", "/api/v1/workflow/definitions", EDITOR)
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_elevated_endpoint_accepts_admin(self, api):
        assert api("get", "/api/v1/workflow/definitions").status_code == 200

    def test_non_json_body_rejected(self, client, auth_headers):
        res = client.post("/api/v1/workflow/CAP/cap-1/start", data="organization_id=ORG-1",
                          headers=auth_headers(*EDITOR), content_type="application/x-www-form-urlencoded")
        assert res.status_code == 415


# ═══════════════════════════════════════════════════════════════════════════════
# B — Executions
# ═══════════════════════════════════════════════════════════════════════════════


class TestWorkflowApi:

    def test_start_created_then_existing(self, api, seeded):
        first = _start(api)
        assert first.status_code == 201
        assert first.get_json()["execution"]["current_state"] == "DRAFT"
        assert _start(api).status_code == 200

    def test_start_without_definition_is_404(self, api):
        assert _start(api).status_code == 404

    def test_unknown_entity_type(self, api, seeded):
        res = api("post", "/api/v1/workflow/INVOICE/i-1/start", EDITOR, {})
        assert res.status_code == 422

    def test_transition_and_state(self, api, seeded):
        _start(api)
        res = _transition(api, EDITOR, "SUBMIT", comment="first submission")
        assert res.status_code == 200
        body = res.get_json()
        assert body["previous_state"] == "DRAFT"
        assert body["new_state"] == "SUBMITTED"
        assert body["performed_by"] == "ansp-1"
        assert body["opened_clock"]["state_code"] == "SUBMITTED"

        state = api("get", "/api/v1/workflow/CAP/cap-1/state", EDITOR).get_json()
        assert state["state"]["code"] == "SUBMITTED"
        assert state["sla"]["target_days"] == 7

    def test_available_transitions_for_role(self, api, seeded):
        _start(api)
        _transition(api, EDITOR, "SUBMIT")
        codes = {t["code"] for t in api("get", "/api/v1/workflow/CAP/cap-1/transitions", LEAD)
                 .get_json()["transitions"]}
        assert codes == {"ACCEPT", "REJECT"}
        assert api("get", "/api/v1/workflow/CAP/cap-1/transitions", EDITOR).get_json()["transitions"] == []

    def test_wrong_role_is_403(self, api, seeded):
        _start(api)
        res = _transition(api, LEAD, "SUBMIT")
        assert res.status_code == 403
        assert "ANSP_ADMIN" in res.get_json()["details"]["allowed_roles"]

    def test_invalid_transition_is_409(self, api, seeded):
        _start(api)
        res = _transition(api, LEAD, "ACCEPT")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_INVALID_TRANSITION"

    def test_stale_version_is_409(self, api, seeded):
        _start(api)
        _transition(api, EDITOR, "SUBMIT")
        res = _transition(api, LEAD, "ACCEPT", expected_version=1)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
        assert res.get_json()["details"]["retryable"] is True

    def test_non_numeric_version_is_422(self, api, seeded):
        _start(api)
        _transition(api, EDITOR, "SUBMIT")
        for bad in ("abc", True, [2]):
            res = _transition(api, LEAD, "ACCEPT", expected_version=bad)
            assert res.status_code == 422
            assert res.get_json()["code"] == "ERR_VALIDATION_RULE"
        assert _transition(api, LEAD, "ACCEPT", expected_version="2").status_code == 200

    def test_guard_failure_is_412(self, api, seeded):
        _start(api)
        _transition(api, EDITOR, "SUBMIT")
        res = _transition(api, LEAD, "REJECT")
        assert res.status_code == 412
        assert res.get_json()["details"]["guard"] == "comment_required"
        assert _transition(api, LEAD, "REJECT", comment="Missing root cause").status_code == 200

    def test_missing_transition_code(self, api, seeded):
        _start(api)
        res = api("post", "/api/v1/workflow/CAP/cap-1/transitions", EDITOR, {})
        assert res.status_code == 422
        assert res.get_json()["details"]["missing"] == ["transition_code"]

    def test_history(self, api, seeded):
        _start(api)
        _transition(api, EDITOR, "SUBMIT")
        body = api("get", "/api/v1/workflow/CAP/cap-1/history", EDITOR).get_json()
        assert body["total"] == 2
        assert [h["to_state"] for h in body["history"]] == ["DRAFT", "SUBMITTED"]


# ═══════════════════════════════════════════════════════════════════════════════
# C — COI gate over HTTP
# ═══════════════════════════════════════════════════════════════════════════════


class TestCoiGateApi:

    def _to_approved(self, api):
        _start(api, "REVIEW", "rev-1")
        _transition(api, EDITOR, "SUBMIT", "REVIEW", "rev-1")
        _transition(api, STEERING, "APPROVE", "REVIEW", "rev-1")

    def test_hard_block(self, api, seeded):
        self._to_approved(api)
        coi_service.update_actor_profile("coord-1", home_organization_id="ORG-1")
        res = _transition(api, COORDINATOR, "SCHEDULE", "REVIEW", "rev-1")
        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "COI_HARD_BLOCK"
        assert body["details"]["report"]["status"] == "blocked"

    def test_override_flow(self, api, seeded):
        self._to_approved(api)
        coi_service.update_actor_profile("coord-1", disclosures=[
            {"kind": "FINANCIAL", "organization_id": "ORG-1"},
        ])
        res = _transition(api, COORDINATOR, "SCHEDULE", "REVIEW", "rev-1")
        assert res.status_code == 403
        assert res.get_json()["code"] == "COI_OVERRIDE_AVAILABLE"

        created = api("post", "/api/v1/coi/overrides", ADMIN, {
            "actor_id": "coord-1", "organization_id": "ORG-1", "justification": JUSTIFICATION,
        })
        assert created.status_code == 201

        res = _transition(api, COORDINATOR, "SCHEDULE", "REVIEW", "rev-1")
        assert res.status_code == 200
        assert res.get_json()["coi_override_id"] == created.get_json()["id"]


# ═══════════════════════════════════════════════════════════════════════════════
# D — Definitions
# ═══════════════════════════════════════════════════════════════════════════════

MINI = {
    "code": "MINI_CAP",
    "entity_type": "CAP",
    "states": [{"code": "OPEN", "is_initial": True}, {"code": "DONE", "is_terminal": True}],
    "transitions": [{"code": "finish", "from": "OPEN", "to": "DONE"}],
}


class TestDefinitionsApi:

    def test_create_validate_publish(self, api):
        res = api("post", "/api/v1/workflow/definitions", ADMIN, MINI)
        assert res.status_code == 201
        definition_id = res.get_json()["id"]

        validation = api("post", f"/api/v1/workflow/definitions/{definition_id}/validate").get_json()
        assert validation == {"definition_id": definition_id, "valid": True, "problems": []}

        published = api("post", f"/api/v1/workflow/definitions/{definition_id}/publish")
        assert published.get_json()["is_active"] is True

        active = api("get", "/api/v1/workflow/definitions?entity_type=cap&active_only=true").get_json()
        assert [d["id"] for d in active["definitions"]] == [definition_id]

    def test_invalid_payload_is_422(self, api):
        res = api("post", "/api/v1/workflow/definitions", ADMIN, {**MINI, "states": []})
        assert res.status_code == 422
        assert res.get_json()["details"]["problems"]

    def test_update_and_clone(self, api):
        definition_id = api("post", "/api/v1/workflow/definitions", ADMIN, MINI).get_json()["id"]
        updated = api("put", f"/api/v1/workflow/definitions/{definition_id}", ADMIN, {"name": "Renamed"})
        assert updated.status_code == 200
        assert updated.get_json()["name"] == "Renamed"

        clone = api("post", f"/api/v1/workflow/definitions/{definition_id}/clone")
        assert clone.status_code == 201
        assert clone.get_json()["version"] == 2

    def test_unknown_definition(self, api):
        assert api("get", "/api/v1/workflow/definitions/999").status_code == 404

    def test_analytics(self, api, seeded):
        _start(api)
        res = api("get", "/api/v1/workflow/analytics?entity_type=CAP")
        assert res.status_code == 200
        assert res.get_json()["total_executions"] == 1


# ═══════════════════════════════════════════════════════════════════════════════
# E — COI endpoints
# ═══════════════════════════════════════════════════════════════════════════════


class TestCoiApi:

    def test_check_requires_params(self, api):
        assert api("get", "/api/v1/coi/check?actor_id=r1", LEAD).status_code == 422

    def test_check(self, api):
        coi_service.update_actor_profile("r1", home_organization_id="ORG-1")
        body = api("get", "/api/v1/coi/check?actor_id=r1&organization_id=ORG-1", LEAD).get_json()
        assert body["status"] == "blocked"
        assert body["hard_blocks"][0]["coi_type"] == "HOME_ORGANIZATION"

    def test_check_team(self, api):
        coi_service.update_actor_profile("r1", home_organization_id="ORG-1")
        body = api("get", "/api/v1/coi/check-team?actor_ids=r1,r2&organization_id=ORG-1", LEAD).get_json()
        assert body["summary"]["total"] == 2
        assert body["blocked_actor_ids"] == ["r1"]

    def test_self_declaration(self, api):
        res = api("post", "/api/v1/coi/declarations", LEAD, {"organization_id": "ORG-2", "coi_type": "OTHER"})
        assert res.status_code == 201
        assert res.get_json()["actor_id"] == "lead-1"

        duplicate = api("post", "/api/v1/coi/declarations", LEAD, {"organization_id": "ORG-2", "coi_type": "OTHER"})
        assert duplicate.status_code == 409

        listed = api("get", "/api/v1/coi/declarations?actor_id=lead-1", LEAD).get_json()
        assert listed["total"] == 1

    def test_declaring_for_someone_else_needs_elevation(self, api):
        body = {"actor_id": "other", "organization_id": "ORG-2", "coi_type": "OTHER"}
        assert api("post", "/api/v1/coi/declarations", LEAD, body).status_code == 403
        assert api("post", "/api/v1/coi/declarations", ADMIN, body).status_code == 201

    def test_profile_update_and_read(self, api):
        res = api("put", "/api/v1/coi/actors/r1/profile", ADMIN, {
            "home_organization_id": "ORG-1",
            "disclosures": [{"kind": "FAMILY", "organization_id": "ORG-9"}],
        })
        assert res.status_code == 200
        assert len(res.get_json()["sync"]["created"]) == 2

        profile = api("get", "/api/v1/coi/actors/r1/profile", LEAD).get_json()
        assert profile["home_organization_id"] == "ORG-1"
        assert api("put", "/api/v1/coi/actors/r1/profile", LEAD, {}).status_code == 403

    def test_severity_and_deactivate(self, api):
        coi_id = api("post", "/api/v1/coi/declarations", LEAD,
                     {"organization_id": "ORG-2", "coi_type": "OTHER"}).get_json()["id"]
        res = api("patch", f"/api/v1/coi/{coi_id}/severity", ADMIN, {"severity": "HARD_BLOCK"})
        assert res.get_json()["severity"] == "HARD_BLOCK"

        res = api("post", f"/api/v1/coi/{coi_id}/deactivate", ADMIN, {"reason": "resolved"})
        assert res.get_json()["is_active"] is False

    def test_override_validation_errors(self, api):
        res = api("post", "/api/v1/coi/overrides", ADMIN, {
            "actor_id": "r1", "organization_id": "ORG-1", "justification": JUSTIFICATION,
        })
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_INVALID_OVERRIDE"

    def test_override_revoke(self, api):
        coi_service.declare_coi("r1", "ORG-1", "RECENT_EMPLOYMENT")
        override_id = api("post", "/api/v1/coi/overrides", ADMIN, {
            "actor_id": "r1", "organization_id": "ORG-1", "justification": JUSTIFICATION,
        }).get_json()["id"]
        res = api("post", f"/api/v1/coi/overrides/{override_id}/revoke", ADMIN, {"reason": "Granted in error"})
        assert res.status_code == 200
        assert res.get_json()["is_active"] is False
        assert api("get", f"/api/v1/coi/overrides/{override_id}").get_json()["revoked_by"] == "admin-1"

    def test_stats(self, api):
        coi_service.declare_coi("r1", "ORG-1", "OTHER")
        assert api("get", "/api/v1/coi/stats").get_json()["active"] == 1


# ═══════════════════════════════════════════════════════════════════════════════
# F — SLA endpoints
# ═══════════════════════════════════════════════════════════════════════════════


class TestSlaApi:

    def _submitted(self, api):
        _start(api)
        _transition(api, EDITOR, "SUBMIT")
        return api("get", "/api/v1/sla/CAP/cap-1/current", EDITOR).get_json()["clock"]

    def test_current_and_history(self, api, seeded):
        clock = self._submitted(api)
        assert clock["status"] == "RUNNING"
        assert clock["remaining_days"] > 6.9

        history = api("get", "/api/v1/sla/CAP/cap-1/history", EDITOR).get_json()
        assert history["total"] == 1

        detail = api("get", f"/api/v1/sla/clocks/{clock['id']}", EDITOR).get_json()
        assert detail["marks"] == []

    def test_no_clock_in_state_without_sla(self, api, seeded):
        _start(api)
        assert api("get", "/api/v1/sla/CAP/cap-1/current", EDITOR).get_json()["clock"] is None

    def test_pause_resume_extend(self, api, seeded):
        clock_id = self._submitted(api)["id"]
        paused = api("post", f"/api/v1/sla/clocks/{clock_id}/pause", ADMIN, {"reason": "waiting on ANSP"})
        assert paused.get_json()["status"] == "PAUSED"

        again = api("post", f"/api/v1/sla/clocks/{clock_id}/pause", ADMIN, {})
        assert again.status_code == 409
        assert again.get_json()["code"] == "ERR_CLOCK_STATE"

        assert api("post", f"/api/v1/sla/clocks/{clock_id}/resume", ADMIN).get_json()["status"] == "RUNNING"
        extended = api("post", f"/api/v1/sla/clocks/{clock_id}/extend", ADMIN, {"additional_days": 3})
        assert extended.get_json()["extended_days"] == 3

    def test_admin_operations_need_elevation(self, api, seeded):
        clock_id = self._submitted(api)["id"]
        assert api("post", f"/api/v1/sla/clocks/{clock_id}/pause", EDITOR, {}).status_code == 403

    def test_extend_requires_days(self, api, seeded):
        clock_id = self._submitted(api)["id"]
        assert api("post", f"/api/v1/sla/clocks/{clock_id}/extend", ADMIN, {}).status_code == 422

    def test_approaching_breaches(self, api, seeded):
        self._submitted(api)
        assert api("get", "/api/v1/sla/approaching-breaches").get_json()["total"] == 0
        body = api("get", "/api/v1/sla/approaching-breaches?warning_days=10").get_json()
        assert body["warning_days"] == 10
        assert body["clocks"][0]["entity_id"] == "cap-1"
        assert api("get", "/api/v1/sla/approaching-breaches?warning_days=soon").status_code == 422

    def test_stats_and_escalations(self, api, seeded):
        self._submitted(api)
        assert api("get", "/api/v1/sla/stats?entity_type=CAP").get_json()["open"] == 1
        body = api("get", "/api/v1/sla/escalations?pending_only=true").get_json()
        assert body == {"items": [], "total": 0}

    def test_dispatched_validation(self, api):
        res = api("post", "/api/v1/sla/escalations/dispatched", ADMIN, {"event_ids": ["a"]})
        assert res.status_code == 422
        res = api("post", "/api/v1/sla/escalations/dispatched", ADMIN, {"event_ids": []})
        assert res.get_json() == {"dispatched": 0}


# ═══════════════════════════════════════════════════════════════════════════════
# G — Audit, jobs, health
# ═══════════════════════════════════════════════════════════════════════════════


class TestAdminApi:

    def test_audit_filters(self, api, seeded):
        _start(api)
        _transition(api, EDITOR, "SUBMIT")
        body = api("get", "/api/v1/audit?action=workflow.&entity_id=cap-1").get_json()
        assert body["total"] == 2
        assert [log["action"] for log in body["audit_logs"]] == ["workflow.transition", "workflow.start"]

        one = api("get", f"/api/v1/audit/{body['audit_logs'][0]['id']}").get_json()
        assert one["actor"] == "ansp-1"

    def test_audit_unknown_entry(self, api):
        assert api("get", "/api/v1/audit/999").status_code == 404

    def test_audit_needs_elevation(self, api):
        assert api("get", "/api/v1/audit", LEAD).status_code == 403

    def test_jobs(self, api):
        jobs = api("get", "/api/v1/admin/jobs").get_json()["jobs"]
        assert {"sla_breach_sweep", "sla_warning_sweep", "escalation_check"} <= {j["job_name"] for j in jobs}

    def test_run_job(self, api):
        res = api("post", "/api/v1/admin/jobs/sla_warning_sweep/run", ADMIN, {"warning_days": 2})
        assert res.status_code == 200
        assert res.get_json()["result"]["warning_days"] == 2

    def test_run_unknown_job(self, api):
        assert api("post", "/api/v1/admin/jobs/nope/run", ADMIN, {}).status_code == 404

    def test_pause_job(self, api):
        res = api("patch", "/api/v1/admin/jobs/sla_warning_sweep", ADMIN, {"is_enabled": False})
        assert res.status_code == 200
        assert res.get_json()["is_enabled"] is False
        assert api("patch", "/api/v1/admin/jobs/sla_warning_sweep", ADMIN, {"is_enabled": "no"}).status_code == 422


class TestHealth:

    def test_health_needs_no_token(self, client):
        assert client.get("/api/v1/health").get_json() == {"status": "ok", "app": "caseflow"}
        assert client.get("/api/v1/health/ready").status_code == 200

    def test_live_checks_database(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"]["database"]["status"] == "ok"

    def test_live_reports_missing_workflows(self, client):
        checks = client.get("/api/v1/health/live").get_json()["checks"]
        assert checks["workflows"]["status"] == "warning"
        assert checks["workflows"]["missing_entity_types"] == ["CAP", "FINDING", "REVIEW"]
        assert checks["sla_sweeps"]["status"] == "never_run"

    def test_live_flags_stale_sweep(self, client, seeded):
        SchedulerService.ensure_jobs_registered()
        for job in ScheduledJob.query.all():
            job.record_run(as_of=utcnow(), status="success", duration_ms=1)
        breach = ScheduledJob.query.filter_by(job_name="sla_breach_sweep").one()
        breach.last_as_of = utcnow() - timedelta(hours=2)
        db.session.commit()

        checks = client.get("/api/v1/health/live").get_json()["checks"]
        assert checks["workflows"]["status"] == "ok"
        assert checks["sla_sweeps"] == {"status": "warning", "stale": ["sla_breach_sweep"], "failing": []}
