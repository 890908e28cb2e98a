"""
Workflow and SLA analytics tests (seeded CAP workflow).

Scenario:
  cap-1: DRAFT 1d → SUBMITTED 2d → ACCEPTED            (SLA met)
  cap-2: DRAFT 1d → SUBMITTED 9d → REJECTED            (SLA breached)
  cap-3: still in DRAFT
"""

from datetime import datetime, timedelta, timezone

import pytest

from caseflow.core.exceptions import ValidationError
from caseflow.services import analytics
from caseflow.services import workflow_engine as engine

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def _move(entity_id, code, role, at, **kw):
    engine.execute_transition("CAP", entity_id, code, performed_by="u1", performer_role=role, now=at, **kw)


@pytest.fixture()
def scenario(seeded):
    for entity_id in ("cap-1", "cap-2", "cap-3"):
        engine.start_execution("CAP", entity_id, organization_id="ORG-1", now=T0)
    _move("cap-1", "SUBMIT", "ANSP_ADMIN", T0 + DAY)
    _move("cap-1", "ACCEPT", "LEAD_REVIEWER", T0 + 3 * DAY)
    _move("cap-2", "SUBMIT", "ANSP_ADMIN", T0 + DAY)
    _move("cap-2", "REJECT", "LEAD_REVIEWER", T0 + 10 * DAY, comment="Root cause analysis missing")


class TestWorkflowAnalytics:

    def test_state_distribution(self, scenario):
        result = analytics.get_workflow_analytics(entity_type="CAP")
        assert result["total_executions"] == 3
        assert result["completed_executions"] == 0
        assert {s["state"]: s["count"] for s in result["state_distribution"]} == {
            "ACCEPTED": 1, "DRAFT": 1, "REJECTED": 1,
        }

    def test_time_in_state_and_bottlenecks(self, scenario):
        result = analytics.get_workflow_analytics(entity_type="CAP")
        by_state = {s["state"]: s for s in result["duration_in_state"]}
        assert by_state["DRAFT"]["exits"] == 2
        assert by_state["DRAFT"]["avg_duration_days"] == 1.0
        assert by_state["SUBMITTED"]["avg_duration_days"] == 5.5
        assert by_state["SUBMITTED"]["max_duration_seconds"] == 9 * 86400
        assert result["bottlenecks"] == ["SUBMITTED", "DRAFT"]

    def test_transition_counts(self, scenario):
        result = analytics.get_workflow_analytics(entity_type="CAP")
        counts = {t["transition"]: t["count"] for t in result["transition_counts"]}
        assert counts == {"SUBMIT": 2, "ACCEPT": 1, "REJECT": 1}

    def test_filters(self, scenario):
        assert analytics.get_workflow_analytics(entity_type="REVIEW")["total_executions"] == 0
        later = analytics.get_workflow_analytics(entity_type="CAP", date_from="2026-03-05")
        assert later["total_executions"] == 0

    def test_inverted_range_rejected(self):
        with pytest.raises(ValidationError):
            analytics.get_workflow_analytics(date_from="2026-03-05", date_to="2026-03-01")

    def test_bad_date_rejected(self):
        with pytest.raises(ValidationError):
            analytics.get_workflow_analytics(date_from="last tuesday")


class TestSlaStats:

    def test_compliance(self, scenario):
        stats = analytics.get_sla_stats(entity_type="CAP")
        assert stats["total"] == 2
        assert stats["by_status"]["MET"] == 1
        assert stats["by_status"]["BREACHED"] == 1
        assert stats["open"] == 0
        assert stats["compliance_pct"] == 50.0

    def test_per_state(self, scenario):
        submitted = analytics.get_sla_stats()["by_state"][0]
        assert submitted["state"] == "SUBMITTED"
        assert submitted["met"] == 1
        assert submitted["breached"] == 1
        assert submitted["avg_duration_days"] == 5.5

    def test_empty(self):
        stats = analytics.get_sla_stats()
        assert stats["total"] == 0
        assert stats["compliance_pct"] == 0.0
        assert stats["by_state"] == []
