"""
Escalation tests.

Covers:
  - BEFORE_DUE rules fire once when the threshold is reached
  - ON_BREACH rules fire from the sweeps once threshold_days past the
    deadline, and on a late close
  - repeating rules honour repeat_interval_days and max_repeats
  - approaching-breach warnings fire once per window
  - outbox listing and dispatch acknowledgement
"""

from datetime import datetime, timedelta, timezone

import pytest

from caseflow.models import db
from caseflow.models.audit import AuditLog
from caseflow.models.sla import EscalationEvent, SLAClock
from caseflow.services import escalation, sla_service
from caseflow.services import workflow_engine as engine
from caseflow.services.graph_store import create_definition, publish_definition

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


# ── Helpers ──────────────────────────────────────────────────────────────────

ESCALATING_CAP = {
    "code": "ESCALATING_CAP",
    "entity_type": "CAP",
    "states": [
        {"code": "DRAFT", "is_initial": True},
        {"code": "SUBMITTED", "default_sla_days": 5},
        {"code": "CLOSED", "is_terminal": True},
    ],
    "transitions": [
        {"code": "submit", "from": "DRAFT", "to": "SUBMITTED"},
        {"code": "close", "from": "SUBMITTED", "to": "CLOSED"},
    ],
    "escalation_rules": [
        {"state": "SUBMITTED", "name": "due soon", "trigger": "BEFORE_DUE", "threshold_days": 2,
         "notify_target": "LEAD_REVIEWER"},
        {"state": "SUBMITTED", "name": "overdue", "trigger": "ON_BREACH", "threshold_days": 0,
         "notify_target": "COORDINATOR", "action": "ESCALATE", "fire_once": False,
         "repeat_interval_days": 2, "max_repeats": 2},
        {"state": "SUBMITTED", "name": "disabled", "trigger": "BEFORE_DUE", "threshold_days": 4,
         "notify_target": "NOBODY", "is_active": False},
    ],
}


@pytest.fixture(autouse=True)
def escalating_definition():
    definition = create_definition(ESCALATING_CAP)
    return publish_definition(definition.id)


def _submitted(entity_id="cap-1", at=T0):
    engine.start_execution("CAP", entity_id, organization_id="ORG-1", now=at)
    engine.execute_transition("CAP", entity_id, "submit", performed_by="u1", performer_role="ANY", now=at)
    return sla_service.find_open_clock("CAP", entity_id)


def _events(trigger=None):
    query = EscalationEvent.query
    if trigger:
        query = query.filter_by(trigger=trigger)
    return query.order_by(EscalationEvent.id).all()


# ═══════════════════════════════════════════════════════════════════════════════
# A — Rule lookup
# ═══════════════════════════════════════════════════════════════════════════════


class TestRulesForClock:

    def test_only_active_rules_for_clock_state(self):
        clock = _submitted()
        names = [r.name for r in escalation.rules_for_clock(clock)]
        assert names == ["due soon", "overdue"]
        assert [r.name for r in escalation.rules_for_clock(clock, "ON_BREACH")] == ["overdue"]


# ═══════════════════════════════════════════════════════════════════════════════
# B — BEFORE_DUE
# ═══════════════════════════════════════════════════════════════════════════════


class TestBeforeDue:

    def test_not_fired_before_threshold(self):
        _submitted()
        result = escalation.process_escalations(now=T0 + 2 * DAY)
        assert result == {"clocks_checked": 1, "events_created": 0, "errors": 0}

    def test_fires_once_at_threshold(self):
        _submitted()
        escalation.process_escalations(now=T0 + 3 * DAY)
        escalation.process_escalations(now=T0 + 4 * DAY)
        events = _events("BEFORE_DUE")
        assert len(events) == 1
        assert events[0].notify_target == "LEAD_REVIEWER"
        assert events[0].state_code == "SUBMITTED"
        assert events[0].payload["remaining_seconds"] == 2 * 86400

    def test_paused_clock_not_escalated(self):
        clock = _submitted()
        sla_service.pause_clock(clock.id, now=T0 + DAY)
        result = escalation.process_escalations(now=T0 + 10 * DAY)
        assert result["clocks_checked"] == 0
        assert _events() == []

    def test_escalation_audited(self):
        _submitted()
        escalation.process_escalations(now=T0 + 3 * DAY)
        log = AuditLog.query.filter_by(action="sla.escalation").one()
        assert log.diff["after"]["trigger"] == "BEFORE_DUE"
        assert log.diff["after"]["fire_count"] == 1


# ═══════════════════════════════════════════════════════════════════════════════
# C — ON_BREACH and repeats
# ═══════════════════════════════════════════════════════════════════════════════


class TestOnBreach:

    def test_breach_sweep_fires_once(self):
        _submitted()
        result = sla_service.detect_breaches(now=T0 + 6 * DAY)
        assert result["escalations"] == 1
        sla_service.detect_breaches(now=T0 + 6 * DAY + timedelta(hours=1))
        events = _events("ON_BREACH")
        assert len(events) == 1
        assert events[0].action == "ESCALATE"

    def test_repeat_interval_and_cap(self):
        clock = _submitted()
        sla_service.detect_breaches(now=T0 + 6 * DAY)

        escalation.process_escalations(now=T0 + 7 * DAY)
        assert len(_events("ON_BREACH")) == 1

        escalation.process_escalations(now=T0 + 8 * DAY)
        assert len(_events("ON_BREACH")) == 2

        escalation.process_escalations(now=T0 + 20 * DAY)
        assert len(_events("ON_BREACH")) == 2

        marks = {m.threshold_key: m.fire_count for m in sla_service.get_marks(clock.id)}
        overdue = escalation.rules_for_clock(clock, "ON_BREACH")[0]
        assert marks[overdue.threshold_key] == 2

    def test_late_close_fires_breach_rules(self):
        _submitted()
        result = engine.execute_transition("CAP", "cap-1", "close", performed_by="u1", performer_role="ANY",
                                           now=T0 + 9 * DAY)
        assert result.closed_clock["status"] == "BREACHED"
        assert len(_events("ON_BREACH")) == 1

    def test_on_time_close_fires_nothing(self):
        _submitted()
        engine.execute_transition("CAP", "cap-1", "close", performed_by="u1", performer_role="ANY",
                                  now=T0 + DAY)
        assert _events() == []

    def test_threshold_counts_days_past_deadline(self):
        payload = {**ESCALATING_CAP, "code": "LATE_CAP", "escalation_rules": [
            {"state": "SUBMITTED", "name": "very late", "trigger": "ON_BREACH", "threshold_days": 3,
             "notify_target": "DIRECTOR", "fire_once": True},
        ]}
        publish_definition(create_definition(payload).id)
        _submitted()
        escalation.process_escalations(now=T0 + 7 * DAY)
        assert _events() == []
        escalation.process_escalations(now=T0 + 8 * DAY)
        assert [e.notify_target for e in _events()] == ["DIRECTOR"]

    def _late_only(self):
        payload = {**ESCALATING_CAP, "code": "LATE_CAP", "escalation_rules": [
            {"state": "SUBMITTED", "name": "late3", "trigger": "ON_BREACH", "threshold_days": 3,
             "notify_target": "DIRECTOR"},
        ]}
        publish_definition(create_definition(payload).id)
        return _submitted()

    def test_breach_sweep_waits_for_threshold(self):
        self._late_only()
        result = sla_service.detect_breaches(now=T0 + 6 * DAY)
        assert result["breached"] == 1
        assert result["escalations"] == 0
        assert _events() == []

        escalation.process_escalations(now=T0 + 8 * DAY)
        assert [e.payload["rule"] for e in _events("ON_BREACH")] == ["late3"]

    def test_late_close_fires_rule_below_threshold(self):
        self._late_only()
        engine.execute_transition("CAP", "cap-1", "close", performed_by="u1", performer_role="ANY",
                                  now=T0 + 6 * DAY)
        assert [e.payload["rule"] for e in _events("ON_BREACH")] == ["late3"]


# ═══════════════════════════════════════════════════════════════════════════════
# D — Warnings
# ═══════════════════════════════════════════════════════════════════════════════


class TestWarnings:

    def test_warning_fires_once_per_window(self):
        clock = _submitted()
        first = escalation.fire_warning(clock, 3, now=T0 + 3 * DAY)
        db.session.commit()
        assert first.trigger == "WARNING"
        assert first.payload["warning_days"] == 3
        assert escalation.fire_warning(clock, 3, now=T0 + 4 * DAY) is None
        assert escalation.fire_warning(clock, 1, now=T0 + 4 * DAY) is not None

    def test_warning_mark_key(self):
        clock = _submitted()
        escalation.fire_warning(clock, 2, now=T0 + 3 * DAY)
        db.session.commit()
        assert [m.threshold_key for m in sla_service.get_marks(clock.id)] == ["warn:2d"]


# ═══════════════════════════════════════════════════════════════════════════════
# E — Outbox
# ═══════════════════════════════════════════════════════════════════════════════


class TestOutbox:

    def test_list_and_dispatch(self):
        _submitted("cap-1")
        _submitted("cap-2")
        escalation.process_escalations(now=T0 + 3 * DAY)

        pending = escalation.list_events(pending_only=True)
        assert len(pending) == 2
        assert len(escalation.list_events(entity_id="cap-2")) == 1

        dispatched = escalation.mark_dispatched([pending[0].id], now=T0 + 3 * DAY)
        assert dispatched == 1
        assert len(escalation.list_events(pending_only=True)) == 1
        assert escalation.mark_dispatched([pending[0].id]) == 0

    def test_events_survive_clock_close(self):
        _submitted()
        escalation.process_escalations(now=T0 + 3 * DAY)
        engine.execute_transition("CAP", "cap-1", "close", performed_by="u1", performer_role="ANY",
                                  now=T0 + 4 * DAY)
        event = _events()[0]
        assert db.session.get(SLAClock, event.clock_id).status == "MET"
