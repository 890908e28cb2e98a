"""
caseflow
Scheduled Jobs.

Jobs:
    - sla_breach_sweep: stamps overdue clocks and fires ON_BREACH rules
    - sla_warning_sweep: records approaching-breach warnings
    - escalation_check: evaluates BEFORE_DUE / repeating escalation rules

Every job isolates failures per clock (commit per clock, log and continue);
a failed clock is picked up again on the next tick.
"""

from __future__ import annotations

import logging
from typing import Any

from caseflow.models import db
from caseflow.models.sla import SLAClock
from caseflow.services.scheduler_service import register_job
from caseflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Breach sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sla_breach_sweep", every_minutes=15)
def sla_breach_sweep(app, now=None) -> dict[str, Any]:
    """Detect SLA breaches on running clocks."""
    from caseflow.services.sla_service import detect_breaches

    results = detect_breaches(now=now)
    logger.info("SLA breach sweep: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Warning sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sla_warning_sweep", every_minutes=60)
def sla_warning_sweep(app, now=None, warning_days: int | None = None) -> dict[str, Any]:
    """Record a one-time warning for clocks approaching their deadline."""
    from caseflow.services.escalation import fire_warning
    from caseflow.services.sla_service import get_approaching_breaches

    now = now or utcnow()
    if warning_days is None:
        warning_days = app.config.get("SLA_DEFAULT_WARNING_DAYS", 3)
    results = {"warning_days": warning_days, "approaching": 0, "warnings_created": 0, "errors": 0}

    for item in get_approaching_breaches(warning_days, now=now):
        results["approaching"] += 1
        try:
            clock = db.session.get(SLAClock, item["id"])
            if fire_warning(clock, warning_days, now=now) is not None:
                results["warnings_created"] += 1
            db.session.commit()
        except Exception:
            db.session.rollback()
            results["errors"] += 1
            logger.exception("Warning sweep failed for clock %s", item["id"], extra={"clock_id": item["id"]})

    logger.info("SLA warning sweep: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Escalation check
# ═══════════════════════════════════════════════════════════════════════════

@register_job("escalation_check", every_minutes=15)
def escalation_check(app, now=None) -> dict[str, Any]:
    """Fire escalation rules whose thresholds are reached."""
    from caseflow.services.escalation import process_escalations

    results = process_escalations(now=now)
    logger.info("Escalation check: %s", results)
    return results
