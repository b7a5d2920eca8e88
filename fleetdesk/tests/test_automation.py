"""
Automation engine tests: the escalation scan with and without rules,
notification dedupe, task idempotency, failure logging and SLA reminders.
"""
from unittest.mock import patch

import pytest

from fleetdesk.core.errors import EscalationScanError, ForbiddenError, ValidationError
from fleetdesk.db.models import (
    AutomationRunLog, AutomationRule, AuditLog, Notification, OpsTask, NotificationType
)
from fleetdesk.services import automation
from fleetdesk.services.automation import (
    ActionConfig, RuleCondition, create_rule, update_rule, day_stamp, default_dedupe_key,
    get_escalation_queue, run_escalation_scan, run_sla_reminder_sweep, trigger_escalation_scan,
)
from fleetdesk.services.escalation import DEFAULT_THRESHOLDS, ScoringInput, score_rfq


def sla_notifications(db):
    return db.query(Notification).filter(
        Notification.notification_type == NotificationType.SLA.value
    ).order_by(Notification.id).all()


@pytest.fixture
def escalated_pair(rfq_factory, admin_user):
    """Enterprise RFQs at 14h (critical) and 10h (warning), plus one fresh RFQ."""
    critical = rfq_factory(hours_old=14, service_tier="enterprise")
    warning = rfq_factory(hours_old=10, service_tier="enterprise")
    rfq_factory(hours_old=2, service_tier="enterprise")
    return critical, warning


class TestDefaultPath:
    """Organizations without active rules get the default alert."""

    def test_scan_notifies_and_opens_tasks(self, db, org, admin_user, escalated_pair, clock):
        critical, warning = escalated_pair

        result = run_escalation_scan(db, org.id, clock=clock)

        assert result.status == "success"
        assert result.matched_items == 2
        assert result.notifications_sent == 2
        assert result.tasks_created == 2
        assert [i.rfq_id for i in result.items] == [critical.id, warning.id]

        notes = sla_notifications(db)
        assert [n.title for n in notes] == ["Critical SLA escalation", "SLA escalation warning"]
        assert notes[0].dedupe_key == f"escalation:2026-03-02:{critical.id}:critical:{admin_user.id}"
        assert notes[0].message == f"RFQ {critical.reference} is 14h old (target 8h)."

        tasks = {t.rfq_id: t for t in db.query(OpsTask).all()}
        assert tasks[critical.id].source == "sla_escalation:critical"
        assert tasks[critical.id].priority == "critical"
        assert tasks[warning.id].source == "sla_escalation:warning"
        assert tasks[warning.id].priority == "high"

        run = db.query(AutomationRunLog).one()
        assert run.id == result.run_id
        assert (run.status, run.notifications, run.tasks_created) == ("success", 2, 2)
        assert run.extra_data == {"matched_items": 2, "active_rules": 0}

    def test_rescan_same_day_is_idempotent(self, db, org, escalated_pair, clock):
        run_escalation_scan(db, org.id, clock=clock)
        clock.advance(hours=1)

        second = run_escalation_scan(db, org.id, clock=clock)

        assert second.tasks_created == 0
        assert len(sla_notifications(db)) == 2
        assert db.query(OpsTask).count() == 2
        assert db.query(AutomationRunLog).count() == 2

    def test_next_day_notifies_again(self, db, org, escalated_pair, clock):
        run_escalation_scan(db, org.id, clock=clock)
        clock.advance(days=1)

        run_escalation_scan(db, org.id, clock=clock)

        # all three RFQs are critical a day later
        notes = sla_notifications(db)
        assert len(notes) == 5
        assert all(":2026-03-03:" in n.dedupe_key for n in notes[2:])
        assert db.query(OpsTask).filter(OpsTask.source == "sla_escalation:critical").count() == 3
        assert db.query(OpsTask).filter(OpsTask.source == "sla_escalation:warning").count() == 1

    def test_resolved_task_is_reopened_by_next_scan(self, db, org, escalated_pair, clock):
        from fleetdesk.services.ops_tasks import update_task
        run_escalation_scan(db, org.id, clock=clock)
        task = db.query(OpsTask).filter(OpsTask.source == "sla_escalation:critical").one()
        update_task(db, org.id, task.id, {"status": "resolved"}, now=clock.now())

        result = run_escalation_scan(db, org.id, clock=clock)

        assert result.tasks_created == 1
        assert db.query(OpsTask).filter(OpsTask.source == "sla_escalation:critical").count() == 2

    def test_nothing_escalated(self, db, org, admin_user, rfq_factory, clock):
        rfq_factory(hours_old=1, service_tier="enterprise")

        result = run_escalation_scan(db, org.id, clock=clock)

        assert (result.matched_items, result.notifications_sent, result.tasks_created) == (0, 0, 0)
        assert db.query(AutomationRunLog).count() == 1

    def test_inactive_rules_leave_default_path_on(self, db, org, admin_user, escalated_pair, clock):
        rule = create_rule(db, org.id, {"name": "Standard only", "condition": {"service_tier": "standard"}},
                           clock=clock)
        update_rule(db, org.id, rule.id, {"active": False}, clock=clock)

        result = run_escalation_scan(db, org.id, clock=clock)

        assert result.active_rules == 0
        assert len(sla_notifications(db)) == 2


class TestDedupeKeys:
    def test_stable_within_day_distinct_across_days(self, clock):
        item = score_rfq(ScoringInput(
            rfq_id=7, reference="RFQ-X", service_tier="enterprise", status="received",
            created_at=clock.now().replace(hour=0), sla_target_hours=8,
        ), DEFAULT_THRESHOLDS, clock.now())

        morning = default_dedupe_key(day_stamp(clock.now()), item)
        later = default_dedupe_key(day_stamp(clock.now().replace(hour=23, minute=59)), item)
        tomorrow = default_dedupe_key(day_stamp(clock.advance(days=1)), item)

        assert morning == later == "escalation:2026-03-02:7:critical"
        assert tomorrow != morning


class TestRules:
    """Organizations with active rules notify only through them."""

    def test_rules_present_but_unmatched_send_nothing(self, db, org, escalated_pair, clock):
        create_rule(db, org.id, {"name": "Standard only", "condition": {"service_tier": "standard"}},
                    clock=clock)

        result = run_escalation_scan(db, org.id, clock=clock)

        assert result.active_rules == 1
        assert result.notifications_sent == 0
        assert sla_notifications(db) == []
        # tasks do not depend on rules
        assert result.tasks_created == 2

    def test_matching_and_rendering(self, db, org, escalated_pair, clock):
        critical, _ = escalated_pair
        loud = create_rule(db, org.id, {
            "name": "Critical enterprise",
            "condition": {"service_tier": "enterprise", "escalation_level": "critical"},
            "action_config": {"title_prefix": "[ENT]", "message_suffix": "Call the account owner."},
        }, clock=clock)
        aged = create_rule(db, org.id, {"name": "Twelve hours plus", "condition": {"min_age_hours": 12}},
                           clock=clock)

        result = run_escalation_scan(db, org.id, clock=clock)

        assert result.notifications_sent == 2
        notes = sla_notifications(db)
        assert [n.title for n in notes] == ["[ENT] Critical SLA escalation", "Critical SLA escalation"]
        assert notes[0].message == f"RFQ {critical.reference} is 14h old (target 8h). Call the account owner."
        assert notes[0].extra_data["rule_id"] == loud.id
        assert notes[1].extra_data["rule_id"] == aged.id
        assert f":{loud.id}:{critical.id}:critical:" in notes[0].dedupe_key

    def test_last_run_at_set_for_active_rules(self, db, org, escalated_pair, clock):
        active = create_rule(db, org.id, {"name": "No matches", "condition": {"min_age_hours": 500}},
                             clock=clock)
        paused = create_rule(db, org.id, {"name": "Paused rule", "active": False}, clock=clock)

        run_escalation_scan(db, org.id, clock=clock)

        db.refresh(active)
        db.refresh(paused)
        assert active.last_run_at == clock.now()
        assert paused.last_run_at is None

    @pytest.mark.parametrize("data", [
        {"name": "ab"},
        {"name": "x" * 121},
        {"name": "Bad age", "condition": {"min_age_hours": 721}},
        {"name": "Negative age", "condition": {"min_age_hours": -1}},
        {"name": "Bad tier", "condition": {"service_tier": "gold"}},
        {"name": "Bad level", "condition": {"escalation_level": "severe"}},
        {"name": "Long prefix", "action_config": {"title_prefix": "p" * 81}},
        {"name": "Long suffix", "action_config": {"message_suffix": "s" * 201}},
        {"name": "Wrong trigger", "trigger_type": "offer_expiry"},
    ])
    def test_invalid_rules_rejected(self, db, org, clock, data):
        with pytest.raises(ValidationError):
            create_rule(db, org.id, data, clock=clock)
        assert db.query(AutomationRule).count() == 0

    def test_condition_round_trip_drops_unset(self):
        condition = RuleCondition.from_json({"service_tier": "priority", "escalation_level": ""})
        assert condition.to_json() == {"service_tier": "priority"}

    def test_action_config_rendering(self):
        config = ActionConfig.from_json({"title_prefix": "  [VIP] "})
        assert config.render_title("SLA escalation warning") == "[VIP] SLA escalation warning"
        assert config.render_message("RFQ is late.") == "RFQ is late."


class TestScanFailure:
    """Failures are recorded and surfaced; completed items stand."""

    def test_failed_run_logged_with_partial_counts(self, db, org, escalated_pair, clock):
        critical, warning = escalated_pair

        with patch.object(automation, "_ensure_escalation_task",
                          side_effect=[True, RuntimeError("task store unavailable")]):
            with pytest.raises(EscalationScanError) as excinfo:
                run_escalation_scan(db, org.id, clock=clock)

        assert excinfo.value.status_code == 500
        run = db.query(AutomationRunLog).one()
        assert run.status == "failed"
        assert run.error_message == "task store unavailable"
        assert run.tasks_created == 1
        notes = sla_notifications(db)
        assert [n.extra_data["rfq_id"] for n in notes] == [critical.id, warning.id]

    def test_logged_notifications_match_stored_rows(self, db, org, escalated_pair, clock):
        with patch.object(automation, "_ensure_escalation_task",
                          side_effect=RuntimeError("task store unavailable")):
            with pytest.raises(EscalationScanError):
                run_escalation_scan(db, org.id, clock=clock)

        run = db.query(AutomationRunLog).one()
        assert run.notifications == len(sla_notifications(db)) == 1
        assert run.tasks_created == 0

    def test_rules_stamped_when_scan_fails(self, db, org, admin_user, escalated_pair, clock):
        rule = create_rule(db, org.id, {"name": "Anything critical",
                                        "condition": {"escalation_level": "critical"}}, clock=clock)
        unmatched = create_rule(db, org.id, {"name": "Standard only",
                                             "condition": {"service_tier": "standard"}}, clock=clock)
        clock.advance(minutes=5)

        with patch.object(automation, "_ensure_escalation_task",
                          side_effect=RuntimeError("task store unavailable")):
            with pytest.raises(EscalationScanError):
                run_escalation_scan(db, org.id, clock=clock)

        db.refresh(rule)
        db.refresh(unmatched)
        assert rule.last_run_at == clock.now()
        assert unmatched.last_run_at == clock.now()

    def test_run_log_is_append_only(self, db, org, escalated_pair, clock):
        run_escalation_scan(db, org.id, clock=clock)
        run = db.query(AutomationRunLog).one()

        run.status = "failed"
        with pytest.raises(ValueError):
            db.flush()
        db.rollback()


class TestManualTrigger:
    def test_admin_trigger_is_audited(self, db, admin_ctx, escalated_pair, clock):
        result = trigger_escalation_scan(db, admin_ctx, clock=clock)

        audit = db.query(AuditLog).filter(AuditLog.action == "automation.scan").one()
        assert audit.entity_id == result.run_id
        run = db.query(AutomationRunLog).one()
        assert run.source == "manual"

    def test_member_cannot_trigger(self, db, member_ctx, clock):
        with pytest.raises(ForbiddenError):
            trigger_escalation_scan(db, member_ctx, clock=clock)


class TestQueue:
    def test_queue_is_capped_but_summary_is_complete(self, db, org, admin_user, rfq_factory, clock):
        for hours in range(30, 35):
            rfq_factory(hours_old=hours, service_tier="priority")

        queue = get_escalation_queue(db, org.id, clock=clock, limit=3)

        assert len(queue["items"]) == 3
        assert queue["total_escalated"] == 5
        assert queue["summary"]["priority"]["warning"] == 5
        assert queue["generated_at"] == clock.now()

    def test_queue_writes_nothing(self, db, org, escalated_pair, clock):
        get_escalation_queue(db, org.id, clock=clock)
        assert db.query(AutomationRunLog).count() == 0
        assert db.query(OpsTask).count() == 0


class TestSLAReminders:
    """Reminders for RFQs still waiting on an offer."""

    def test_reminders_by_age(self, db, org, admin_user, rfq_factory, clock):
        nearing = rfq_factory(hours_old=10, service_tier="enterprise")
        overdue = rfq_factory(hours_old=20, service_tier="enterprise")
        rfq_factory(hours_old=10, service_tier="standard")

        created = run_sla_reminder_sweep(db, org.id, clock=clock)

        assert created == 2
        titles = {n.extra_data["rfq_id"]: n.title for n in sla_notifications(db)}
        assert titles == {nearing.id: "RFQ nearing SLA breach", overdue.id: "RFQ overdue for offer"}

    def test_sweep_deduped_per_day(self, db, org, admin_user, rfq_factory, clock):
        rfq_factory(hours_old=10, service_tier="enterprise")
        run_sla_reminder_sweep(db, org.id, clock=clock)

        assert run_sla_reminder_sweep(db, org.id, clock=clock) == 0
        clock.advance(days=1)
        assert run_sla_reminder_sweep(db, org.id, clock=clock) == 1

    def test_sent_offer_silences_reminder(self, db, org, rfq_factory, offer_factory, clock):
        rfq = rfq_factory(hours_old=10, service_tier="enterprise")
        offer_factory(rfq)

        assert run_sla_reminder_sweep(db, org.id, clock=clock) == 0

    def test_no_admins_no_reminders(self, db, org, rfq_factory, clock):
        rfq_factory(hours_old=100)
        assert run_sla_reminder_sweep(db, org.id, clock=clock) == 0
