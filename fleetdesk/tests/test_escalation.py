"""
Escalation scorer tests.

The scorer is pure, so most cases build ScoringInput values directly and pin
"now" instead of touching the database.
"""
from datetime import datetime, timedelta

import pytest

from fleetdesk.services.escalation import (
    TierThresholds, ScoringInput, DEFAULT_THRESHOLDS,
    escalation_ratio, classify_ratio, score_rfq, score_population,
    rank_escalations, summarize_escalations, load_scoring_inputs,
)
from fleetdesk.db.models import EscalationLevel

NOW = datetime(2026, 3, 2, 12, 0, 0)

LEVEL_RANK = {None: 0, EscalationLevel.WARNING.value: 1, EscalationLevel.CRITICAL.value: 2}


def make_input(rfq_id, hours_old, tier="enterprise", sla=8, status="received", has_offer=False):
    return ScoringInput(
        rfq_id=rfq_id,
        reference=f"RFQ-TEST-{rfq_id:03d}",
        service_tier=tier,
        status=status,
        created_at=NOW - timedelta(hours=hours_old),
        sla_target_hours=sla,
        has_offer=has_offer,
    )


class TestClassification:
    """Ratio thresholds."""

    def test_enterprise_example_population(self):
        """7h/9h/13h enterprise RFQs score none/warning/critical, oldest first."""
        items = [make_input(1, 7), make_input(2, 9), make_input(3, 13)]

        ranked = rank_escalations(items, {"enterprise": DEFAULT_THRESHOLDS}, NOW)

        assert [(i.rfq_id, i.escalation_level) for i in ranked] == [
            (3, "critical"),
            (2, "warning"),
        ]
        assert ranked[0].age_hours == 13
        assert ranked[1].age_hours == 9

    def test_boundaries_are_inclusive(self):
        assert classify_ratio(1.0, DEFAULT_THRESHOLDS) == EscalationLevel.WARNING
        assert classify_ratio(1.5, DEFAULT_THRESHOLDS) == EscalationLevel.CRITICAL
        assert classify_ratio(0.999, DEFAULT_THRESHOLDS) is None

    def test_zero_or_missing_sla_target_treated_as_one_hour(self):
        assert escalation_ratio(3.0, 0) == 3.0
        assert escalation_ratio(3.0, None) == 3.0

    def test_age_hours_is_floored(self):
        scored = score_rfq(make_input(1, 12.9), DEFAULT_THRESHOLDS, NOW)
        assert scored.age_hours == 12

    def test_level_never_decreases_with_age(self):
        """Older is never less escalated at fixed thresholds."""
        thresholds = TierThresholds(warning_ratio=0.8, critical_ratio=2.0)
        previous_rank = 0
        previous_ratio = -1.0
        for minutes in range(0, 40 * 60, 30):
            item = make_input(1, minutes / 60.0)
            ratio = escalation_ratio(minutes / 60.0, item.sla_target_hours)
            level = classify_ratio(ratio, thresholds)
            rank = LEVEL_RANK[level.value if level else None]
            assert ratio > previous_ratio
            assert rank >= previous_rank
            previous_rank, previous_ratio = rank, ratio

    def test_closed_rfqs_never_escalate(self):
        for status in ("won", "lost"):
            assert score_rfq(make_input(1, 500, status=status), DEFAULT_THRESHOLDS, NOW) is None

    def test_per_tier_thresholds_are_applied(self):
        items = [make_input(1, 10, tier="standard", sla=72), make_input(2, 10)]
        thresholds = {
            "standard": TierThresholds(warning_ratio=0.5, critical_ratio=1.0),
            "enterprise": TierThresholds(warning_ratio=2.0, critical_ratio=3.0),
        }

        ranked = score_population(items, thresholds, NOW)

        # standard: 10/72 < 0.5, enterprise: 10/8 < 2.0
        assert ranked == []


class TestRanking:
    """Queue ordering, cap and summary."""

    def test_sorted_by_age_with_id_tiebreak(self):
        items = [make_input(5, 20), make_input(2, 20), make_input(9, 30)]
        ranked = score_population(items, {}, NOW)
        assert [i.rfq_id for i in ranked] == [9, 2, 5]

    def test_ranking_uses_exact_age_not_floored(self):
        items = [make_input(1, 20.2), make_input(2, 20.7)]
        ranked = score_population(items, {}, NOW)
        assert [i.rfq_id for i in ranked] == [2, 1]

    def test_cap_limits_queue_but_not_summary(self):
        items = [make_input(i, 10 + i) for i in range(1, 31)]

        escalated = score_population(items, {}, NOW)
        queue = rank_escalations(items, {}, NOW, limit=20)
        summary = summarize_escalations(escalated)

        assert len(queue) == 20
        assert len(escalated) == 30
        enterprise = summary["enterprise"]
        assert enterprise["warning"] + enterprise["critical"] == 30

    def test_summary_lists_every_tier(self):
        summary = summarize_escalations([])
        assert set(summary) == {"standard", "priority", "enterprise"}
        assert summary["priority"] == {"warning": 0, "critical": 0}

    def test_summary_reports_thresholds_per_tier(self):
        thresholds = {"priority": TierThresholds(warning_ratio=0.8, critical_ratio=2.0)}
        summary = summarize_escalations([], thresholds)

        assert summary["priority"]["warning_threshold_ratio"] == 0.8
        assert summary["priority"]["critical_threshold_ratio"] == 2.0
        assert summary["standard"]["warning_threshold_ratio"] == 1.0
        assert summary["standard"]["critical_threshold_ratio"] == 1.5

    def test_item_serialization(self):
        scored = score_rfq(make_input(4, 9, has_offer=True), DEFAULT_THRESHOLDS, NOW)
        data = scored.to_dict()
        assert data["rfq_id"] == 4
        assert data["escalation_level"] == "warning"
        assert data["has_offer"] is True
        assert data["ratio"] == pytest.approx(1.125)


class TestScoringInputs:
    """Reading open RFQs from the database."""

    def test_only_open_rfqs_of_the_organization(self, db, rfq_factory, admin_ctx, outsider, clock, ctx_of):
        from fleetdesk.services.rfq_lifecycle import close_rfq

        kept = rfq_factory(hours_old=10, service_tier="enterprise")
        closed = rfq_factory(hours_old=50)
        close_rfq(db, admin_ctx, closed.id, "lost", "Buyer went elsewhere", clock=clock)
        rfq_factory(hours_old=10, ctx=ctx_of(outsider))

        inputs = load_scoring_inputs(db, admin_ctx["org_id"])

        assert [i.rfq_id for i in inputs] == [kept.id]
        assert inputs[0].sla_target_hours == 8

    def test_has_offer_reflects_sent_offers(self, db, rfq_factory, offer_factory, admin_ctx):
        with_offer = rfq_factory(hours_old=5)
        without = rfq_factory(hours_old=4)
        offer_factory(with_offer)

        flags = {i.rfq_id: i.has_offer for i in load_scoring_inputs(db, admin_ctx["org_id"])}

        assert flags == {with_offer.id: True, without.id: False}

    def test_tier_filter_and_limit(self, db, rfq_factory, admin_ctx):
        for hours in (1, 2, 3):
            rfq_factory(hours_old=hours, service_tier="priority")
        rfq_factory(hours_old=1, service_tier="standard")

        inputs = load_scoring_inputs(db, admin_ctx["org_id"], service_tier="priority", limit=2)

        assert len(inputs) == 2
        assert all(i.service_tier == "priority" for i in inputs)
        # newest first
        assert inputs[0].created_at > inputs[1].created_at
