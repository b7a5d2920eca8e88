"""
RFQ lifecycle tests: creation side effects, the status state machine,
closing, visibility and the message thread.
"""
from datetime import timedelta

import pytest

from fleetdesk.core.errors import ForbiddenError, NotFoundError, StateConflictError, ValidationError
from fleetdesk.db.models import (
    RFQEvent, Notification, OpsTask, AuditLog, RFQStatus, TaskPriority
)
from fleetdesk.services.rfq_lifecycle import (
    compute_mandate_completeness, update_rfq_status, close_rfq,
    post_message, get_rfq, list_rfqs, compute_cycle_metrics, UPSELL_SOURCE,
)


def event_types(db, rfq):
    rows = db.query(RFQEvent).filter(RFQEvent.rfq_id == rfq.id).order_by(RFQEvent.sequence).all()
    return [r.event_type for r in rows]


class TestMandateCompleteness:
    """Six weighted-equally checks, rounded to a percentage."""

    def test_all_checks_pass(self, valid_rfq):
        assert compute_mandate_completeness(valid_rfq) == 100

    def test_partial(self, valid_rfq):
        payload = dict(valid_rfq, business_goal="", risk_tolerance=None, budget_confidence=None)
        assert compute_mandate_completeness(payload) == 50

    def test_five_of_six_rounds(self, valid_rfq):
        payload = dict(valid_rfq, budget_confidence=None)
        assert compute_mandate_completeness(payload) == 83

    def test_whitespace_does_not_count(self, valid_rfq):
        payload = dict(valid_rfq, business_goal="      ", key_specs="  short   ")
        assert compute_mandate_completeness(payload) == 67

    def test_empty_payload(self):
        assert compute_mandate_completeness({}) == 0


class TestCreateRFQ:
    """Creation in Received state."""

    @pytest.mark.parametrize("tier,hours", [("standard", 72), ("priority", 24), ("enterprise", 8)])
    def test_sla_target_follows_tier(self, rfq_factory, tier, hours):
        rfq = rfq_factory(service_tier=tier)
        assert rfq.sla_target_hours == hours
        assert rfq.status == RFQStatus.RECEIVED

    def test_reference_format(self, rfq_factory):
        rfq = rfq_factory()
        assert rfq.reference.startswith("RFQ-20260302-")
        assert len(rfq.reference) == len("RFQ-20260302-") + 6

    def test_initial_events_and_snapshot(self, db, rfq_factory, valid_rfq):
        rfq = rfq_factory()

        events = db.query(RFQEvent).filter(RFQEvent.rfq_id == rfq.id).order_by(RFQEvent.sequence).all()

        assert [(e.sequence, e.event_type) for e in events] == [
            (1, "status_change"),
            (2, "rfq_created"),
        ]
        assert events[0].payload == {"from": None, "to": "received"}
        assert events[1].payload["mandate_completeness"] == 100
        assert events[1].payload["key_specs"] == valid_rfq["key_specs"]

    def test_admins_notified(self, db, rfq_factory, admin_user):
        rfq = rfq_factory()

        notes = db.query(Notification).filter(Notification.user_id == admin_user.id).all()

        assert len(notes) == 1
        assert notes[0].title == "New RFQ received"
        assert notes[0].extra_data["rfq_id"] == rfq.id

    def test_upsell_task_for_complete_enterprise_core(self, db, rfq_factory, admin_user):
        rfq = rfq_factory(service_tier="enterprise", service_package="core")

        task = db.query(OpsTask).filter(OpsTask.rfq_id == rfq.id).one()

        assert task.source == UPSELL_SOURCE
        assert task.priority == TaskPriority.CRITICAL
        assert task.due_at == rfq.created_at + timedelta(hours=6)

    def test_upsell_task_priority_tier(self, db, rfq_factory, admin_user):
        rfq = rfq_factory(service_tier="priority", service_package="core")
        task = db.query(OpsTask).filter(OpsTask.rfq_id == rfq.id).one()
        assert task.priority == TaskPriority.HIGH

    @pytest.mark.parametrize("overrides", [
        {"service_tier": "standard", "service_package": "core"},
        {"service_tier": "enterprise", "service_package": "concierge"},
        {"service_tier": "enterprise", "service_package": "core",
         "business_goal": None, "risk_tolerance": None},
    ])
    def test_no_upsell_task_otherwise(self, db, rfq_factory, admin_user, overrides):
        rfq_factory(**overrides)
        assert db.query(OpsTask).count() == 0

    @pytest.mark.parametrize("overrides", [
        {"key_specs": "too short"},
        {"delivery_country": " "},
        {"service_tier": "platinum"},
        {"package_addons": ["Teleportation"]},
        {"year_min": 2022, "year_max": 2018},
        {"budget_min": 100000, "budget_max": 50000},
    ])
    def test_invalid_payload_rejected_without_writes(self, db, rfq_factory, overrides):
        with pytest.raises(ValidationError):
            rfq_factory(**overrides)
        assert db.query(RFQEvent).count() == 0

    def test_sla_target_cannot_change(self, rfq_factory):
        rfq = rfq_factory(service_tier="enterprise")
        assert rfq.sla_target_hours == 8
        with pytest.raises(ValueError):
            rfq.sla_target_hours = 24


class TestStatusMachine:
    """Admin-driven moves."""

    def test_received_to_in_progress(self, db, rfq_factory, admin_ctx, member_user, clock):
        rfq = rfq_factory()

        updated = update_rfq_status(db, admin_ctx, rfq.id, "in_progress", clock=clock)

        assert updated.status == RFQStatus.IN_PROGRESS
        last = db.query(RFQEvent).filter(RFQEvent.rfq_id == rfq.id).order_by(RFQEvent.sequence.desc()).first()
        assert last.event_type == "status_change"
        assert last.payload == {"from": "received", "to": "in_progress"}
        note = db.query(Notification).filter(Notification.user_id == member_user.id).one()
        assert note.title == "RFQ status updated"
        assert db.query(AuditLog).filter(AuditLog.action == "rfq.status_update").count() == 1

    def test_same_status_is_a_no_op(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        before = event_types(db, rfq)

        update_rfq_status(db, admin_ctx, rfq.id, "received", clock=clock)

        assert event_types(db, rfq) == before

    def test_backward_move_rejected(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        update_rfq_status(db, admin_ctx, rfq.id, "in_progress", clock=clock)

        with pytest.raises(StateConflictError):
            update_rfq_status(db, admin_ctx, rfq.id, "received", clock=clock)

    def test_pending_execution_only_via_acceptance(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        with pytest.raises(StateConflictError):
            update_rfq_status(db, admin_ctx, rfq.id, "pending_execution", clock=clock)

    def test_won_requires_close_action(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        with pytest.raises(ValidationError):
            update_rfq_status(db, admin_ctx, rfq.id, "won", clock=clock)

    def test_unknown_status(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        with pytest.raises(ValidationError):
            update_rfq_status(db, admin_ctx, rfq.id, "archived", clock=clock)

    def test_member_cannot_move_status(self, db, rfq_factory, member_ctx, clock):
        rfq = rfq_factory()
        with pytest.raises(ForbiddenError):
            update_rfq_status(db, member_ctx, rfq.id, "in_progress", clock=clock)

    def test_internal_notes_without_status_change(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        before = event_types(db, rfq)

        updated = update_rfq_status(db, admin_ctx, rfq.id, "received", clock=clock,
                                    internal_ops_notes="Waiting on dealer callback")

        assert updated.internal_ops_notes == "Waiting on dealer callback"
        assert event_types(db, rfq) == before


class TestCloseRFQ:
    """Terminal states."""

    def test_close_as_lost(self, db, rfq_factory, admin_ctx, member_user, clock):
        rfq = rfq_factory()

        closed = close_rfq(db, admin_ctx, rfq.id, "lost", "  Budget frozen  ", clock=clock)

        assert closed.status == RFQStatus.LOST
        assert closed.close_reason == "Budget frozen"
        assert event_types(db, rfq)[-2:] == ["status_change", "rfq_closed"]
        assert db.query(Notification).filter(
            Notification.user_id == member_user.id,
            Notification.title == "Request closed as Lost",
        ).count() == 1

    def test_reason_required(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        with pytest.raises(ValidationError):
            close_rfq(db, admin_ctx, rfq.id, "won", "   ", clock=clock)

    def test_outcome_must_be_terminal(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        with pytest.raises(ValidationError):
            close_rfq(db, admin_ctx, rfq.id, "in_progress", "Because", clock=clock)

    def test_reclose_same_outcome_is_a_no_op(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        close_rfq(db, admin_ctx, rfq.id, "won", "Signed", clock=clock)
        before = event_types(db, rfq)

        close_rfq(db, admin_ctx, rfq.id, "won", "Signed again", clock=clock)

        assert event_types(db, rfq) == before

    def test_reclose_other_outcome_conflicts(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        close_rfq(db, admin_ctx, rfq.id, "won", "Signed", clock=clock)
        with pytest.raises(StateConflictError):
            close_rfq(db, admin_ctx, rfq.id, "lost", "Changed mind", clock=clock)

    def test_closed_rfq_rejects_status_moves(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        close_rfq(db, admin_ctx, rfq.id, "lost", "No stock", clock=clock)
        before = event_types(db, rfq)

        with pytest.raises(StateConflictError):
            update_rfq_status(db, admin_ctx, rfq.id, "in_progress", clock=clock)
        assert event_types(db, rfq) == before


class TestEventLog:
    """Append-only history."""

    def test_sequences_are_contiguous(self, db, rfq_factory, admin_ctx, clock):
        rfq = rfq_factory()
        update_rfq_status(db, admin_ctx, rfq.id, "in_progress", clock=clock)
        post_message(db, admin_ctx, rfq.id, "Sourcing two candidates", clock=clock)

        sequences = [
            e.sequence for e in
            db.query(RFQEvent).filter(RFQEvent.rfq_id == rfq.id).order_by(RFQEvent.sequence).all()
        ]
        assert sequences == [1, 2, 3, 4]

    def test_events_cannot_be_updated(self, db, rfq_factory):
        rfq = rfq_factory()
        event = db.query(RFQEvent).filter(RFQEvent.rfq_id == rfq.id).first()

        event.event_type = "message"
        with pytest.raises(ValueError):
            db.flush()
        db.rollback()

    def test_events_cannot_be_deleted(self, db, rfq_factory):
        rfq = rfq_factory()
        event = db.query(RFQEvent).filter(RFQEvent.rfq_id == rfq.id).first()

        db.delete(event)
        with pytest.raises(ValueError):
            db.flush()
        db.rollback()


class TestVisibility:
    """Organization and ownership scoping."""

    def test_member_sees_only_own_rfqs(self, db, rfq_factory, second_member, ctx_of, member_ctx):
        mine = rfq_factory()
        theirs = rfq_factory(ctx=ctx_of(second_member))

        assert [r.id for r in list_rfqs(db, member_ctx)] == [mine.id]
        with pytest.raises(NotFoundError):
            get_rfq(db, member_ctx, theirs.id)

    def test_admin_sees_whole_organization(self, db, rfq_factory, second_member, ctx_of, admin_ctx):
        rfq_factory()
        rfq_factory(ctx=ctx_of(second_member))
        assert len(list_rfqs(db, admin_ctx)) == 2

    def test_other_organization_is_not_found(self, db, rfq_factory, outsider, ctx_of):
        rfq = rfq_factory()
        with pytest.raises(NotFoundError):
            get_rfq(db, ctx_of(outsider), rfq.id)

    def test_list_filters(self, db, rfq_factory, admin_ctx, clock):
        first = rfq_factory(service_tier="priority")
        rfq_factory(service_tier="standard")
        update_rfq_status(db, admin_ctx, first.id, "in_progress", clock=clock)

        assert [r.id for r in list_rfqs(db, admin_ctx, status="in_progress")] == [first.id]
        assert [r.id for r in list_rfqs(db, admin_ctx, service_tier="priority")] == [first.id]
        with pytest.raises(ValidationError):
            list_rfqs(db, admin_ctx, status="bogus")


class TestMessages:
    """Thread messages notify the other side."""

    def test_buyer_message_notifies_admins(self, db, rfq_factory, member_ctx, admin_user, clock):
        rfq = rfq_factory()

        message = post_message(db, member_ctx, rfq.id, "Can you check the service history?", clock=clock)

        assert message.sender_type == "buyer"
        assert db.query(Notification).filter(
            Notification.user_id == admin_user.id,
            Notification.title == "Buyer message",
        ).count() == 1
        assert event_types(db, rfq)[-1] == "message"

    def test_admin_message_notifies_owner(self, db, rfq_factory, admin_ctx, member_user, clock):
        rfq = rfq_factory()

        post_message(db, admin_ctx, rfq.id, "Inspection booked for Friday", clock=clock)

        assert db.query(Notification).filter(
            Notification.user_id == member_user.id,
            Notification.title == "Admin replied",
        ).count() == 1

    @pytest.mark.parametrize("body", ["", "   ", "x" * 5001])
    def test_message_length_enforced(self, db, rfq_factory, member_ctx, clock, body):
        rfq = rfq_factory()
        with pytest.raises(ValidationError):
            post_message(db, member_ctx, rfq.id, body, clock=clock)


class TestCycleMetrics:
    def test_first_offer_and_cycle_hours(self, db, rfq_factory, offer_factory, admin_ctx, clock):
        rfq = rfq_factory(hours_old=10)
        offer_factory(rfq)
        clock.advance(hours=5)
        close_rfq(db, admin_ctx, rfq.id, "lost", "Went with a competitor", clock=clock)
        db.refresh(rfq)

        metrics = compute_cycle_metrics(rfq)

        assert metrics == {"first_offer_hours": 10.0, "cycle_hours": 15.0}

    def test_open_rfq_has_no_cycle(self, rfq_factory):
        rfq = rfq_factory()
        assert compute_cycle_metrics(rfq) == {"first_offer_hours": None, "cycle_hours": None}
