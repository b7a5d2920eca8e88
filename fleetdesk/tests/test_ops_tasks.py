"""
Ops task tests: manual tasks, status transitions, ordering and the
one-active-task-per-source guarantee.
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from fleetdesk.core.errors import NotFoundError, ValidationError
from fleetdesk.db.models import OpsTask, TaskPriority
from fleetdesk.services.ops_tasks import create_task, ensure_open_task, list_tasks, update_task


class TestCreateTask:
    def test_manual_task(self, db, org, admin_user, rfq_factory, clock):
        rfq = rfq_factory()

        task = create_task(db, org.id, title="Call dealer about inspection", priority="high",
                           rfq_id=rfq.id, assignee_id=admin_user.id, now=clock.now())

        assert task.status == "open"
        assert task.source == "manual"
        assert task.assignee_id == admin_user.id
        assert task.created_at == clock.now()

    @pytest.mark.parametrize("kwargs", [
        {"title": "ab"},
        {"title": "x" * 181},
        {"title": "Valid title", "priority": "urgent"},
    ])
    def test_invalid_task(self, db, org, kwargs):
        with pytest.raises(ValidationError):
            create_task(db, org.id, **kwargs)

    def test_rfq_must_belong_to_organization(self, db, other_org, rfq_factory):
        rfq = rfq_factory()
        with pytest.raises(NotFoundError):
            create_task(db, other_org.id, title="Cross-tenant", rfq_id=rfq.id)

    def test_assignee_must_belong_to_organization(self, db, org, outsider):
        with pytest.raises(ValidationError):
            create_task(db, org.id, title="Wrong assignee", assignee_id=outsider.id)

    def test_second_active_manual_task_for_rfq_rejected(self, db, org, rfq_factory):
        rfq = rfq_factory()
        create_task(db, org.id, title="First follow-up", rfq_id=rfq.id)
        with pytest.raises(ValidationError):
            create_task(db, org.id, title="Second follow-up", rfq_id=rfq.id)

    def test_tasks_without_rfq_are_unrestricted(self, db, org):
        create_task(db, org.id, title="Review dealer list")
        create_task(db, org.id, title="Review dealer list again")
        assert db.query(OpsTask).count() == 2


class TestEnsureOpenTask:
    """Idempotent opening used by automation."""

    def test_returns_existing_active_task(self, db, org, rfq_factory, clock):
        rfq = rfq_factory()
        first, created = ensure_open_task(db, organization_id=org.id, rfq_id=rfq.id,
                                          source="sla_escalation:warning", title="Follow up",
                                          now=clock.now())
        db.commit()
        second, created_again = ensure_open_task(db, organization_id=org.id, rfq_id=rfq.id,
                                                 source="sla_escalation:warning", title="Follow up",
                                                 now=clock.now())

        assert created is True
        assert created_again is False
        assert second.id == first.id

    def test_partial_unique_index_blocks_duplicate_active_rows(self, db, org, rfq_factory, clock):
        """A concurrent writer that skipped the lookup still cannot double-open."""
        rfq = rfq_factory()
        ensure_open_task(db, organization_id=org.id, rfq_id=rfq.id,
                         source="sla_escalation:critical", title="Act now", now=clock.now())
        db.commit()

        db.add(OpsTask(organization_id=org.id, rfq_id=rfq.id, source="sla_escalation:critical",
                       title="Act now", priority="critical", status="open",
                       created_at=clock.now(), updated_at=clock.now()))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_resolved_task_does_not_block(self, db, org, rfq_factory, clock):
        rfq = rfq_factory()
        task, _ = ensure_open_task(db, organization_id=org.id, rfq_id=rfq.id,
                                   source="sla_escalation:warning", title="Follow up", now=clock.now())
        db.commit()
        update_task(db, org.id, task.id, {"status": "resolved"}, now=clock.now())

        _, created = ensure_open_task(db, organization_id=org.id, rfq_id=rfq.id,
                                      source="sla_escalation:warning", title="Follow up", now=clock.now())

        assert created is True


class TestUpdateTask:
    def test_resolve_stamps_and_reopen_clears(self, db, org, clock):
        task = create_task(db, org.id, title="Chase paperwork", now=clock.now())

        clock.advance(hours=2)
        resolved = update_task(db, org.id, task.id, {"status": "resolved"}, now=clock.now())
        assert resolved.resolved_at == clock.now()

        reopened = update_task(db, org.id, task.id, {"status": "open"}, now=clock.now())
        assert reopened.resolved_at is None

    def test_acknowledge_keeps_resolved_at_empty(self, db, org, clock):
        task = create_task(db, org.id, title="Chase paperwork", now=clock.now())
        updated = update_task(db, org.id, task.id, {"status": "acknowledged"}, now=clock.now())
        assert updated.status == "acknowledged"
        assert updated.resolved_at is None

    def test_reopen_blocked_when_source_already_active(self, db, org, rfq_factory, clock):
        rfq = rfq_factory()
        old, _ = ensure_open_task(db, organization_id=org.id, rfq_id=rfq.id,
                                  source="sla_escalation:warning", title="Follow up", now=clock.now())
        db.commit()
        update_task(db, org.id, old.id, {"status": "resolved"}, now=clock.now())
        ensure_open_task(db, organization_id=org.id, rfq_id=rfq.id,
                         source="sla_escalation:warning", title="Follow up", now=clock.now())
        db.commit()

        with pytest.raises(ValidationError):
            update_task(db, org.id, old.id, {"status": "open"}, now=clock.now())

    def test_priority_assignee_and_due(self, db, org, admin_user, clock):
        task = create_task(db, org.id, title="Chase paperwork", now=clock.now())
        due = clock.now() + timedelta(days=1)

        updated = update_task(db, org.id, task.id, {
            "priority": "critical", "assignee_id": admin_user.id, "due_at": due,
        }, now=clock.now())

        assert updated.priority == TaskPriority.CRITICAL
        assert updated.assignee_id == admin_user.id
        assert updated.due_at == due

    def test_other_organization_cannot_update(self, db, org, other_org, clock):
        task = create_task(db, org.id, title="Chase paperwork", now=clock.now())
        with pytest.raises(NotFoundError):
            update_task(db, other_org.id, task.id, {"status": "resolved"})

    def test_unknown_status(self, db, org, clock):
        task = create_task(db, org.id, title="Chase paperwork", now=clock.now())
        with pytest.raises(ValidationError):
            update_task(db, org.id, task.id, {"status": "done"})


class TestListTasks:
    def test_active_first_then_priority_then_due(self, db, org, clock):
        now = clock.now()
        low = create_task(db, org.id, title="Low priority", priority="low", now=now)
        late_high = create_task(db, org.id, title="High later", priority="high",
                                due_at=now + timedelta(hours=8), now=now)
        soon_high = create_task(db, org.id, title="High sooner", priority="high",
                                due_at=now + timedelta(hours=1), now=now)
        done = create_task(db, org.id, title="Critical but done", priority="critical", now=now)
        update_task(db, org.id, done.id, {"status": "resolved"}, now=now)
        critical = create_task(db, org.id, title="Critical open", priority="critical", now=now)

        ordered = [t.id for t in list_tasks(db, org.id)]

        assert ordered == [critical.id, soon_high.id, late_high.id, low.id, done.id]

    def test_filters(self, db, org, clock):
        create_task(db, org.id, title="Open one", now=clock.now())
        done = create_task(db, org.id, title="Closed one", now=clock.now())
        update_task(db, org.id, done.id, {"status": "resolved"}, now=clock.now())

        assert [t.id for t in list_tasks(db, org.id, status="resolved")] == [done.id]
        with pytest.raises(ValidationError):
            list_tasks(db, org.id, status="archived")
