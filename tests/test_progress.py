"""
Unit tests for the assignment progress and review workflow.
"""
from datetime import date

import pytest

from fieldops.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from fieldops.models.models import AuditLog
from fieldops.services.notifications import list_notifications

pytestmark = pytest.mark.unit


def _complete(progress, sales_task, org):
    aid = sales_task.assignment.id
    progress.update_progress(aid, "SIM", 10, org.staff.id)
    return progress.update_progress(aid, "FTTH", 5, org.staff.id)


class TestUpdateProgress:
    def test_first_update_moves_to_in_progress(self, progress, sales_task, org):
        assert sales_task.assignment.submission_status == "not_started"
        view = progress.update_progress(sales_task.assignment.id, "SIM", 6, org.staff.id)
        assert view["submission_status"] == "in_progress"
        assert view["overall_percentage"] == 40
        sim = next(c for c in view["categories"] if c["category"] == "SIM")
        assert sim["completed"] == 6 and sim["percentage"] == 60
        assert view["can_submit"] is False

    def test_counter_floored_at_zero(self, progress, sales_task, org):
        aid = sales_task.assignment.id
        progress.update_progress(aid, "SIM", 3, org.staff.id)
        view = progress.update_progress(aid, "SIM", -10, org.staff.id)
        sim = next(c for c in view["categories"] if c["category"] == "SIM")
        assert sim["completed"] == 0
        assert view["submission_status"] == "in_progress"

    def test_decrement_on_untouched_assignment_stays_not_started(self, progress, sales_task, org):
        view = progress.update_progress(sales_task.assignment.id, "SIM", -1, org.staff.id)
        assert view["submission_status"] == "not_started"

    def test_no_ceiling(self, progress, sales_task, org):
        view = progress.update_progress(sales_task.assignment.id, "FTTH", 8, org.staff.id)
        ftth = next(c for c in view["categories"] if c["category"] == "FTTH")
        assert ftth["completed"] == 8 and ftth["percentage"] == 160

    @pytest.mark.parametrize("delta", [0, True, 1.5, "3"])
    def test_delta_must_be_nonzero_int(self, progress, sales_task, org, delta):
        with pytest.raises(ValidationError):
            progress.update_progress(sales_task.assignment.id, "SIM", delta, org.staff.id)

    def test_unassigned_category_is_not_permitted(self, progress, sales_task, org):
        with pytest.raises(AuthorizationError):
            progress.update_progress(sales_task.assignment.id, "LEASE_CIRCUIT", 1, org.staff.id)

    def test_unknown_category(self, progress, sales_task, org):
        with pytest.raises(ValidationError):
            progress.update_progress(sales_task.assignment.id, "FAX", 1, org.staff.id)

    def test_other_staff_cannot_update(self, progress, sales_task, org):
        with pytest.raises(AuthorizationError):
            progress.update_progress(sales_task.assignment.id, "SIM", 1, org.peer.id)

    def test_manager_can_record_on_behalf(self, progress, sales_task, org):
        view = progress.update_progress(sales_task.assignment.id, "SIM", 2, org.manager.id)
        assert view["submission_status"] == "in_progress"

    def test_unknown_assignment(self, progress, org):
        with pytest.raises(NotFoundError):
            progress.update_progress("0b6f2c5e-8a9a-4a57-9d7e-3c1f1b8f0c11", "SIM", 1, org.staff.id)

    def test_closed_task_refuses_progress(self, progress, repo, sales_task, org):
        repo.update_task_status(sales_task.task.id, "completed", org.manager.id)
        with pytest.raises(StateConflictError) as exc:
            progress.update_progress(sales_task.assignment.id, "SIM", 1, org.staff.id)
        assert exc.value.rule == "task_closed"

    def test_audited(self, progress, sales_task, org, db):
        progress.update_progress(sales_task.assignment.id, "SIM", 2, org.staff.id)
        log = db.query(AuditLog).filter(AuditLog.action == "UPDATE_PROGRESS").one()
        assert log.context["completed"] == 2
        assert log.integrity_hash


class TestSubmission:
    def test_full_cycle(self, progress, sales_task, org):
        aid = sales_task.assignment.id
        view = progress.update_progress(aid, "SIM", 6, org.staff.id)
        assert view["overall_percentage"] == 40
        progress.update_progress(aid, "SIM", 4, org.staff.id)
        view = progress.update_progress(aid, "FTTH", 5, org.staff.id)
        assert view["overall_percentage"] == 100
        assert view["can_submit"] is True

        view = progress.submit_for_review(aid, org.staff.id)
        assert view["submission_status"] == "submitted"
        assert view["submitted_at"] is not None

        view = progress.approve(aid, org.manager.id)
        assert view["submission_status"] == "approved"
        assert view["reviewed_by"] == str(org.manager.id)

        with pytest.raises(StateConflictError) as exc:
            progress.approve(aid, org.manager.id)
        assert exc.value.rule == "already_approved"

    def test_deficient_category_named(self, progress, sales_task, org):
        aid = sales_task.assignment.id
        progress.update_progress(aid, "SIM", 10, org.staff.id)
        progress.update_progress(aid, "FTTH", 4, org.staff.id)
        with pytest.raises(StateConflictError) as exc:
            progress.submit_for_review(aid, org.staff.id)
        assert exc.value.rule == "targets_not_met"
        assert exc.value.extra["category"] == "FTTH"
        assert "FTTH" in exc.value.detail

    def test_not_started_cannot_submit(self, progress, sales_task, org):
        with pytest.raises(StateConflictError) as exc:
            progress.submit_for_review(sales_task.assignment.id, org.staff.id)
        assert exc.value.rule == "not_in_progress"

    def test_only_assignee_submits(self, progress, sales_task, org):
        _complete(progress, sales_task, org)
        with pytest.raises(AuthorizationError):
            progress.submit_for_review(sales_task.assignment.id, org.manager.id)

    def test_zero_target_assignment_cannot_submit(self, progress, repo, org):
        task = repo.create_task(
            creator_id=org.manager.id,
            name="Quiet week",
            location=None,
            circle=None,
            zone=None,
            start_date=date(2025, 3, 1),
            end_date=date(2025, 3, 31),
            targets={"BTS_DOWN": 0},
        )
        assignment = repo.add_team_member(task.id, org.staff.id, {"BTS_DOWN": 0}, actor_id=org.manager.id)
        progress.update_progress(assignment.id, "BTS_DOWN", 1, org.staff.id)
        with pytest.raises(StateConflictError) as exc:
            progress.submit_for_review(assignment.id, org.staff.id)
        assert exc.value.rule == "no_targets"

    def test_progress_locked_while_submitted(self, progress, sales_task, org):
        _complete(progress, sales_task, org)
        progress.submit_for_review(sales_task.assignment.id, org.staff.id)
        with pytest.raises(StateConflictError) as exc:
            progress.update_progress(sales_task.assignment.id, "SIM", 1, org.staff.id)
        assert exc.value.rule == "assignment_locked"

    def test_submission_notifies_nearest_manager(self, progress, sales_task, org, db):
        _complete(progress, sales_task, org)
        progress.submit_for_review(sales_task.assignment.id, org.staff.id)
        notes = list_notifications(db, org.manager.id)
        assert [n.template_key for n in notes] == ["TASK_SUBMITTED"]
        assert notes[0].payload_json["employee_name"] == "Esha Staff"
        assert list_notifications(db, org.gm.id) == []


class TestReview:
    @pytest.fixture
    def submitted(self, progress, sales_task, org):
        _complete(progress, sales_task, org)
        progress.submit_for_review(sales_task.assignment.id, org.staff.id)
        return sales_task.assignment.id

    def test_reject_requires_reason(self, progress, submitted, org):
        for reason in (None, "", "   "):
            with pytest.raises(ValidationError):
                progress.reject(submitted, org.manager.id, reason)

    def test_reject_then_resubmit(self, progress, submitted, org, db):
        view = progress.reject(submitted, org.manager.id, "Photos missing")
        assert view["submission_status"] == "rejected"
        assert view["rejection_reason"] == "Photos missing"
        assert view["can_submit"] is False
        assert [n.template_key for n in list_notifications(db, org.staff.id)] == ["TASK_REJECTED"]

        with pytest.raises(StateConflictError):
            progress.submit_for_review(submitted, org.staff.id)
        view = progress.update_progress(submitted, "SIM", 1, org.staff.id)
        assert view["submission_status"] == "in_progress"
        view = progress.submit_for_review(submitted, org.staff.id)
        assert view["submission_status"] == "submitted"
        assert view["rejection_reason"] is None

    def test_outsider_cannot_approve(self, progress, submitted, org):
        for reviewer in (org.outsider, org.peer, org.foreign_agm, org.staff):
            with pytest.raises(AuthorizationError):
                progress.approve(submitted, reviewer.id)

    def test_skip_level_manager_approves(self, progress, submitted, org, db):
        view = progress.approve(submitted, org.gm.id)
        assert view["submission_status"] == "approved"
        assert [n.template_key for n in list_notifications(db, org.staff.id)] == ["TASK_APPROVED"]

    def test_reject_after_approve(self, progress, submitted, org):
        progress.approve(submitted, org.manager.id)
        with pytest.raises(StateConflictError) as exc:
            progress.reject(submitted, org.manager.id, "Late")
        assert exc.value.rule == "already_approved"

    def test_approve_unsubmitted(self, progress, sales_task, org):
        with pytest.raises(StateConflictError) as exc:
            progress.approve(sales_task.assignment.id, org.manager.id)
        assert exc.value.rule == "not_submitted"

    def test_closed_task_freezes_review(self, progress, repo, submitted, sales_task, org):
        repo.update_task_status(sales_task.task.id, "cancelled", org.manager.id)
        with pytest.raises(StateConflictError) as exc:
            progress.approve(submitted, org.manager.id)
        assert exc.value.rule == "task_closed"

    def test_pending_reviews(self, progress, submitted, org):
        assert [v["assignment_id"] for v in progress.pending_reviews(org.manager.id)] == [str(submitted)]
        assert [v["assignment_id"] for v in progress.pending_reviews(org.gm.id)] == [str(submitted)]
        assert progress.pending_reviews(org.outsider.id) == []
        assert progress.pending_reviews(org.staff.id) == []


class TestViews:
    def test_my_assigned_tasks(self, progress, sales_task, org):
        views = progress.my_assigned_tasks(org.staff.id)
        assert len(views) == 1
        assert views[0]["task"]["effective_status"] == "active"
        assert [c["category"] for c in views[0]["categories"]] == ["SIM", "FTTH"]

    def test_task_summary(self, progress, sales_task, org):
        progress.update_progress(sales_task.assignment.id, "SIM", 6, org.staff.id)
        summary = progress.task_summary(sales_task.task.id)
        assert [c["category"] for c in summary["categories"]] == ["SIM", "FTTH"]
        assert summary["overall_percentage"] == 40
        assert {m["role_in_task"] for m in summary["team"]} == {"creator", "team_member"}
        assert summary["finance"]["categories"][0]["category"] == "FIN_LC"


class TestHierarchicalReport:
    def test_creator_rollup(self, progress, sales_task, org):
        progress.update_progress(sales_task.assignment.id, "SIM", 6, org.staff.id)
        report = progress.hierarchical_report(org.manager.id, org.manager.id)

        assert report["employee"]["name"] == "Manoj AGM"
        assert report["tasks_managed"] == 1
        row = report["tasks"][0]
        assert row["is_creator"] is True and row["is_manager"] is False
        assert row["team_count"] == 2
        assert [(c["category"], c["allocated"], c["distributed"], c["completed"], c["remaining"]) for c in row["categories"]] == [
            ("SIM", 10, 10, 6, 4),
            ("FTTH", 5, 5, 0, 5),
        ]
        assert [c["category"] for c in report["summary"]] == ["SIM", "FTTH"]
        assert report["summary"][0]["completed"] == 6

    def test_summary_spans_created_and_managed_tasks(self, progress, repo, sales_task, org):
        repo.create_task(
            creator_id=org.gm.id,
            name="Thrissur outage sweep",
            location=None,
            circle=None,
            zone=None,
            start_date=date(2025, 3, 5),
            end_date=date(2025, 3, 20),
            targets={"SIM": 4, "BTS_DOWN": 2},
            assigned_to_id=org.manager.id,
        )
        report = progress.hierarchical_report(org.manager.id, org.gm.id)
        assert report["tasks_managed"] == 2
        managed = next(t for t in report["tasks"] if t["is_manager"])
        assert managed["is_creator"] is False
        summary = {c["category"]: c for c in report["summary"]}
        assert [c["category"] for c in report["summary"]] == ["SIM", "FTTH", "BTS_DOWN"]
        assert summary["SIM"]["allocated"] == 14
        assert summary["SIM"]["remaining"] == 14

    def test_remaining_floored_at_zero(self, progress, sales_task, org):
        progress.update_progress(sales_task.assignment.id, "FTTH", 7, org.staff.id)
        report = progress.hierarchical_report(org.manager.id, org.manager.id)
        ftth = next(c for c in report["tasks"][0]["categories"] if c["category"] == "FTTH")
        assert ftth["completed"] == 7 and ftth["remaining"] == 0

    def test_employee_without_tasks(self, progress, org):
        report = progress.hierarchical_report(org.staff.id, org.staff.id)
        assert report["tasks_managed"] == 0
        assert report["summary"] == [] and report["tasks"] == []

    def test_visibility(self, progress, sales_task, org):
        for viewer in (org.staff, org.outsider, org.foreign_agm):
            with pytest.raises(AuthorizationError):
                progress.hierarchical_report(org.manager.id, viewer.id)
