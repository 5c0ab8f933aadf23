"""
Tests for workflow notifications.

Covers the post-commit outbox (recipients, dedupe, disabled flag),
best-effort delivery when the notification store fails, and the
per-user read/unread operations.
"""

import logging

import pytest

from grc.core.exceptions import ConflictError, NotFoundError
from grc.models.notification import Notification
from grc.models.versioning import ApprovalStatus
from grc.services import risk_service
from grc.services.notification import NotificationOutbox, NotificationService
from grc.services.risk_service import risk_workflow as wf


@pytest.fixture()
def risk(org, members):
    return risk_service.create_risk(members["user"], org.id, {"title": "DDoS on portal"})


def _inbox(actor, type=None):
    q = Notification.query.filter_by(user_id=actor.user_id)
    if type:
        q = q.filter_by(type=type)
    return q.all()


class TestWorkflowNotifications:
    def test_submit_notifies_reviewers(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Please review")
        assert len(_inbox(members["local_admin"], "APPROVAL_REQUIRED")) == 1
        assert len(_inbox(members["admin"], "APPROVAL_REQUIRED")) == 1
        assert _inbox(members["auditor"]) == []
        assert _inbox(members["user"]) == []
        note = _inbox(members["local_admin"])[0]
        assert note.title == "Risk RISK-001 awaits 1st level approval"
        assert note.link == f"/risks/{risk.id}"

    def test_actor_is_not_notified(self, risk, members):
        wf.submit_for_review(risk.id, members["local_admin"], "Self submitted")
        assert _inbox(members["local_admin"]) == []
        assert len(_inbox(members["admin"])) == 1

    def test_first_approval_notifies_approvers(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Please review")
        wf.first_approval(risk.id, members["local_admin"])
        assert len(_inbox(members["admin"], "APPROVAL_REQUIRED")) == 2
        assert len(_inbox(members["local_admin"], "APPROVAL_REQUIRED")) == 1

    def test_outcome_notifies_owner(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Please review")
        wf.reject(risk.id, members["local_admin"], "Missing owner")
        rejected = _inbox(members["user"], "REJECTED")
        assert len(rejected) == 1
        assert "Missing owner" in rejected[0].message

    def test_failed_operation_sends_nothing(self, risk, members):
        with pytest.raises(ConflictError):
            wf.submit_for_review(risk.id, members["user"], "Stale", expected_version="0.5")
        assert Notification.query.count() == 0


class TestBestEffortDelivery:
    def test_store_failure_does_not_fail_transition(self, risk, members, monkeypatch, caplog):
        def boom(**kwargs):
            raise RuntimeError("notification store down")

        monkeypatch.setattr(NotificationService, "create", staticmethod(boom))
        with caplog.at_level(logging.WARNING, logger="grc.services.notification"):
            result = wf.submit_for_review(risk.id, members["user"], "Please review", "minor")

        assert result.approval_status == ApprovalStatus.PENDING_FIRST_APPROVAL
        assert str(risk_service.get_risk(members["user"], risk.id).version) == "0.2"
        assert "Notification delivery failed" in caplog.text
        monkeypatch.undo()
        assert Notification.query.count() == 0


class TestOutbox:
    def test_dedupes_and_skips_none(self, app):
        outbox = NotificationOutbox()
        outbox.add([3, None, 3, 4], organization_id=1, type="SYSTEM", title="Hi")
        assert [p.user_id for p in outbox.pending] == [3, 4]

    def test_disabled(self, app, org, members):
        outbox = NotificationOutbox(enabled=False)
        outbox.add([members["user"].user_id], organization_id=org.id, type="SYSTEM", title="Hi")
        assert outbox.deliver() == 0
        assert len(outbox) == 0
        assert Notification.query.count() == 0

    def test_deliver(self, org, members):
        outbox = NotificationOutbox()
        outbox.add([members["user"].user_id, members["admin"].user_id], organization_id=org.id,
                   type="SYSTEM", title="Hello")
        assert outbox.deliver() == 2


class TestInbox:
    def test_read_flow(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Please review")
        wf.reject(risk.id, members["local_admin"], "First")
        wf.submit_for_review(risk.id, members["user"], "Again")
        wf.reject(risk.id, members["local_admin"], "Second")
        user_id = members["user"].user_id
        assert NotificationService.unread_count(user_id) == 2

        items, total = NotificationService.list_for_user(user_id)
        assert total == 2
        NotificationService.mark_read(items[0].id, user_id)
        assert NotificationService.unread_count(user_id) == 1
        assert NotificationService.mark_all_read(user_id) == 1
        assert NotificationService.unread_count(user_id) == 0

    def test_cannot_read_someone_elses(self, risk, members):
        wf.submit_for_review(risk.id, members["user"], "Please review")
        note = _inbox(members["admin"])[0]
        with pytest.raises(NotFoundError):
            NotificationService.mark_read(note.id, members["user"].user_id)
