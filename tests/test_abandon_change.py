"""Tests for the abandon transition: guard, transactional writer, authorization, notification."""
import threading

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.security import generate_password_hash

from app.review import create_app
from app.review.db import run_in_transaction, session_scope
from app.review.errors import ForbiddenError, NotFoundError, NotificationError, PersistenceError
from app.review.mail import MailTransport
from app.review.models import Base, Permission, Role, User
from app.review.modules.changes.abandon import abandon_change_factory
from app.review.modules.changes.control import ChangeControlFactory
from app.review.modules.changes.detail import ChangeDetailFactory
from app.review.modules.changes.models import Approval, Change, ChangeMessage, Revision
from app.review.modules.changes.service import (
    MessageDraft,
    abandon_message_text,
    commit_abandon,
    is_abandonable,
    set_change_status,
)
from app.review.modules.changes.status import ChangeStatus


class RecordingTransport(MailTransport):
    def __init__(self):
        self.sent = []

    def send(self, msg):
        self.sent.append(msg)


class FailingTransport(MailTransport):
    def __init__(self):
        self.attempts = 0

    def send(self, msg):
        self.attempts += 1
        raise ConnectionRefusedError("smtp unreachable")


def _make_user(s, email, role=None):
    u = User(email=email, password_hash=generate_password_hash("pw"), is_active=True)
    if role is not None:
        u.roles.append(role)
    s.add(u)
    return u


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("MAIL_BACKEND", "log")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    app.extensions["mail_transport"] = RecordingTransport()
    return app


@pytest.fixture()
def seeded(app):
    """
    Change #42 (open) with revisions 1..3, current = 3, approvals on revisions 2 and 3.
    Change #7 (open) owned by `owner` with a single revision and no approvals.
    """
    with session_scope(app) as s:
        p_view = Permission(key="changes.view", name="Changes: view")
        p_abandon = Permission(key="changes.abandon", name="Changes: abandon")
        maintainer_role = Role(key="maintainer", name="Maintainer")
        maintainer_role.permissions.extend([p_view, p_abandon])
        reviewer_role = Role(key="reviewer", name="Reviewer")
        reviewer_role.permissions.append(p_view)
        s.add_all([p_view, p_abandon, maintainer_role, reviewer_role])

        owner = _make_user(s, "owner@example.com")
        maintainer = _make_user(s, "maintainer@example.com", maintainer_role)
        reviewer1 = _make_user(s, "r1@example.com", reviewer_role)
        reviewer2 = _make_user(s, "r2@example.com", reviewer_role)
        outsider = _make_user(s, "outsider@example.com")
        s.flush()

        c = Change(id=42, subject="Refactor parser", project="tools/parser", owner_user_id=owner.id)
        s.add(c)
        s.flush()
        revs = []
        for seq in (1, 2, 3):
            r = Revision(change_id=c.id, sequence=seq, uploader_user_id=owner.id, commit_sha=f"{seq:040d}")
            s.add(r)
            revs.append(r)
        s.flush()
        c.current_revision_id = revs[2].id
        s.add_all(
            [
                Approval(change_id=c.id, revision_id=revs[1].id, reviewer_user_id=reviewer1.id, value=-1),
                Approval(change_id=c.id, revision_id=revs[2].id, reviewer_user_id=reviewer1.id, value=1),
                Approval(change_id=c.id, revision_id=revs[2].id, reviewer_user_id=reviewer2.id, value=2),
            ]
        )

        c7 = Change(id=7, subject="Fix typo", project="tools/parser", owner_user_id=owner.id)
        s.add(c7)
        s.flush()
        r7 = Revision(change_id=c7.id, sequence=1, uploader_user_id=owner.id)
        s.add(r7)
        s.flush()
        c7.current_revision_id = r7.id

        ids = {
            "owner": owner.id,
            "maintainer": maintainer.id,
            "reviewer1": reviewer1.id,
            "reviewer2": reviewer2.id,
            "outsider": outsider.id,
            "rev1": revs[0].id,
            "rev2": revs[1].id,
            "rev3": revs[2].id,
        }
    return ids


def _user(app, user_id):
    with session_scope(app) as s:
        return s.get(User, user_id)


def _state(app, change_id=42):
    with session_scope(app) as s:
        c = s.get(Change, change_id)
        return {
            "status": c.status,
            "row_version": c.row_version,
            "last_updated_on": c.last_updated_on,
            "approval_statuses": sorted(a.change_status.value for a in c.approvals),
            "messages": [m.message for m in s.scalars(select(ChangeMessage).where(ChangeMessage.change_id == change_id)).all()],
        }


def _draft(user_id, text="Revision 3: Abandoned"):
    return MessageDraft(author_user_id=user_id, text=text)


# --- guard -------------------------------------------------------------------


def test_guard_accepts_open_change_on_current_revision():
    assert is_abandonable(Change(status=ChangeStatus.NEW, current_revision_id=3), 3) is True
    assert is_abandonable(Change(status=ChangeStatus.SUBMITTED, current_revision_id=3), 3) is True


@pytest.mark.parametrize("status", [ChangeStatus.MERGED, ChangeStatus.ABANDONED])
def test_guard_rejects_closed_change(status):
    assert is_abandonable(Change(status=status, current_revision_id=3), 3) is False


def test_guard_rejects_stale_revision():
    assert is_abandonable(Change(status=ChangeStatus.NEW, current_revision_id=4), 3) is False


def test_status_variant_open_and_closed():
    assert [s for s in ChangeStatus if s.is_open()] == [ChangeStatus.NEW, ChangeStatus.SUBMITTED]
    assert all(s.is_closed() for s in (ChangeStatus.MERGED, ChangeStatus.ABANDONED))


def test_abandon_message_text():
    assert abandon_message_text(3, "not needed") == "Revision 3: Abandoned\n\nnot needed"
    assert abandon_message_text(3, "") == "Revision 3: Abandoned"
    assert abandon_message_text(3, None) == "Revision 3: Abandoned"
    # Appended as given; trimming is left to the caller.
    assert abandon_message_text(3, " x ") == "Revision 3: Abandoned\n\n x "


# --- transactional writer ----------------------------------------------------


def test_commit_abandon_applies_every_effect_together(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    before = _state(app)

    assert commit_abandon(sm, 42, seeded["rev3"], _draft(seeded["maintainer"])) is True

    after = _state(app)
    assert after["status"] == ChangeStatus.ABANDONED
    assert after["approval_statuses"] == ["abandoned", "abandoned", "abandoned"]
    assert after["messages"] == ["Revision 3: Abandoned"]
    assert after["row_version"] == before["row_version"] + 1
    assert after["last_updated_on"] >= before["last_updated_on"]


def test_commit_abandon_is_noop_for_closed_change(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    with session_scope(app) as s:
        set_change_status(s.get(Change, 42), ChangeStatus.MERGED)
    before = _state(app)

    assert commit_abandon(sm, 42, seeded["rev3"], _draft(seeded["maintainer"])) is False
    assert _state(app) == before
    assert before["approval_statuses"] == ["merged", "merged", "merged"]


def test_commit_abandon_is_noop_for_stale_revision(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    before = _state(app)

    assert commit_abandon(sm, 42, seeded["rev2"], _draft(seeded["maintainer"])) is False
    assert _state(app) == before
    assert before["status"] == ChangeStatus.NEW


def test_commit_abandon_rolls_back_everything_on_failure(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    before = _state(app)

    def _boom(mapper, connection, target):
        raise OperationalError("INSERT INTO change_messages", {}, Exception("disk I/O error"))

    event.listen(ChangeMessage, "before_insert", _boom)
    try:
        with pytest.raises(PersistenceError) as excinfo:
            commit_abandon(sm, 42, seeded["rev3"], _draft(seeded["maintainer"]))
    finally:
        event.remove(ChangeMessage, "before_insert", _boom)

    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert _state(app) == before


def test_second_writer_after_commit_observes_closed_change(app, seeded):
    # Both callers passed authorization against the open change; only the first write applies.
    sm = app.extensions["sqlalchemy_sessionmaker"]
    first = commit_abandon(sm, 42, seeded["rev3"], _draft(seeded["maintainer"]))
    second = commit_abandon(sm, 42, seeded["rev3"], _draft(seeded["owner"]))

    assert (first, second) == (True, False)
    state = _state(app)
    assert state["messages"] == ["Revision 3: Abandoned"]
    assert state["status"] == ChangeStatus.ABANDONED


def test_stale_change_row_cannot_overwrite_committed_transition(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1 = sm()
    try:
        stale = s1.get(Change, 42)
        assert stale.status == ChangeStatus.NEW

        assert commit_abandon(sm, 42, seeded["rev3"], _draft(seeded["maintainer"])) is True

        set_change_status(stale, ChangeStatus.MERGED)
        with pytest.raises(StaleDataError):
            s1.flush()
    finally:
        s1.rollback()
        s1.close()

    assert _state(app)["status"] == ChangeStatus.ABANDONED


def test_concurrent_abandons_commit_exactly_once(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    engine = app.extensions["sqlalchemy_engine"]
    # Both writers must have read the open change before either one writes it.
    barrier = threading.Barrier(2, timeout=10)
    waited = set()

    def _hold_first_update(conn, cursor, statement, parameters, context, executemany):
        me = threading.get_ident()
        if statement.lstrip().upper().startswith("UPDATE CHANGES") and me not in waited:
            waited.add(me)
            barrier.wait()

    results, errors = [], []

    def _attempt(user_id):
        try:
            results.append(commit_abandon(sm, 42, seeded["rev3"], _draft(user_id)))
        except Exception as e:
            errors.append(e)

    event.listen(engine, "before_cursor_execute", _hold_first_update)
    try:
        threads = [threading.Thread(target=_attempt, args=(uid,)) for uid in (seeded["maintainer"], seeded["owner"])]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
    finally:
        event.remove(engine, "before_cursor_execute", _hold_first_update)

    assert errors == []
    assert sorted(results) == [False, True]
    state = _state(app)
    assert state["status"] == ChangeStatus.ABANDONED
    assert state["messages"] == ["Revision 3: Abandoned"]
    assert state["approval_statuses"] == ["abandoned", "abandoned", "abandoned"]


def _edit_subject_elsewhere(app, subject):
    with session_scope(app) as other:
        other.get(Change, 42).subject = subject


def test_version_conflict_reruns_transaction_on_fresh_read(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    calls = []

    def _rename(s):
        calls.append(1)
        c = s.get(Change, 42)
        if len(calls) == 1:
            _edit_subject_elsewhere(app, "Refactor parser (edited)")
        c.subject = c.subject + " [wip]"
        s.flush()
        return c.subject

    assert run_in_transaction(sm, _rename) == "Refactor parser (edited) [wip]"
    assert len(calls) == 2


def test_version_conflict_after_last_retry_is_persistence_error(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    calls = []

    def _always_conflicting(s):
        calls.append(1)
        c = s.get(Change, 42)
        _edit_subject_elsewhere(app, f"edit {len(calls)}")
        c.subject = "lost update"
        s.flush()

    with pytest.raises(PersistenceError) as excinfo:
        run_in_transaction(sm, _always_conflicting, retries=1)

    assert isinstance(excinfo.value.__cause__, StaleDataError)
    assert len(calls) == 2
    with session_scope(app) as s:
        assert s.get(Change, 42).subject == "edit 2"


# --- command -----------------------------------------------------------------


def test_abandon_change_42_scenario(app, seeded):
    transport = app.extensions["mail_transport"]
    maintainer = _user(app, seeded["maintainer"])

    result = abandon_change_factory(app, maintainer).call(42, 3, "not needed")

    assert result.applied is True
    detail = result.detail.to_dict()
    assert detail["status"] == "abandoned"
    assert detail["can_abandon"] is False
    assert [m["message"] for m in detail["messages"]] == ["Revision 3: Abandoned\n\nnot needed"]
    assert detail["messages"][0]["author_user_id"] == seeded["maintainer"]
    assert {(a["revision"], a["change_status"]) for a in detail["approvals"]} == {(2, "abandoned"), (3, "abandoned")}

    assert len(transport.sent) == 1
    mail = transport.sent[0]
    assert mail["To"] == "owner@example.com, r1@example.com, r2@example.com"
    assert "abandoned" in mail["Subject"]
    assert "not needed" in mail.get_content()


def test_abandon_twice_is_idempotent_and_notifies_once(app, seeded):
    transport = app.extensions["mail_transport"]
    maintainer = _user(app, seeded["maintainer"])
    cmd = abandon_change_factory(app, maintainer)

    first = cmd.call(42, 3, "")
    second = cmd.call(42, 3, "")

    assert (first.applied, second.applied) == (True, False)
    assert first.detail == second.detail
    assert [m["message"] for m in second.detail.messages] == ["Revision 3: Abandoned"]
    assert len(transport.sent) == 1


def test_stale_revision_request_returns_current_view_without_notifying(app, seeded):
    transport = app.extensions["mail_transport"]
    maintainer = _user(app, seeded["maintainer"])

    result = abandon_change_factory(app, maintainer).call(42, 2, "old revision")

    assert result.applied is False
    assert result.detail.status == "new"
    assert result.detail.messages == []
    assert transport.sent == []


def test_notification_failure_keeps_committed_state(app, seeded):
    failing = FailingTransport()
    app.extensions["mail_transport"] = failing
    maintainer = _user(app, seeded["maintainer"])

    with pytest.raises(NotificationError) as excinfo:
        abandon_change_factory(app, maintainer).call(42, 3, "not needed")

    assert failing.attempts == 1
    assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)
    assert excinfo.value.detail is not None
    assert excinfo.value.detail.status == "abandoned"
    state = _state(app)
    assert state["status"] == ChangeStatus.ABANDONED
    assert state["messages"] == ["Revision 3: Abandoned\n\nnot needed"]


def test_persistence_failure_does_not_notify(app, seeded):
    transport = app.extensions["mail_transport"]
    maintainer = _user(app, seeded["maintainer"])

    def _boom(mapper, connection, target):
        raise OperationalError("UPDATE approvals", {}, Exception("connection reset"))

    event.listen(Approval, "before_update", _boom)
    try:
        with pytest.raises(PersistenceError):
            abandon_change_factory(app, maintainer).call(42, 3, "")
    finally:
        event.remove(Approval, "before_update", _boom)

    assert transport.sent == []
    assert _state(app)["status"] == ChangeStatus.NEW


def test_owner_without_permissions_can_abandon_and_nobody_is_mailed(app, seeded):
    transport = app.extensions["mail_transport"]
    owner = _user(app, seeded["owner"])

    result = abandon_change_factory(app, owner).call(7, 1, None)

    assert result.applied is True
    assert result.detail.status == "abandoned"
    # Owner is the actor and change 7 has no reviewers.
    assert transport.sent == []


# --- authorization -----------------------------------------------------------


def test_invisible_change_is_reported_as_not_found(app, seeded):
    outsider = _user(app, seeded["outsider"])
    before = _state(app)

    with pytest.raises(NotFoundError):
        abandon_change_factory(app, outsider).call(42, 3, "")

    assert _state(app) == before


def test_viewer_without_abandon_capability_is_forbidden(app, seeded):
    reviewer = _user(app, seeded["reviewer1"])
    before = _state(app)

    with pytest.raises(ForbiddenError):
        abandon_change_factory(app, reviewer).call(42, 3, "")

    assert _state(app) == before
    assert app.extensions["mail_transport"].sent == []


def test_unknown_change_or_revision_is_not_found(app, seeded):
    maintainer = _user(app, seeded["maintainer"])
    cmd = abandon_change_factory(app, maintainer)

    with pytest.raises(NotFoundError):
        cmd.call(999, 1, "")
    with pytest.raises(NotFoundError):
        cmd.call(42, 9, "")

    with session_scope(app) as s:
        assert s.scalar(select(func.count()).select_from(ChangeMessage)) == 0


def test_detail_can_abandon_follows_the_gate(app, seeded):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    for key in ("owner", "maintainer", "reviewer1"):
        user = _user(app, seeded[key])
        control = ChangeControlFactory(sm).validate_for(user, 42)
        assert ChangeDetailFactory(sm).create(42, user).can_abandon is control.can_abandon()

    assert ChangeDetailFactory(sm).create(42, _user(app, seeded["reviewer1"])).can_abandon is False
