from datetime import datetime, timedelta, timezone
from unittest.mock import patch
import pytest
from sqlalchemy.exc import OperationalError

from oyadeki.models import DialogueSession
from oyadeki.services.session_store import (
    SessionStoreError,
    OWNER_LOCK_STRIPES,
    create_session,
    get_active_session,
    lock_for_owner,
    save_session,
    sweep_expired_sessions,
)
from oyadeki.services.state_machine import DialogueKind, DialogueStatus

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _create(db, owner_id="U1", now=T0, kind=DialogueKind.MEDIA_DIALOGUE):
    return create_session(
        db,
        owner_id,
        kind,
        visual_summary="red-and-white robot",
        first_question="Is this a Gundam series?",
        candidate={"kind": "media", "media_type": "anime", "title": "Mobile Suit Gundam"},
        now=now,
    )


def _insert_active(db, owner_id="U1", now=T0):
    # Bypasses create_session to model the leftover of a lost race.
    session = DialogueSession(
        owner_id=owner_id,
        status=DialogueStatus.QUESTIONING.value,
        kind=DialogueKind.MEDIA_DIALOGUE.value,
        visual_summary="red-and-white robot",
        turn_history=[],
        rejected_titles=[],
        created_at=now,
        updated_at=now,
    )
    db.add(session)
    db.commit()
    return session


def _add_turn(session, speaker, text):
    session.turn_history = [*session.turn_history, {"speaker": speaker, "text": text}]


class TestCreateSession:
    def test_new_session_is_questioning_with_opening_turn(self, db_session):
        session = _create(db_session)

        assert session.status == DialogueStatus.QUESTIONING.value
        assert session.kind == DialogueKind.MEDIA_DIALOGUE.value
        assert session.turn_history == [{"speaker": "assistant", "text": "Is this a Gundam series?"}]
        assert session.rejected_titles == []
        assert session.version == 1

    def test_new_session_supersedes_live_one(self, db_session):
        first = _create(db_session, now=T0)
        second = _create(db_session, now=T0 + timedelta(minutes=1))

        db_session.refresh(first)
        assert first.status == DialogueStatus.CANCELLED.value
        assert second.status == DialogueStatus.QUESTIONING.value
        assert get_active_session(db_session, "U1", now=T0 + timedelta(minutes=2)).id == second.id

    def test_other_owner_is_not_superseded(self, db_session):
        other = _create(db_session, owner_id="U2")
        _create(db_session, owner_id="U1")

        db_session.refresh(other)
        assert other.status == DialogueStatus.QUESTIONING.value

    def test_failed_create_keeps_previous_session(self, db_session):
        first = _create(db_session, now=T0)
        with patch.object(db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("db down"))):
            with pytest.raises(SessionStoreError):
                _create(db_session, now=T0 + timedelta(minutes=1))

        sessions = db_session.query(DialogueSession).all()
        assert [s.id for s in sessions] == [first.id]
        assert sessions[0].status == DialogueStatus.QUESTIONING.value


class TestGetActiveSession:
    def test_returns_live_session(self, db_session):
        session = _create(db_session)
        assert get_active_session(db_session, "U1", now=T0 + timedelta(minutes=5)).id == session.id

    def test_other_owner_sees_nothing(self, db_session):
        _create(db_session, owner_id="U1")
        assert get_active_session(db_session, "U2", now=T0) is None

    def test_idle_session_expires(self, db_session):
        session = _create(db_session)

        assert get_active_session(db_session, "U1", now=T0 + timedelta(minutes=61)) is None
        db_session.refresh(session)
        assert session.status == DialogueStatus.CANCELLED.value

    def test_terminal_session_is_never_returned(self, db_session):
        session = _create(db_session)
        session.status = DialogueStatus.COMPLETED.value
        save_session(db_session, session, now=T0)

        assert get_active_session(db_session, "U1", now=T0) is None

    def test_duplicate_active_sessions_keep_newest(self, db_session):
        older = _insert_active(db_session, now=T0)
        newer = _insert_active(db_session, now=T0 + timedelta(minutes=1))

        active = get_active_session(db_session, "U1", now=T0 + timedelta(minutes=2))

        assert active.id == newer.id
        db_session.refresh(older)
        assert older.status == DialogueStatus.CANCELLED.value


class TestSaveSession:
    def test_save_bumps_version_and_updated_at(self, db_session):
        session = _create(db_session)
        _add_turn(session, "user", "yes")
        save_session(db_session, session, now=T0 + timedelta(minutes=1))

        db_session.refresh(session)
        assert session.version == 2
        assert len(session.turn_history) == 2
        assert session.updated_at.replace(tzinfo=timezone.utc) == T0 + timedelta(minutes=1)

    def test_concurrent_write_is_a_conflict(self, session_factory):
        first = session_factory()
        second = session_factory()
        try:
            created = _create(first)
            stale = second.get(DialogueSession, created.id)

            _add_turn(created, "user", "yes")
            save_session(first, created, now=T0 + timedelta(minutes=1))

            _add_turn(stale, "user", "no")
            with pytest.raises(SessionStoreError) as exc_info:
                save_session(second, stale, now=T0 + timedelta(minutes=1))
            assert exc_info.value.code == "conflict"
        finally:
            first.close()
            second.close()

    def test_database_error_raises_store_error(self, db_session):
        session = _create(db_session)
        _add_turn(session, "user", "yes")
        with patch.object(db_session, "commit", side_effect=OperationalError("UPDATE", {}, Exception("db down"))):
            with pytest.raises(SessionStoreError) as exc_info:
                save_session(db_session, session)
        assert exc_info.value.code == "store_error"


class TestOwnerLock:
    def test_same_owner_maps_to_same_lock(self):
        assert lock_for_owner("U1") is lock_for_owner("U1")

    def test_lock_pool_does_not_grow_with_owners(self):
        locks = {id(lock_for_owner(f"U{i}")) for i in range(1000)}
        assert len(locks) <= OWNER_LOCK_STRIPES


class TestSweepExpiredSessions:
    def test_sweeps_only_idle_sessions(self, db_session):
        idle = _create(db_session, owner_id="U1", now=T0)
        fresh = _create(db_session, owner_id="U2", now=T0 + timedelta(minutes=50))

        assert sweep_expired_sessions(db_session, now=T0 + timedelta(minutes=70)) == 1

        db_session.refresh(idle)
        db_session.refresh(fresh)
        assert idle.status == DialogueStatus.CANCELLED.value
        assert fresh.status == DialogueStatus.QUESTIONING.value

    def test_sweep_ignores_terminal_sessions(self, db_session):
        done = _create(db_session, now=T0)
        done.status = DialogueStatus.COMPLETED.value
        save_session(db_session, done, now=T0)

        assert sweep_expired_sessions(db_session, now=T0 + timedelta(hours=3)) == 0
