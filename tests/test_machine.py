"""
Check-in / check-out / force-release transitions.
"""
from datetime import date, timedelta

import pytest
from conftest import ADMIN, ALICE, BOB, MONDAY_10AM, TZ, new_block, new_resource
from sqlmodel import Session, SQLModel, create_engine, select

from rota.errors import (
    AccessDeniedError,
    LimitExceededError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from rota.machine import ResourceStateMachine
from rota.models import AVAILABLE, IN_USE, ResourceUpdate, UsageLogEntry
from rota.repository import ResourceRepository


def log_actions(session):
    return [e.action for e in session.exec(select(UsageLogEntry).order_by(UsageLogEntry.id)).all()]


class TestCheckIn:
    def test_bootstrap_check_in(self, machine, resource, session):
        r = machine.check_in(resource.id, ALICE)
        assert r.status == IN_USE
        assert (r.holder_id, r.holder_name) == ("alice", "Alice")
        assert r.session_token_limit is None
        assert log_actions(session) == ["check-in"]

    def test_check_in_within_block_records_ceiling(self, machine, schedule, resource):
        b = schedule.create_block(new_block(resource.id, token_limit=30))
        r = machine.check_in(resource.id, ALICE)
        assert r.session_block_id == b.id
        assert r.session_token_limit == 30

    def test_denied_without_active_block(self, machine, schedule, resource, session):
        schedule.create_block(new_block(resource.id, holder=BOB))
        with pytest.raises(AccessDeniedError):
            machine.check_in(resource.id, ALICE)
        assert ResourceRepository(session).get(resource.id).status == AVAILABLE
        assert log_actions(session) == []

    def test_denied_when_bootstrap_flag_off(self, session, feed, resource):
        closed = ResourceStateMachine(session, feed, bootstrap_open=False, tz=TZ, clock=lambda: MONDAY_10AM)
        with pytest.raises(AccessDeniedError):
            closed.check_in(resource.id, ALICE)

    def test_already_in_use(self, machine, resource):
        machine.check_in(resource.id, ALICE)
        with pytest.raises(StateConflictError):
            machine.check_in(resource.id, BOB)

    def test_unknown_resource(self, machine):
        with pytest.raises(NotFoundError):
            machine.check_in(404, ALICE)

    def test_change_events(self, machine, resource, events):
        machine.check_in(resource.id, ALICE)
        assert events.tables()[-2:] == [("resource", "update"), ("usage_log", "add")]
        row = events.events[-2].row
        assert row["status"] == IN_USE
        assert "password" not in row and "username" not in row


class TestCheckOut:
    def test_deducts_tokens(self, machine, resource, session):
        machine.check_in(resource.id, ALICE)
        r = machine.check_out(resource.id, ALICE, 15)
        assert r.status == AVAILABLE
        assert r.holder_id is None and r.holder_name is None
        assert r.remaining_tokens == 85
        entries = session.exec(select(UsageLogEntry).order_by(UsageLogEntry.id)).all()
        assert [(e.action, e.tokens_used) for e in entries] == [("check-in", None), ("check-out", 15)]

    def test_remaining_floored_at_zero(self, machine, session):
        r = machine.create_resource(new_resource(remaining_tokens=10))
        machine.check_in(r.id, ALICE)
        assert machine.check_out(r.id, ALICE, 15).remaining_tokens == 0

    def test_zero_tokens(self, machine, resource):
        machine.check_in(resource.id, ALICE)
        assert machine.check_out(resource.id, ALICE, 0).remaining_tokens == 100

    def test_negative_tokens(self, machine, resource):
        machine.check_in(resource.id, ALICE)
        with pytest.raises(ValidationError):
            machine.check_out(resource.id, ALICE, -1)

    def test_tokens_beyond_column_range(self, machine, resource):
        machine.check_in(resource.id, ALICE)
        with pytest.raises(ValidationError):
            machine.check_out(resource.id, ALICE, 10**19)
        assert machine.resources.get(resource.id).holder_id == "alice"

    def test_over_block_limit_leaves_state_unchanged(self, machine, schedule, resource, session):
        schedule.create_block(new_block(resource.id, token_limit=20))
        machine.check_in(resource.id, ALICE)
        with pytest.raises(LimitExceededError):
            machine.check_out(resource.id, ALICE, 25)
        r = ResourceRepository(session).get(resource.id)
        assert (r.status, r.holder_id, r.remaining_tokens) == (IN_USE, "alice", 100)
        assert log_actions(session) == ["check-in"]
        assert machine.check_out(resource.id, ALICE, 20).remaining_tokens == 80

    def test_limit_of_check_in_block_applies_after_it_ends(self, machine, schedule, resource):
        schedule.create_block(new_block(resource.id, token_limit=20))
        machine.check_in(resource.id, ALICE)
        evening = MONDAY_10AM + timedelta(hours=9)
        with pytest.raises(LimitExceededError):
            machine.check_out(resource.id, ALICE, 21, now=evening)

    def test_only_holder_can_check_out(self, machine, resource):
        machine.check_in(resource.id, ALICE)
        with pytest.raises(StateConflictError):
            machine.check_out(resource.id, BOB, 1)

    def test_check_out_of_available_resource(self, machine, resource):
        with pytest.raises(StateConflictError):
            machine.check_out(resource.id, ALICE, 1)


class TestForceRelease:
    def test_releases_without_deduction_and_audits(self, machine, resource, session):
        machine.check_in(resource.id, ALICE)
        r = machine.force_release(resource.id, ADMIN)
        assert (r.status, r.holder_id, r.remaining_tokens) == (AVAILABLE, None, 100)
        entries = session.exec(select(UsageLogEntry).order_by(UsageLogEntry.id)).all()
        assert [(e.action, e.holder_id) for e in entries] == [("check-in", "alice"), ("force-release", "alice")]

    def test_release_of_available_resource_is_not_audited(self, machine, resource, session):
        assert machine.force_release(resource.id, ADMIN).status == AVAILABLE
        assert log_actions(session) == []

    def test_holder_check_out_after_release_conflicts(self, machine, resource):
        machine.check_in(resource.id, ALICE)
        machine.force_release(resource.id, ADMIN)
        with pytest.raises(StateConflictError):
            machine.check_out(resource.id, ALICE, 5)


class TestAdminEdit:
    def test_edit_fields(self, machine, resource, session):
        machine.check_in(resource.id, ALICE)
        r = machine.admin_edit(resource.id, ResourceUpdate(
            name="Sales", remaining_tokens=500, next_refresh_date=date(2026, 12, 1),
        ))
        assert (r.name, r.remaining_tokens, r.next_refresh_date) == ("Sales", 500, date(2026, 12, 1))
        # status / holder untouched, nothing audited
        assert (r.status, r.holder_id) == (IN_USE, "alice")
        assert log_actions(session) == ["check-in"]

    def test_rejects_state_fields(self, machine, resource):
        with pytest.raises(ValidationError, match="status"):
            machine.admin_edit(resource.id, {"status": AVAILABLE})

    def test_rejects_negative_tokens(self, machine, resource):
        with pytest.raises(ValidationError):
            machine.admin_edit(resource.id, {"remaining_tokens": -5})
        with pytest.raises(ValidationError):
            machine.admin_edit(resource.id, {"replenish_amount": 2**31})


class TestCredentials:
    def test_only_current_holder(self, machine, resource):
        with pytest.raises(AccessDeniedError):
            machine.credentials(resource.id, ALICE)
        machine.check_in(resource.id, ALICE)
        creds = machine.credentials(resource.id, ALICE)
        assert (creds.username, creds.password) == ("sourcing@example.com", "hunter2")
        with pytest.raises(AccessDeniedError):
            machine.credentials(resource.id, BOB)


# ------------------------------------------------------------
# Races: two sessions (two connections) on one database file.
# The losing side acts on a snapshot read before the winner
# committed, exactly as if both requests had been interleaved.
# ------------------------------------------------------------
@pytest.fixture
def two_sessions(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'rota.db'}")
    SQLModel.metadata.create_all(engine)
    with Session(engine) as s1, Session(engine) as s2:
        yield s1, s2
    engine.dispose()


def stale_reads(machine, snapshot):
    machine.resources.get = lambda resource_id: snapshot


def test_concurrent_check_in_exactly_one_wins(two_sessions):
    s1, s2 = two_sessions
    m1 = ResourceStateMachine(s1, tz=TZ, clock=lambda: MONDAY_10AM)
    m2 = ResourceStateMachine(s2, tz=TZ, clock=lambda: MONDAY_10AM)
    rid = m1.create_resource(new_resource()).id

    seen_by_bob = m2.resources.get(rid)
    assert seen_by_bob.status == AVAILABLE

    m1.check_in(rid, ALICE)
    stale_reads(m2, seen_by_bob)
    with pytest.raises(StateConflictError):
        m2.check_in(rid, BOB)

    r = ResourceRepository(s1).get(rid)
    assert (r.status, r.holder_id, r.remaining_tokens) == (IN_USE, "alice", 100)
    assert log_actions(s1) == ["check-in"]


def test_check_out_after_force_release_loses(two_sessions):
    s1, s2 = two_sessions
    admin_side = ResourceStateMachine(s1, tz=TZ, clock=lambda: MONDAY_10AM)
    alice_side = ResourceStateMachine(s2, tz=TZ, clock=lambda: MONDAY_10AM)
    rid = admin_side.create_resource(new_resource()).id
    alice_side.check_in(rid, ALICE)

    seen_by_alice = alice_side.resources.get(rid)
    admin_side.force_release(rid, ADMIN)
    stale_reads(alice_side, seen_by_alice)
    with pytest.raises(StateConflictError):
        alice_side.check_out(rid, ALICE, 30)

    r = ResourceRepository(s1).get(rid)
    assert (r.status, r.remaining_tokens) == (AVAILABLE, 100)
    assert log_actions(s1) == ["check-in", "force-release"]
