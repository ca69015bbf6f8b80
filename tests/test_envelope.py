"""Tests for shared budget envelopes."""

import pytest

from tonpay.envelope import (
    Envelope,
    EnvelopeBook,
    assign_agent,
    create_envelope,
    get_allowance,
    reserve_budget,
    rollback_reservation,
)
from tonpay.errors import (
    BudgetExceededError,
    InvalidArgumentError,
    InvariantViolationError,
    NotFoundError,
    UnauthorizedError,
)


def make_book(total=1_000_000_000, window=3600, now=1_000, agents=("a",)) -> EnvelopeBook:
    book = EnvelopeBook()
    create_envelope(book, "ops", total, window, now=now)
    for agent in agents:
        assign_agent(book, "ops", agent)
    return book


class TestCreateEnvelope:
    def test_new_envelope_starts_empty(self):
        book = EnvelopeBook()
        env = create_envelope(book, "ops", 500, 60, now=42)
        assert env.spent_in_window_nano == 0
        assert env.window_started_at == 42
        assert env.remaining_nano == 500
        assert book.envelopes["ops"] == env

    @pytest.mark.parametrize(
        "envelope_id,total,window",
        [("", 10, 10), ("   ", 10, 10), ("x", 0, 10), ("x", -5, 10), ("x", 10, 0)],
    )
    def test_rejects_invalid_arguments(self, envelope_id, total, window):
        with pytest.raises(InvalidArgumentError):
            create_envelope(EnvelopeBook(), envelope_id, total, window, now=0)

    def test_rejects_duplicate_id(self):
        book = make_book()
        with pytest.raises(InvalidArgumentError, match="already exists"):
            create_envelope(book, "ops", 10, 10, now=0)


class TestAssignAgent:
    def test_assign_is_idempotent(self):
        book = make_book(agents=())
        assign_agent(book, "ops", "a")
        env = assign_agent(book, "ops", "a")
        assert env.agent_ids == ("a",)

    def test_missing_envelope(self):
        with pytest.raises(NotFoundError, match="Envelope nope not found"):
            assign_agent(EnvelopeBook(), "nope", "a")

    def test_empty_agent(self):
        with pytest.raises(InvalidArgumentError):
            assign_agent(make_book(), "ops", "")


class TestReservation:
    def test_ops_scenario(self):
        book = make_book()
        allowance = reserve_budget(book, "ops", "a", 400_000_000, now=1_001)
        assert allowance.remaining_nano == 600_000_000

        with pytest.raises(BudgetExceededError) as exc_info:
            reserve_budget(book, "ops", "a", 700_000_000, now=1_002)
        assert exc_info.value.remaining_nano == 600_000_000
        assert exc_info.value.amount_nano == 700_000_000
        assert "Envelope limit exceeded for ops" in str(exc_info.value)

        assert get_allowance(book, "ops", now=1_003).remaining_nano == 600_000_000

    def test_reserve_then_rollback_restores_remaining(self):
        book = make_book()
        before = get_allowance(book, "ops", now=1_001).remaining_nano
        reserve_budget(book, "ops", "a", 250, now=1_001)
        rollback_reservation(book, "ops", 250)
        assert get_allowance(book, "ops", now=1_001).remaining_nano == before

    def test_unassigned_agent_is_unauthorized_and_mutates_nothing(self):
        book = make_book()
        snapshot = book.to_dict()
        with pytest.raises(UnauthorizedError, match="Agent b is not assigned to envelope ops"):
            reserve_budget(book, "ops", "b", 1, now=1_001)
        assert book.to_dict() == snapshot

    def test_failed_reserve_after_window_expiry_mutates_nothing(self):
        book = make_book(total=10, window=10, now=100)
        reserve_budget(book, "ops", "a", 8, now=105)
        snapshot = book.to_dict()
        with pytest.raises(BudgetExceededError):
            reserve_budget(book, "ops", "a", 11, now=111)
        assert book.to_dict() == snapshot

    def test_exact_remaining_is_allowed(self):
        book = make_book(total=10)
        allowance = reserve_budget(book, "ops", "a", 10, now=1_001)
        assert allowance.remaining_nano == 0

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amounts(self, amount):
        book = make_book()
        with pytest.raises(InvalidArgumentError):
            reserve_budget(book, "ops", "a", amount, now=1_001)
        with pytest.raises(InvalidArgumentError):
            rollback_reservation(book, "ops", amount)

    def test_rollback_cannot_go_negative(self):
        book = make_book()
        reserve_budget(book, "ops", "a", 5, now=1_001)
        with pytest.raises(InvariantViolationError, match="Cannot rollback"):
            rollback_reservation(book, "ops", 6)
        assert book.envelopes["ops"].spent_in_window_nano == 5


class TestWindowReset:
    def test_allowance_resets_when_window_elapses(self):
        book = make_book(total=10, window=10, now=100)
        reserve_budget(book, "ops", "a", 8, now=105)
        assert get_allowance(book, "ops", now=109).remaining_nano == 2

        allowance = get_allowance(book, "ops", now=111)
        assert allowance.remaining_nano == 10
        assert allowance.envelope.window_started_at == 111
        assert book.envelopes["ops"].spent_in_window_nano == 0

    def test_reset_happens_exactly_at_window_end(self):
        book = make_book(total=10, window=10, now=100)
        reserve_budget(book, "ops", "a", 8, now=105)
        assert get_allowance(book, "ops", now=110).remaining_nano == 10

    def test_reserve_applies_reset_before_checking(self):
        book = make_book(total=10, window=10, now=100)
        reserve_budget(book, "ops", "a", 8, now=105)
        allowance = reserve_budget(book, "ops", "a", 9, now=120)
        assert allowance.remaining_nano == 1


def test_book_round_trips_camel_case_schema():
    book = make_book()
    reserve_budget(book, "ops", "a", 7, now=1_001)
    raw = book.to_dict()
    entry = raw["envelopes"]["ops"]
    assert entry["totalBudgetNano"] == "1000000000"
    assert entry["spentInWindowNano"] == "7"
    assert entry["periodSeconds"] == 3600
    assert entry["agentIds"] == ["a"]
    assert EnvelopeBook.from_dict(raw).envelopes["ops"] == book.envelopes["ops"]
    assert isinstance(EnvelopeBook.from_dict(raw).envelopes["ops"], Envelope)
