"""
Tests for `domain/lifecycle.py` and `domain/polling.py`.
"""

from __future__ import annotations

import pytest

from conftest import stage_draft
from domain.lifecycle import InvalidTransition, PaymentLifecycle, advance, lifecycle_of
from domain.polling import DEFAULT_POLLING_POLICY, PollingPolicy


def test_happy_path_transitions() -> None:
    state = advance(PaymentLifecycle.INITIATED, PaymentLifecycle.AWAITING_CONFIRMATION)
    state = advance(state, PaymentLifecycle.MATERIALIZED)

    assert state is PaymentLifecycle.MATERIALIZED
    assert state.is_terminal


def test_terminal_state_accepts_replay_only() -> None:
    assert advance(PaymentLifecycle.MATERIALIZED, PaymentLifecycle.MATERIALIZED) is PaymentLifecycle.MATERIALIZED

    with pytest.raises(InvalidTransition):
        advance(PaymentLifecycle.MATERIALIZED, PaymentLifecycle.EXPIRED)
    with pytest.raises(InvalidTransition):
        advance(PaymentLifecycle.EXPIRED, PaymentLifecycle.MATERIALIZED)


def test_cannot_materialize_before_confirmation_is_awaited() -> None:
    with pytest.raises(InvalidTransition):
        advance(PaymentLifecycle.INITIATED, PaymentLifecycle.MATERIALIZED)


def test_lifecycle_of_staged_record(staging, clock) -> None:
    assert lifecycle_of(None, clock()) is PaymentLifecycle.EXPIRED

    record = stage_draft(staging, "stripe_1")
    assert lifecycle_of(record, clock()) is PaymentLifecycle.INITIATED

    record = record.linked("pi_1")
    assert lifecycle_of(record, clock()) is PaymentLifecycle.AWAITING_CONFIRMATION

    clock.advance(minutes=31)
    assert lifecycle_of(record, clock()) is PaymentLifecycle.EXPIRED

    done = record.completed(1001, "pi_1", clock())
    assert lifecycle_of(done, clock()) is PaymentLifecycle.MATERIALIZED


def test_default_polling_policy_backs_off_and_caps() -> None:
    delays = DEFAULT_POLLING_POLICY.delays()

    assert len(delays) == 12
    assert delays[0] == 1.0
    assert delays[1] == 1.5
    assert delays[2] == 2.25
    assert max(delays) == 8.0
    assert all(a <= b for a, b in zip(delays, delays[1:]))


def test_polling_policy_escalates_at_ceiling() -> None:
    policy = PollingPolicy(max_attempts=3)

    assert policy.should_escalate(2) is False
    assert policy.should_escalate(3) is True


def test_polling_policy_rejects_bad_values() -> None:
    with pytest.raises(ValueError):
        PollingPolicy(initial_delay_seconds=0)
    with pytest.raises(ValueError):
        PollingPolicy().delay_for(0)
