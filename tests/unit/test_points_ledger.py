"""
Unit tests for the points ledger reducer and validation.
"""
from datetime import datetime, timedelta, timezone

import pytest

from apps.backend.services.loyalty.errors import InsufficientPoints, InvalidAmount, LedgerInconsistency
from apps.backend.services.loyalty.points_ledger import LoyaltyTransaction, PointsLedger

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _write(ledger, balance, delta, ttype, seq, at=T0):
    return ledger.prepare(
        customer_id="c1",
        current_balance=balance,
        delta=delta,
        transaction_type=ttype,
        description="test",
        created_at=at,
        sequence=seq,
    )


def _txn(delta, ttype, seq, at=T0):
    return LoyaltyTransaction(
        id=f"t{seq}",
        customer_id="c1",
        points_change=delta,
        transaction_type=ttype,
        description="test",
        created_at=at,
        balance_after=0,
        sequence=seq,
    )


def test_prepare_earn_builds_transaction():
    w = _write(PointsLedger(), 30, 120, "EARNED_BONUS", 4)

    assert w.new_balance == 150
    assert w.transaction.balance_after == 150
    assert w.transaction.sequence == 4
    assert w.totals_delta == {"points_earned": 120}


def test_prepare_rejects_zero_points():
    with pytest.raises(InvalidAmount):
        _write(PointsLedger(), 10, 0, "REDEEMED_DISCOUNT", 1)


def test_prepare_rejects_wrong_sign_for_type():
    with pytest.raises(InvalidAmount):
        _write(PointsLedger(), 10, 5, "REDEEMED_DISCOUNT", 1)
    with pytest.raises(InvalidAmount):
        _write(PointsLedger(), 10, -5, "EARNED_BONUS", 1)


def test_prepare_rejects_unknown_type_and_bool():
    with pytest.raises(InvalidAmount):
        _write(PointsLedger(), 10, 5, "GIFTED", 1)
    with pytest.raises(InvalidAmount):
        _write(PointsLedger(), 10, True, "EARNED_BONUS", 1)


def test_prepare_never_allows_negative_balance():
    with pytest.raises(InsufficientPoints) as exc:
        _write(PointsLedger(), 70, -71, "REDEEMED_ITEM", 3)
    assert exc.value.details == {"customer_id": "c1", "requested": 71, "available": 70}

    # exact balance is fine
    assert _write(PointsLedger(), 70, -70, "REDEEMED_ITEM", 3).new_balance == 0


def test_reduce_folds_in_sequence_order():
    txns = [
        _txn(-50, "REDEEMED_DISCOUNT", 2),
        _txn(120, "EARNED_BONUS", 1),
        _txn(-10, "EXPIRED", 3),
        _txn(-5, "ADJUSTMENT_SUBTRACT", 4),
    ]
    state = PointsLedger().reduce("c1", txns)

    assert state.points_balance == 55
    assert state.points_earned == 120
    assert state.points_redeemed == 50
    assert state.points_expired == 10
    assert state.points_adjusted_out == 5
    assert state.transaction_count == 4


def test_verify_detects_mismatch():
    txns = [_txn(120, "EARNED_BONUS", 1), _txn(-50, "REDEEMED_DISCOUNT", 2)]

    assert PointsLedger().verify("c1", 70, txns).points_balance == 70
    with pytest.raises(LedgerInconsistency) as exc:
        PointsLedger().verify("c1", 71, txns)
    assert exc.value.details["replayed_balance"] == 70
    assert exc.value.status_code == 500


def test_expirable_points_fifo():
    txns = [
        _txn(100, "EARNED_PURCHASE", 1, T0),
        _txn(50, "EARNED_BONUS", 2, T0 + timedelta(days=10)),
        _txn(-30, "REDEEMED_DISCOUNT", 3, T0 + timedelta(days=20)),
    ]
    ledger = PointsLedger()

    # the redemption consumed the oldest 30 points first
    assert ledger.expirable_points(txns, T0 + timedelta(days=5)) == 70
    assert ledger.expirable_points(txns, T0 + timedelta(days=15)) == 120
    assert ledger.expirable_points(txns, T0 - timedelta(days=1)) == 0


def test_expirable_points_after_expiry_is_zero():
    txns = [
        _txn(100, "EARNED_PURCHASE", 1, T0),
        _txn(-100, "EXPIRED", 2, T0 + timedelta(days=400)),
    ]
    assert PointsLedger().expirable_points(txns, T0 + timedelta(days=35)) == 0
