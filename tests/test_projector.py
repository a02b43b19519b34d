"""Tests for the pure intent state projection."""

from ledgermind.chain import DecodedEvent
from ledgermind.projector import (
    IntentState,
    can_transition,
    effective_state,
    events_from_rows,
    is_expired,
    is_merchant_permitted,
    project,
)
from ledgermind.store import IntentRecord, MerchantEntry, ReceiptRecord, TopUpRecord


INTENT = "0x" + "a1" * 20
PAYER = "0x" + "11" * 20
MERCHANT = "0x" + "44" * 20
OTHER = "0x" + "55" * 20


def _params(total_cap: int = 1_000, end_time: int = 10_000) -> IntentRecord:
    return IntentRecord(
        address=INTENT,
        payer=PAYER,
        agent="0x" + "22" * 20,
        token="0x" + "33" * 20,
        total_cap=total_cap,
        per_tx_cap=100,
        start_time=0,
        end_time=end_time,
        tx_hash="0x" + "00" * 32,
        block_number=1,
        created_at=1,
    )


def _event(name: str, block: int, log_index: int = 0, **args) -> DecodedEvent:
    return DecodedEvent(name, INTENT, args, "0x" + f"{block:02x}" * 32, block, log_index)


class TestLifecycle:
    def test_transitions(self):
        assert can_transition(IntentState.ACTIVE, IntentState.REVOKED)
        assert can_transition(IntentState.PAUSED, IntentState.ACTIVE)
        assert not can_transition(IntentState.REVOKED, IntentState.ACTIVE)
        assert not can_transition(IntentState.REVOKED, IntentState.REVOKED)

    def test_expiry_boundary(self):
        assert not is_expired(now=9_999, end_time=10_000)
        assert is_expired(now=10_000, end_time=10_000)

    def test_revoked_wins_over_expired(self):
        assert effective_state("revoked", end_time=10, now=100) is IntentState.REVOKED
        assert effective_state("active", end_time=10, now=100) is IntentState.EXPIRED
        assert effective_state("active", end_time=1_000, now=100) is IntentState.ACTIVE


class TestProject:
    def test_fold_in_position_order(self):
        events = [
            _event("MerchantUpdated", 7, merchant=MERCHANT, allowed=False),
            _event("Executed", 4, merchant=MERCHANT, amount=40),
            _event("MerchantUpdated", 3, merchant=MERCHANT, allowed=True),
            _event("ToppedUp", 2, amount=500),
            _event("Withdrawn", 9, to=PAYER, amount=60),
        ]
        view = project(_params(), events, spent_snapshot=40, now=100)
        assert view.state is IntentState.ACTIVE
        assert view.merchants == {MERCHANT: False}
        assert view.merchant_restricted
        assert view.receipt_count == 1
        assert view.receipts_total == 40
        assert view.topped_up_total == 500
        assert view.withdrawn_total == 60
        assert view.remaining_cap == 960

    def test_spent_comes_from_snapshot_not_receipts(self):
        events = [_event("Executed", 4, merchant=MERCHANT, amount=40)]
        assert project(_params(), events, spent_snapshot=75, now=100).spent == 75

    def test_spent_is_clamped_to_cap(self):
        view = project(_params(total_cap=100), [], spent_snapshot=250, now=100)
        assert view.spent == 100
        assert view.remaining_cap == 0

    def test_first_revocation_is_terminal(self):
        events = [
            _event("Revoked", 5, by=PAYER, reason="first"),
            _event("Revoked", 6, by=PAYER, reason="second"),
        ]
        view = project(_params(), events, spent_snapshot=0, now=100)
        assert view.state is IntentState.REVOKED
        assert view.revoke_reason == "first"

    def test_expired_is_derived_from_clock(self):
        assert project(_params(end_time=50), [], 0, now=50).state is IntentState.EXPIRED

    def test_same_inputs_same_view(self):
        events = [_event("ToppedUp", 2, amount=5), _event("Executed", 3, merchant=MERCHANT, amount=1)]
        assert project(_params(), events, 1, 100) == project(_params(), list(reversed(events)), 1, 100)

    def test_merchant_permission(self):
        events = [_event("MerchantUpdated", 3, merchant=MERCHANT, allowed=True)]
        view = project(_params(), events, 0, 100)
        assert is_merchant_permitted(view, MERCHANT.upper().replace("0X", "0x"))
        assert not is_merchant_permitted(view, OTHER)
        assert is_merchant_permitted(project(_params(), [], 0, 100), OTHER)

    def test_removed_merchant_keeps_intent_restricted(self):
        events = [
            _event("MerchantUpdated", 2, merchant=MERCHANT, allowed=True),
            _event("MerchantUpdated", 3, merchant=MERCHANT, allowed=False),
        ]
        view = project(_params(), events, 0, 100)
        assert view.merchant_restricted
        assert not is_merchant_permitted(view, MERCHANT)
        assert not is_merchant_permitted(view, OTHER)


def test_events_from_rows_rebuilds_ordered_sequence():
    receipts = [
        ReceiptRecord("0x" + "01" * 32, INTENT, MERCHANT, 40, "0x" + "33" * 20, "0x" + "ee" * 32, "", 10, 8, 0)
    ]
    top_ups = [TopUpRecord("0x" + "02" * 32, INTENT, 500, 5, 3, 0)]
    merchants = [MerchantEntry(INTENT, MERCHANT, True, 2, 1)]

    events = events_from_rows(receipts=receipts, top_ups=top_ups, merchants=merchants)

    assert [e.name for e in events] == ["MerchantUpdated", "ToppedUp", "Executed"]
    view = project(_params(), events, 40, 100)
    assert view.merchant_restricted
    assert view.topped_up_total == 500
