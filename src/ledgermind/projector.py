"""
Intent state projection.

Folds an intent's events into an ``IntentView``. Everything here is pure:
the same parameters, events, spent snapshot and clock always produce the same
view, so a view can be rebuilt from stored rows alone.

Lifecycle:
    active -> paused | revoked
    paused -> active | revoked
    revoked is terminal
    expired is never stored; it is derived from the clock by ``is_expired``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Sequence

from .chain import DecodedEvent
from .store import (
    IntentRecord,
    MerchantEntry,
    ReceiptRecord,
    RevocationRecord,
    TopUpRecord,
    WithdrawalRecord,
)


logger = logging.getLogger(__name__)


class IntentState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REVOKED = "revoked"
    EXPIRED = "expired"


_TRANSITIONS: dict[IntentState, frozenset[IntentState]] = {
    IntentState.ACTIVE: frozenset({IntentState.PAUSED, IntentState.REVOKED}),
    IntentState.PAUSED: frozenset({IntentState.ACTIVE, IntentState.REVOKED}),
    IntentState.REVOKED: frozenset(),
}


def can_transition(current: IntentState, target: IntentState) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def is_expired(now: int, end_time: int) -> bool:
    """The one place expiry is decided."""
    return now >= end_time


def effective_state(stored: str | IntentState, end_time: int, now: int) -> IntentState:
    state = IntentState(stored)
    if state is IntentState.REVOKED:
        return state
    if is_expired(now, end_time):
        return IntentState.EXPIRED
    return state


@dataclass
class IntentView:
    """Point-in-time read model of one payment intent."""

    address: str
    payer: str
    agent: str
    token: str
    total_cap: int
    per_tx_cap: int
    spent: int
    remaining_cap: int
    start_time: int
    end_time: int
    state: IntentState
    metadata_uri: str = ""
    merchants: dict[str, bool] = field(default_factory=dict)
    receipt_count: int = 0
    receipts_total: int = 0
    topped_up_total: int = 0
    withdrawn_total: int = 0
    revoked_by: Optional[str] = None
    revoke_reason: Optional[str] = None

    @property
    def merchant_restricted(self) -> bool:
        return bool(self.merchants)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "payer": self.payer,
            "agent": self.agent,
            "token": self.token,
            "total_cap": str(self.total_cap),
            "per_tx_cap": str(self.per_tx_cap),
            "spent": str(self.spent),
            "remaining_cap": str(self.remaining_cap),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "state": self.state.value,
            "metadata_uri": self.metadata_uri,
            "merchants": dict(self.merchants),
            "merchant_restricted": self.merchant_restricted,
            "receipt_count": self.receipt_count,
            "receipts_total": str(self.receipts_total),
            "topped_up_total": str(self.topped_up_total),
            "withdrawn_total": str(self.withdrawn_total),
            "revoked_by": self.revoked_by,
            "revoke_reason": self.revoke_reason,
        }


def is_merchant_permitted(view: IntentView, merchant: str) -> bool:
    """An intent with no allowlist entries accepts any merchant."""
    if not view.merchant_restricted:
        return True
    return view.merchants.get(merchant.lower(), False)


def project(
    params: IntentRecord,
    events: Iterable[DecodedEvent],
    spent_snapshot: int,
    now: int,
) -> IntentView:
    """Fold ``events`` over ``params`` into a view as of ``now``.

    ``spent_snapshot`` is the latest value read from the contract; the view
    never derives spent by summing receipts.
    """
    state = IntentState.ACTIVE
    merchants: dict[str, bool] = {}
    receipt_count = receipts_total = topped_up = withdrawn = 0
    revoked_by: Optional[str] = None
    revoke_reason: Optional[str] = None

    for event in sorted(events, key=lambda e: e.position):
        args = event.args
        if event.name == "Executed":
            receipt_count += 1
            receipts_total += int(args["amount"])
        elif event.name == "ToppedUp":
            topped_up += int(args["amount"])
        elif event.name == "Withdrawn":
            withdrawn += int(args["amount"])
        elif event.name == "MerchantUpdated":
            merchants[str(args["merchant"]).lower()] = bool(args["allowed"])
        elif event.name == "Revoked":
            if can_transition(state, IntentState.REVOKED):
                state = IntentState.REVOKED
                revoked_by = args.get("by")
                revoke_reason = args.get("reason")
            else:
                logger.debug("Ignoring repeated revocation of %s", params.address)

    spent = min(max(spent_snapshot, 0), params.total_cap)
    return IntentView(
        address=params.address,
        payer=params.payer,
        agent=params.agent,
        token=params.token,
        total_cap=params.total_cap,
        per_tx_cap=params.per_tx_cap,
        spent=spent,
        remaining_cap=params.total_cap - spent,
        start_time=params.start_time,
        end_time=params.end_time,
        state=effective_state(state, params.end_time, now),
        metadata_uri=params.metadata_uri,
        merchants=merchants,
        receipt_count=receipt_count,
        receipts_total=receipts_total,
        topped_up_total=topped_up,
        withdrawn_total=withdrawn,
        revoked_by=revoked_by,
        revoke_reason=revoke_reason,
    )


def events_from_rows(
    receipts: Sequence[ReceiptRecord] = (),
    top_ups: Sequence[TopUpRecord] = (),
    withdrawals: Sequence[WithdrawalRecord] = (),
    revocations: Sequence[RevocationRecord] = (),
    merchants: Sequence[MerchantEntry] = (),
) -> list[DecodedEvent]:
    """Rebuild the event sequence of one intent from stored rows."""
    events: list[DecodedEvent] = []
    for r in receipts:
        events.append(DecodedEvent(
            "Executed", r.intent_address,
            {"merchant": r.merchant, "token": r.token, "amount": r.amount,
             "receiptHash": r.receipt_hash, "receiptURI": r.receipt_uri},
            r.tx_hash, r.block_number, r.log_index,
        ))
    for t in top_ups:
        events.append(DecodedEvent(
            "ToppedUp", t.intent_address, {"amount": t.amount},
            t.tx_hash, t.block_number, t.log_index,
        ))
    for w in withdrawals:
        events.append(DecodedEvent(
            "Withdrawn", w.intent_address, {"to": w.to_address, "amount": w.amount},
            w.tx_hash, w.block_number, w.log_index,
        ))
    for v in revocations:
        events.append(DecodedEvent(
            "Revoked", v.intent_address, {"by": v.revoked_by, "reason": v.reason},
            v.tx_hash, v.block_number, v.log_index,
        ))
    for m in merchants:
        # Only the latest entry per merchant is stored, which folds to the same map
        events.append(DecodedEvent(
            "MerchantUpdated", m.intent_address, {"merchant": m.merchant, "allowed": m.allowed},
            "", m.block_number, m.log_index,
        ))
    return sorted(events, key=lambda e: e.position)
