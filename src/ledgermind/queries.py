"""Read-side query API over the ledger store.

Results are eventually consistent with the chain: they reflect the last
committed indexer cycle.
"""

from __future__ import annotations

import time
from typing import Optional

from .config import normalize_address
from .projector import IntentState, IntentView, events_from_rows, project
from .store import (
    IntentRecord,
    LedgerStore,
    ReceiptRecord,
    RevocationRecord,
    TopUpRecord,
    WithdrawalRecord,
)


MAX_PAGE_SIZE = 500


def _page(limit: int, offset: int) -> tuple[int, int]:
    if limit <= 0:
        raise ValueError("limit must be positive")
    if offset < 0:
        raise ValueError("offset must be non-negative")
    return min(limit, MAX_PAGE_SIZE), offset


class IntentQueries:
    def __init__(self, store: LedgerStore, clock=time.time):
        self.store = store
        self._clock = clock

    def _now(self, now: Optional[int]) -> int:
        return int(self._clock()) if now is None else int(now)

    def list_intents(
        self,
        payer: Optional[str] = None,
        agent: Optional[str] = None,
        state: Optional[str | IntentState] = None,
        limit: int = 50,
        offset: int = 0,
        now: Optional[int] = None,
    ) -> list[IntentView]:
        """Intents for a payer and/or agent, newest first.

        ``state`` filters on the derived state, so ``expired`` matches intents
        whose window has closed even though no event ever marked them.
        """
        limit, offset = _page(limit, offset)
        state_value = IntentState(state).value if state is not None else None
        now = self._now(now)
        records = self.store.find_intents(
            payer=normalize_address(payer) if payer else None,
            agent=normalize_address(agent) if agent else None,
            state=state_value,
            now=now,
            limit=limit,
            offset=offset,
        )
        return [self._view(r, now) for r in records]

    def get_intent(self, address: str, now: Optional[int] = None) -> Optional[IntentView]:
        record = self.store.get_intent(normalize_address(address))
        if record is None:
            return None
        return self._view(record, self._now(now))

    def list_receipts(self, address: str, limit: int = 50, offset: int = 0) -> list[ReceiptRecord]:
        limit, offset = _page(limit, offset)
        return self.store.list_receipts(normalize_address(address), limit=limit, offset=offset)

    def list_top_ups(self, address: str) -> list[TopUpRecord]:
        return self.store.list_top_ups(normalize_address(address))

    def list_withdrawals(self, address: str) -> list[WithdrawalRecord]:
        return self.store.list_withdrawals(normalize_address(address))

    def list_revocations(self, address: str) -> list[RevocationRecord]:
        return self.store.list_revocations(normalize_address(address))

    def get_cursor(self) -> Optional[int]:
        return self.store.get_cursor()

    def _view(self, record: IntentRecord, now: int) -> IntentView:
        address = record.address
        events = events_from_rows(
            receipts=self.store.list_receipts(address, limit=None),
            top_ups=self.store.list_top_ups(address),
            withdrawals=self.store.list_withdrawals(address),
            revocations=self.store.list_revocations(address),
            merchants=self.store.list_merchant_entries(address),
        )
        return project(record, events, record.spent, now)
