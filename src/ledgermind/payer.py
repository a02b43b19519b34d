"""
Payer-side intent management: top up and revoke.

Both operations confirm that the caller is the intent's payer and that the
intent is still active before anything is submitted. Top-ups approve the
intent as a token spender first when the current allowance is too low.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .abi import CONTRACT_STATE_ACTIVE, CONTRACT_STATE_EXPIRED, CONTRACT_STATE_REVOKED
from .chain import ChainReader, IntentParams
from .config import normalize_address
from .errors import AuthorizationError, LimitExceededError, PaymentRequestError
from .wallet import ContractWriter


logger = logging.getLogger(__name__)

DEFAULT_REVOKE_REASON = "Revoked by payer"

_STATE_NAMES = {
    CONTRACT_STATE_ACTIVE: "active",
    CONTRACT_STATE_REVOKED: "revoked",
    CONTRACT_STATE_EXPIRED: "expired",
}


@dataclass
class PayerActionResult:
    """Outcome of a confirmed top-up or revocation."""

    action: str
    intent: str
    tx_hash: str
    block_number: int
    gas_used: int
    amount: Optional[int] = None
    new_balance: Optional[int] = None
    approve_tx_hash: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "intent": self.intent,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "amount": None if self.amount is None else str(self.amount),
            "new_balance": None if self.new_balance is None else str(self.new_balance),
            "approve_tx_hash": self.approve_tx_hash,
            "reason": self.reason,
        }


class PayerActions:
    """Top-up and revoke for intents owned by ``wallet``."""

    def __init__(self, reader: ChainReader, wallet: ContractWriter):
        self.reader = reader
        self.wallet = wallet

    def _require_active(self, intent: str, action: str) -> IntentParams:
        params = self.reader.read_intent_params(intent)
        if params.payer != normalize_address(self.wallet.address):
            raise AuthorizationError(
                f"Only the payer ({params.payer}) can {action} intent {intent}; "
                f"caller is {self.wallet.address}",
                intent=intent,
            )
        state = self.reader.read_state(intent)
        if state != CONTRACT_STATE_ACTIVE:
            raise LimitExceededError(
                f"Cannot {action} intent {intent} in {_STATE_NAMES.get(state, 'unknown')} state",
                intent=intent,
            )
        return params

    def top_up(self, intent: str, amount: int) -> PayerActionResult:
        intent = _intent_address(intent)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PaymentRequestError(f"Top-up amount must be a positive integer: {amount!r}")
        params = self._require_active(intent, "top up")

        approve_tx_hash = None
        allowance = self.reader.token_allowance(params.token, self.wallet.address, intent)
        if allowance < amount:
            logger.info("Approving %d of %s for intent %s", amount, params.token, intent)
            approve_tx_hash = self.wallet.approve(params.token, intent, amount).tx_hash

        status = self.wallet.top_up(intent, amount)
        balance = self.reader.get_balance(intent)
        logger.info("Topped up %s with %d in %s (balance %d)", intent, amount, status.tx_hash, balance)
        return PayerActionResult(
            action="top_up",
            intent=intent,
            tx_hash=status.tx_hash,
            block_number=status.block_number,
            gas_used=status.gas_used,
            amount=amount,
            new_balance=balance,
            approve_tx_hash=approve_tx_hash,
        )

    def revoke(self, intent: str, reason: Optional[str] = None) -> PayerActionResult:
        intent = _intent_address(intent)
        reason = reason or DEFAULT_REVOKE_REASON
        self._require_active(intent, "revoke")
        status = self.wallet.revoke(intent, reason)
        logger.info("Revoked %s in %s: %s", intent, status.tx_hash, reason)
        return PayerActionResult(
            action="revoke",
            intent=intent,
            tx_hash=status.tx_hash,
            block_number=status.block_number,
            gas_used=status.gas_used,
            reason=reason,
        )


def _intent_address(value: str) -> str:
    try:
        return normalize_address(value)
    except ValueError as e:
        raise PaymentRequestError(str(e)) from e
