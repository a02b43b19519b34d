"""
LedgerMind error types.

Chain-side failures, payment failures and local infrastructure failures each
have their own branch so callers can decide whether to retry, fund, or abort.
"""

from __future__ import annotations

from typing import Optional


class LedgerMindError(Exception):
    """Base error for all LedgerMind operations."""

    kind = "error"
    revert_reason: Optional[str] = None


class ConfigError(LedgerMindError):
    """Missing or invalid configuration value."""

    kind = "config"


class StoreError(LedgerMindError):
    """Ledger store could not complete a write."""

    kind = "store"


class BlobStoreError(LedgerMindError):
    """Pinning or fetching an opaque blob failed."""

    kind = "blob_store"


# Chain errors
class ChainError(LedgerMindError):
    """Base error for chain access failures."""

    kind = "transient"


class TransientChainError(ChainError):
    """RPC transport failure or node unavailable. Safe to retry later."""
    pass


class ChainNotFoundError(TransientChainError):
    """Block or transaction not (yet) available on the node."""
    pass


class DecodeError(ChainError):
    """A log or return value could not be decoded against the ABI."""

    kind = "decode"


# Payment errors
class PaymentError(LedgerMindError):
    """Base error for payment failures.

    ``revert_reason`` is the contract's revert string exactly as reported by
    the node, or None when the failure never reached the contract.
    """

    kind = "contract_rejected"

    def __init__(
        self,
        message: str,
        revert_reason: Optional[str] = None,
        intent: Optional[str] = None,
    ):
        self.revert_reason = revert_reason
        self.intent = intent
        super().__init__(message)


class PaymentRequestError(PaymentError):
    """Payment request is malformed (bad address, non-positive amount, ...)."""

    kind = "invalid_request"


class ContractRejectedError(PaymentError):
    """Contract reverted with a reason we do not recognise."""

    kind = "contract_rejected"


class AuthorizationError(ContractRejectedError):
    """Caller is not the intent's agent, or not its payer for payer-only calls."""

    kind = "authorization"


class LimitExceededError(ContractRejectedError):
    """A hard limit refused the payment: caps, window, allowlist or state."""

    kind = "limit_exceeded"


class InsufficientAllowanceError(ContractRejectedError):
    """Escrow balance is lower than the payment amount."""

    kind = "insufficient_allowance"


class InsufficientAgentFundsError(PaymentError):
    """Agent cannot cover the amount needed to fund the escrow."""

    kind = "insufficient_agent_funds"

    def __init__(self, balance: int, required: int, intent: Optional[str] = None):
        self.balance = balance
        self.required = required
        super().__init__(
            f"Agent balance {balance} is below required {required}",
            intent=intent,
        )


_REVERT_PREFIXES = (
    "execution reverted: ",
    "execution reverted:",
    "VM Exception while processing transaction: revert ",
)

_REVERT_KINDS: tuple[tuple[str, type[ContractRejectedError]], ...] = (
    ("not agent", AuthorizationError),
    ("not payer", AuthorizationError),
    ("insufficient balance", InsufficientAllowanceError),
    ("exceeds per tx cap", LimitExceededError),
    ("exceeds total cap", LimitExceededError),
    ("not active", LimitExceededError),
    ("too early", LimitExceededError),
    ("too late", LimitExceededError),
    ("merchant not allowed", LimitExceededError),
    ("out of gas", LimitExceededError),
)


def extract_revert_reason(message: str) -> str:
    """Strip the node's framing from a revert message, leaving the contract's string."""
    reason = str(message).strip()
    for prefix in _REVERT_PREFIXES:
        if reason.startswith(prefix):
            return reason[len(prefix):].strip()
    return reason


def classify_revert(message: str, intent: Optional[str] = None) -> ContractRejectedError:
    """Map a contract revert message onto the payment error taxonomy.

    The returned error always carries the revert reason as reported, so
    callers can show it without depending on the classification.
    """
    reason = extract_revert_reason(message)
    lowered = reason.lower()
    for needle, error_cls in _REVERT_KINDS:
        if needle in lowered:
            return error_cls(f"{error_cls.__name__}: {reason}", revert_reason=reason, intent=intent)
    return ContractRejectedError(f"Contract rejected: {reason}", revert_reason=reason, intent=intent)
