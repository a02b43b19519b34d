"""
Funded-payment orchestrator.

Runs one agent payment against a payment intent as a small state machine:

    Analyzing -> Checking -> Executing -> Success
                                       -> AutoFunding -> Retrying -> Success | Failed
                                       -> Failed

Executing only moves to AutoFunding when the contract reports an
insufficient escrow balance. Funding comes from the agent's own token
balance and the payment is retried exactly once with identical parameters.
Hard limits (caps, window, allowlist, state) and authorization failures go
straight to Failed without moving any funds.

Every transition is written to the audit trail and published to subscribers.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .audit import AuditTrail, EventType
from .blobstore import BlobStore, ReceiptTranscript
from .chain import ChainReader, TxStatus
from .config import DEFAULT_AUTO_FUND_BUFFER, normalize_address
from .errors import (
    ChainError,
    InsufficientAgentFundsError,
    InsufficientAllowanceError,
    LedgerMindError,
    PaymentRequestError,
)
from .wallet import ContractWriter


logger = logging.getLogger(__name__)

MAX_EXECUTE_ATTEMPTS = 2


class PaymentState(str, Enum):
    ANALYZING = "analyzing"
    CHECKING = "checking"
    EXECUTING = "executing"
    AUTO_FUNDING = "auto_funding"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


_AUDIT_EVENTS = {
    PaymentState.ANALYZING: EventType.ANALYZING,
    PaymentState.CHECKING: EventType.CHECKING,
    PaymentState.EXECUTING: EventType.EXECUTING,
    PaymentState.AUTO_FUNDING: EventType.AUTO_FUNDING,
    PaymentState.RETRYING: EventType.RETRYING,
    PaymentState.SUCCESS: EventType.SUCCEEDED,
    PaymentState.FAILED: EventType.FAILED,
}


@dataclass
class PaymentRequest:
    """A payment the agent wants to make from an intent.

    Supply either a ``transcript`` (pinned during Analyzing) or a
    precomputed ``receipt_hash`` and ``receipt_uri``.
    """

    intent: str
    merchant: str
    amount: int
    receipt_hash: Optional[str] = None
    receipt_uri: str = ""
    transcript: Optional[ReceiptTranscript | dict[str, Any]] = None


@dataclass
class Transition:
    """One completed state of a run."""

    run_id: str
    state: PaymentState
    success: bool
    duration_ms: int
    attempt: Optional[int] = None
    tx_hash: Optional[str] = None
    kind: Optional[str] = None
    reason: Optional[str] = None
    revert_reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentOutcome:
    """Result of a funded-payment run."""

    success: bool
    state: PaymentState
    run_id: str
    intent: str
    merchant: str
    amount: int
    tx_hash: Optional[str] = None
    funding_tx_hash: Optional[str] = None
    funding_amount: int = 0
    execute_attempts: int = 0
    receipt_hash: Optional[str] = None
    receipt_uri: Optional[str] = None
    error: Optional[LedgerMindError] = None
    transitions: list[Transition] = field(default_factory=list)

    @property
    def kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    @property
    def revert_reason(self) -> Optional[str]:
        return self.error.revert_reason if self.error else None

    @property
    def reason(self) -> Optional[str]:
        return str(self.error) if self.error else None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "state": self.state.value,
            "run_id": self.run_id,
            "intent": self.intent,
            "merchant": self.merchant,
            "amount": str(self.amount),
            "tx_hash": self.tx_hash,
            "funding_tx_hash": self.funding_tx_hash,
            "funding_amount": str(self.funding_amount),
            "execute_attempts": self.execute_attempts,
            "receipt_hash": self.receipt_hash,
            "receipt_uri": self.receipt_uri,
            "kind": self.kind,
            "reason": self.reason,
            "revert_reason": self.revert_reason,
        }


class FundedPaymentOrchestrator:
    """Executes payments, funding the escrow from the agent once if needed."""

    def __init__(
        self,
        reader: ChainReader,
        wallet: ContractWriter,
        audit: AuditTrail,
        blob_store: Optional[BlobStore] = None,
        auto_fund_buffer: int = DEFAULT_AUTO_FUND_BUFFER,
        on_success: Optional[Callable[[], None]] = None,
    ):
        if auto_fund_buffer < 0:
            raise ValueError("auto_fund_buffer must be non-negative")
        self.reader = reader
        self.wallet = wallet
        self.audit = audit
        self.blob_store = blob_store
        self.auto_fund_buffer = auto_fund_buffer
        self.on_success = on_success
        self._subscribers: list[Callable[[Transition], None]] = []

    def subscribe(self, callback: Callable[[Transition], None]) -> Callable[[], None]:
        """Receive every transition. Returns a function that unsubscribes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ── Run ──────────────────────────────────────────────────────────

    def run(self, request: PaymentRequest) -> PaymentOutcome:
        outcome = PaymentOutcome(
            success=False,
            state=PaymentState.ANALYZING,
            run_id=uuid.uuid4().hex[:16],
            intent=str(request.intent),
            merchant=str(request.merchant),
            amount=request.amount if isinstance(request.amount, int) else 0,
        )
        started = time.monotonic()
        try:
            self._analyze(outcome, request)
            token = self._check(outcome)
            try:
                status = self._execute(outcome, PaymentState.EXECUTING)
            except InsufficientAllowanceError as shortfall:
                self._auto_fund(outcome, token, shortfall)
                status = self._execute(outcome, PaymentState.RETRYING)
        except LedgerMindError as e:
            outcome.error = e
            self._record(
                outcome, PaymentState.FAILED, started, success=False, error=e,
                details={"execute_attempts": outcome.execute_attempts},
            )
            logger.warning(
                "Payment run %s failed (%s): %s", outcome.run_id, e.kind, e,
            )
            return outcome

        outcome.success = True
        outcome.tx_hash = status.tx_hash
        self._record(
            outcome, PaymentState.SUCCESS, started, tx_hash=status.tx_hash,
            details={
                "execute_attempts": outcome.execute_attempts,
                "funding_amount": str(outcome.funding_amount),
                "gas_used": status.gas_used,
            },
        )
        logger.info(
            "Payment run %s succeeded in %s after %d attempt(s)",
            outcome.run_id, status.tx_hash, outcome.execute_attempts,
        )
        if self.on_success is not None:
            self.on_success()
        return outcome

    # ── States ───────────────────────────────────────────────────────

    def _analyze(self, outcome: PaymentOutcome, request: PaymentRequest) -> None:
        started = time.monotonic()
        try:
            if isinstance(request.amount, bool) or not isinstance(request.amount, int):
                raise PaymentRequestError(f"Amount must be an integer number of base units: {request.amount!r}")
            if request.amount <= 0:
                raise PaymentRequestError(f"Amount must be positive: {request.amount}")
            try:
                outcome.intent = normalize_address(request.intent)
                outcome.merchant = normalize_address(request.merchant)
            except ValueError as e:
                raise PaymentRequestError(str(e)) from e

            if request.transcript is not None:
                if request.receipt_hash:
                    raise PaymentRequestError("Provide a transcript or a receipt hash, not both")
                if self.blob_store is None:
                    raise PaymentRequestError("A blob store is required to pin transcripts")
                blob = (
                    request.transcript.to_blob()
                    if isinstance(request.transcript, ReceiptTranscript)
                    else dict(request.transcript)
                )
                pinned = self.blob_store.pin(blob)
                outcome.receipt_hash, outcome.receipt_uri = pinned.content_hash, pinned.uri
            elif request.receipt_hash:
                outcome.receipt_hash = _validate_hash(request.receipt_hash)
                outcome.receipt_uri = request.receipt_uri or ""
            else:
                raise PaymentRequestError("A receipt transcript or receipt hash is required")
        except LedgerMindError as e:
            self._record(outcome, PaymentState.ANALYZING, started, success=False, error=e)
            raise
        self._record(
            outcome, PaymentState.ANALYZING, started,
            details={"receipt_hash": outcome.receipt_hash, "receipt_uri": outcome.receipt_uri},
        )

    def _check(self, outcome: PaymentOutcome) -> Optional[str]:
        """Snapshot the intent for the audit record. Never rejects."""
        started = time.monotonic()
        try:
            params = self.reader.read_intent_params(outcome.intent)
            limits = self.reader.read_limits(outcome.intent)
            details = {
                "token": params.token,
                "contract_state": self.reader.read_state(outcome.intent),
                "escrow_balance": str(self.reader.get_balance(outcome.intent)),
                "spent": str(limits.spent),
                "total_cap": str(limits.total_cap),
                "per_tx_cap": str(limits.per_tx_cap),
                "agent_matches": params.agent == self.wallet.address,
            }
        except ChainError as e:
            self._record(outcome, PaymentState.CHECKING, started, success=False, error=e)
            return None
        self._record(outcome, PaymentState.CHECKING, started, details=details)
        return params.token

    def _execute(self, outcome: PaymentOutcome, state: PaymentState) -> TxStatus:
        if outcome.execute_attempts >= MAX_EXECUTE_ATTEMPTS:
            raise RuntimeError("execute attempted more than twice in one run")
        started = time.monotonic()
        outcome.execute_attempts += 1
        outcome.state = state
        try:
            status = self.wallet.execute(
                outcome.intent,
                outcome.merchant,
                outcome.amount,
                outcome.receipt_hash,
                outcome.receipt_uri or "",
            )
        except LedgerMindError as e:
            self._record(outcome, state, started, success=False, error=e)
            raise
        self._record(outcome, state, started, tx_hash=status.tx_hash)
        return status

    def _auto_fund(
        self, outcome: PaymentOutcome, token: Optional[str], shortfall: InsufficientAllowanceError
    ) -> None:
        started = time.monotonic()
        outcome.state = PaymentState.AUTO_FUNDING
        try:
            if token is None:
                token = self.reader.read_intent_params(outcome.intent).token
            balance = self.reader.token_balance(token, self.wallet.address)
            if balance < outcome.amount:
                raise InsufficientAgentFundsError(balance, outcome.amount, intent=outcome.intent)
            funding = min(balance, outcome.amount + self.auto_fund_buffer)
            status = self.wallet.transfer(token, outcome.intent, funding)
        except LedgerMindError as e:
            self._record(outcome, PaymentState.AUTO_FUNDING, started, success=False, error=e)
            raise
        outcome.funding_tx_hash = status.tx_hash
        outcome.funding_amount = funding
        self._record(
            outcome, PaymentState.AUTO_FUNDING, started, tx_hash=status.tx_hash,
            details={
                "token": token,
                "agent_balance": str(balance),
                "funding_amount": str(funding),
                "trigger_revert_reason": shortfall.revert_reason,
            },
        )

    # ── Audit and subscribers ────────────────────────────────────────

    def _record(
        self,
        outcome: PaymentOutcome,
        state: PaymentState,
        started: float,
        success: bool = True,
        error: Optional[LedgerMindError] = None,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Transition:
        attempt = outcome.execute_attempts if state in (PaymentState.EXECUTING, PaymentState.RETRYING) else None
        transition = Transition(
            run_id=outcome.run_id,
            state=state,
            success=success,
            duration_ms=int((time.monotonic() - started) * 1000),
            attempt=attempt,
            tx_hash=tx_hash,
            kind=error.kind if error else None,
            reason=str(error) if error else None,
            revert_reason=error.revert_reason if error else None,
            details=details or {},
        )
        outcome.transitions.append(transition)
        if state in (PaymentState.SUCCESS, PaymentState.FAILED):
            outcome.state = state

        self.audit.log(
            _AUDIT_EVENTS[state],
            run_id=outcome.run_id,
            intent=outcome.intent,
            agent=self.wallet.address,
            merchant=outcome.merchant,
            amount=outcome.amount,
            attempt=attempt,
            success=success,
            kind=transition.kind,
            reason=transition.reason,
            revert_reason=transition.revert_reason,
            tx_hash=tx_hash,
            duration_ms=transition.duration_ms,
            details=details,
        )
        logger.info(
            "Run %s %s %s%s", outcome.run_id, state.value,
            "ok" if success else "failed",
            f": {transition.reason}" if transition.reason else "",
        )
        for callback in list(self._subscribers):
            try:
                callback(transition)
            except Exception:
                logger.exception("Transition subscriber failed for run %s", outcome.run_id)
        return transition


def _validate_hash(value: str) -> str:
    candidate = value.lower()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    try:
        raw = bytes.fromhex(candidate[2:])
    except ValueError as e:
        raise PaymentRequestError(f"Receipt hash is not hex: {value}") from e
    if len(raw) != 32:
        raise PaymentRequestError(f"Receipt hash must be 32 bytes, got {len(raw)}")
    return candidate
